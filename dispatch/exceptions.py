"""Typed rejections raised by the dispatch engine."""


class DispatchError(Exception):
    """Base class for every error the engine returns to a caller."""
    code = "dispatch_error"


class Conflict(DispatchError):
    """Raised when a competing path already resolved the record (lost a race)."""
    code = "conflict"


class OrderAlreadyBound(Conflict):
    """Raised when an offer is requested for an order that is already taken or offered."""
    code = "order_already_bound"


class NotFound(DispatchError):
    """Raised when an order, assignment or driver cannot be found."""
    code = "not_found"


class InvalidTransition(DispatchError):
    """Raised when a status change is not allowed by the order state machine."""
    code = "invalid_transition"


class Expired(DispatchError):
    """Raised when a driver responds to an offer after its deadline."""
    code = "expired"


class DriverMismatch(DispatchError):
    """Raised when the acting driver is not the driver the record belongs to."""
    code = "driver_mismatch"


class DriverUnavailable(DispatchError):
    """Raised when a driver is offline or already bound to another order."""
    code = "driver_unavailable"


class PersistenceError(DispatchError):
    """Raised when a transaction could not be written. Nothing was applied."""
    code = "persistence_error"

    def __init__(self, message: str = "write failed", *, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable
