import logging

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler

from dispatch.exceptions import (
    Conflict,
    DispatchError,
    DriverMismatch,
    DriverUnavailable,
    Expired,
    InvalidTransition,
    NotFound,
    PersistenceError,
)

logger = logging.getLogger(__name__)

# most specific first: OrderAlreadyBound is a Conflict
STATUS_BY_ERROR = [
    (Conflict, status.HTTP_409_CONFLICT),
    (DriverUnavailable, status.HTTP_409_CONFLICT),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (InvalidTransition, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (Expired, status.HTTP_410_GONE),
    (DriverMismatch, status.HTTP_403_FORBIDDEN),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def dispatch_exception_handler(exc, context):
    """
    Turns engine rejections into typed responses. A lost race is an ordinary
    outcome for the driver ("already taken"), not a server error.
    """
    if not isinstance(exc, DispatchError):
        return exception_handler(exc, context)

    http_status = status.HTTP_400_BAD_REQUEST
    for error_cls, mapped in STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            http_status = mapped
            break

    result = "already_taken" if isinstance(exc, Conflict) else exc.code
    if isinstance(exc, PersistenceError):
        logger.error("Dispatch write failed: %s", exc)

    return Response({"result": result, "error": exc.code, "detail": str(exc)}, status=http_status)
