from dataclasses import dataclass

from rest_framework import authentication, exceptions

DRIVER_HEADER = "X-Driver-Id"


@dataclass(frozen=True)
class DriverPrincipal:
    """
    The authenticated caller of a driver endpoint. Identity is asserted by the
    gateway in front of this service; we only read it.
    """
    driver_id: str

    is_authenticated = True
    is_anonymous = False


class DriverHeaderAuthentication(authentication.BaseAuthentication):
    """
    Reads the driver id from the X-Driver-Id header.
    No header -> anonymous (customer/system calls); blank header -> 401.
    """

    def authenticate(self, request):
        if DRIVER_HEADER not in request.headers:
            return None

        driver_id = request.headers.get(DRIVER_HEADER, "").strip()
        if not driver_id:
            raise exceptions.AuthenticationFailed("Empty X-Driver-Id header")
        return DriverPrincipal(driver_id=driver_id), None

    def authenticate_header(self, request):
        return DRIVER_HEADER
