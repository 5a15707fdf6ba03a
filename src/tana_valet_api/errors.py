from __future__ import annotations

from typing import Any


class ParkingError(Exception):
    """Business error that maps onto an HTTP response."""

    status_code: int = 400

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra


class ValidationError(ParkingError):
    status_code = 400


class AuthenticationRequired(ParkingError):
    status_code = 401


class Forbidden(ParkingError):
    status_code = 403


class NotFound(ParkingError):
    status_code = 404


class Conflict(ParkingError):
    status_code = 409


class PackageExpired(ParkingError):
    status_code = 400

    def __init__(self, message: str = "Package has expired", **extra: Any) -> None:
        super().__init__(message, **extra)


class GatewayError(ParkingError):
    """Unexpected failure from the payment gateway."""

    status_code = 502

    def __init__(self, message: str, upstream_status: int | None = None, **extra: Any) -> None:
        super().__init__(message, **extra)
        self.upstream_status = upstream_status
        if upstream_status is not None and 400 <= upstream_status < 600:
            self.status_code = upstream_status
