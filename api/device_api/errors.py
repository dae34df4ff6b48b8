from typing import Optional


class ConfigurationError(RuntimeError):
    """Raised at startup when a required setting is missing or malformed."""


class DeviceApiError(Exception):
    """Base class for failures surfaced by the device facade.

    Each subclass carries the HTTP status it maps to and a short machine
    readable code used in error bodies.
    """

    status_code = 500
    code = "error"

    def __init__(self, message: str, device_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.device_id = device_id


class InvalidRequest(DeviceApiError):
    status_code = 400
    code = "invalid_request"


class NotFound(DeviceApiError):
    status_code = 404
    code = "not_found"


class Conflict(DeviceApiError):
    """Identity already exists, or the ETag was stale at write time."""

    status_code = 409
    code = "conflict"


class BackendError(DeviceApiError):
    status_code = 500
    code = "backend_error"
