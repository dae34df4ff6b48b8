"""
Interfaces the facade depends on.

No I/O imports here, so the facade can be built against fakes without
loading the IoT Hub or MQTT client libraries.
"""
from typing import Any, Dict, Protocol, runtime_checkable

from .models import DeviceIdentity, DeviceMessage, DeviceStatus, TwinDocument


@runtime_checkable
class RegistryClient(Protocol):
    def add_device(self, device_id: str, status: DeviceStatus = DeviceStatus.ENABLED) -> DeviceIdentity:
        """Register a new identity. Conflict if it exists."""
        ...

    def get_device(self, device_id: str) -> DeviceIdentity:
        """NotFound if absent."""
        ...

    def update_device(self, identity: DeviceIdentity) -> DeviceIdentity:
        """Write back ``identity`` guarded by its etag."""
        ...

    def remove_device(self, device_id: str) -> None:
        """NotFound if absent."""
        ...

    def get_twin(self, device_id: str) -> TwinDocument:
        ...

    def update_twin(self, device_id: str, desired: Dict[str, Any], etag: str) -> TwinDocument:
        """Write ``desired`` guarded by ``etag``. Conflict if the etag is stale."""
        ...


class DeviceChannel(Protocol):
    """A connected device channel, used as a context manager."""

    def __enter__(self) -> "DeviceChannel":
        ...

    def __exit__(self, exc_type, exc, tb) -> None:
        ...

    def send_event(self, message: DeviceMessage) -> None:
        ...

    def update_reported_properties(self, patch: Dict[str, Any]) -> None:
        ...
