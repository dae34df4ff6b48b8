"""
Device facade.

Maps API intents onto the registry and the device channel. The facade is
stateless: the registry client is shared by every request and a fresh
device channel is opened for each telemetry or reported-property call and
closed before the call returns.
"""
import logging
from enum import Enum
from typing import Any, Callable, Dict, Mapping

from .errors import BackendError, DeviceApiError, InvalidRequest, NotFound
from .models import DeviceIdentity, DeviceMessage, DeviceStatus, TwinDocument
from .protocols import DeviceChannel, RegistryClient

logger = logging.getLogger(__name__)


class DeletePolicy(str, Enum):
    IDEMPOTENT = "idempotent"  # deleting a missing device succeeds
    STRICT = "strict"  # deleting a missing device raises NotFound


def merge_properties(current: Mapping[str, Any], patch: Mapping[str, Any]) -> Dict[str, Any]:
    """Overlay ``patch`` on ``current``; keys absent from the patch are kept."""
    merged = dict(current)
    for key, value in patch.items():
        merged[key] = value
    return merged


def _check_device_id(device_id: str) -> str:
    if not isinstance(device_id, str) or not device_id.strip():
        raise InvalidRequest("deviceId must be a non-empty string")
    return device_id


def _check_patch(patch, what: str) -> Dict[str, Any]:
    if not isinstance(patch, Mapping):
        raise InvalidRequest(f"{what} must be a JSON object")
    return dict(patch)


class DeviceFacade:
    def __init__(
        self,
        registry: RegistryClient,
        open_channel: Callable[[str], DeviceChannel],
        delete_policy: DeletePolicy = DeletePolicy.IDEMPOTENT,
    ) -> None:
        self._registry = registry
        self._open_channel = open_channel
        self._delete_policy = DeletePolicy(delete_policy)

    @property
    def delete_policy(self) -> DeletePolicy:
        return self._delete_policy

    # --- identity lifecycle
    def create_device(self, device_id: str) -> DeviceIdentity:
        _check_device_id(device_id)
        identity = self._registry.add_device(device_id, DeviceStatus.ENABLED)
        logger.info("device created device=%s", device_id)
        return identity

    def delete_device(self, device_id: str) -> None:
        _check_device_id(device_id)
        try:
            self._registry.remove_device(device_id)
        except NotFound:
            if self._delete_policy is DeletePolicy.STRICT:
                raise
            logger.info("delete of unknown device=%s treated as success", device_id)
            return
        logger.info("device deleted device=%s", device_id)

    def update_device(self, device_id: str, status: DeviceStatus = DeviceStatus.ENABLED) -> DeviceIdentity:
        _check_device_id(device_id)
        status = DeviceStatus(status)
        current = self._registry.get_device(device_id)
        updated = self._registry.update_device(current.model_copy(update={"status": status}))
        logger.info("device updated device=%s status=%s", device_id, status.value)
        return updated

    def get_device(self, device_id: str) -> DeviceIdentity:
        _check_device_id(device_id)
        return self._registry.get_device(device_id)

    # --- twin
    def get_device_twin(self, device_id: str) -> TwinDocument:
        _check_device_id(device_id)
        return self._registry.get_twin(device_id)

    def update_desired_properties(self, device_id: str, patch: Mapping[str, Any]) -> TwinDocument:
        _check_device_id(device_id)
        patch = _check_patch(patch, "desired properties")
        twin = self._registry.get_twin(device_id)
        desired = merge_properties(twin.properties.desired, patch)
        # no retry on a stale etag, the Conflict goes back to the caller
        updated = self._registry.update_twin(device_id, desired, twin.etag)
        logger.info("desired properties updated device=%s keys=%s", device_id, sorted(patch))
        return updated

    # --- device channel
    def update_reported_properties(self, device_id: str, patch: Mapping[str, Any]) -> None:
        _check_device_id(device_id)
        patch = _check_patch(patch, "reported properties")
        reported = merge_properties({}, patch)
        self._with_channel(device_id, "updating reported properties", lambda ch: ch.update_reported_properties(reported))

    def send_telemetry(self, device_id: str, payload: Mapping[str, Any]) -> None:
        _check_device_id(device_id)
        payload = _check_patch(payload, "telemetry")
        self._with_channel(device_id, "sending telemetry", lambda ch: ch.send_event(DeviceMessage.from_json(payload)))

    def _with_channel(self, device_id: str, action: str, operation: Callable[[DeviceChannel], None]) -> None:
        try:
            with self._open_channel(device_id) as channel:
                operation(channel)
        except DeviceApiError:
            raise
        except Exception as ex:
            # any channel failure is a transport failure for the caller
            raise BackendError(f"Error {action}: {ex}", device_id=device_id) from ex
