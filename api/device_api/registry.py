"""
Registry client.

``IoTHubRegistryClient`` implements ``protocols.RegistryClient`` on top of azure-iot-hub's
``IoTHubRegistryManager`` and translates the service's HTTP failures into
NotFound / Conflict / BackendError at this boundary.
"""
import base64
import logging
import secrets
from typing import Any, Dict

from azure.core.exceptions import AzureError
from azure.iot.hub import IoTHubRegistryManager
from azure.iot.hub import models as hub_models
from msrest.exceptions import ClientException, HttpOperationError

from .errors import BackendError, Conflict, NotFound
from .models import DeviceIdentity, DeviceStatus, TwinDocument, TwinProperties, split_property_bag

logger = logging.getLogger(__name__)


def _generate_key() -> str:
    return base64.b64encode(secrets.token_bytes(32)).decode("ascii")


def _to_identity(device) -> DeviceIdentity:
    return DeviceIdentity(
        deviceId=device.device_id,
        status=DeviceStatus(str(device.status).lower()) if device.status else DeviceStatus.ENABLED,
        etag=device.etag,
        statusReason=device.status_reason,
        connectionState=device.connection_state,
        statusUpdatedTime=device.status_updated_time,
        lastActivityTime=device.last_activity_time,
        cloudToDeviceMessageCount=device.cloud_to_device_message_count,
    )


def _to_twin(twin) -> TwinDocument:
    props = twin.properties
    desired, desired_version = split_property_bag(props.desired if props else None)
    reported, reported_version = split_property_bag(props.reported if props else None)
    return TwinDocument(
        deviceId=twin.device_id,
        etag=twin.etag,
        version=twin.version,
        status=DeviceStatus(str(twin.status).lower()) if twin.status else None,
        properties=TwinProperties(
            desired=desired,
            reported=reported,
            desiredVersion=desired_version,
            reportedVersion=reported_version,
        ),
    )


class IoTHubRegistryClient:
    def __init__(self, manager: IoTHubRegistryManager) -> None:
        self._manager = manager

    @classmethod
    def from_connection_string(cls, connection_string: str) -> "IoTHubRegistryClient":
        return cls(IoTHubRegistryManager.from_connection_string(connection_string))

    def _call(self, operation: str, device_id: str, fn, *args):
        try:
            return fn(*args)
        except HttpOperationError as ex:
            status = getattr(ex.response, "status_code", None)
            logger.info("registry %s failed device=%s status=%s", operation, device_id, status)
            if status == 404:
                raise NotFound(f"Device {device_id} not found", device_id=device_id) from ex
            if status in (409, 412):
                raise Conflict(f"Registry rejected {operation} for {device_id}: {ex}", device_id=device_id) from ex
            raise BackendError(f"Registry {operation} failed: {ex}", device_id=device_id) from ex
        except (ClientException, AzureError, OSError) as ex:
            # auth, serialization and connection failures from the service client
            raise BackendError(f"Registry {operation} failed: {ex}", device_id=device_id) from ex
        except Exception as ex:
            logger.exception("registry %s raised unexpectedly device=%s", operation, device_id)
            raise BackendError(f"Registry {operation} failed: {ex}", device_id=device_id) from ex

    def add_device(self, device_id: str, status: DeviceStatus = DeviceStatus.ENABLED) -> DeviceIdentity:
        device = self._call(
            "create", device_id,
            self._manager.create_device_with_sas,
            device_id, _generate_key(), _generate_key(), status.value,
        )
        return _to_identity(device)

    def get_device(self, device_id: str) -> DeviceIdentity:
        return _to_identity(self._call("get", device_id, self._manager.get_device, device_id))

    def update_device(self, identity: DeviceIdentity) -> DeviceIdentity:
        device_id = identity.deviceId
        current = self._call("get", device_id, self._manager.get_device, device_id)
        auth = current.authentication
        auth_type = auth.type if auth else "sas"
        iot_edge = bool(current.capabilities and current.capabilities.iot_edge)
        etag = identity.etag or current.etag
        status = identity.status.value

        # keep the registered credentials, only the status changes
        if auth_type == "selfSigned":
            thumbprint = auth.x509_thumbprint
            updated = self._call(
                "update", device_id,
                self._manager.update_device_with_x509,
                device_id, etag, thumbprint.primary_thumbprint, thumbprint.secondary_thumbprint, status, iot_edge,
            )
        elif auth_type == "certificateAuthority":
            updated = self._call(
                "update", device_id,
                self._manager.update_device_with_certificate_authority,
                device_id, etag, status, iot_edge,
            )
        else:
            keys = auth.symmetric_key if auth else None
            updated = self._call(
                "update", device_id,
                self._manager.update_device_with_sas,
                device_id, etag,
                keys.primary_key if keys else None,
                keys.secondary_key if keys else None,
                status, iot_edge,
            )
        return _to_identity(updated)

    def remove_device(self, device_id: str) -> None:
        self._call("delete", device_id, self._manager.delete_device, device_id)

    def get_twin(self, device_id: str) -> TwinDocument:
        return _to_twin(self._call("get twin", device_id, self._manager.get_twin, device_id))

    def update_twin(self, device_id: str, desired: Dict[str, Any], etag: str) -> TwinDocument:
        patch = hub_models.Twin(properties=hub_models.TwinProperties(desired=desired))
        return _to_twin(self._call("update twin", device_id, self._manager.update_twin, device_id, patch, etag))
