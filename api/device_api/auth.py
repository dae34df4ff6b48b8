"""
Device credentials for the MQTT channel.

A device connection string looks like
``HostName=<hub>.azure-devices.net;DeviceId=<id>;SharedAccessKey=<base64>``.
The channel authenticates with a SAS token derived from it:
  sr = {host}/devices/{deviceId}  (URL-encoded in the token)
  sig = HMAC-SHA256 over "{sr}\\n{expiry}"
  se = unix epoch expiry
"""
import base64
import hashlib
import hmac
import time
import urllib.parse
from typing import Dict, NamedTuple, Optional

HOST_NAME = "HostName"
DEVICE_ID = "DeviceId"
SHARED_ACCESS_KEY = "SharedAccessKey"
SHARED_ACCESS_KEY_NAME = "SharedAccessKeyName"
GATEWAY_HOST_NAME = "GatewayHostName"
MODULE_ID = "ModuleId"

_VALID_KEYS = {HOST_NAME, DEVICE_ID, SHARED_ACCESS_KEY, SHARED_ACCESS_KEY_NAME, GATEWAY_HOST_NAME, MODULE_ID}


def parse_connection_string(connection_string: str) -> Dict[str, str]:
    """Return the key/value pairs of an IoT Hub connection string.

    Raises ValueError on duplicate or unknown keys and on bad syntax.
    """
    # Same rules as azure.iot.hub.connection_string; importing that package pulls in
    # its AMQP stack, which the device channel and the settings check do not need.
    parts = [p for p in connection_string.strip().split(";") if p]
    try:
        values = dict(p.split("=", 1) for p in parts)
    except ValueError:
        raise ValueError("Invalid connection string - unable to parse")
    if len(values) != len(parts):
        raise ValueError("Invalid connection string - duplicate keys")
    unknown = set(values) - _VALID_KEYS
    if unknown:
        raise ValueError("Invalid connection string - unknown keys: {}".format(", ".join(sorted(unknown))))
    return values


class DeviceCredentials(NamedTuple):
    host: str
    device_id: str
    key: str
    gateway_host: Optional[str] = None

    @classmethod
    def from_connection_string(cls, connection_string: str) -> "DeviceCredentials":
        values = parse_connection_string(connection_string)
        missing = [k for k in (HOST_NAME, DEVICE_ID, SHARED_ACCESS_KEY) if not values.get(k)]
        if missing:
            raise ValueError("Device connection string is missing: {}".format(", ".join(missing)))
        return cls(
            host=values[HOST_NAME],
            device_id=values[DEVICE_ID],
            key=values[SHARED_ACCESS_KEY],
            gateway_host=values.get(GATEWAY_HOST_NAME),
        )

    @property
    def endpoint(self) -> str:
        """Host the MQTT client connects to."""
        return self.gateway_host or self.host


def build_sas_token(host: str, device_id: str, key_b64: str, ttl_seconds: int = 3600, now: Optional[float] = None) -> str:
    """Build a device-scoped SAS token valid for ``ttl_seconds``."""
    expiry = int(now if now is not None else time.time()) + ttl_seconds
    resource_uri = f"{host}/devices/{device_id}"
    encoded_resource = urllib.parse.quote(resource_uri, safe="")
    to_sign = f"{encoded_resource}\n{expiry}".encode("utf-8")

    key = base64.b64decode(key_b64)
    signature = hmac.new(key, to_sign, hashlib.sha256).digest()
    signature_b64 = urllib.parse.quote(base64.b64encode(signature), safe="")

    return f"SharedAccessSignature sr={encoded_resource}&sig={signature_b64}&se={expiry}"
