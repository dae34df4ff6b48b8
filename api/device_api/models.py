import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

JSON_CONTENT_TYPE = "application/json"
UTF8 = "utf-8"

# IoT Hub bookkeeping entries inside a twin property bag
_BAG_METADATA_KEYS = ("$metadata", "$version")


class DeviceStatus(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"


class DeviceIdentity(BaseModel):
    deviceId: str = Field(min_length=1)
    status: DeviceStatus = DeviceStatus.ENABLED
    etag: Optional[str] = None
    statusReason: Optional[str] = None
    connectionState: Optional[str] = None
    statusUpdatedTime: Optional[datetime] = None
    lastActivityTime: Optional[datetime] = None
    cloudToDeviceMessageCount: Optional[int] = None


class TwinProperties(BaseModel):
    desired: Dict[str, Any] = Field(default_factory=dict)
    reported: Dict[str, Any] = Field(default_factory=dict)
    desiredVersion: Optional[int] = None
    reportedVersion: Optional[int] = None


class TwinDocument(BaseModel):
    deviceId: str
    etag: Optional[str] = None
    version: Optional[int] = None
    status: Optional[DeviceStatus] = None
    properties: TwinProperties = Field(default_factory=TwinProperties)


class MessageResponse(BaseModel):
    message: str


class ErrorResponse(BaseModel):
    error: str
    message: str


def split_property_bag(bag: Optional[Dict[str, Any]]):
    """Separate a raw twin bag into (properties, version).

    The hub returns ``$metadata`` and ``$version`` next to the user
    properties; callers only ever see the properties they wrote.
    """
    bag = dict(bag or {})
    version = bag.get("$version")
    for key in _BAG_METADATA_KEYS:
        bag.pop(key, None)
    return bag, version


class DeviceMessage:
    """A single device-to-cloud event as it goes on the wire."""

    def __init__(self, body: bytes, content_type: Optional[str] = None, content_encoding: Optional[str] = None) -> None:
        self.body = body
        self.content_type = content_type
        self.content_encoding = content_encoding

    @classmethod
    def from_json(cls, payload: Dict[str, Any]) -> "DeviceMessage":
        body = json.dumps(payload, separators=(",", ":")).encode(UTF8)
        return cls(body, content_type=JSON_CONTENT_TYPE, content_encoding=UTF8)

    def __repr__(self) -> str:
        return "DeviceMessage(content_type={!r}, content_encoding={!r}, size={})".format(
            self.content_type, self.content_encoding, len(self.body)
        )
