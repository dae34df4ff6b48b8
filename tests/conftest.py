"""
Shared fixtures: an in-memory stand-in for IoT Hub.

``InMemoryHub`` implements the registry contract with the hub's etag rules
and hands out recording device channels that apply reported-property
patches to the same twins, so facade and HTTP tests can round-trip data.
"""
import itertools
from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient

from device_api.errors import BackendError, Conflict, NotFound
from device_api.facade import DeletePolicy, DeviceFacade
from device_api.main import create_app
from device_api.models import DeviceIdentity, DeviceStatus, TwinDocument, TwinProperties


def _apply_patch(bag: Dict[str, Any], patch: Dict[str, Any]) -> None:
    # the hub deletes properties patched to null
    for key, value in patch.items():
        if value is None:
            bag.pop(key, None)
        else:
            bag[key] = value


class InMemoryHub:
    def __init__(self) -> None:
        self._etags = itertools.count(1)
        self.devices: Dict[str, DeviceIdentity] = {}
        self.twins: Dict[str, Dict[str, Any]] = {}
        self.channels: List["RecordingChannel"] = []
        self.fail_channel = False
        self.fail_registry = False

    def _next_etag(self) -> str:
        return f"etag-{next(self._etags)}"

    def _check(self, device_id: str) -> None:
        if self.fail_registry:
            raise BackendError("connection reset by peer", device_id=device_id)
        if device_id not in self.devices:
            raise NotFound(f"Device {device_id} not found", device_id=device_id)

    # --- registry contract
    def add_device(self, device_id, status=DeviceStatus.ENABLED):
        if self.fail_registry:
            raise BackendError("connection reset by peer", device_id=device_id)
        if device_id in self.devices:
            raise Conflict(f"Device {device_id} already exists", device_id=device_id)
        self.devices[device_id] = DeviceIdentity(deviceId=device_id, status=status, etag=self._next_etag())
        self.twins[device_id] = {"desired": {}, "reported": {}, "etag": self._next_etag(), "version": 1}
        return self.devices[device_id]

    def get_device(self, device_id):
        self._check(device_id)
        return self.devices[device_id]

    def update_device(self, identity):
        self._check(identity.deviceId)
        current = self.devices[identity.deviceId]
        if identity.etag != current.etag:
            raise Conflict("etag mismatch", device_id=identity.deviceId)
        self.devices[identity.deviceId] = identity.model_copy(update={"etag": self._next_etag()})
        return self.devices[identity.deviceId]

    def remove_device(self, device_id):
        self._check(device_id)
        del self.devices[device_id]
        del self.twins[device_id]

    def get_twin(self, device_id):
        self._check(device_id)
        return self._document(device_id)

    def _document(self, device_id):
        twin = self.twins[device_id]
        return TwinDocument(
            deviceId=device_id,
            etag=twin["etag"],
            version=twin["version"],
            status=self.devices[device_id].status,
            properties=TwinProperties(desired=dict(twin["desired"]), reported=dict(twin["reported"])),
        )

    def update_twin(self, device_id, desired, etag):
        self._check(device_id)
        twin = self.twins[device_id]
        if etag != twin["etag"]:
            raise Conflict("etag mismatch", device_id=device_id)
        _apply_patch(twin["desired"], desired)
        twin["etag"] = self._next_etag()
        twin["version"] += 1
        return self._document(device_id)

    # --- channel factory
    def open_channel(self, device_id):
        channel = RecordingChannel(self, device_id)
        self.channels.append(channel)
        return channel


class RecordingChannel:
    def __init__(self, hub: InMemoryHub, device_id: str) -> None:
        self.hub = hub
        self.device_id = device_id
        self.events = []
        self.reported_patches = []
        self.opened = False
        self.closed = False

    def __enter__(self):
        self.opened = True
        return self

    def __exit__(self, exc_type, exc, tb):
        self.closed = True

    def send_event(self, message):
        if self.hub.fail_channel:
            raise OSError("network unreachable")
        self.events.append(message)

    def update_reported_properties(self, patch):
        if self.hub.fail_channel:
            raise OSError("network unreachable")
        self.reported_patches.append(patch)
        twin = self.hub.twins[self.device_id]
        _apply_patch(twin["reported"], patch)
        twin["etag"] = self.hub._next_etag()
        twin["version"] += 1


@pytest.fixture
def hub():
    return InMemoryHub()


@pytest.fixture
def facade(hub):
    return DeviceFacade(hub, hub.open_channel)


@pytest.fixture
def strict_facade(hub):
    return DeviceFacade(hub, hub.open_channel, delete_policy=DeletePolicy.STRICT)


@pytest.fixture
def client(facade):
    with TestClient(create_app(facade=facade)) as test_client:
        yield test_client
