"""
Device-facing message channel.

Each request opens its own MQTT connection to IoT Hub as the configured
device, performs one operation and disconnects:

1) Connect: TLS to the hub (websockets on 443 by default, or tcp on 8883),
   authenticated with a SAS token built from the device connection string.

2) Telemetry: one QoS 1 publish to devices/{id}/messages/events/ with the
   content type and encoding in the topic property bag.

3) Reported properties: subscribe to $iothub/twin/res/#, publish the patch to
   $iothub/twin/PATCH/properties/reported/?$rid={rid} and wait for the hub's
   response carrying the same rid.

4) Disconnect, whatever happened above.
"""
import json
import logging
import ssl
import threading
import uuid
from typing import Any, Callable, Dict, Optional

import paho.mqtt.client as mqtt

from . import topics
from .auth import DeviceCredentials, build_sas_token
from .errors import BackendError
from .models import DeviceMessage

logger = logging.getLogger(__name__)

TRANSPORT_PORTS = {"websockets": 443, "tcp": 8883}


class MqttDeviceChannel:
    def __init__(
        self,
        credentials: DeviceCredentials,
        transport: str = "websockets",
        timeout: float = 10.0,
        sas_ttl_seconds: int = 3600,
        client_factory: Callable[..., mqtt.Client] = mqtt.Client,
    ) -> None:
        if transport not in TRANSPORT_PORTS:
            raise ValueError(f"Unsupported MQTT transport: {transport}")
        self._credentials = credentials
        self._transport = transport
        self._timeout = timeout
        self._sas_ttl = sas_ttl_seconds
        self._client_factory = client_factory
        self._client: Optional[mqtt.Client] = None

        self._connected = threading.Event()
        self._connect_rc = None
        self._subscribed = threading.Event()
        self._lock = threading.Lock()
        self._pending: Dict[str, threading.Event] = {}
        self._responses: Dict[str, int] = {}

    @property
    def device_id(self) -> str:
        return self._credentials.device_id

    # --- lifecycle
    def __enter__(self) -> "MqttDeviceChannel":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.disconnect()

    def connect(self) -> None:
        creds = self._credentials
        client = self._client_factory(
            client_id=creds.device_id,
            transport=self._transport,
            protocol=mqtt.MQTTv311,
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        )
        client.username_pw_set(
            username=topics.get_username(creds.host, creds.device_id),
            password=build_sas_token(creds.host, creds.device_id, creds.key, ttl_seconds=self._sas_ttl),
        )
        # TLS required by IoT Hub
        client.tls_set(tls_version=ssl.PROTOCOL_TLSv1_2)
        client.tls_insecure_set(False)
        if self._transport == "websockets":
            client.ws_set_options(path="/$iothub/websocket")

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_subscribe = self._on_subscribe
        client.on_message = self._on_message
        self._client = client

        port = TRANSPORT_PORTS[self._transport]
        logger.debug("connecting to %s:%s transport=%s device=%s", creds.endpoint, port, self._transport, creds.device_id)
        try:
            client.connect(creds.endpoint, port=port, keepalive=60)
            client.loop_start()
            if not self._connected.wait(self._timeout):
                raise BackendError("Timed out connecting to IoT Hub", device_id=creds.device_id)
            if self._connect_rc != 0:
                raise BackendError(f"IoT Hub refused the connection: {self._connect_rc}", device_id=creds.device_id)
        except BackendError:
            self.disconnect()
            raise
        except (OSError, ValueError) as ex:
            self.disconnect()
            raise BackendError(f"Unable to connect to IoT Hub: {ex}", device_id=creds.device_id) from ex

    def disconnect(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        client.loop_stop()
        client.disconnect()
        logger.debug("disconnected device=%s", self.device_id)

    # --- operations
    def send_event(self, message: DeviceMessage) -> None:
        client = self._require_client()
        system_properties = {}
        if message.content_type:
            system_properties["$.ct"] = message.content_type
        if message.content_encoding:
            system_properties["$.ce"] = message.content_encoding
        topic = topics.get_telemetry_topic(self.device_id, system_properties)
        self._publish(client, topic, message.body)
        logger.info("telemetry sent device=%s bytes=%d", self.device_id, len(message.body))

    def update_reported_properties(self, patch: Dict[str, Any]) -> None:
        client = self._require_client()
        self._subscribe_twin_responses(client)

        request_id = str(uuid.uuid4())
        done = threading.Event()
        with self._lock:
            self._pending[request_id] = done
        try:
            self._publish(client, topics.get_twin_patch_topic_for_publish(request_id), json.dumps(patch))
            if not done.wait(self._timeout):
                raise BackendError("Timed out waiting for reported properties response", device_id=self.device_id)
            with self._lock:
                status = self._responses.pop(request_id)
        finally:
            with self._lock:
                self._pending.pop(request_id, None)
        if not 200 <= status < 300:
            raise BackendError(f"IoT Hub rejected reported properties with status {status}", device_id=self.device_id)
        logger.info("reported properties updated device=%s keys=%s", self.device_id, sorted(patch))

    # --- helpers
    def _require_client(self) -> mqtt.Client:
        if self._client is None:
            raise BackendError("Device channel is not connected", device_id=self.device_id)
        return self._client

    def _publish(self, client: mqtt.Client, topic: str, payload) -> None:
        info = client.publish(topic, payload=payload, qos=1)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise BackendError(f"Publish failed: {mqtt.error_string(info.rc)}", device_id=self.device_id)
        try:
            info.wait_for_publish(timeout=self._timeout)
        except (RuntimeError, ValueError) as ex:
            raise BackendError(f"Publish failed: {ex}", device_id=self.device_id) from ex
        if not info.is_published():
            raise BackendError("Timed out waiting for publish acknowledgement", device_id=self.device_id)

    def _subscribe_twin_responses(self, client: mqtt.Client) -> None:
        if self._subscribed.is_set():
            return
        rc, _ = client.subscribe(topics.get_twin_response_topic_for_subscribe(), qos=0)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise BackendError(f"Subscribe failed: {mqtt.error_string(rc)}", device_id=self.device_id)
        if not self._subscribed.wait(self._timeout):
            raise BackendError("Timed out subscribing to twin responses", device_id=self.device_id)

    # --- paho callbacks (Callback API v2), run on the network thread
    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        self._connect_rc = reason_code
        self._connected.set()

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code != 0:
            logger.warning("unexpected disconnect device=%s reason_code=%s", self.device_id, reason_code)

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
        self._subscribed.set()

    def _on_message(self, client, userdata, msg):
        try:
            status, request_id = topics.parse_twin_response_topic(msg.topic)
        except ValueError:
            logger.debug("ignoring message on %s", msg.topic)
            return
        with self._lock:
            done = self._pending.get(request_id)
            if done is None:
                return
            self._responses[request_id] = status
        done.set()


class MqttChannelFactory:
    """Creates one MqttDeviceChannel per request from the device credential.

    The credential identifies a single device. A request for a different id
    is still sent as the configured device; the mismatch is logged.
    """

    def __init__(self, credentials: DeviceCredentials, transport: str = "websockets", timeout: float = 10.0, sas_ttl_seconds: int = 3600) -> None:
        self._credentials = credentials
        self._transport = transport
        self._timeout = timeout
        self._sas_ttl = sas_ttl_seconds

    def __call__(self, device_id: str) -> MqttDeviceChannel:
        if device_id != self._credentials.device_id:
            logger.warning(
                "request for device %s is sent as configured device %s", device_id, self._credentials.device_id
            )
        return MqttDeviceChannel(
            self._credentials,
            transport=self._transport,
            timeout=self._timeout,
            sas_ttl_seconds=self._sas_ttl,
        )
