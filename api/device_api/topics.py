import urllib.parse
from typing import Dict, Optional

# IoT Hub MQTT API version sent in the username
API_VERSION = "2021-04-12"

TWIN_RESPONSE_PREFIX = "$iothub/twin/res/"


def get_username(host: str, device_id: str) -> str:
    return f"{host}/{device_id}/?api-version={API_VERSION}"


def get_telemetry_topic(device_id: str, system_properties: Optional[Dict[str, str]] = None) -> str:
    """
    devices/{deviceId}/messages/events/ followed by the URL-encoded
    property bag, e.g. ``$.ct=application%2Fjson&$.ce=utf-8``.
    """
    # Device id is never URL encoded in a topic
    topic = f"devices/{device_id}/messages/events/"
    if system_properties:
        topic += urllib.parse.urlencode(system_properties, quote_via=urllib.parse.quote, safe="$")
    return topic


def get_twin_response_topic_for_subscribe() -> str:
    return TWIN_RESPONSE_PREFIX + "#"


def get_twin_patch_topic_for_publish(request_id: str) -> str:
    return "$iothub/twin/PATCH/properties/reported/?$rid={}".format(
        urllib.parse.quote(str(request_id), safe="")
    )


def parse_twin_response_topic(topic: str):
    """
    Return (status, request_id) from ``$iothub/twin/res/{status}/?$rid={rid}``.

    Raises ValueError if the topic is not a twin response.
    """
    parts = topic.split("/")
    if not topic.startswith(TWIN_RESPONSE_PREFIX) or len(parts) < 4 or "?" not in topic:
        raise ValueError("topic has incorrect format")
    status = int(urllib.parse.unquote(parts[3]))
    query = urllib.parse.parse_qs(topic.split("?", 1)[1])
    rid = query.get("$rid", [None])[0]
    if not rid:
        raise ValueError("No request id in topic")
    return status, rid
