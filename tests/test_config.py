import json

import pytest

from device_api.config import Settings
from device_api.errors import ConfigurationError

REGISTRY_CS = "HostName=hub.azure-devices.net;SharedAccessKeyName=iothubowner;SharedAccessKey=a2V5"
DEVICE_CS = "HostName=hub.azure-devices.net;DeviceId=sensor-1;SharedAccessKey=c2VjcmV0LWtleQ=="


def settings(tmp_path, **env):
    env.setdefault("APPSETTINGS_FILE", str(tmp_path / "appsettings.json"))
    return Settings(environ=env, load_env_file=False)


def test_defaults(tmp_path):
    s = settings(tmp_path, IOTHUB_CONNECTION_STRING=REGISTRY_CS, IOTHUB_DEVICE_CONNECTION_STRING=DEVICE_CS)
    s.validate()
    assert s.mqtt_transport == "websockets"
    assert s.operation_timeout == 10.0
    assert s.delete_policy == "idempotent"
    assert s.expose_error_details is False
    assert s.device_credentials.device_id == "sensor-1"


@pytest.mark.parametrize("device_cs", ["", "   "])
def test_blank_device_connection_string_fails_fast(tmp_path, device_cs):
    s = settings(tmp_path, IOTHUB_CONNECTION_STRING=REGISTRY_CS, IOTHUB_DEVICE_CONNECTION_STRING=device_cs)
    with pytest.raises(ConfigurationError, match="IOTHUB_DEVICE_CONNECTION_STRING"):
        s.validate()


def test_missing_registry_connection_string_fails(tmp_path):
    s = settings(tmp_path, IOTHUB_DEVICE_CONNECTION_STRING=DEVICE_CS)
    with pytest.raises(ConfigurationError, match="IOTHUB_CONNECTION_STRING"):
        s.validate()


def test_service_credential_as_device_credential_fails(tmp_path):
    s = settings(tmp_path, IOTHUB_CONNECTION_STRING=REGISTRY_CS, IOTHUB_DEVICE_CONNECTION_STRING=REGISTRY_CS)
    with pytest.raises(ConfigurationError):
        s.validate()


@pytest.mark.parametrize(
    "name,value",
    [("MQTT_TRANSPORT", "amqp"), ("DELETE_POLICY", "maybe"), ("OPERATION_TIMEOUT_SECONDS", "0")],
)
def test_invalid_options(tmp_path, name, value):
    s = settings(tmp_path, IOTHUB_CONNECTION_STRING=REGISTRY_CS, IOTHUB_DEVICE_CONNECTION_STRING=DEVICE_CS, **{name: value})
    with pytest.raises(ConfigurationError):
        s.validate()


def test_appsettings_file_with_dev_overlay(tmp_path):
    (tmp_path / "appsettings.json").write_text(
        json.dumps({"AzureIOTHub": {"IoTHubConnectionString": REGISTRY_CS, "DeviceConnectionString": "placeholder"}})
    )
    (tmp_path / "appsettingsdev.json").write_text(json.dumps({"AzureIOTHub": {"DeviceConnectionString": DEVICE_CS}}))

    s = settings(tmp_path)
    s.validate()
    assert s.registry_connection_string == REGISTRY_CS
    assert s.device_connection_string == DEVICE_CS


def test_environment_overrides_appsettings(tmp_path):
    (tmp_path / "appsettings.json").write_text(json.dumps({"AzureIOTHub": {"DeviceConnectionString": "from-file"}}))
    s = settings(tmp_path, IOTHUB_DEVICE_CONNECTION_STRING=DEVICE_CS)
    assert s.device_connection_string == DEVICE_CS


def test_unreadable_appsettings(tmp_path):
    (tmp_path / "appsettings.json").write_text("{not json")
    with pytest.raises(ConfigurationError):
        settings(tmp_path)


def test_expose_error_details_flag(tmp_path):
    assert settings(tmp_path, EXPOSE_ERROR_DETAILS="true").expose_error_details is True


@pytest.mark.parametrize("name", ["OPERATION_TIMEOUT_SECONDS", "SAS_TTL_SECONDS"])
def test_malformed_number_is_configuration_error(tmp_path, name):
    with pytest.raises(ConfigurationError, match=name):
        settings(tmp_path, **{name: "ten"})


def test_invalid_log_level(tmp_path):
    s = settings(tmp_path, IOTHUB_CONNECTION_STRING=REGISTRY_CS, IOTHUB_DEVICE_CONNECTION_STRING=DEVICE_CS, LOG_LEVEL="chatty")
    with pytest.raises(ConfigurationError, match="LOG_LEVEL"):
        s.validate()
