import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Final, Mapping, Optional

from dotenv import find_dotenv, load_dotenv

from .auth import DeviceCredentials
from .errors import ConfigurationError

APPSETTINGS_SECTION = "AzureIOTHub"
DEV_APPSETTINGS_FILE = "appsettingsdev.json"

_TRUE = {"1", "true", "yes", "on"}


def _load_appsettings(path: Path) -> Dict[str, Any]:
    """Read the AzureIOTHub section of appsettings.json and its dev overlay."""
    section: Dict[str, Any] = {}
    for candidate in (path, path.with_name(DEV_APPSETTINGS_FILE)):
        if not candidate.is_file():
            continue
        try:
            data = json.loads(candidate.read_text(encoding="utf-8"))
        except (OSError, ValueError) as ex:
            raise ConfigurationError(f"Unable to read {candidate}: {ex}") from ex
        section.update(data.get(APPSETTINGS_SECTION) or {})
    return section


def _number(env: Mapping[str, str], name: str, default: str, kind: Callable[[str], Any]) -> Any:
    raw = env.get(name, default)
    try:
        return kind(raw)
    except ValueError as ex:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from ex


class Settings:
    """
    Service settings.

    Values come from the process environment (after loading a ``.env`` file)
    and fall back to the ``AzureIOTHub`` section of ``appsettings.json``.
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None, load_env_file: bool = True) -> None:
        if load_env_file:
            # .env is looked up from the working directory, like appsettings.json
            load_dotenv(find_dotenv(usecwd=True))
        env = os.environ if environ is None else environ

        appsettings = _load_appsettings(Path(env.get("APPSETTINGS_FILE", "appsettings.json")))

        # --- hub credentials
        self.registry_connection_string: Final[str] = (
            env.get("IOTHUB_CONNECTION_STRING") or appsettings.get("IoTHubConnectionString") or ""
        )
        self.device_connection_string: Final[str] = (
            env.get("IOTHUB_DEVICE_CONNECTION_STRING") or appsettings.get("DeviceConnectionString") or ""
        )

        # --- device channel
        self.mqtt_transport: Final[str] = env.get("MQTT_TRANSPORT", "websockets").lower()
        self.operation_timeout: Final[float] = _number(env, "OPERATION_TIMEOUT_SECONDS", "10", float)
        self.sas_ttl_seconds: Final[int] = _number(env, "SAS_TTL_SECONDS", "3600", int)

        # --- behaviour
        self.delete_policy: Final[str] = env.get("DELETE_POLICY", "idempotent").lower()
        self.expose_error_details: Final[bool] = env.get("EXPOSE_ERROR_DETAILS", "false").lower() in _TRUE
        self.log_level: Final[str] = env.get("LOG_LEVEL", "INFO").upper()

    def validate(self) -> None:
        """Fail fast on settings the service cannot run without."""
        if not self.device_connection_string.strip():
            raise ConfigurationError("IOTHUB_DEVICE_CONNECTION_STRING is missing or empty in configuration.")
        if not self.registry_connection_string.strip():
            raise ConfigurationError("IOTHUB_CONNECTION_STRING is missing or empty in configuration.")
        try:
            DeviceCredentials.from_connection_string(self.device_connection_string)
        except ValueError as ex:
            raise ConfigurationError(str(ex)) from ex
        if self.mqtt_transport not in ("websockets", "tcp"):
            raise ConfigurationError(f"MQTT_TRANSPORT must be 'websockets' or 'tcp', got {self.mqtt_transport!r}")
        if self.delete_policy not in ("idempotent", "strict"):
            raise ConfigurationError(f"DELETE_POLICY must be 'idempotent' or 'strict', got {self.delete_policy!r}")
        if self.operation_timeout <= 0:
            raise ConfigurationError("OPERATION_TIMEOUT_SECONDS must be positive")
        if self.sas_ttl_seconds <= 0:
            raise ConfigurationError("SAS_TTL_SECONDS must be positive")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ConfigurationError(f"LOG_LEVEL is not a logging level: {self.log_level!r}")

    @property
    def device_credentials(self) -> DeviceCredentials:
        return DeviceCredentials.from_connection_string(self.device_connection_string)
