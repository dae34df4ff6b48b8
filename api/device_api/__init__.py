"""HTTP API for managing Azure IoT Hub devices, twins and telemetry."""

__version__ = "0.1.0"
