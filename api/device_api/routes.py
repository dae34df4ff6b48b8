from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, Request

from .facade import DeviceFacade
from .models import DeviceIdentity, DeviceStatus, ErrorResponse, MessageResponse, TwinDocument

router = APIRouter(prefix="/api/device", tags=["device"])

# Text returned for a backend failure, by route name
BACKEND_ERROR_MESSAGES = {
    "create_device": "Error creating device",
    "send_telemetry": "Error sending telemetry",
    "update_device": "Error updating device",
    "update_desired_properties": "Error updating desired properties",
    "update_reported_properties": "Error updating reported properties",
    "get_device": "Error retrieving device",
    "get_device_twin": "Error retrieving twin",
    "delete_device": "Error deleting device",
}

_ERRORS = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


def get_facade(request: Request) -> DeviceFacade:
    return request.app.state.facade


@router.post("/{deviceId}", response_model=MessageResponse, responses=_ERRORS)
def create_device(deviceId: str, facade: DeviceFacade = Depends(get_facade)):
    facade.create_device(deviceId)
    return MessageResponse(message=f"Device {deviceId} created.")


@router.post("/telemetry/{deviceId}", response_model=MessageResponse, responses=_ERRORS)
def send_telemetry(deviceId: str, telemetry: Dict[str, Any] = Body(...), facade: DeviceFacade = Depends(get_facade)):
    facade.send_telemetry(deviceId, telemetry)
    return MessageResponse(message="Telemetry sent successfully.")


@router.put("/{deviceId}", response_model=MessageResponse, responses=_ERRORS)
def update_device(
    deviceId: str,
    status: DeviceStatus = DeviceStatus.ENABLED,
    facade: DeviceFacade = Depends(get_facade),
):
    facade.update_device(deviceId, status)
    return MessageResponse(message=f"Device {deviceId} updated.")


@router.put("/desired/{deviceId}", response_model=MessageResponse, responses=_ERRORS)
def update_desired_properties(
    deviceId: str, desired: Dict[str, Any] = Body(...), facade: DeviceFacade = Depends(get_facade)
):
    facade.update_desired_properties(deviceId, desired)
    return MessageResponse(message="Desired properties updated.")


@router.put("/reported/{deviceId}", response_model=MessageResponse, responses=_ERRORS)
def update_reported_properties(
    deviceId: str, reported: Dict[str, Any] = Body(...), facade: DeviceFacade = Depends(get_facade)
):
    facade.update_reported_properties(deviceId, reported)
    return MessageResponse(message="Reported properties updated.")


@router.get("/{deviceId}", response_model=DeviceIdentity, responses=_ERRORS)
def get_device(deviceId: str, facade: DeviceFacade = Depends(get_facade)):
    return facade.get_device(deviceId)


@router.get("/twin/{deviceId}", response_model=TwinDocument, responses=_ERRORS)
def get_device_twin(deviceId: str, facade: DeviceFacade = Depends(get_facade)):
    return facade.get_device_twin(deviceId)


@router.delete("/{deviceId}", response_model=MessageResponse, responses=_ERRORS)
def delete_device(deviceId: str, facade: DeviceFacade = Depends(get_facade)):
    facade.delete_device(deviceId)
    return MessageResponse(message=f"Device {deviceId} deleted.")
