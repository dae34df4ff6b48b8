import logging
import os
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse

from .config import Settings
from .errors import BackendError, DeviceApiError
from .facade import DeletePolicy, DeviceFacade
from .messaging import MqttChannelFactory
from .models import ErrorResponse
from .routes import BACKEND_ERROR_MESSAGES, router

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(format=LOG_FORMAT)
    # basicConfig is a no-op once the root logger has handlers, the level still applies
    logging.getLogger().setLevel(level)


def build_facade(settings: Settings) -> DeviceFacade:
    """Wire the facade to IoT Hub from validated settings."""
    # azure-iot-hub loads its AMQP stack on import; only needed when wiring for real
    from .registry import IoTHubRegistryClient

    registry = IoTHubRegistryClient.from_connection_string(settings.registry_connection_string)
    channels = MqttChannelFactory(
        settings.device_credentials,
        transport=settings.mqtt_transport,
        timeout=settings.operation_timeout,
        sas_ttl_seconds=settings.sas_ttl_seconds,
    )
    return DeviceFacade(registry, channels, delete_policy=DeletePolicy(settings.delete_policy))


def create_app(settings: Optional[Settings] = None, facade: Optional[DeviceFacade] = None) -> FastAPI:
    app = FastAPI(title="IoT Device API")
    app.state.settings = settings
    app.state.facade = facade
    app.state.expose_error_details = bool(settings and settings.expose_error_details)
    app.include_router(router)

    # --- startup
    @app.on_event("startup")
    async def on_startup():
        if app.state.facade is not None:
            return
        if app.state.settings is None:
            app.state.settings = Settings()
        app.state.settings.validate()
        configure_logging(app.state.settings.log_level)
        app.state.expose_error_details = app.state.settings.expose_error_details
        app.state.facade = build_facade(app.state.settings)
        logger.info("device facade ready (delete policy: %s)", app.state.facade.delete_policy.value)

    # --- errors
    @app.exception_handler(DeviceApiError)
    async def on_device_error(request: Request, exc: DeviceApiError):
        message = exc.message
        if isinstance(exc, BackendError):
            route = request.scope.get("route")
            generic = BACKEND_ERROR_MESSAGES.get(getattr(route, "name", None), "Backend request failed")
            logger.error("%s %s failed: %s", request.method, request.url.path, exc, exc_info=exc)
            message = f"{generic}: {exc.message}" if app.state.expose_error_details else generic
        body = ErrorResponse(error=exc.code, message=message)
        return JSONResponse(status_code=exc.status_code, content=body.model_dump())

    # --- misc
    @app.get("/", include_in_schema=False)
    def index():
        return RedirectResponse(url="/docs")

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app()


def run() -> None:
    import uvicorn

    settings = Settings()
    settings.validate()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings=settings), host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))


if __name__ == "__main__":
    run()
