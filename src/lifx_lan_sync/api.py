"""HTTP API server for bulb settings and update requests."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from .color import U16_MAX, Color
from .config import Config
from .controller import Controller
from .devices import ALL_MODES
from .logging import get_logger, redact_mapping
from .metrics import (
    METRICS_CONTENT_TYPE,
    latest_metrics,
    observe_request,
)
from .protocol import MAX_DURATION_MS


def _build_auth_dependency(config: Config) -> Callable[[Request], Any]:
    async def _auth_guard(request: Request) -> None:
        if not config.api_key and not config.api_bearer_token:
            return
        api_key_header = request.headers.get("X-API-Key")
        auth_header = request.headers.get("Authorization")
        if config.api_key and api_key_header == config.api_key:
            return
        if config.api_key and auth_header and auth_header.lower().startswith("apikey "):
            if auth_header.split(" ", 1)[1] == config.api_key:
                return
        if config.api_bearer_token and auth_header and auth_header.startswith("Bearer "):
            if auth_header.split(" ", 1)[1] == config.api_bearer_token:
                return
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return _auth_guard


class RestoreStateOut(BaseModel):
    """Light state captured when a bulb was discovered."""

    hue: int
    saturation: int
    brightness: int
    kelvin: int
    power: bool
    label: str


class DeviceOut(BaseModel):
    """Bulb response model."""

    address: str
    ip: str
    label: str
    product: Optional[str]
    mode: int
    enabled: bool
    restore: RestoreStateOut
    discovered_at: str


class DeviceUpdate(BaseModel):
    """Partial update payload for a bulb's settings."""

    mode: Optional[int] = Field(default=None, ge=0, lt=ALL_MODES)
    enabled: Optional[bool] = None


class UpdateRequest(BaseModel):
    """Colour update for every bulb in ``mode``."""

    mode: int = Field(ge=0, le=ALL_MODES)
    color: str
    transition_ms: int = Field(default=0, ge=0, le=MAX_DURATION_MS)


class BrightnessUpdateRequest(UpdateRequest):
    """Colour update with an explicit 16-bit brightness."""

    brightness: int = Field(ge=0, le=U16_MAX)


class RestoreRequest(BaseModel):
    """Restore every bulb, optionally overriding the transition time."""

    transition_ms: Optional[int] = Field(default=None, ge=0, le=MAX_DURATION_MS)


def _parse_color(value: str) -> Color:
    try:
        return Color.from_hex(value)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


def create_app(config: Config, controller: Controller) -> FastAPI:
    """Create and configure a FastAPI application."""

    logger = get_logger("lifx.api")
    request_logger = get_logger("lifx.api.middleware")
    auth_dependency = _build_auth_dependency(config)
    app = FastAPI(
        title="LIFX LAN Sync API",
        docs_url="/docs" if config.api_docs else None,
        redoc_url="/redoc" if config.api_docs else None,
        openapi_url="/openapi.json" if config.api_docs else None,
    )

    @app.middleware("http")
    async def _logging_middleware(request: Request, call_next: Callable[..., Any]) -> Response:
        start = time.perf_counter()
        path_template = getattr(request.scope.get("route"), "path", request.url.path)
        redacted_headers = redact_mapping(dict(request.headers))
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Unhandled API error")
            observe_request(request.method, path_template, 500, time.perf_counter() - start)
            return JSONResponse(status_code=500, content={"detail": "Internal server error"})
        duration_seconds = time.perf_counter() - start
        observe_request(
            request.method,
            path_template,
            response.status_code,
            duration_seconds,
        )
        request_logger.info(
            "Handled request",
            extra={
                "method": request.method,
                "path": path_template,
                "status": response.status_code,
                "duration_ms": round(duration_seconds * 1000, 2),
                "client": request.client.host if request.client else None,
                "headers": redacted_headers,
            },
        )
        return response

    @app.exception_handler(HTTPException)
    async def _http_exc_handler(request: Request, exc: HTTPException) -> JSONResponse:
        request_logger.warning(
            "API error",
            extra={"path": request.url.path, "status": exc.status_code, "detail": exc.detail},
        )
        return JSONResponse(
            status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        request_logger.warning(
            "Validation error",
            extra={"path": request.url.path, "errors": exc.errors()},
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": jsonable_errors(exc)},
        )

    @app.get("/health", dependencies=[Depends(auth_dependency)])
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/status", dependencies=[Depends(auth_dependency)])
    async def status_view() -> dict[str, Any]:
        return controller.status()

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=latest_metrics(), media_type=METRICS_CONTENT_TYPE)

    @app.get("/devices", dependencies=[Depends(auth_dependency)], response_model=list[DeviceOut])
    async def list_devices() -> list[DeviceOut]:
        return [DeviceOut(**row) for row in controller.snapshot()]

    @app.get("/devices/{address}", dependencies=[Depends(auth_dependency)], response_model=DeviceOut)
    async def get_device(address: str) -> DeviceOut:
        record = controller.registry.get(address)
        if record is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found")
        return DeviceOut(**record.as_dict())

    @app.patch("/devices/{address}", dependencies=[Depends(auth_dependency)])
    async def update_device(address: str, payload: DeviceUpdate) -> dict[str, Any]:
        if payload.mode is None and payload.enabled is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Nothing to update")
        try:
            if payload.mode is not None:
                settings = await controller.set_mode(address, payload.mode)
            if payload.enabled is not None:
                settings = await controller.set_enabled(address, payload.enabled)
        except KeyError as exc:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail="Device not found"
            ) from exc
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        return {"address": address, "mode": settings.mode, "enabled": settings.enabled}

    @app.post("/update", dependencies=[Depends(auth_dependency)], status_code=status.HTTP_202_ACCEPTED)
    async def request_update(payload: UpdateRequest) -> dict[str, Any]:
        color = _parse_color(payload.color)
        task = controller.request_update(payload.mode, color, payload.transition_ms)
        if task is None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No active bulbs")
        return {"status": "accepted", "update_class": "color"}

    @app.post(
        "/update/brightness",
        dependencies=[Depends(auth_dependency)],
        status_code=status.HTTP_202_ACCEPTED,
    )
    async def request_update_brightness(payload: BrightnessUpdateRequest) -> dict[str, Any]:
        color = _parse_color(payload.color)
        task = controller.request_update_brightness(
            payload.mode, color, payload.brightness, payload.transition_ms
        )
        if task is None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No active bulbs")
        return {"status": "accepted", "update_class": "brightness"}

    @app.post("/restore", dependencies=[Depends(auth_dependency)], status_code=status.HTTP_202_ACCEPTED)
    async def restore(payload: Optional[RestoreRequest] = None) -> dict[str, Any]:
        transition_ms = payload.transition_ms if payload else None
        restored = await controller.restore_all(transition_ms)
        return {"status": "restored", "restored": restored}

    return app


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    """Validation errors with only JSON-safe fields."""

    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]


class ApiService:
    """Lifecycle wrapper for the FastAPI/uvicorn server."""

    def __init__(self, config: Config, controller: Controller) -> None:
        self.config = config
        self.controller = controller
        self.logger = get_logger("lifx.api")
        self._server: Optional[uvicorn.Server] = None
        self._server_task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        if self._server:
            return
        app = create_app(self.config, self.controller)
        uvicorn_config = uvicorn.Config(
            app,
            host=self.config.api_host,
            port=self.config.api_port,
            log_config=None,
            loop="asyncio",
        )
        self._server = uvicorn.Server(config=uvicorn_config)
        self._server_task = asyncio.create_task(self._server.serve())
        self.logger.info(
            "API server starting",
            extra={"host": self.config.api_host, "port": self.config.api_port},
        )

    async def stop(self) -> None:
        if not self._server:
            return
        self.logger.info("Stopping API server")
        self._server.should_exit = True
        if self._server_task:
            await self._server_task
        self._server = None
        self._server_task = None
