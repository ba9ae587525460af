"""Local HTTP API for inspecting and driving units."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from .bridge import CasambiBridge
from .config import Config
from .controls import CONTROL_NAMES, FixtureInfo, UnitState, resolve_kelvin_bounds
from .errors import (
    CommandTransmitFailure,
    UnknownUnitError,
    UnsupportedControlError,
    WireOpenRejected,
)
from .logging import get_logger, redact_mapping
from .metrics import METRICS_CONTENT_TYPE, latest_metrics, observe_request
from .registry import UnitKey


def _build_auth_dependency(config: Config) -> Callable[[Request], Any]:
    async def _auth_guard(request: Request) -> None:
        if not config.api_token and not config.api_bearer_token:
            return
        api_key_header = request.headers.get("X-API-Key")
        auth_header = request.headers.get("Authorization")
        if config.api_token and api_key_header == config.api_token:
            return
        if config.api_token and auth_header and auth_header.lower().startswith("apikey "):
            if auth_header.split(" ", 1)[1] == config.api_token:
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


class UnitOut(BaseModel):
    """Visible state of a unit."""

    network_id: str
    unit_id: int
    name: Optional[str] = None
    type: Optional[str] = None
    address: Optional[str] = None
    online: Optional[bool] = None
    on: Optional[bool] = None
    brightness: Optional[float] = None
    color_temperature: Optional[float] = Field(default=None, description="Mired")
    kelvin: Optional[float] = None
    vertical: Optional[float] = None
    min_kelvin: float
    max_kelvin: float
    fixture_id: Optional[int] = None
    vendor: Optional[str] = None
    model: Optional[str] = None
    controls: Dict[str, Any] = Field(default_factory=dict)


class ControlUpdate(BaseModel):
    """Payload for changing one control."""

    name: str = Field(description=f"One of: {', '.join(CONTROL_NAMES)}")
    value: Any


def _unit_out(
    key: UnitKey,
    state: UnitState,
    fixture: Optional[FixtureInfo],
    default_bounds: Tuple[float, float],
) -> UnitOut:
    snapshot = state.snapshot()
    min_kelvin, max_kelvin = resolve_kelvin_bounds(state, fixture, default_bounds)
    return UnitOut(
        network_id=key.network_id,
        unit_id=key.unit_id,
        name=snapshot["name"],
        type=snapshot["type"],
        address=snapshot["address"],
        online=snapshot["online"],
        on=snapshot["on"],
        brightness=snapshot["brightness"],
        color_temperature=snapshot["color_temperature"],
        kelvin=snapshot["kelvin"],
        vertical=snapshot["vertical"],
        min_kelvin=min_kelvin,
        max_kelvin=max_kelvin,
        fixture_id=snapshot["fixture_id"],
        vendor=fixture.vendor if fixture else None,
        model=fixture.model if fixture else None,
        controls=snapshot["controls"],
    )


def create_app(config: Config, bridge: CasambiBridge) -> FastAPI:
    """Create and configure a FastAPI application."""

    logger = get_logger("casambi.api")
    request_logger = get_logger("casambi.api.middleware")
    auth_dependency = _build_auth_dependency(config)
    default_bounds = (float(config.default_min_kelvin), float(config.default_max_kelvin))
    app = FastAPI(
        title="Casambi Cloud Bridge API",
        docs_url="/docs" if config.api_docs else None,
        redoc_url="/redoc" if config.api_docs else None,
        openapi_url="/openapi.json" if config.api_docs else None,
    )

    @app.middleware("http")
    async def _logging_middleware(request: Request, call_next: Callable[..., Any]) -> Response:
        start = time.perf_counter()
        redacted_headers = redact_mapping(dict(request.headers))
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.exception("Unhandled API error")
            raise HTTPException(status_code=500, detail="Internal server error") from exc
        path_template = getattr(request.scope.get("route"), "path", request.url.path)
        duration_seconds = time.perf_counter() - start
        observe_request(request.method, path_template, response.status_code, duration_seconds)
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
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        request_logger.warning(
            "Validation error",
            extra={"path": request.url.path, "errors": exc.errors()},
        )
        return JSONResponse(
            status_code=422,
            content={"detail": jsonable_errors(exc)},
        )

    def _lookup(network_id: str, unit_id: int) -> UnitKey:
        key = UnitKey(network_id, unit_id)
        try:
            bridge.state(key)
        except UnknownUnitError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        return key

    @app.get("/health", dependencies=[Depends(auth_dependency)])
    async def health() -> JSONResponse:
        overall = bridge.health.overall()
        code = status.HTTP_503_SERVICE_UNAVAILABLE if overall == "failed" else status.HTTP_200_OK
        return JSONResponse(status_code=code, content={"status": overall, "ready": bridge.ready})

    @app.get("/status", dependencies=[Depends(auth_dependency)])
    async def get_status() -> Dict[str, Any]:
        return bridge.status()

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=latest_metrics(), media_type=METRICS_CONTENT_TYPE)

    @app.get("/units", dependencies=[Depends(auth_dependency)], response_model=List[UnitOut])
    async def list_units() -> List[UnitOut]:
        return [
            _unit_out(key, state, bridge.fixture(key), default_bounds)
            for key, state in bridge.units().items()
        ]

    @app.get(
        "/units/{network_id}/{unit_id}",
        dependencies=[Depends(auth_dependency)],
        response_model=UnitOut,
    )
    async def get_unit(network_id: str, unit_id: int) -> UnitOut:
        key = _lookup(network_id, unit_id)
        return _unit_out(key, bridge.state(key), bridge.fixture(key), default_bounds)

    @app.put(
        "/units/{network_id}/{unit_id}/controls",
        dependencies=[Depends(auth_dependency)],
        response_model=UnitOut,
    )
    async def set_control(network_id: str, unit_id: int, payload: ControlUpdate) -> UnitOut:
        key = _lookup(network_id, unit_id)
        try:
            state = await bridge.set_control(key, payload.name, payload.value)
        except UnsupportedControlError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except (CommandTransmitFailure, WireOpenRejected) as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)
            ) from exc
        return _unit_out(key, state, bridge.fixture(key), default_bounds)

    return app


def jsonable_errors(exc: RequestValidationError) -> List[Dict[str, Any]]:
    errors = []
    for error in exc.errors():
        errors.append({k: v for k, v in error.items() if k in {"loc", "msg", "type"}})
    return errors


class ApiService:
    """Lifecycle wrapper for the FastAPI/uvicorn server."""

    def __init__(self, config: Config, bridge: CasambiBridge) -> None:
        self.config = config
        self.bridge = bridge
        self.logger = get_logger("casambi.api")
        self._server: Optional[uvicorn.Server] = None
        self._server_task: Optional["asyncio.Task[None]"] = None

    async def start(self) -> None:
        if self._server:
            return
        app = create_app(self.config, self.bridge)
        uvicorn_config = uvicorn.Config(
            app,
            host=self.config.api_host,
            port=self.config.api_port,
            log_config=None,
            loop="asyncio",
        )
        self._server = uvicorn.Server(config=uvicorn_config)
        self._server_task = asyncio.create_task(self._serve(self._server))
        self.bridge.health.record_success("api")
        self.logger.info(
            "API server starting",
            extra={"host": self.config.api_host, "port": self.config.api_port},
        )

    async def _serve(self, server: uvicorn.Server) -> None:
        try:
            await server.serve()
        except (OSError, SystemExit) as exc:
            self.bridge.health.record_failure("api", exc)
            self.logger.error("API server failed", extra={"error": str(exc)})
            return

    async def stop(self) -> None:
        if not self._server:
            return
        self.logger.info("Stopping API server")
        self._server.should_exit = True
        if self._server_task:
            await self._server_task
        self._server = None
        self._server_task = None
