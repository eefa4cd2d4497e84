"""HTTP-сервер ephemera — REST API для инвентаря и управления кластерами."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from ephemera import __version__
from ephemera.exceptions import (
    ClusterNotFoundError,
    ConfigurationError,
    EphemeraError,
    FanOutError,
    ProviderError,
)

logger = logging.getLogger(__name__)


# --- Модели запросов и ответов ---


class CreateClusterRequest(BaseModel):
    """Тело POST /api/v1/clusters."""

    name: str = Field(min_length=1)
    nodes: int = Field(ge=1)
    lifetime: str | None = Field(default=None, description="Например 12h; по умолчанию EPHEMERA_DEFAULT_LIFETIME")
    providers: list[str] | None = Field(default=None, description="По умолчанию — все зарегистрированные")
    geo_distributed: bool = False
    use_local_ssd: bool = False


class ExtendClusterRequest(BaseModel):
    """Тело POST /api/v1/clusters/{name}/extend."""

    lifetime: str = Field(description="На сколько продлить, например 6h")


class CreateClusterResponse(BaseModel):
    """JSON-ответ POST /api/v1/clusters."""

    name: str
    nodes: int
    allocation: dict[str, list[str]]


class DestroyClusterResponse(BaseModel):
    """JSON-ответ DELETE /api/v1/clusters/{name}."""

    destroyed: list[str]


class HealthResponse(BaseModel):
    """JSON-ответ GET /health."""

    status: str
    version: str
    providers: list[str]


class ErrorResponse(BaseModel):
    """Стандартный ответ при ошибке."""

    detail: str


_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: {"model": ErrorResponse, "description": "Некорректный запрос или конфигурация"},
    404: {"model": ErrorResponse, "description": "Кластер не найден"},
    502: {"model": ErrorResponse, "description": "Ошибка облачного провайдера"},
}


# --- Состояние приложения ---


class _AppState:
    """Долгоживущие объекты, разделяемые между запросами."""

    def __init__(self) -> None:
        self.settings: Any = None
        self.registry: Any = None


_state = _AppState()


def _to_http_error(exc: EphemeraError) -> HTTPException:
    """Сопоставить исключение ephemera HTTP-статусу."""
    if isinstance(exc, ClusterNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (ProviderError, FanOutError)):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _parse_lifetime(value: str) -> timedelta:
    from ephemera.utils.durations import parse_duration

    try:
        return parse_duration(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


# --- Lifespan ---


@asynccontextmanager
async def _lifespan(app: FastAPI):  # noqa: ARG001
    """Инициализация при старте, очистка при остановке."""
    from ephemera.config import Settings
    from ephemera.logging_config import setup_logging
    from ephemera.providers.registry import build_registry

    settings = Settings()
    setup_logging(settings.log_level, quiet_loggers=("asyncio", "uvicorn.access"))

    logger.info("ephemera server v%s запускается", __version__)

    _state.settings = settings
    _state.registry = build_registry(settings)

    yield

    logger.info("ephemera server останавливается")


# --- FastAPI ---


app = FastAPI(
    title="ephemera",
    description="Инвентарь эфемерных тестовых кластеров — REST API",
    version=__version__,
    lifespan=_lifespan,
)


# --- Маршруты ---


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Проверка работоспособности сервера."""
    providers = _state.registry.names() if _state.registry is not None else []
    return HealthResponse(status="ok", version=__version__, providers=providers)


@app.get("/api/v1/clusters", responses=_ERROR_RESPONSES)
async def list_clusters(pattern: str | None = None) -> dict[str, Any]:
    """Снимок инвентаря — эквивалент ``ephemera list --output-format json``."""
    from ephemera import orchestrator

    try:
        cloud = await orchestrator.list_clusters(_state.registry, pattern)
    except EphemeraError as exc:
        raise _to_http_error(exc)
    return cloud.model_dump(mode="json")


@app.get("/api/v1/clusters/{name}", responses=_ERROR_RESPONSES)
async def get_cluster(name: str) -> dict[str, Any]:
    """Кластер по имени с вычисленными моментами истечения и GC."""
    from ephemera import orchestrator

    try:
        cluster = await orchestrator.get_cluster(_state.registry, name)
    except EphemeraError as exc:
        raise _to_http_error(exc)

    response = cluster.model_dump(mode="json")
    response["clouds"] = cluster.clouds()
    if not cluster.is_local:
        response["expires_at"] = cluster.expires_at.isoformat()
        response["gc_at"] = cluster.gc_at.isoformat()
    return response


@app.post(
    "/api/v1/clusters",
    response_model=CreateClusterResponse,
    status_code=201,
    responses=_ERROR_RESPONSES,
)
async def create_cluster(request: CreateClusterRequest) -> dict[str, Any]:
    """Создать кластер — эквивалент ``ephemera create``."""
    from ephemera import orchestrator
    from ephemera.models.vm import CreateOpts

    lifetime = _parse_lifetime(request.lifetime or _state.settings.default_lifetime)
    opts = CreateOpts(
        lifetime=lifetime,
        geo_distributed=request.geo_distributed,
        use_local_ssd=request.use_local_ssd,
        vm_providers=(
            request.providers
            if request.providers is not None
            else _state.registry.names()
        ),
    )

    try:
        username = await orchestrator.resolve_username(
            _state.registry, _state.settings.username,
        )
        result = await orchestrator.create_cluster(
            _state.registry, request.name, request.nodes, opts, username=username,
        )
    except EphemeraError as exc:
        raise _to_http_error(exc)

    return {
        "name": result.name,
        "nodes": result.nodes,
        "allocation": result.allocation,
    }


@app.delete(
    "/api/v1/clusters/{name}",
    response_model=DestroyClusterResponse,
    responses=_ERROR_RESPONSES,
)
async def destroy_cluster(name: str) -> dict[str, Any]:
    """Удалить кластер — эквивалент ``ephemera destroy``."""
    from ephemera import orchestrator

    try:
        destroyed = await orchestrator.destroy_clusters(_state.registry, [name])
    except EphemeraError as exc:
        raise _to_http_error(exc)
    return {"destroyed": destroyed}


@app.post("/api/v1/clusters/{name}/extend", responses=_ERROR_RESPONSES)
async def extend_cluster(name: str, request: ExtendClusterRequest) -> dict[str, Any]:
    """Продлить кластер — эквивалент ``ephemera extend``."""
    from ephemera import orchestrator

    extension = _parse_lifetime(request.lifetime)
    try:
        cluster = await orchestrator.extend_cluster(_state.registry, name, extension)
    except EphemeraError as exc:
        raise _to_http_error(exc)

    response = cluster.model_dump(mode="json")
    response["gc_at"] = cluster.gc_at.isoformat()
    return response


def main() -> None:
    """Точка входа консольного скрипта ephemera-server."""
    import sys

    from ephemera.config import Settings

    try:
        settings = Settings()
    except Exception as exc:
        print(
            f"Ошибка конфигурации: {exc}\n\n"
            f"Переменные окружения задаются с префиксом EPHEMERA_.",
            file=sys.stderr,
        )
        sys.exit(2)

    import uvicorn

    uvicorn.run(
        "ephemera.server:app",
        host=settings.server_host,
        port=settings.server_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
