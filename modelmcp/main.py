from contextlib import asynccontextmanager
import json
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .annotations.walker import ElementKind, SchemaElement, walk
from .config import Settings, get_settings, split_csv
from .mcp.catalog import CatalogBuilder, CatalogProvider, load_instructions
from .mcp.executor import QueryExecutor
from .mcp.session_manager import SessionManager
from .routes.health import router as health_router
from .routes.mcp import router as mcp_router
from .services.backend import Backend
from .services.http_backend import HttpBackend
from .services.memory_backend import InMemoryBackend
from .utils.auth import AuthMiddleware, Authenticator, BasicAuthenticator
from .utils.errors import INTERNAL_ERROR, INVALID_REQUEST, McpError, error_envelope, jsonrpc_error
from .utils.logging_middleware import LoggingMiddleware

logger = logging.getLogger("modelmcp.main")


def load_model(path: Optional[str]) -> Dict[str, Any]:
    """Read a JSON model file; either ``{"definitions": {...}}`` or the definitions themselves."""
    if not path:
        return {}
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict) and isinstance(data.get("definitions"), dict):
        return data["definitions"]
    return data


def _key_fields(elements: Sequence[SchemaElement]) -> Dict[str, Sequence[str]]:
    return {e.qualified_name: e.keys.names for e in elements if e.kind is ElementKind.ENTITY and e.keys}


def build_backend(settings: Settings, elements: Sequence[SchemaElement]) -> Backend:
    if settings.backend_url:
        return HttpBackend.from_settings(settings)
    if settings.data_file:
        return InMemoryBackend.from_file(settings.data_file, key_fields=_key_fields(elements))
    logger.warning("No MCP_BACKEND_URL or MCP_DATA_FILE configured, serving an empty in-memory backend")
    return InMemoryBackend(key_fields=_key_fields(elements))


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        await app.state.catalog_provider.get()
    except McpError as exc:
        # the next initialize retries the build
        logger.error(f"Catalog build failed at startup: {exc.message}")

    yield

    await app.state.session_manager.shutdown()
    await app.state.backend.close()
    logger.info("MCP server stopped")


def create_app(
    model: Optional[Mapping[str, Any]] = None,
    backend: Optional[Backend] = None,
    settings: Optional[Settings] = None,
    authenticator: Optional[Authenticator] = None,
) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    app = FastAPI(
        title=f"{settings.server_name} MCP server",
        version=settings.server_version,
        lifespan=lifespan,
        redirect_slashes=False,
    )

    @app.exception_handler(McpError)
    async def mcp_exception_handler(request: Request, exc: McpError):
        return JSONResponse(status_code=exc.http_status, content=error_envelope(None, exc))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.error("Request validation error: %s", json.dumps(exc.errors(), default=str))
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=jsonrpc_error(None, INVALID_REQUEST, "Invalid Request"),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Global Unhandled Exception on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=jsonrpc_error(None, INTERNAL_ERROR, "Internal error"),
        )

    definitions = model if model is not None else load_model(settings.model_file)
    elements = walk(definitions)
    backend = backend or build_backend(settings, elements)
    executor = QueryExecutor.from_settings(backend, settings)

    async def build_catalog():
        return CatalogBuilder(executor, settings).build(elements, instructions=load_instructions(settings))

    provider = CatalogProvider(build_catalog)
    app.state.settings = settings
    app.state.backend = backend
    app.state.catalog_provider = provider
    app.state.session_manager = SessionManager(
        provider,
        server_info={"name": settings.server_name, "version": settings.server_version},
    )

    allowed_origins = split_csv(settings.cors_allowed_origins)
    if allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allowed_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "DELETE"],
            allow_headers=["*"],
            expose_headers=["mcp-session-id"],
        )

    if authenticator is None and settings.auth != "none":
        authenticator = BasicAuthenticator(settings)
    app.add_middleware(AuthMiddleware, mode=settings.auth, authenticator=authenticator)
    app.add_middleware(LoggingMiddleware)

    app.include_router(health_router, tags=["Monitoring"])
    app.include_router(mcp_router, tags=["MCP"])

    return app


# Uvicorn Entry
app = create_app()
