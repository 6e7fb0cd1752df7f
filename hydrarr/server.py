"""
Hydrarr HTTP API
Exposes the aggregated dashboard endpoints consumed by the web UI.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings
from .dashboard import Dashboard, parse_item_ids
from .exceptions import (
    DownloadClientError,
    HydrarrError,
    NotConfiguredError,
    UpstreamError,
    ValidationError,
)
from .logging_config import setup_logging

logger = logging.getLogger(__name__)


class GrabRequest(BaseModel):
    """Body of a release grab."""
    service: str
    release: Optional[Dict[str, Any]] = None


def sanitize_error_message(error: Exception, settings: Optional[Settings] = None) -> str:
    """Strip configured secrets from an error message and cap its length."""
    error_str = str(error)
    if settings is not None:
        secrets = [config.api_key for config in settings.service_configs().values()]
        secrets.append(settings.qbittorrent_password)
        for secret in secrets:
            if secret and len(secret) >= 4:
                error_str = error_str.replace(secret, "***")
    if len(error_str) > 200:
        return error_str[:200] + "..."
    return error_str


def get_dashboard(request: Request) -> Dashboard:
    return request.app.state.dashboard


def _error_response(request: Request, status_code: int, error: Exception, **extra) -> JSONResponse:
    settings = getattr(request.app.state, "settings", None)
    return JSONResponse(
        status_code=status_code,
        content={"error": sanitize_error_message(error, settings), **extra},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map the exception hierarchy onto ``{"error": message}`` responses."""

    @app.exception_handler(NotConfiguredError)
    async def not_configured_handler(request: Request, exc: NotConfiguredError):
        return _error_response(request, 400, exc, configured=False)

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return _error_response(request, 400, exc)

    @app.exception_handler(UpstreamError)
    async def upstream_handler(request: Request, exc: UpstreamError):
        logger.error(f"Upstream failure on {request.url.path}: {exc}")
        return _error_response(request, 502, exc)

    @app.exception_handler(DownloadClientError)
    async def download_client_handler(request: Request, exc: DownloadClientError):
        logger.error(f"Download client failure on {request.url.path}: {exc}")
        return _error_response(request, 502, exc)

    @app.exception_handler(HydrarrError)
    async def hydrarr_handler(request: Request, exc: HydrarrError):
        logger.error(f"Unhandled error on {request.url.path}: {exc}")
        return _error_response(request, 500, exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        problems = []
        for err in exc.errors():
            location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
            problems.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
        return JSONResponse(status_code=400, content={"error": "; ".join(problems) or "Invalid request"})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unexpected error on {request.url.path}: {exc}")
        return _error_response(request, 500, exc)


def create_app(settings: Optional[Settings] = None, dashboard: Optional[Dashboard] = None) -> FastAPI:
    """Build the FastAPI application around one Dashboard."""
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        app.state.activity_log = setup_logging(
            log_level=settings.log_level,
            log_file=settings.log_file,
            log_format=settings.log_format,
            max_file_size_mb=settings.log_max_size_mb,
            backup_count=settings.log_backup_count,
            activity_log_size=settings.activity_log_size,
        )
        configured = app.state.dashboard.services()
        logger.info("Starting Hydrarr dashboard API...")
        logger.info(f"Configured services: {', '.join(configured) or 'none'}")

        yield

        await app.state.dashboard.close()
        logger.info("Hydrarr dashboard API stopped")

    app = FastAPI(
        title="Hydrarr",
        description="Unified status dashboard for *arr services and qBittorrent",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.dashboard = dashboard or Dashboard(settings)
    app.state.activity_log = None

    origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    register_exception_handlers(app)
    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:

    # =========================================================================
    # Service listing
    # =========================================================================

    @app.get("/health")
    @app.get("/api/health")
    async def health_check(request: Request):
        """Health check with the list of configured services."""
        return get_dashboard(request).health()

    @app.get("/api/services")
    async def list_services(request: Request):
        return {"services": get_dashboard(request).services()}

    @app.get("/api/overview")
    async def overview(request: Request):
        """Online/offline/not configured summary for every service."""
        return await get_dashboard(request).overview()

    # =========================================================================
    # Libraries
    # =========================================================================

    @app.get("/api/tv/overview")
    async def tv_overview(request: Request):
        return await get_dashboard(request).tv_overview()

    @app.get("/api/movies/overview")
    async def movies_overview(request: Request):
        return await get_dashboard(request).movies_overview()

    @app.get("/api/tv/series/{series_id}/seasons/{season_number}/episodes")
    async def season_episodes(request: Request, series_id: int, season_number: int):
        """Episodes of one season with their file state."""
        return await get_dashboard(request).season_episodes(series_id, season_number)

    # =========================================================================
    # Releases
    # =========================================================================

    @app.get("/api/releases")
    async def list_releases(
        request: Request,
        service: str = Query(...),
        item_id: int = Query(..., alias="itemId", gt=0),
    ):
        """Release candidates for one library item, rejected ones last."""
        return await get_dashboard(request).list_releases(service.lower(), item_id)

    @app.get("/api/releases/has-rejected")
    async def has_rejected(
        request: Request,
        service: str = Query(...),
        item_id: int = Query(..., alias="itemId", gt=0),
    ):
        return await get_dashboard(request).has_rejected(service.lower(), item_id)

    @app.get("/api/releases/has-rejected/batch")
    async def has_rejected_batch(
        request: Request,
        service: str = Query(...),
        item_ids: str = Query("", alias="itemIds"),
    ):
        """Rejected-release check for a comma-separated list of item ids."""
        ids = parse_item_ids(item_ids)
        return await get_dashboard(request).has_rejected_batch(service.lower(), ids)

    @app.post("/api/releases/grab")
    async def grab_release(request: Request, body: GrabRequest):
        """Send a release to its manager for download."""
        return await get_dashboard(request).grab_release(body.service.lower(), body.release)

    # =========================================================================
    # Logs
    # =========================================================================

    @app.get("/api/errors")
    async def error_logs(
        request: Request,
        service: str = "all",
        level: str = "all",
        search: str = "",
    ):
        """Merged logs of all configured services, newest first."""
        return await get_dashboard(request).error_logs(service, level, search)

    @app.get("/api/activity")
    async def activity_logs(
        request: Request,
        limit: int = Query(100, ge=1, le=1000),
        level: Optional[str] = None,
        service: Optional[str] = None,
    ):
        """Recent log lines of the dashboard itself."""
        handler = request.app.state.activity_log
        if handler is None:
            return {"count": 0, "logs": []}
        logs = handler.get_logs(limit=limit, level=level, service=service)
        return {"count": len(logs), "logs": logs}

    # =========================================================================
    # Legacy category dashboard
    # =========================================================================

    @app.get("/api/dashboard/{category}")
    async def category_dashboard(request: Request, category: str):
        return await get_dashboard(request).category_dashboard(category)


app = create_app()


def main():
    """Run the server."""
    import uvicorn

    settings = app.state.settings
    uvicorn.run(
        "hydrarr.server:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
