"""FastAPI server application."""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from ..clients import HttpPlatformClient, MarketInOutClient, PlatformClient, TradingViewClient
from ..config import Settings, settings
from ..core import DebouncedInvalidator, SessionHealthMonitor, SessionStore, SessionValidator
from ..database import Database, init_database
from ..errors import (
    AUTH_ERROR_TYPES,
    ErrorLogger,
    HttpErrorSink,
    SessionError,
    SessionErrorType,
)
from ..models import ErrorResponse, ExtensionSessionPayload

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

PUBLIC_RECORD_FIELDS = {"user_email", "extracted_at", "extracted_from", "source"}


@dataclass
class Services:
    """Everything the routes need, built once per process."""

    store: SessionStore
    monitor: SessionHealthMonitor
    validator: SessionValidator
    error_logger: ErrorLogger
    invalidator: DebouncedInvalidator
    clients: dict[str, PlatformClient]
    database: Optional[Database] = None
    error_sink: Optional[HttpErrorSink] = None


def _log_invalidation(key: str) -> None:
    logger.debug(f"Session cache invalidated for {key}")


async def build_services(config: Settings) -> Services:
    """Open the database and wire store, clients, monitor and validator."""
    await init_database(str(config.database_path))
    database = Database(str(config.database_path))
    await database.connect()
    logger.info(f"Database initialized at {config.database_path}")

    error_sink = HttpErrorSink(config.error_sink_url) if config.error_sink_url else None
    error_logger = ErrorLogger(capacity=config.error_log_capacity, sink=error_sink)
    invalidator = DebouncedInvalidator(_log_invalidation, delay=config.invalidation_delay)
    store = SessionStore(database, invalidator)

    clients: dict[str, PlatformClient] = {
        "marketinout": MarketInOutClient(
            config.marketinout_base_url, config.platform_timeout, user_agent=config.user_agent
        ),
        "tradingview": TradingViewClient(
            config.tradingview_base_url, config.platform_timeout, user_agent=config.user_agent
        ),
    }
    monitor = SessionHealthMonitor(store, clients, error_logger, config)
    validator = SessionValidator(store, monitor, clients, error_logger, config)

    return Services(
        store=store,
        monitor=monitor,
        validator=validator,
        error_logger=error_logger,
        invalidator=invalidator,
        clients=clients,
        database=database,
        error_sink=error_sink,
    )


async def close_services(services: Services) -> None:
    """Stop monitoring, flush invalidations, close clients and the database."""
    await services.monitor.shutdown()
    await services.invalidator.flush()
    await services.invalidator.close()
    await services.error_logger.drain()

    for client in services.clients.values():
        if isinstance(client, HttpPlatformClient):
            await client.close()

    if services.error_sink is not None:
        await services.error_sink.close()
    if services.database is not None:
        await services.database.close()


def error_status_code(error: SessionError) -> int:
    """HTTP status used to report a SessionError."""
    if error.type in AUTH_ERROR_TYPES:
        return 401
    if error.type == SessionErrorType.COOKIE_INVALID:
        return 400
    if error.type == SessionErrorType.API_RATE_LIMITED:
        return 429
    if error.type in (
        SessionErrorType.SESSION_STORAGE_ERROR,
        SessionErrorType.PLATFORM_UNAVAILABLE,
    ):
        return 503
    return 502


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        services: Prebuilt services; when omitted they are built (and closed)
            by the application lifespan
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        owned = app.state.services is None
        if owned:
            logger.info("Starting platform session service...")
            app.state.services = await build_services(settings)

        yield

        if owned:
            logger.info("Shutting down platform session service...")
            await close_services(app.state.services)
            app.state.services = None
            logger.info("Shutdown complete")

    app = FastAPI(
        title="Platform Sessions",
        description="Session lifecycle service for browser-extension captured platform sessions",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services

    def get_services(request: Request) -> Services:
        current = request.app.state.services
        if current is None:
            raise HTTPException(status_code=503, detail="Service not initialized")
        return current

    def require_platform(current: Services, platform: str) -> str:
        if platform not in current.clients:
            raise HTTPException(status_code=404, detail=f"Unknown platform: {platform}")
        return platform

    @app.exception_handler(SessionError)
    async def session_error_handler(request: Request, exc: SessionError):
        payload = exc.to_payload().model_dump(mode="json")
        body = ErrorResponse(error=exc.error_code, message=exc.user_message, details=payload)
        return JSONResponse(status_code=error_status_code(exc), content=body.model_dump())

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        current = get_services(request)
        return {
            "status": "healthy",
            "monitoring": current.monitor.get_monitoring_stats(),
        }

    @app.get("/health/reports")
    async def health_reports(request: Request):
        """Cached health of every session the monitor knows about."""
        current = get_services(request)
        return {"reports": current.monitor.get_all_reports()}

    @app.get("/sessions")
    async def list_sessions(request: Request, ids_only: bool = False):
        """Stored sessions per platform, without credentials."""
        current = get_services(request)
        if ids_only:
            return {"internal_ids": await current.store.list_internal_ids()}
        sessions = await current.store.get_all_sessions()
        return {
            "sessions": {
                internal_id: {
                    platform: record.model_dump(mode="json", include=PUBLIC_RECORD_FIELDS)
                    for platform, record in sorted(bundle.items())
                }
                for internal_id, bundle in sessions.items()
            }
        }

    @app.post("/extension/session")
    async def ingest_extension_session(payload: ExtensionSessionPayload, request: Request):
        """Store and validate a session captured by the browser extension."""
        current = get_services(request)
        result = await current.validator.ingest_extension_session(payload)
        return result.model_dump(mode="json")

    @app.get("/sessions/{internal_id}")
    async def get_session(internal_id: str, request: Request):
        """Session bundle with cached health per platform."""
        current = get_services(request)
        data = await current.validator.get_health_aware_session_data(internal_id)
        return data.model_dump(mode="json")

    @app.get("/sessions/{internal_id}/report")
    async def get_session_report(internal_id: str, request: Request):
        """Cached health per platform and the overall state."""
        current = get_services(request)
        return current.monitor.get_session_report(internal_id)

    @app.delete("/sessions/{internal_id}")
    async def disconnect_session(internal_id: str, request: Request):
        """Delete the bundle and stop its monitoring."""
        current = get_services(request)
        removed = await current.validator.disconnect(internal_id)
        logger.info(f"Disconnected session {internal_id} ({removed} entries)")
        return {"internal_id": internal_id, "removed": removed}

    @app.get("/sessions/{internal_id}/health/{platform}")
    async def get_platform_health(internal_id: str, platform: str, request: Request):
        """Cached health; never probes the platform."""
        current = get_services(request)
        status = current.monitor.get_session_health(internal_id, platform)
        if status is None:
            raise HTTPException(
                status_code=404, detail=f"No health data for {internal_id} on {platform}"
            )
        return {
            **status.model_dump(mode="json"),
            "is_monitoring": current.monitor.is_monitoring(internal_id, platform),
            "last_error": (
                status.last_error.to_payload().model_dump(mode="json")
                if status.last_error
                else None
            ),
        }

    @app.post("/sessions/{internal_id}/validate")
    async def validate_all_platforms(internal_id: str, request: Request):
        """Validate every platform in the bundle."""
        current = get_services(request)
        result = await current.validator.validate_and_monitor_all_platforms(internal_id)
        return result.model_dump(mode="json")

    @app.post("/sessions/{internal_id}/{platform}/check")
    async def check_platform_health(internal_id: str, platform: str, request: Request):
        """Run one health check now."""
        current = get_services(request)
        require_platform(current, platform)
        state = await current.monitor.check_session_health(internal_id, platform)
        return {"internal_id": internal_id, "platform": platform, "status": state.value}

    @app.post("/sessions/{internal_id}/{platform}/monitor")
    async def start_platform_monitoring(internal_id: str, platform: str, request: Request):
        """Validate the session and start background monitoring."""
        current = get_services(request)
        require_platform(current, platform)
        result = await current.validator.validate_and_start_monitoring(internal_id, platform)
        return result.model_dump(mode="json")

    @app.delete("/sessions/{internal_id}/{platform}/monitor")
    async def stop_platform_monitoring(internal_id: str, platform: str, request: Request):
        """Stop background monitoring for one platform."""
        current = get_services(request)
        stopped = current.monitor.stop_monitoring(internal_id, platform)
        return {"internal_id": internal_id, "platform": platform, "stopped": stopped}

    @app.post("/sessions/{internal_id}/{platform}/refresh")
    async def refresh_platform_session(internal_id: str, platform: str, request: Request):
        """Refresh the session and re-check its health."""
        current = get_services(request)
        require_platform(current, platform)
        result = await current.validator.refresh_session_with_health_check(internal_id, platform)
        return result.model_dump(mode="json")

    @app.get("/stats")
    async def get_stats(request: Request):
        """Store, monitoring and error statistics."""
        current = get_services(request)
        current.error_logger.clear_old_logs(settings.error_log_max_age)
        return {
            "sessions": await current.store.get_stats(),
            "monitoring": current.monitor.get_monitoring_stats(),
            "errors": current.error_logger.get_error_stats(),
            "invalidations": current.invalidator.fired,
        }

    return app


def main():
    """Main entry point for the server."""
    import uvicorn

    uvicorn.run(
        "platform_sessions.server.app:create_app",
        host=settings.server_host,
        port=settings.server_port,
        factory=True,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
