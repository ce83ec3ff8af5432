"""FastAPI server for Calendar Sync."""
import time
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import APIRouter, FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..calendar_sync import (
    ClientRegistry,
    Connection,
    DocumentStore,
    InvalidFormat,
    JsonFileStore,
    LivenessMonitor,
    MessageHandler,
    PersistenceError,
    SyncEngine,
    decode_json,
    now_ms,
)
from ..core.config import Settings, settings
from ..core.logging_config import configure_logging

logger = structlog.get_logger(__name__)

SERVICE_NAME = "Calendar API"

# Rate limiter configuration
limiter = Limiter(key_func=get_remote_address)

router = APIRouter(prefix="/api")
ws_router = APIRouter()


def _error(status_code: int, error: str, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error, **extra},
    )


def _get_engine(request: Request) -> Optional[SyncEngine]:
    return getattr(request.app.state, "engine", None)


# --- Endpoints ---

@router.get("/calendar")
@limiter.limit("100/minute")
async def get_calendar(request: Request):
    """Return the full calendar document."""
    engine = _get_engine(request)
    if engine is None or not engine.initialized:
        return _error(503, "Service not initialized")

    document = engine.get()
    logger.info(
        "calendar_read",
        events=len(document.events),
        vacations=len(document.vacations),
        version=document.version,
    )
    return {
        "success": True,
        "data": document.to_dict(),
        "timestamp": now_ms(),
    }


@router.post("/calendar")
@limiter.limit("30/minute")
async def save_calendar(request: Request):
    """Replace the calendar document and notify push clients."""
    engine = _get_engine(request)
    if engine is None or not engine.initialized:
        return _error(503, "Service not initialized")

    try:
        candidate = decode_json(await request.body())
    except ValueError:
        logger.warning("calendar_rejected", reason="undecodable body")
        return _error(400, "Invalid data format")

    try:
        commit = await engine.apply(candidate)
    except InvalidFormat as e:
        logger.warning("calendar_rejected", reason=str(e))
        return _error(400, str(e))
    except PersistenceError as e:
        return _error(500, "Failed to save data", details=str(e))

    counts = {
        "events": len(candidate["events"]),
        "vacations": len(candidate["vacations"]),
    }
    logger.info("calendar_saved", version=commit.version, **counts)
    return {
        "success": True,
        "lastModified": commit.last_modified,
        "version": commit.version,
        "message": "Data saved successfully",
        "received": counts,
    }


@router.get("/health")
@limiter.limit("300/minute")
async def health_check(request: Request):
    """Liveness and diagnostics."""
    engine = _get_engine(request)
    started_at = getattr(request.app.state, "started_at", time.time())
    return {
        "success": True,
        "status": "ok",
        "timestamp": now_ms(),
        "service": SERVICE_NAME,
        "environment": request.app.state.settings.environment,
        "uptime": round(time.time() - started_at, 3),
        "clients": engine.registry.size() if engine is not None else 0,
        "connections": engine.registry.stats() if engine is not None else {},
    }


@router.get("/ping")
@limiter.limit("300/minute")
async def ping(request: Request):
    engine = _get_engine(request)
    return {
        "success": True,
        "message": "pong",
        "timestamp": now_ms(),
        "clients": engine.registry.size() if engine is not None else 0,
    }


@router.get("/stats")
@limiter.limit("60/minute")
async def get_stats(request: Request):
    """Document counts and metadata."""
    engine = _get_engine(request)
    if engine is None or not engine.initialized:
        return _error(503, "Service not initialized")

    stats = engine.stats()
    logger.info("stats_read", **stats)
    return {"success": True, "stats": stats}


@router.get("/test")
@limiter.limit("60/minute")
async def cors_test(request: Request):
    """Echo request headers so browser clients can check CORS."""
    return {
        "success": True,
        "message": "CORS is configured correctly",
        "timestamp": now_ms(),
        "headers": dict(request.headers),
    }


@ws_router.websocket("/ws")
async def push_channel(websocket: WebSocket):
    """Push channel: INIT_DATA on connect, then envelope exchange until disconnect."""
    engine: SyncEngine = websocket.app.state.engine
    handler: MessageHandler = websocket.app.state.handler

    await websocket.accept()
    conn = Connection(websocket)

    try:
        await engine.attach(conn)
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break

            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            await handler.handle(conn, raw)
    finally:
        engine.detach(conn)
        logger.info("push_client_disconnected", client=conn.id)


# --- Application ---

def create_app(
    config: Optional[Settings] = None,
    store: Optional[DocumentStore] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        config: Settings to use; defaults to the environment-loaded settings.
        store: Document store; defaults to a JsonFileStore at config.data_file.
    """
    config = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Load the document and start the liveness monitor."""
        configure_logging(config.log_level)

        registry = ClientRegistry(send_timeout=config.send_timeout)
        engine = SyncEngine(store or JsonFileStore(config.data_file), registry)
        await engine.initialize()

        monitor = LivenessMonitor(
            registry,
            heartbeat_interval=config.heartbeat_interval,
            reap_interval=config.reap_interval,
        )

        app.state.engine = engine
        app.state.handler = MessageHandler(engine)
        app.state.monitor = monitor
        app.state.started_at = time.time()

        await monitor.start()
        logger.info(
            "calendar_sync_started",
            data_file=str(config.data_file),
            version=engine.get().version,
        )
        try:
            yield
        finally:
            await monitor.stop()
            await registry.close_all()
            logger.info("calendar_sync_stopped")

    app = FastAPI(
        title="Calendar Sync API",
        description="Shared calendar document with real-time push updates",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = config

    # Add rate limiter to app state and exception handler
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_origin_regex=config.cors_origin_regex,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Accept"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        response = await call_next(request)
        logger.info(
            "request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
        )
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _error(404, "Endpoint not found", path=request.url.path)
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("unhandled_error", path=request.url.path, exc_info=exc)
        return _error(500, "Internal server error", message=str(exc))

    app.include_router(router)
    app.include_router(ws_router)
    return app


app = create_app()


# Run with: uvicorn src.api.server:app --reload
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.api.server:app",
        host=settings.api_host,
        port=settings.api_port,
    )
