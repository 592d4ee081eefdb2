import json
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

import redis
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend import PresenceStore, create_redis_client
from connections import ConnectionRegistry, WebSocketConnection, new_session_id
from constants import CORS_ORIGINS, SERVICE_NAME, SERVICE_VERSION
from errors import MalformedInputError, RelayError, StoreUnavailableError
from fallback import FallbackChannel
from logging_config import get_logger, setup_logging
from pending import PendingRequestQueue
from reaper import ScheduledReaper
from relay import SignalingRelay
from routers.admin import admin_router
from routers.fallback import fallback_router

logger = get_logger(__name__)


def register_error_handlers(app: FastAPI):
    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}", extra={"error_code": exc.code, "path": request.url.path})
        return JSONResponse(status_code=exc.http_status, content=exc.to_response())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
        error = MalformedInputError(
            "Invalid request data",
            details=[
                {"field": ".".join(str(loc) for loc in e["loc"]), "message": e["msg"], "type": e["type"]}
                for e in exc.errors()
            ],
        )
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=error.to_response())

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": {"code": "INTERNAL_ERROR", "message": "An unexpected error occurred", "category": "internal"}},
        )


async def serve_websocket(websocket: WebSocket, relay: SignalingRelay):
    """Run one WebSocket session until the client goes away."""
    await websocket.accept()
    session_id = new_session_id()
    connection = WebSocketConnection(session_id, websocket)
    await relay.connect(connection)

    try:
        while True:
            try:
                data = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info(f"WebSocket disconnected normally for session {session_id}")
                break

            try:
                try:
                    message = json.loads(data)
                except json.JSONDecodeError as e:
                    raise MalformedInputError("Event payload is not valid JSON") from e
                await relay.handle(session_id, message)
            except MalformedInputError as e:
                logger.warning(f"Malformed event from session {session_id}: {e.message}")
                await connection.send(e.to_event())
            except StoreUnavailableError as e:
                await connection.send(e.to_event())
    except Exception as e:
        logger.error(f"WebSocket error for session {session_id}: {e}", exc_info=True)
    finally:
        try:
            await relay.disconnect(session_id)
        except StoreUnavailableError:
            logger.error(f"Store unavailable while disconnecting session {session_id}")
        await connection.close()


def create_app(redis_client: Optional[redis.Redis] = None, start_reaper: bool = True, **relay_options) -> FastAPI:
    """Wire the store, queue, registry, relay, reaper and fallback into an app.

    Each app owns its own ConnectionRegistry, so several apps (e.g. under
    test) never share live connections.
    """
    redis_client = redis_client if redis_client is not None else create_redis_client()
    store = PresenceStore(redis_client)
    queue = PendingRequestQueue(redis_client)
    registry = ConnectionRegistry()
    relay = SignalingRelay(store, queue, registry, **relay_options)
    reaper = ScheduledReaper(relay)
    fallback = FallbackChannel(relay)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.started_at = time.monotonic()
        try:
            store.ping()
            logger.info("Redis client connected successfully")
        except StoreUnavailableError:
            logger.error("Redis is not reachable at startup; continuing in degraded mode")
        if start_reaper:
            reaper.start()
        logger.info(f"{SERVICE_NAME} started")
        yield
        logger.info(f"{SERVICE_NAME} shutting down")
        await reaper.stop()
        await relay.close()

    app = FastAPI(title=SERVICE_NAME, version=SERVICE_VERSION, lifespan=lifespan)
    app.state.relay = relay
    app.state.reaper = reaper
    app.state.fallback = fallback
    app.state.started_at = time.monotonic()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)
    app.include_router(admin_router)
    app.include_router(fallback_router)

    @app.get("/")
    async def root():
        return {
            "message": f"{SERVICE_NAME} API Server",
            "version": SERVICE_VERSION,
            "status": "running",
            "timestamp": time.time(),
        }

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        logger.info(f"WebSocket connection attempt from {websocket.client.host if websocket.client else 'unknown'}")
        await serve_websocket(websocket, relay)

    logger.info("FastAPI application initialized")
    return app


setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE", None),
    log_format=os.getenv("LOG_FORMAT", "text"),
)

app = create_app()
