"""FastAPI WebSocket server for the Jódete card game."""

import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles

from auth import resolve_user_id
from config import config
from handlers import ConnectionContext, handle_message, send_error
from logging_config import connection_id_var, setup_logging, user_id_var
from room import RoomManager
from services.match_recorder import MatchRecorder
from services.persistence import NullGateway, PersistenceGateway

# Initialize Sentry if configured
if config.SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    sentry_sdk.init(
        dsn=config.SENTRY_DSN,
        environment=config.ENVIRONMENT,
        traces_sample_rate=0.1 if config.ENVIRONMENT == "production" else 1.0,
        integrations=[
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
        ],
    )
    logging.getLogger(__name__).info("Sentry error tracking initialized")

setup_logging(
    level=config.LOG_LEVEL,
    environment=config.ENVIRONMENT,
)
logger = logging.getLogger(__name__)


# =============================================================================
# Services (initialized in lifespan)
# =============================================================================

_state_cache = None
_gateway: PersistenceGateway = NullGateway()
_recorder: Optional[MatchRecorder] = None
_cleanup_task: Optional[asyncio.Task] = None

room_manager = RoomManager(room_timeout_minutes=config.ROOM_TIMEOUT_MINUTES)


async def _periodic_room_cleanup():
    """Periodic task removing rooms nobody has used for a while."""
    while True:
        try:
            await asyncio.sleep(config.CLEANUP_INTERVAL_SECONDS)
            await room_manager.cleanup_idle_rooms(datetime.now(timezone.utc))
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Room cleanup failed: {e}")


async def _init_state_cache():
    """Connect to Redis and bring back cached rooms."""
    global _state_cache
    from stores.state_cache import get_state_cache

    try:
        _state_cache = await get_state_cache(config.REDIS_URL)
    except Exception as e:
        logger.warning(f"Redis connection failed: {e} - rooms will not survive restarts")
        _state_cache = None
        return

    room_manager.state_cache = _state_cache
    try:
        snapshots = await _state_cache.load_rooms()
        room_manager.restore_rooms(snapshots)
    except Exception as e:
        logger.error(f"Failed to restore rooms from cache: {e}")


async def _init_match_store():
    """Connect to PostgreSQL for match history and stats."""
    global _gateway
    from stores.match_store import get_match_store

    try:
        _gateway = await get_match_store(config.POSTGRES_URL)
        logger.info("Match store initialized")
    except Exception as e:
        logger.error(f"Failed to initialize match store: {e} - match history disabled")
        _gateway = NullGateway()


async def _shutdown_services():
    """Gracefully shut down all services."""
    global _cleanup_task, _recorder

    if _cleanup_task:
        _cleanup_task.cancel()
        try:
            await _cleanup_task
        except asyncio.CancelledError:
            pass
        _cleanup_task = None

    await room_manager.close()
    logger.info("All WebSocket connections closed")

    if _recorder:
        await _recorder.stop()
        _recorder = None

    if config.POSTGRES_URL:
        from stores.match_store import close_match_store
        await close_match_store()

    if _state_cache:
        from stores.state_cache import close_state_cache
        await close_state_cache()
        logger.info("Redis connection closed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for async service initialization."""
    global _recorder, _cleanup_task

    if config.POSTGRES_URL:
        await _init_match_store()
    else:
        logger.warning("POSTGRES_URL not configured - match history and stats disabled")

    _recorder = MatchRecorder(_gateway)
    _recorder.start()
    room_manager.event_sink = _recorder.emit

    if config.REDIS_URL:
        await _init_state_cache()

    if not config.SECRET_KEY:
        logger.warning("SECRET_KEY not configured - every connection plays as a guest")

    _cleanup_task = asyncio.create_task(_periodic_room_cleanup())

    logger.info(f"Jódete server started (environment={config.ENVIRONMENT})")

    yield

    logger.info("Shutdown initiated...")
    await _shutdown_services()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Jódete Card Game",
    debug=config.DEBUG,
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "rooms": len(room_manager.rooms),
        "connections": len(room_manager.connections),
    }


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()

    connection_id = str(uuid.uuid4())
    auth_user_id = resolve_user_id(websocket.query_params.get("token"))

    connection_id_var.set(connection_id)
    user_id_var.set(auth_user_id)

    if auth_user_id:
        logger.debug(f"WebSocket authenticated as user {auth_user_id}, connection {connection_id}")
    else:
        logger.debug(f"WebSocket connected anonymously as {connection_id}")

    ctx = ConnectionContext(
        websocket=websocket,
        connection_id=connection_id,
        auth_user_id=auth_user_id,
    )

    room_manager.register_connection(connection_id, websocket)
    try:
        await room_manager.send_rooms(connection_id)
        while True:
            try:
                data = await websocket.receive_json()
            except ValueError:
                await send_error(ctx, "Messages must be JSON objects")
                continue
            await handle_message(data, ctx, room_manager=room_manager)
    except WebSocketDisconnect:
        logger.debug(f"WebSocket {connection_id} disconnected")
    finally:
        await room_manager.handle_disconnect(connection_id)


# Serve the client build if it exists
client_path = os.path.join(os.path.dirname(__file__), "..", "client")
if os.path.exists(client_path):
    @app.get("/")
    async def serve_index():
        return FileResponse(os.path.join(client_path, "index.html"))

    app.mount("/", StaticFiles(directory=client_path), name="static")


def run():
    """Run the server using uvicorn."""
    import uvicorn

    logger.info(f"Starting Jódete server on {config.HOST}:{config.PORT}")
    logger.info(f"Debug mode: {config.DEBUG}")

    uvicorn.run(
        "main:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level=config.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
