import asyncio
import json
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketState

from backend import create_redis_client
from connections import Connection
from constants import CORS_ORIGINS
from engine import ChatEngine, build_engine
from errors import ChatError
from logging_config import get_logger, setup_logging
from models import to_iso, utcnow
from routers.messages import messages_router
from routers.rooms import rooms_router

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


def create_app(engine: Optional[ChatEngine] = None, start_scheduler: bool = True) -> FastAPI:
    engine = engine or build_engine(create_redis_client())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            await engine.backend.ping()
            logger.info("Persistence reachable")
        except ChatError:
            logger.error("Persistence is not reachable at startup", exc_info=True)
            raise
        if start_scheduler:
            engine.scheduler.start()
        yield
        await engine.scheduler.stop()
        await engine.backend.close()
        logger.info("Server shut down")

    app = FastAPI(title="GhostRooms", lifespan=lifespan)
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc.code} {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_payload()})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ())) or "request"
        return JSONResponse(status_code=400, content={"error": {
            "message": f"Invalid request: {field}: {first.get('msg', 'invalid')}",
            "code": "VALIDATION_FAILED",
        }})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": {"message": "Internal server error", "code": "INTERNAL_ERROR"}})

    app.include_router(rooms_router)
    app.include_router(messages_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "timestamp": to_iso(utcnow())}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Real-time channel. Frames are JSON objects: {"event": name, "data": payload}."""
        await websocket.accept()
        connection = Connection(websocket)
        engine.connections.register(connection)
        writer = asyncio.create_task(connection.pump())
        logger.info(f"WebSocket connection {connection.id} accepted")

        try:
            while True:
                try:
                    raw = await websocket.receive_text()
                except WebSocketDisconnect:
                    logger.info(f"WebSocket disconnected normally for connection {connection.id}")
                    break

                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError:
                    frame = None
                if not isinstance(frame, dict):
                    connection.send("error", {"message": "Frames must be JSON objects", "code": "INVALID_PAYLOAD"})
                    continue

                logger.debug(f"Received {frame.get('event')} from connection {connection.id}")
                await engine.dispatcher.dispatch(connection, frame.get("event"), frame.get("data"))
        except Exception as e:
            logger.error(f"WebSocket error for connection {connection.id}: {e}", exc_info=True)
        finally:
            try:
                await engine.dispatcher.disconnect(connection)
            except Exception as e:
                logger.error(f"Cleanup failed for connection {connection.id}: {e}", exc_info=True)
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"Writer for connection {connection.id} ended with error: {e}")
            if websocket.client_state == WebSocketState.CONNECTED:
                try:
                    await websocket.close()
                except RuntimeError as e:
                    logger.debug(f"Error closing WebSocket: {e}")

    logger.info("FastAPI application initialized")
    return app


app = create_app()
