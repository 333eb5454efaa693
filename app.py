from contextlib import asynccontextmanager
from typing import Optional
import os
import uuid

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from backend import RoomBackend, build_backend
from errors import NotAuthorized, RoomError
from gateway import RoomGateway
from logging_config import get_logger, setup_logging
from room_service import RoomService
from routers.rooms import rooms_router
from stats import StatsRecorder, build_stats_recorder

logger = get_logger(__name__)


def create_app(
    backend: Optional[RoomBackend] = None,
    stats: Optional[StatsRecorder] = None,
    room_service: Optional[RoomService] = None,
    gateway: Optional[RoomGateway] = None,
) -> FastAPI:
    backend = backend or build_backend()
    stats = stats or build_stats_recorder()
    room_service = room_service or RoomService(backend)
    gateway = gateway or RoomGateway(backend)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.gateway.shutdown()
        app.state.backend.close()
        logger.info("Room backend closed")

    app = FastAPI(title="PartyRooms", lifespan=lifespan)
    app.state.backend = backend
    app.state.stats = stats
    app.state.room_service = room_service
    app.state.gateway = gateway

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(rooms_router)

    @app.get("/health")
    async def health():
        return {"ok": True}

    @app.websocket("/rooms/{code}/ws")
    async def websocket_endpoint(code: str, websocket: WebSocket, player_id: str = None):
        """Realtime room channel.

        Query parameters:
        - player_id: id returned by create/join; must still be a member of the room
        """
        code = code.upper()
        gateway: RoomGateway = websocket.app.state.gateway
        connection_id = uuid.uuid4().hex
        logger.info(f"WebSocket connection attempt for room: {code}, player: {player_id}")

        try:
            room = gateway.admit(code, player_id, connection_id)
        except NotAuthorized as e:
            await websocket.close(code=1008, reason=e.code)
            return
        except RoomError as e:
            logger.error(f"WebSocket admission for room {code} failed: {e.code}")
            await websocket.close(code=1011, reason=e.code)
            return

        await websocket.accept()
        try:
            await gateway.attach(code, connection_id, websocket)
            gateway.publish(room)
            while True:
                # Clients only listen, anything they send is ignored
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected for player {player_id} in room {code}")
        except RoomError as e:
            logger.error(f"WebSocket error for player {player_id} in room {code}: {e.code}")
            await websocket.close(code=1011, reason=e.code)
        finally:
            gateway.detach(code, connection_id)
            try:
                room = gateway.release(code, player_id, connection_id)
                if room is not None:
                    gateway.publish(room)
            except RoomError as e:
                logger.error(f"Could not release connection {connection_id} in room {code}: {e.code}")

    logger.info("FastAPI application initialized")
    return app


def main_app() -> FastAPI:
    setup_logging(log_level=os.getenv("LOG_LEVEL", "INFO"), log_file=os.getenv("LOG_FILE", None))
    return create_app()
