import asyncio
import json
from typing import Dict, Optional

from fastapi import WebSocket

from backend import RoomBackend
from constants import PUBSUB_POLL_SECONDS
from errors import NotAuthorized
from logging_config import get_logger
from models import Room, RoomStatus

logger = get_logger(__name__)

SNAPSHOT_EVENT = "room-updated"

PUBLIC_PLAYER_FIELDS = ("player_id", "name", "is_admin", "online", "is_waiting")


def sanitize_room(room: Room) -> dict:
    """The view of a room every client may see: roles only while a round is running."""
    show_roles = room.status == RoomStatus.IN_GAME
    players = []
    for player in room.players:
        public = {field: getattr(player, field) for field in PUBLIC_PLAYER_FIELDS}
        public["role"] = player.role.value if show_roles and player.role else None
        players.append(public)
    return {
        "code": room.code,
        "status": room.status.value,
        "created_at": room.created_at.isoformat() if room.created_at else None,
        "last_activity_at": room.last_activity_at.isoformat() if room.last_activity_at else None,
        "players": players,
    }


def snapshot_message(room: Room) -> dict:
    return {"type": SNAPSHOT_EVENT, "room": sanitize_room(room)}


class RoomGateway:
    """Per-process websocket fan-out for room snapshots.

    Each instance only knows its own connections. Snapshots travel through the
    backend's pub/sub channel so every instance forwards them to its local
    sockets.
    """

    def __init__(self, backend: RoomBackend, poll_seconds: float = PUBSUB_POLL_SECONDS):
        self.backend = backend
        self.poll_seconds = poll_seconds
        # Format: {room_code: {connection_id: websocket}}
        self.room_connections: Dict[str, Dict[str, WebSocket]] = {}
        # Format: {room_code: task}
        self.room_pubsub_tasks: Dict[str, asyncio.Task] = {}

    # -- store side --

    def admit(self, code: str, player_id: Optional[str], connection_id: str) -> Room:
        """Bind ``connection_id`` to the player and return the fresh room, or raise NotAuthorized."""
        room = self.backend.get_room(code)
        if room is None or not player_id or room.get_player(player_id) is None:
            logger.warning(f"Connection {connection_id} refused for player {player_id} in room {code}")
            raise NotAuthorized(f"Player {player_id} is not a member of room {code}")

        player = self.backend.update_player(code, player_id, {"socket_id": connection_id, "online": True})
        room = self.backend.get_room(code)
        if player is None or room is None:
            # removed by a concurrent leave
            raise NotAuthorized(f"Player {player_id} left room {code}")
        logger.info(f"Player {player_id} connected to room {code} as {connection_id}")
        return room

    def release(self, code: str, player_id: Optional[str], connection_id: str) -> Optional[Room]:
        """Forget a closed connection; returns the room to broadcast, if it still exists."""
        room = self.backend.get_room(code)
        if room is None:
            return None
        player = self.backend.update_player(code, player_id, {"online": False}) if player_id else None
        if player is None:
            return room
        if player.socket_id != connection_id:
            # A newer connection already replaced this one, the player stays
            logger.debug(f"Stale connection {connection_id} closed for player {player_id} in room {code}")
            return self.backend.get_room(code)

        self.backend.remove_player(code, player_id)
        logger.info(f"Player {player_id} disconnected from room {code} and was removed")
        return self.backend.get_room(code)

    # -- publishing --

    def publish(self, room: Room) -> bool:
        return self.backend.publish_message(room.code, snapshot_message(room))

    # -- local connections --

    async def attach(self, code: str, connection_id: str, websocket: WebSocket):
        if code not in self.room_connections:
            self.room_connections[code] = {}
        self.room_connections[code][connection_id] = websocket
        logger.debug(f"Added connection {connection_id} to room {code} (local connections: {len(self.room_connections[code])})")

        if code not in self.room_pubsub_tasks or self.room_pubsub_tasks[code].done():
            # Subscribe before returning so the caller's first publish is not missed
            pubsub = self.backend.subscribe_to_room(code)
            self.room_pubsub_tasks[code] = asyncio.create_task(self.listen_to_channel(code, pubsub))
            logger.debug(f"Started pub/sub listener for room: {code}")

    def detach(self, code: str, connection_id: str):
        # No awaits here: this runs from the handler's finally, possibly during cancellation
        connections = self.room_connections.get(code)
        if connections is not None:
            connections.pop(connection_id, None)
            logger.debug(f"Removed connection {connection_id} from local tracking for room {code}")

        if code in self.room_connections and not self.room_connections[code]:
            del self.room_connections[code]
            logger.info(f"No more local connections in room {code}, cleaning up")
            task = self.room_pubsub_tasks.pop(code, None)
            if task is not None:
                # the listener closes its pubsub on the way out
                task.cancel()

    async def send_local(self, code: str, data: str) -> int:
        connections = dict(self.room_connections.get(code, {}))
        if not connections:
            return 0
        results = await asyncio.gather(
            *(ws.send_text(data) for ws in connections.values()),
            return_exceptions=True,
        )
        for conn_id, result in zip(connections, results):
            if isinstance(result, Exception):
                logger.warning(f"Error sending to connection {conn_id} in room {code}: {result}")
                self.room_connections.get(code, {}).pop(conn_id, None)
        return len(connections)

    async def listen_to_channel(self, code: str, pubsub):
        """Forward every message on the room channel to this instance's sockets."""
        logger.info(f"Starting pub/sub listener for room: {code}")
        loop = asyncio.get_running_loop()

        def get_message():
            try:
                return pubsub.get_message(timeout=self.poll_seconds, ignore_subscribe_messages=True)
            except Exception as e:
                logger.error(f"Error in pubsub.get_message() for room {code}: {e}", exc_info=True)
                return None

        try:
            while self.room_connections.get(code):
                message = await loop.run_in_executor(None, get_message)
                if message is None or message.get("type") != "message":
                    continue
                data = message["data"]
                try:
                    event = json.loads(data).get("type", "unknown")
                except json.JSONDecodeError:
                    logger.error(f"Dropping malformed message on room {code} channel")
                    continue
                sent = await self.send_local(code, data)
                logger.debug(f"Forwarded {event} to {sent} local connections in room {code}")
            logger.info(f"No more connections in room {code}, stopping listener")
        finally:
            try:
                pubsub.close()
            except Exception as e:
                logger.error(f"Error closing pub/sub for room {code}: {e}")
            if self.room_pubsub_tasks.get(code) is asyncio.current_task():
                del self.room_pubsub_tasks[code]

    async def shutdown(self):
        tasks = list(self.room_pubsub_tasks.values())
        self.room_connections.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.room_pubsub_tasks.clear()
