"""Single-process RoomBackend used by the test suite and by ROOM_BACKEND=memory.

Records are stored exactly as RedisBackend stores them (string hashes with a
deadline each) so both implementations share the decoding helpers and behave
the same way on expiry.
"""
import json
import queue
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional

from backend import ALREADY_EXISTS, RoomBackend, decode_room, encode_meta, summarize
from constants import ROOM_TTL_SECONDS
from logging_config import get_logger
from models import Player, Room, RoomSummary, to_millis
from redis_keys import REDIS_META_KEY, REDIS_PLAYERS_KEY

logger = get_logger(__name__)


class MemoryPubSub:
    """Mirrors the part of redis-py's PubSub the gateway listener relies on."""

    def __init__(self, backend: "MemoryBackend", channel: str):
        self._backend = backend
        self.channel = channel
        self._queue: "queue.Queue[str]" = queue.Queue()
        self.closed = False

    def deliver(self, data: str):
        self._queue.put(data)

    def get_message(self, timeout: float = 0.0, ignore_subscribe_messages: bool = True):
        if self.closed:
            return None
        try:
            data = self._queue.get(timeout=timeout) if timeout else self._queue.get_nowait()
        except queue.Empty:
            return None
        return {"type": "message", "channel": self.channel, "data": data}

    def close(self):
        if not self.closed:
            self.closed = True
            self._backend._unsubscribe(self)


class MemoryBackend(RoomBackend):
    def __init__(self, ttl: int = ROOM_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._lock = threading.RLock()
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._deadlines: Dict[str, float] = {}
        self._index = set()
        self._subscribers: Dict[str, List[MemoryPubSub]] = {}

    # -- key helpers, callers hold the lock --

    def _hash(self, key: str) -> Optional[Dict[str, str]]:
        deadline = self._deadlines.get(key)
        if deadline is not None and deadline <= self.clock():
            self._hashes.pop(key, None)
            self._deadlines.pop(key, None)
        return self._hashes.get(key)

    def _hash_for_write(self, key: str) -> Dict[str, str]:
        existing = self._hash(key)
        if existing is None:
            existing = self._hashes[key] = {}
        return existing

    def _expire_room(self, code: str):
        deadline = self.clock() + self.ttl
        for key in (REDIS_META_KEY.format(code=code), REDIS_PLAYERS_KEY.format(code=code)):
            if self._hash(key) is not None:
                self._deadlines[key] = deadline

    def _read_room(self, code: str) -> Optional[Room]:
        meta = self._hash(REDIS_META_KEY.format(code=code))
        players = self._hash(REDIS_PLAYERS_KEY.format(code=code))
        return decode_room(code, dict(meta) if meta else None, dict(players) if players else None)

    # -- RoomBackend --

    def room_exists(self, code: str) -> bool:
        with self._lock:
            meta = self._hash(REDIS_META_KEY.format(code=code))
            return bool(meta) and "createdAt" in meta

    def get_room(self, code: str) -> Optional[Room]:
        with self._lock:
            return self._read_room(code)

    def create_room_if_absent(self, code: str, room: Room) -> dict:
        meta_key = REDIS_META_KEY.format(code=code)
        with self._lock:
            meta = self._hash_for_write(meta_key)
            if "createdAt" in meta:
                logger.info(f"Room {code} already exists, refusing to create it")
                return {"created": False, "reason": ALREADY_EXISTS}
            meta["createdAt"] = str(to_millis(room.created_at))
            meta.update(encode_meta({"code": code, "status": room.status, "last_activity_at": room.last_activity_at}))
            self._hashes[REDIS_PLAYERS_KEY.format(code=code)] = {
                p.player_id: p.model_dump_json() for p in room.players
            }
            self._index.add(code)
            self._expire_room(code)
        logger.info(f"Room {code} created in memory with TTL {self.ttl} seconds")
        return {"created": True}

    def set_room_meta(self, code: str, patch: dict):
        with self._lock:
            self._hash_for_write(REDIS_META_KEY.format(code=code)).update(encode_meta(patch))
            self._expire_room(code)

    def add_player(self, code: str, player: Player):
        with self._lock:
            self._hash_for_write(REDIS_PLAYERS_KEY.format(code=code))[player.player_id] = player.model_dump_json()
            self._expire_room(code)

    def update_player(self, code: str, player_id: str, patch: dict) -> Optional[Player]:
        with self._lock:
            players = self._hash(REDIS_PLAYERS_KEY.format(code=code))
            raw = players.get(player_id) if players else None
            if not raw:
                return None
            player = Player.model_validate({**Player.model_validate_json(raw).model_dump(), **patch})
            players[player_id] = player.model_dump_json()
            self._expire_room(code)
            return player

    def remove_player(self, code: str, player_id: str):
        with self._lock:
            players = self._hash(REDIS_PLAYERS_KEY.format(code=code))
            if players is not None:
                players.pop(player_id, None)
            self._expire_room(code)

    def commit_round(self, code: str, patch: dict, players: Iterable[Player]):
        with self._lock:
            self._hash_for_write(REDIS_META_KEY.format(code=code)).update(encode_meta(patch))
            players_hash = self._hash_for_write(REDIS_PLAYERS_KEY.format(code=code))
            for player in players:
                players_hash[player.player_id] = player.model_dump_json()
            self._expire_room(code)

    def list_rooms(self) -> List[RoomSummary]:
        with self._lock:
            rooms, stale = [], []
            for code in sorted(self._index):
                room = self._read_room(code)
                if room is None:
                    stale.append(code)
                    continue
                rooms.append(summarize(room))
            self._index.difference_update(stale)
        if stale:
            logger.info(f"Reaped {len(stale)} expired room codes from the index: {stale}")
        return rooms

    def indexed_codes(self) -> set:
        with self._lock:
            return set(self._index)

    def publish_message(self, code: str, message: dict) -> bool:
        channel = self.get_room_channel_name(code)
        data = json.dumps(message, default=str)
        with self._lock:
            subscribers = list(self._subscribers.get(channel, []))
        for pubsub in subscribers:
            pubsub.deliver(data)
        logger.debug(f"Published message to room {code} channel {channel}, {len(subscribers)} subscribers")
        return True

    def subscribe_to_room(self, code: str) -> MemoryPubSub:
        channel = self.get_room_channel_name(code)
        pubsub = MemoryPubSub(self, channel)
        with self._lock:
            self._subscribers.setdefault(channel, []).append(pubsub)
        return pubsub

    def _unsubscribe(self, pubsub: MemoryPubSub):
        with self._lock:
            subscribers = self._subscribers.get(pubsub.channel, [])
            if pubsub in subscribers:
                subscribers.remove(pubsub)
            if not subscribers:
                self._subscribers.pop(pubsub.channel, None)
