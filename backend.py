import functools
import json
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

import redis
from pydantic import ValidationError

from constants import REDIS_URL, ROOM_BACKEND, ROOM_TTL_SECONDS
from errors import StoreUnavailable
from logging_config import get_logger
from models import Player, Room, RoomStatus, RoomSummary, from_millis, to_millis
from redis_keys import REDIS_INDEX_KEY, REDIS_META_KEY, REDIS_PLAYERS_KEY, REDIS_ROOM_CHANNEL

logger = get_logger(__name__)

ALREADY_EXISTS = "ALREADY_EXISTS"

# Room attribute -> metadata hash field
META_FIELDS = {
    "code": "code",
    "status": "status",
    "created_at": "createdAt",
    "last_activity_at": "lastActivityAt",
}


def encode_meta(patch: dict) -> Dict[str, str]:
    """Turn a patch of Room attributes into metadata hash fields, skipping None values."""
    encoded = {}
    for attr, value in patch.items():
        if value is None:
            continue
        field = META_FIELDS.get(attr, attr)
        if hasattr(value, "timestamp"):
            encoded[field] = str(to_millis(value))
        elif isinstance(value, RoomStatus):
            encoded[field] = value.value
        else:
            encoded[field] = str(value)
    return encoded


def decode_players(players_hash: Optional[dict]) -> List[Player]:
    players = []
    for player_id, raw in (players_hash or {}).items():
        try:
            players.append(Player.model_validate_json(raw))
        except ValidationError:
            logger.warning(f"Skipping unreadable player record {player_id}")
    return players


def decode_room(code: str, meta: Optional[dict], players_hash: Optional[dict]) -> Optional[Room]:
    # The createdAt marker is what makes a room exist; stray players or a
    # metadata write that landed after expiry do not
    if not meta or "createdAt" not in meta:
        return None
    return Room(
        code=code,
        status=RoomStatus(meta.get("status", RoomStatus.LOBBY.value)),
        created_at=from_millis(meta.get("createdAt")),
        last_activity_at=from_millis(meta.get("lastActivityAt")),
        players=decode_players(players_hash),
    )


def summarize(room: Room) -> RoomSummary:
    return RoomSummary(
        code=room.code,
        status=room.status,
        player_count=len(room.players),
        players=room.players,
        created_at=room.created_at,
        last_activity_at=room.last_activity_at,
    )


class RoomBackend(ABC):
    """Shared, TTL-bounded store of rooms and their players plus a per-room channel.

    Every mutating call refreshes the expiry window of both the metadata and the
    player-set record of the room it touches.
    """

    ttl: int

    @abstractmethod
    def room_exists(self, code: str) -> bool: ...

    @abstractmethod
    def get_room(self, code: str) -> Optional[Room]: ...

    @abstractmethod
    def create_room_if_absent(self, code: str, room: Room) -> dict:
        """Returns ``{"created": True}`` or ``{"created": False, "reason": ALREADY_EXISTS}``."""

    @abstractmethod
    def set_room_meta(self, code: str, patch: dict): ...

    @abstractmethod
    def add_player(self, code: str, player: Player): ...

    @abstractmethod
    def update_player(self, code: str, player_id: str, patch: dict) -> Optional[Player]: ...

    @abstractmethod
    def remove_player(self, code: str, player_id: str): ...

    @abstractmethod
    def commit_round(self, code: str, patch: dict, players: Iterable[Player]):
        """Write a metadata patch and the given player records as one batch."""

    @abstractmethod
    def list_rooms(self) -> List[RoomSummary]: ...

    @abstractmethod
    def publish_message(self, code: str, message: dict) -> bool: ...

    @abstractmethod
    def subscribe_to_room(self, code: str): ...

    def get_room_channel_name(self, code: str) -> str:
        return REDIS_ROOM_CHANNEL.format(code=code)

    def ping(self) -> bool:
        return True

    def close(self):
        pass


def _store_call(func):
    """Report transport failures as StoreUnavailable."""

    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as e:
            logger.error(f"Redis call {func.__name__} failed: {e}", exc_info=True)
            raise StoreUnavailable(f"Store unavailable during {func.__name__}") from e

    return wrapper


class RedisBackend(RoomBackend):
    def __init__(self, redis_client: redis.Redis = None, pubsub_client: redis.Redis = None, ttl: int = ROOM_TTL_SECONDS):
        self.redis_client = redis_client or redis.Redis.from_url(REDIS_URL, decode_responses=True)
        # Separate connection for pub/sub (required by Redis)
        self.pubsub_client = pubsub_client or self.redis_client
        self.ttl = ttl
        logger.info(f"Initializing RedisBackend with room TTL {ttl} seconds")

    @_store_call
    def ping(self) -> bool:
        return bool(self.redis_client.ping())

    def close(self):
        self.redis_client.close()
        if self.pubsub_client is not self.redis_client:
            self.pubsub_client.close()

    def _expire_room(self, pipe, code: str):
        pipe.expire(REDIS_META_KEY.format(code=code), self.ttl)
        pipe.expire(REDIS_PLAYERS_KEY.format(code=code), self.ttl)

    @_store_call
    def room_exists(self, code: str) -> bool:
        return bool(self.redis_client.hexists(REDIS_META_KEY.format(code=code), "createdAt"))

    @_store_call
    def get_room(self, code: str) -> Optional[Room]:
        logger.debug(f"Fetching room {code}")
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.hgetall(REDIS_META_KEY.format(code=code))
        pipe.hgetall(REDIS_PLAYERS_KEY.format(code=code))
        meta, players_hash = pipe.execute()
        room = decode_room(code, meta, players_hash)
        if room is None:
            logger.debug(f"Room {code} not found in Redis")
        return room

    @_store_call
    def create_room_if_absent(self, code: str, room: Room) -> dict:
        meta_key = REDIS_META_KEY.format(code=code)
        players_key = REDIS_PLAYERS_KEY.format(code=code)
        with self.redis_client.pipeline() as pipe:
            try:
                # The creation marker is only written if nobody else wrote it first
                pipe.watch(meta_key)
                if pipe.hexists(meta_key, "createdAt"):
                    logger.info(f"Room {code} already exists, refusing to create it")
                    return {"created": False, "reason": ALREADY_EXISTS}
                pipe.multi()
                pipe.hsetnx(meta_key, "createdAt", str(to_millis(room.created_at)))
                pipe.hset(meta_key, mapping=encode_meta({
                    "code": code,
                    "status": room.status,
                    "last_activity_at": room.last_activity_at,
                }))
                pipe.delete(players_key)
                for player in room.players:
                    pipe.hset(players_key, player.player_id, player.model_dump_json())
                pipe.sadd(REDIS_INDEX_KEY, code)
                self._expire_room(pipe, code)
                pipe.execute()
            except redis.WatchError:
                logger.info(f"Lost creation race for room {code}")
                return {"created": False, "reason": ALREADY_EXISTS}
        logger.info(f"Room {code} created with TTL {self.ttl} seconds")
        return {"created": True}

    @_store_call
    def set_room_meta(self, code: str, patch: dict):
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.hset(REDIS_META_KEY.format(code=code), mapping=encode_meta(patch))
        self._expire_room(pipe, code)
        pipe.execute()
        logger.debug(f"Room {code} metadata updated: {sorted(patch)}")

    @_store_call
    def add_player(self, code: str, player: Player):
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.hset(REDIS_PLAYERS_KEY.format(code=code), player.player_id, player.model_dump_json())
        self._expire_room(pipe, code)
        pipe.execute()
        logger.debug(f"Player {player.player_id} stored in room {code}")

    @_store_call
    def update_player(self, code: str, player_id: str, patch: dict) -> Optional[Player]:
        players_key = REDIS_PLAYERS_KEY.format(code=code)
        raw = self.redis_client.hget(players_key, player_id)
        if not raw:
            logger.debug(f"Player {player_id} no longer in room {code}, skipping update")
            return None
        player = Player.model_validate({**Player.model_validate_json(raw).model_dump(), **patch})
        # Last writer wins on the whole record
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.hset(players_key, player_id, player.model_dump_json())
        self._expire_room(pipe, code)
        pipe.execute()
        return player

    @_store_call
    def remove_player(self, code: str, player_id: str):
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.hdel(REDIS_PLAYERS_KEY.format(code=code), player_id)
        self._expire_room(pipe, code)
        removed, *_ = pipe.execute()
        logger.debug(f"Player {player_id} removed from room {code}: {removed}")

    @_store_call
    def commit_round(self, code: str, patch: dict, players: Iterable[Player]):
        players_key = REDIS_PLAYERS_KEY.format(code=code)
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.hset(REDIS_META_KEY.format(code=code), mapping=encode_meta(patch))
        for player in players:
            pipe.hset(players_key, player.player_id, player.model_dump_json())
        self._expire_room(pipe, code)
        pipe.execute()

    @_store_call
    def list_rooms(self) -> List[RoomSummary]:
        codes = sorted(self.redis_client.smembers(REDIS_INDEX_KEY))
        if not codes:
            return []
        pipe = self.redis_client.pipeline(transaction=False)
        for code in codes:
            pipe.hgetall(REDIS_META_KEY.format(code=code))
            pipe.hgetall(REDIS_PLAYERS_KEY.format(code=code))
        results = pipe.execute()

        rooms, stale = [], []
        for i, code in enumerate(codes):
            room = decode_room(code, results[i * 2], results[i * 2 + 1])
            if room is None:
                stale.append(code)
                continue
            rooms.append(summarize(room))

        reaped = [code for code in stale if self._reap_code(code)]
        if reaped:
            logger.info(f"Reaped {len(reaped)} expired room codes from the index: {reaped}")
        return rooms

    def _reap_code(self, code: str) -> bool:
        """Drop ``code`` from the index unless a room was created under it meanwhile."""
        meta_key = REDIS_META_KEY.format(code=code)
        with self.redis_client.pipeline() as pipe:
            try:
                pipe.watch(meta_key)
                if pipe.hexists(meta_key, "createdAt"):
                    return False
                pipe.multi()
                pipe.srem(REDIS_INDEX_KEY, code)
                pipe.execute()
            except redis.WatchError:
                logger.debug(f"Room {code} was recreated while reaping, keeping it indexed")
                return False
        return True

    @_store_call
    def publish_message(self, code: str, message: dict) -> bool:
        """Publish a message to the room's Redis pub/sub channel."""
        channel = self.get_room_channel_name(code)
        subscribers = self.redis_client.publish(channel, json.dumps(message, default=str))
        logger.debug(f"Published message to room {code} channel {channel}, {subscribers} subscribers")
        return True

    @_store_call
    def subscribe_to_room(self, code: str):
        """Create a pubsub subscriber for a room channel."""
        channel = self.get_room_channel_name(code)
        pubsub = self.pubsub_client.pubsub()
        pubsub.subscribe(channel)
        logger.debug(f"Subscribed to channel {channel}")
        return pubsub


def build_backend(kind: str = ROOM_BACKEND) -> RoomBackend:
    if kind == "memory":
        from memory_backend import MemoryBackend
        return MemoryBackend()
    if kind == "redis":
        return RedisBackend(
            redis_client=redis.Redis.from_url(REDIS_URL, decode_responses=True),
            pubsub_client=redis.Redis.from_url(REDIS_URL, decode_responses=True),
        )
    raise ValueError(f"Unknown room backend: {kind}")
