import random
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from backend import RoomBackend
from constants import (
    END_STARTS_NEXT_ROUND,
    MIN_PLAYERS,
    ROOM_CODE_ALPHABET,
    ROOM_CODE_LENGTH,
    ROOM_CODE_MAX_ATTEMPTS,
)
from errors import NotEnoughPlayers, RoomExists, RoomNotFound
from logging_config import get_logger
from models import Player, Room, RoomStatus, RoomSummary, WinningSide, utcnow
from roles import RoundOutcome, assign_roles, round_outcomes

logger = get_logger(__name__)


@dataclass
class RoomUpdate:
    """Result of a lifecycle operation.

    The caller pushes ``room`` to the room's channel; the service itself never
    talks to the realtime transport.
    """

    room: Room
    player_id: Optional[str] = None
    outcomes: List[RoundOutcome] = field(default_factory=list)


class RoomService:
    def __init__(
        self,
        backend: RoomBackend,
        min_players: int = MIN_PLAYERS,
        code_length: int = ROOM_CODE_LENGTH,
        code_alphabet: str = ROOM_CODE_ALPHABET,
        max_code_attempts: int = ROOM_CODE_MAX_ATTEMPTS,
        end_starts_next_round: bool = END_STARTS_NEXT_ROUND,
        rng: random.Random = None,
        clock: Callable = utcnow,
    ):
        self.backend = backend
        self.min_players = min_players
        self.code_length = code_length
        self.code_alphabet = code_alphabet
        self.max_code_attempts = max_code_attempts
        self.end_starts_next_round = end_starts_next_round
        self.rng = rng or random.SystemRandom()
        self.clock = clock

    def generate_room_code(self) -> str:
        return "".join(self.rng.choices(self.code_alphabet, k=self.code_length))

    def _require_room(self, code: str) -> Room:
        room = self.backend.get_room(code)
        if room is None:
            logger.warning(f"Room {code} not found")
            raise RoomNotFound(f"Room {code} not found")
        return room

    def _touch(self, code: str) -> Room:
        """Refresh lastActivityAt and read the room back to confirm it still exists."""
        self.backend.set_room_meta(code, {"last_activity_at": self.clock()})
        return self._require_room(code)

    def get_room(self, code: str) -> Room:
        return self._require_room(code)

    def list_rooms(self) -> List[RoomSummary]:
        return self.backend.list_rooms()

    def create_room(self, name: Optional[str] = None, account_ref: Optional[str] = None) -> RoomUpdate:
        for attempt in range(1, self.max_code_attempts + 1):
            code = self.generate_room_code()
            if self.backend.room_exists(code):
                logger.debug(f"Room code {code} is taken (attempt {attempt})")
                continue

            now = self.clock()
            admin = Player(name=name, is_admin=True, online=True, account_ref=account_ref)
            room = Room(code=code, status=RoomStatus.LOBBY, created_at=now, last_activity_at=now, players=[admin])
            result = self.backend.create_room_if_absent(code, room)
            if not result["created"]:
                logger.info(f"Room code {code} was claimed concurrently (attempt {attempt})")
                continue

            logger.info(f"Room {code} created by player {admin.player_id}")
            return RoomUpdate(room=self._require_room(code), player_id=admin.player_id)

        logger.error(f"Could not find a free room code after {self.max_code_attempts} attempts")
        raise RoomExists(f"No free room code after {self.max_code_attempts} attempts")

    def join_room(self, code: str, name: Optional[str] = None, account_ref: Optional[str] = None) -> RoomUpdate:
        room = self._require_room(code)
        # Late joiners sit out the current round
        player = Player(
            name=name,
            is_admin=False,
            online=True,
            is_waiting=room.status != RoomStatus.LOBBY,
            account_ref=account_ref,
        )
        self.backend.add_player(code, player)
        room = self._touch(code)
        logger.info(f"Player {player.player_id} joined room {code} (waiting={player.is_waiting})")
        return RoomUpdate(room=room, player_id=player.player_id)

    def leave_room(self, code: str, player_id: str) -> RoomUpdate:
        self._require_room(code)
        self.backend.remove_player(code, player_id)
        room = self._touch(code)
        logger.info(f"Player {player_id} left room {code}")
        return RoomUpdate(room=room, player_id=player_id)

    def _start_round(self, room: Room) -> Room:
        active = room.active_players()
        if len(active) < self.min_players:
            logger.warning(f"Room {room.code} has {len(active)} active players, {self.min_players} needed")
            raise NotEnoughPlayers(f"At least {self.min_players} players are needed to start")

        assign_roles(active, self.rng)
        patch = {"status": RoomStatus.IN_GAME, "last_activity_at": self.clock()}
        self.backend.commit_round(room.code, patch, room.players)
        logger.info(f"Round started in room {room.code} with {len(active)} players")
        return self._require_room(room.code)

    def start_room(self, code: str) -> RoomUpdate:
        room = self._require_room(code)
        return RoomUpdate(room=self._start_round(room))

    def end_room(self, code: str, winning_side: WinningSide) -> RoomUpdate:
        room = self._require_room(code)
        # Only a running round has results, ending an ended room again scores nothing
        outcomes = round_outcomes(room.players, winning_side) if room.status == RoomStatus.IN_GAME else []
        for player in room.players:
            player.is_waiting = False

        if self.end_starts_next_round:
            # Straight into the next round, the ended state is never written
            started = self._start_round(room)
            logger.info(f"Round ended in room {code} ({winning_side.value} won), next round started")
            return RoomUpdate(room=started, outcomes=outcomes)

        patch = {"status": RoomStatus.ENDED, "last_activity_at": self.clock()}
        self.backend.commit_round(code, patch, room.players)
        logger.info(f"Round ended in room {code} ({winning_side.value} won)")
        return RoomUpdate(room=self._require_room(code), outcomes=outcomes)
