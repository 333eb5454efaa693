import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class RoomStatus(str, Enum):
    LOBBY = "lobby"
    IN_GAME = "in-game"
    ENDED = "ended"


class Role(str, Enum):
    ASSASSINO = "assassino"
    SBIRRO = "sbirro"
    RIANIMATRICE = "rianimatrice"
    CITTADINO = "cittadino"


# Handed out once each per round, in a random order.
DISTINGUISHED_ROLES = (Role.ASSASSINO, Role.SBIRRO, Role.RIANIMATRICE)
DEFAULT_ROLE = Role.CITTADINO


class WinningSide(str, Enum):
    ASSASSINO = "assassino"
    CITTADINI = "cittadini"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_player_id() -> str:
    return uuid.uuid4().hex


def to_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def from_millis(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class Player(BaseModel):
    player_id: str = Field(default_factory=new_player_id)
    name: Optional[str] = None
    is_admin: bool = False
    socket_id: Optional[str] = None
    online: bool = False
    role: Optional[Role] = None
    is_waiting: bool = False
    account_ref: Optional[str] = None


class Room(BaseModel):
    code: str
    status: RoomStatus = RoomStatus.LOBBY
    created_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    players: List[Player] = Field(default_factory=list)

    def get_player(self, player_id: str) -> Optional[Player]:
        for player in self.players:
            if player.player_id == player_id:
                return player
        return None

    def active_players(self) -> List[Player]:
        return [p for p in self.players if not p.is_waiting]


class RoomSummary(BaseModel):
    code: str
    status: RoomStatus
    player_count: int
    players: List[Player] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
