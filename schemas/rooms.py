from pydantic import BaseModel
from typing import List, Optional

from models import RoomStatus, WinningSide


class CreateRoomRequest(BaseModel):
    name: Optional[str] = None

class JoinRoomRequest(BaseModel):
    name: Optional[str] = None

class LeaveRoomRequest(BaseModel):
    player_id: str

class EndRoomRequest(BaseModel):
    winning_side: WinningSide

class RoomPlayerResponse(BaseModel):
    player_id: str
    name: Optional[str] = None
    is_admin: bool
    online: bool
    is_waiting: bool
    role: Optional[str] = None

class RoomResponse(BaseModel):
    code: str
    status: RoomStatus
    created_at: Optional[str] = None
    last_activity_at: Optional[str] = None
    players: List[RoomPlayerResponse]

class RoomMembershipResponse(BaseModel):
    code: str
    player_id: str
    room: RoomResponse

class RoomSummaryResponse(BaseModel):
    code: str
    status: RoomStatus
    player_count: int
    created_at: Optional[str] = None
    last_activity_at: Optional[str] = None
