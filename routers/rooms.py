from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request
from typing import List, Optional

from errors import RoomError
from gateway import RoomGateway, sanitize_room
from logging_config import get_logger
from room_service import RoomService, RoomUpdate
from schemas.rooms import (
    CreateRoomRequest,
    EndRoomRequest,
    JoinRoomRequest,
    LeaveRoomRequest,
    RoomMembershipResponse,
    RoomResponse,
    RoomSummaryResponse,
)
from stats import StatsRecorder

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


def get_room_service(request: Request) -> RoomService:
    return request.app.state.room_service


def get_gateway(request: Request) -> RoomGateway:
    return request.app.state.gateway


def get_stats(request: Request) -> StatsRecorder:
    return request.app.state.stats


def get_account_ref(x_account_ref: Optional[str] = Header(None)) -> Optional[str]:
    # Opaque identity handed over by the auth layer, guests send nothing
    return x_account_ref or None


def http_error(e: RoomError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.to_detail())


def publish(gateway: RoomGateway, update: RoomUpdate):
    """Broadcast after a committed write. The write already stands, so a failed
    broadcast is logged and the request still succeeds."""
    try:
        gateway.publish(update.room)
    except RoomError as e:
        logger.error(f"Broadcast for room {update.room.code} failed: {e.code}", exc_info=True)


@rooms_router.post("", status_code=201, response_model=RoomMembershipResponse)
async def create_room(
    body: CreateRoomRequest,
    rooms: RoomService = Depends(get_room_service),
    gateway: RoomGateway = Depends(get_gateway),
    account_ref: Optional[str] = Depends(get_account_ref),
):
    logger.info(f"Room creation request, name: {body.name}, account: {account_ref}")
    try:
        update = rooms.create_room(name=body.name, account_ref=account_ref)
    except RoomError as e:
        logger.warning(f"Room creation failed: {e.code}")
        raise http_error(e) from e
    publish(gateway, update)
    return RoomMembershipResponse(code=update.room.code, player_id=update.player_id, room=sanitize_room(update.room))


@rooms_router.get("", response_model=List[RoomSummaryResponse])
async def list_rooms(rooms: RoomService = Depends(get_room_service)):
    try:
        summaries = rooms.list_rooms()
    except RoomError as e:
        raise http_error(e) from e
    return [
        RoomSummaryResponse(
            code=s.code,
            status=s.status,
            player_count=s.player_count,
            created_at=s.created_at.isoformat() if s.created_at else None,
            last_activity_at=s.last_activity_at.isoformat() if s.last_activity_at else None,
        )
        for s in summaries
    ]


@rooms_router.get("/{code}", response_model=RoomResponse)
async def get_room_details(code: str, rooms: RoomService = Depends(get_room_service)):
    try:
        room = rooms.get_room(code.upper())
    except RoomError as e:
        raise http_error(e) from e
    return sanitize_room(room)


@rooms_router.post("/{code}/join", response_model=RoomMembershipResponse)
async def join_room(
    code: str,
    body: JoinRoomRequest,
    rooms: RoomService = Depends(get_room_service),
    gateway: RoomGateway = Depends(get_gateway),
    account_ref: Optional[str] = Depends(get_account_ref),
):
    code = code.upper()
    logger.info(f"Join room request for {code}, name: {body.name}")
    try:
        update = rooms.join_room(code, name=body.name, account_ref=account_ref)
    except RoomError as e:
        logger.warning(f"Join room {code} failed: {e.code}")
        raise http_error(e) from e
    publish(gateway, update)
    return RoomMembershipResponse(code=code, player_id=update.player_id, room=sanitize_room(update.room))


@rooms_router.post("/{code}/leave", response_model=RoomResponse)
async def leave_room(
    code: str,
    body: LeaveRoomRequest,
    rooms: RoomService = Depends(get_room_service),
    gateway: RoomGateway = Depends(get_gateway),
):
    code = code.upper()
    try:
        update = rooms.leave_room(code, body.player_id)
    except RoomError as e:
        logger.warning(f"Leave room {code} failed: {e.code}")
        raise http_error(e) from e
    publish(gateway, update)
    return sanitize_room(update.room)


@rooms_router.post("/{code}/start", response_model=RoomResponse)
async def start_room(
    code: str,
    rooms: RoomService = Depends(get_room_service),
    gateway: RoomGateway = Depends(get_gateway),
):
    code = code.upper()
    try:
        update = rooms.start_room(code)
    except RoomError as e:
        logger.warning(f"Start room {code} failed: {e.code}")
        raise http_error(e) from e
    publish(gateway, update)
    return sanitize_room(update.room)


@rooms_router.post("/{code}/end", response_model=RoomResponse)
async def end_room(
    code: str,
    body: EndRoomRequest,
    background_tasks: BackgroundTasks,
    rooms: RoomService = Depends(get_room_service),
    gateway: RoomGateway = Depends(get_gateway),
    stats: StatsRecorder = Depends(get_stats),
):
    code = code.upper()
    try:
        update = rooms.end_room(code, body.winning_side)
    except RoomError as e:
        logger.warning(f"End room {code} failed: {e.code}")
        raise http_error(e) from e
    background_tasks.add_task(stats.record_round, update.outcomes)
    publish(gateway, update)
    return sanitize_room(update.room)
