from fastapi import APIRouter, Depends, Request, status

from dependencies import client_host, get_engine
from engine import ChatEngine
from errors import ValidationFailed
from logging_config import get_logger
from models import to_iso
from schemas.rooms import (
    CreateRoomRequest,
    CreateRoomResponse,
    JoinRoomRequest,
    JoinRoomResponse,
    PublicRoomsResponse,
    RoomInfoResponse,
)

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


@rooms_router.post("", status_code=status.HTTP_201_CREATED, response_model=CreateRoomResponse)
async def create_room(room: CreateRoomRequest, request: Request, engine: ChatEngine = Depends(get_engine)):
    # { "ttlHours": 24, "name": "optional-room-name", "isPublic": false }
    # Response 201: { "token": "ghost-k3v9qa1z", "name": null, "expiresAt": "2025-11-17T12:34:56+00:00" }
    host = client_host(request)
    logger.info(f"Room creation request from {host}, name: {room.name}, public: {room.is_public}")
    engine.governor.admit_room_creation(host)

    created = await engine.registry.create(ttl_hours=room.ttl_hours, name=room.name, is_public=bool(room.is_public))
    if created.is_public:
        await engine.dispatcher.broadcast_public_rooms()

    return CreateRoomResponse(token=created.token, name=created.name, expires_at=to_iso(created.expires_at))


@rooms_router.get("/public", response_model=PublicRoomsResponse)
async def list_public_rooms(engine: ChatEngine = Depends(get_engine)):
    rooms = await engine.registry.list_public()
    logger.debug(f"Listing {len(rooms)} public rooms")
    return {"rooms": rooms}


@rooms_router.get("/{token}", response_model=RoomInfoResponse)
async def get_room_info(token: str, engine: ChatEngine = Depends(get_engine)):
    """
    Room details with the number of sessions currently holding a seat.

    Fails with ROOM_NOT_FOUND (404) or ROOM_EXPIRED / ROOM_INACTIVE (410).
    """
    return await engine.registry.get_info(token)


@rooms_router.get("/{token}/validate")
async def validate_room(token: str, engine: ChatEngine = Depends(get_engine)):
    await engine.registry.validate(token)
    return {"message": "Room is valid"}


@rooms_router.post("/{token}/join", status_code=status.HTTP_201_CREATED, response_model=JoinRoomResponse)
async def join_room(token: str, join_room_request: JoinRoomRequest, request: Request, engine: ChatEngine = Depends(get_engine)):
    # POST /rooms/{token}/join Body: { "nickname": "Bob" }
    # Response 201: { "sessionToken": "...", "nickname": "Bob", "roomToken": "ghost-..." }
    # - Client then opens /ws and sends join_room with both tokens.
    logger.info(f"Join room request for {token} from {client_host(request)}, nickname: {join_room_request.nickname}")
    if not join_room_request.nickname or not join_room_request.nickname.strip():
        raise ValidationFailed("Nickname is required", "MISSING_NICKNAME")

    room_id = await engine.registry.validate(token)
    return await engine.sessions.join(room_id, join_room_request.nickname)
