from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from constants import HISTORY_PAGE_SIZE, MAX_HISTORY_PAGE_SIZE
from dependencies import get_engine
from engine import ChatEngine
from errors import Forbidden, InvalidSession
from logging_config import get_logger
from schemas.messages import MessageHistoryResponse

logger = get_logger(__name__)

messages_router = APIRouter(prefix="/messages", tags=["messages"])


def bearer_token(authorization: Optional[str] = Header(None)) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise InvalidSession("Session token required", "INVALID_SESSION")
    return authorization[len("Bearer "):].strip()


@messages_router.get("/{room_token}", response_model=MessageHistoryResponse)
async def get_messages(
    room_token: str,
    limit: int = Query(HISTORY_PAGE_SIZE, ge=1, le=MAX_HISTORY_PAGE_SIZE),
    before: Optional[datetime] = Query(None, description="Only messages created before this time"),
    session_token: str = Depends(bearer_token),
    engine: ChatEngine = Depends(get_engine),
):
    """Message history of the caller's room, oldest first."""
    identity = await engine.sessions.validate(session_token)
    room = await engine.registry.get(identity.room_id)
    if room is None or room.token != room_token:
        raise Forbidden("Session does not belong to this room", "FORBIDDEN")

    messages = await engine.messages.history(identity.room_id, limit=limit, before=before)
    logger.debug(f"Returning {len(messages)} messages for room {identity.room_id}")
    return {"messages": [m.to_event() for m in messages]}
