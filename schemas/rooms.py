from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Optional


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateRoomRequest(CamelModel):
    ttl_hours: Optional[float] = Field(default=None, gt=0)
    name: Optional[str] = Field(default=None, max_length=100)
    is_public: Optional[bool] = False

class CreateRoomResponse(CamelModel):
    token: str
    name: Optional[str] = None
    expires_at: str

class JoinRoomRequest(CamelModel):
    nickname: Optional[str] = None

class JoinRoomResponse(CamelModel):
    session_token: str
    nickname: str
    room_token: str

class RoomInfoResponse(CamelModel):
    token: str
    name: Optional[str] = None
    is_public: bool
    participant_count: int
    expires_at: str
    created_at: str

class PublicRoom(CamelModel):
    token: str
    name: Optional[str] = None
    participant_count: int
    expires_at: str
    created_at: str

class PublicRoomsResponse(CamelModel):
    rooms: list[PublicRoom]
