"""Domain records shared by the persistence gateway and the services."""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class MessageType(str, enum.Enum):
    TEXT = "TEXT"
    STICKER = "STICKER"
    IMAGE = "IMAGE"
    FILE = "FILE"


@dataclass
class Room:
    id: str
    token: str
    created_at: datetime
    expires_at: datetime
    is_active: bool = True
    is_public: bool = False
    name: Optional[str] = None


def is_expired(room: Room, now: datetime) -> bool:
    """A room is unusable once deactivated or past its expiry; never reversible."""
    return not room.is_active or room.expires_at <= now


@dataclass
class Session:
    id: str
    room_id: str
    nickname: str
    session_token: str
    created_at: datetime
    last_active_at: datetime


@dataclass
class Attachment:
    id: str
    file_name: str
    file_size: int
    mime_type: str
    url: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "mimeType": self.mime_type,
            "url": self.url,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Attachment":
        return cls(
            id=data["id"],
            file_name=data["fileName"],
            file_size=int(data["fileSize"]),
            mime_type=data["mimeType"],
            url=data["url"],
        )


@dataclass
class Message:
    id: str
    room_id: str
    session_id: str
    nickname: str
    type: MessageType
    created_at: datetime
    content: Optional[str] = None
    attachments: list[Attachment] = field(default_factory=list)
    edited_at: Optional[datetime] = None
    is_deleted: bool = False

    def to_event(self) -> dict:
        """Shape used in `new_message`, `room_joined` history and the history endpoint."""
        return {
            "id": self.id,
            "type": self.type.value,
            "content": self.content,
            "nickname": self.nickname,
            "createdAt": to_iso(self.created_at),
            "attachments": [a.to_dict() for a in self.attachments],
        }
