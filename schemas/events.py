"""Payloads of client -> server socket events."""

from pydantic import Field
from typing import Optional

from models import MessageType
from schemas.messages import AttachmentIn
from schemas.rooms import CamelModel


class SetUsernamePayload(CamelModel):
    username: str

class JoinRoomPayload(CamelModel):
    room_token: str = Field(min_length=1)
    session_token: str = Field(min_length=1)

class SendMessagePayload(CamelModel):
    # Checked against MessageType by the message service
    type: str
    content: Optional[str] = None
    attachments: list[AttachmentIn] = []

    def message_type(self) -> Optional[MessageType]:
        try:
            return MessageType(self.type.upper())
        except ValueError:
            return None

class DeleteMessagePayload(CamelModel):
    message_id: str = Field(min_length=1)
