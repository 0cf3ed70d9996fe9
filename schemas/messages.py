from pydantic import Field
from typing import Optional

from models import MessageType
from schemas.rooms import CamelModel


class AttachmentIn(CamelModel):
    file_name: str = Field(min_length=1, max_length=255)
    file_size: int = Field(ge=0)
    mime_type: str = Field(min_length=1)
    url: str = Field(min_length=1)

class AttachmentOut(AttachmentIn):
    id: str

class MessageOut(CamelModel):
    id: str
    type: MessageType
    content: Optional[str] = None
    nickname: str
    created_at: str
    attachments: list[AttachmentOut] = []

class MessageHistoryResponse(CamelModel):
    messages: list[MessageOut]
