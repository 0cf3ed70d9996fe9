import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

from backend import RedisBackend
from constants import HISTORY_PAGE_SIZE, MAX_FILE_SIZE_MB, MAX_HISTORY_PAGE_SIZE, MAX_MESSAGE_LENGTH
from errors import Forbidden, InvalidSession, NotFound, ValidationFailed
from logging_config import get_logger
from models import Attachment, Message, MessageType, utcnow
from sanitize import strip_unsafe
from services.rate_governor import RateGovernor
from services.session_manager import SessionIdentity

logger = get_logger(__name__)


def validate_message(
    message_type: MessageType,
    content: Optional[str],
    attachments: list[dict],
    max_length: int = MAX_MESSAGE_LENGTH,
    max_file_size_mb: int = MAX_FILE_SIZE_MB,
):
    if message_type == MessageType.TEXT:
        if not content or not content.strip():
            raise ValidationFailed("Text message cannot be empty", "INVALID_MESSAGE")
        if len(content) > max_length:
            raise ValidationFailed(
                f"Message exceeds maximum length of {max_length} characters", "MESSAGE_TOO_LONG"
            )
    elif message_type == MessageType.STICKER:
        if not content or not content.strip():
            raise ValidationFailed("Sticker code cannot be empty", "INVALID_MESSAGE")
        if len(content) > max_length:
            raise ValidationFailed(
                f"Message exceeds maximum length of {max_length} characters", "MESSAGE_TOO_LONG"
            )
    elif message_type in (MessageType.IMAGE, MessageType.FILE):
        if not attachments:
            raise ValidationFailed(f"{message_type.value} message must have attachments", "MISSING_ATTACHMENT")
        max_size_bytes = max_file_size_mb * 1024 * 1024
        for attachment in attachments:
            if attachment["fileSize"] > max_size_bytes:
                raise ValidationFailed(f"File size exceeds maximum of {max_file_size_mb}MB", "FILE_TOO_LARGE")
    else:
        raise ValidationFailed("Invalid message type", "INVALID_MESSAGE_TYPE")


class MessageService:
    def __init__(
        self,
        backend: RedisBackend,
        governor: RateGovernor,
        max_length: int = MAX_MESSAGE_LENGTH,
        max_file_size_mb: int = MAX_FILE_SIZE_MB,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.backend = backend
        self.governor = governor
        self.max_length = max_length
        self.max_file_size_mb = max_file_size_mb
        self.clock = clock

    async def send(
        self,
        sender: SessionIdentity,
        message_type: MessageType,
        content: Optional[str] = None,
        attachments: Optional[list[dict]] = None,
    ) -> Message:
        """Validate, rate-limit and store a message. Returns the stored record."""
        attachments = attachments or []
        content = strip_unsafe(content)
        validate_message(message_type, content, attachments, self.max_length, self.max_file_size_mb)
        await self.governor.admit_message(sender.session_id)

        message = Message(
            id=uuid.uuid4().hex,
            room_id=sender.room_id,
            session_id=sender.session_id,
            nickname=sender.nickname,
            type=message_type,
            content=content or None,
            attachments=[
                Attachment(
                    id=uuid.uuid4().hex,
                    file_name=strip_unsafe(a["fileName"]),
                    file_size=a["fileSize"],
                    mime_type=a["mimeType"],
                    url=a["url"],
                )
                for a in attachments
            ],
            created_at=self.clock(),
        )
        if not await self.backend.create_message(message):
            raise InvalidSession("Invalid session", "INVALID_SESSION")
        logger.info(f"Message {message.id} ({message_type.value}) sent in room {sender.room_id} by {sender.nickname}")
        return message

    async def history(self, room_id: str, limit: int = HISTORY_PAGE_SIZE, before: Optional[datetime] = None) -> list[Message]:
        """Visible messages in chronological order, the newest `limit` before `before`."""
        limit = max(1, min(limit, MAX_HISTORY_PAGE_SIZE))
        if before is not None and before.tzinfo is None:
            before = before.replace(tzinfo=timezone.utc)
        messages = await self.backend.find_room_messages(room_id, limit, before)
        return list(reversed(messages))

    async def delete(self, message_id: str, requester: SessionIdentity) -> Message:
        message = await self.backend.get_message(message_id)
        if message is None or message.is_deleted or message.room_id != requester.room_id:
            raise NotFound("Message not found", "MESSAGE_NOT_FOUND")
        if message.session_id != requester.session_id:
            logger.warning(f"Session {requester.session_id} tried to delete message {message_id} it does not own")
            raise Forbidden("You can only delete your own messages", "FORBIDDEN")
        if not await self.backend.soft_delete_message(message_id):
            raise NotFound("Message not found", "MESSAGE_NOT_FOUND")
        logger.info(f"Message {message_id} deleted in room {message.room_id}")
        message.is_deleted = True
        message.content = None
        return message
