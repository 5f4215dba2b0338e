"""
Client-side data model and wire schemas.

Dataclasses hold the local view (users, messages, conversations); pydantic
models describe the JSON exchanged with the remote service.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from openkey_crypto.attachments import AttachmentKind

SECRET_PREFIX = "secret_"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    # Local only: dispatch to the service failed
    FAILED = "failed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def secret_conversation_id(user_id: str) -> str:
    return f"{SECRET_PREFIX}{user_id}"


def split_conversation_id(conversation_id: str) -> Tuple[str, bool]:
    """
    Split a conversation id into (counterpart id, secret flag).
    """
    if conversation_id.startswith(SECRET_PREFIX):
        return conversation_id[len(SECRET_PREFIX):], True
    return conversation_id, False


@dataclass
class User:
    id: str
    display_name: str
    avatar_ref: Optional[str] = None
    online: bool = False


@dataclass
class Message:
    """
    One chat message.

    Attributes:
        text: Plaintext (decrypted once when loaded from a secret source)
        optimistic: Created locally by a send and not yet confirmed by a poll
        server_id: Id assigned by the service once the send was accepted
    """
    id: str
    sender_id: str
    text: str
    timestamp: datetime
    mine: bool
    delivery_status: DeliveryStatus = DeliveryStatus.SENT
    secret: bool = False
    attachment_ref: Optional[str] = None
    attachment_kind: Optional[AttachmentKind] = None
    optimistic: bool = False
    server_id: Optional[str] = None


@dataclass
class Conversation:
    id: str
    counterpart: User
    preview_text: str
    preview_timestamp: datetime
    unread_count: int = 0
    messages: List[Message] = field(default_factory=list)
    secret: bool = False

    @property
    def counterpart_id(self) -> str:
        return split_conversation_id(self.id)[0]

    def copy(self, **changes) -> "Conversation":
        changes.setdefault("messages", list(self.messages))
        return replace(self, **changes)


# Wire schemas


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)


class UserPayload(WireModel):
    id: str
    username: str
    avatar: Optional[str] = None
    is_online: bool = Field(default=False, alias="isOnline")

    def to_user(self) -> User:
        return User(
            id=self.id,
            display_name=self.username,
            avatar_ref=self.avatar,
            online=self.is_online,
        )


class MessagePayload(WireModel):
    id: str
    sender_id: str = Field(alias="senderId")
    text: Optional[str] = ""
    attachment_url: Optional[str] = Field(default=None, alias="attachmentUrl")
    attachment_type: Optional[AttachmentKind] = Field(default=None, alias="attachmentType")
    timestamp: datetime
    is_mine: bool = Field(default=False, alias="isMine")
    status: DeliveryStatus = DeliveryStatus.SENT
    is_secret: bool = Field(default=False, alias="isSecret")

    @field_validator("attachment_type", mode="before")
    @classmethod
    def _lenient_kind(cls, value):
        # Peers may send kinds this client does not know; show them as files
        if value is None or value == "":
            return None
        try:
            return AttachmentKind(value)
        except ValueError:
            return AttachmentKind.FILE

    @field_validator("status", mode="before")
    @classmethod
    def _lenient_status(cls, value):
        try:
            return DeliveryStatus(value)
        except ValueError:
            return DeliveryStatus.SENT

    def to_message(self, text: str) -> Message:
        """Build the local message, with text already decrypted"""
        return Message(
            id=self.id,
            sender_id=self.sender_id,
            text=text,
            timestamp=as_utc(self.timestamp),
            mine=self.is_mine,
            delivery_status=self.status,
            secret=self.is_secret,
            attachment_ref=self.attachment_url,
            attachment_kind=self.attachment_type,
        )


class SendMessageRequest(WireModel):
    receiver_id: str = Field(alias="receiverId")
    text: str = ""
    attachment_url: Optional[str] = Field(default=None, alias="attachmentUrl")
    attachment_type: Optional[AttachmentKind] = Field(default=None, alias="attachmentType")
    is_secret: bool = Field(default=False, alias="isSecret")


class SendResult(WireModel):
    success: bool
    id: str


class UploadResult(WireModel):
    url: str
    type: str
    original_name: Optional[str] = Field(default=None, alias="originalName")


class AuthResult(WireModel):
    token: str
    user: UserPayload
