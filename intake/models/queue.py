"""Client-side message queue records.

These models are persisted as JSON with camelCase keys, so they use an alias
generator. Datetimes are written with an explicit ISO-8601 serializer and read
back with an explicit parser instead of relying on implicit coercion.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel

from intake.models.session import ChatMessage, utc_now


def serialize_timestamp(value: datetime) -> str:
    return value.isoformat()


def parse_timestamp(value) -> datetime:
    """Parse and normalise to aware UTC; naive values are taken to be UTC already."""
    if isinstance(value, str):
        # "Z" suffix is what browsers emit for Date.toISOString()
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if not isinstance(value, datetime):
        raise ValueError(f"Unsupported timestamp value: {value!r}")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MessageStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    PERMANENTLY_FAILED = "permanently_failed"


class _QueueModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PendingMessage(_QueueModel):
    """A patient message waiting to be delivered."""

    temp_id: str
    content: str
    images: Optional[List[str]] = None
    timestamp: datetime = Field(default_factory=utc_now)
    retry_count: int = Field(default=0, ge=0)

    @field_serializer("timestamp")
    def _serialize_timestamp(self, value: datetime) -> str:
        return serialize_timestamp(value)

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, value):
        return parse_timestamp(value)


class FailedMessage(PendingMessage):
    """A message whose last delivery attempt failed."""

    error: str
    last_attempt: datetime = Field(default_factory=utc_now)

    @field_serializer("last_attempt")
    def _serialize_last_attempt(self, value: datetime) -> str:
        return serialize_timestamp(value)

    @field_validator("last_attempt", mode="before")
    @classmethod
    def _parse_last_attempt(cls, value):
        return parse_timestamp(value)


class MessageWithStatus(_QueueModel):
    """A conversation entry as the patient sees it, including delivery state."""

    id: str
    temp_id: Optional[str] = None
    role: str = "user"
    content: str
    images: Optional[List[str]] = None
    timestamp: datetime = Field(default_factory=utc_now)
    status: MessageStatus = MessageStatus.SENDING
    retry_count: int = 0
    error: Optional[str] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, value):
        return parse_timestamp(value)

    @classmethod
    def from_chat_message(cls, message: ChatMessage) -> "MessageWithStatus":
        return cls(
            id=message.id,
            role=message.role,
            content=message.content,
            images=message.images,
            timestamp=message.timestamp,
            status=MessageStatus.SENT,
        )


class PersistedMessageQueue(_QueueModel):
    """Document stored under ``intake_message_queue_<session_id>``."""

    session_id: str
    pending_messages: List[PendingMessage] = Field(default_factory=list)
    failed_messages: List[FailedMessage] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=utc_now)

    @field_serializer("last_updated")
    def _serialize_last_updated(self, value: datetime) -> str:
        return serialize_timestamp(value)

    @field_validator("last_updated", mode="before")
    @classmethod
    def _parse_last_updated(cls, value):
        return parse_timestamp(value)


class DeliveryReceipt(BaseModel):
    """What the server returns once a message has been accepted."""

    user_message: ChatMessage
    ai_message: Optional[ChatMessage] = None


class DeliveryOutcome(BaseModel):
    """Result of one delivery attempt; exactly one of receipt/error is set."""

    receipt: Optional[DeliveryReceipt] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.receipt is not None

    @classmethod
    def success(cls, receipt: DeliveryReceipt) -> "DeliveryOutcome":
        return cls(receipt=receipt)

    @classmethod
    def failure(cls, error: str) -> "DeliveryOutcome":
        return cls(error=error or "Failed to send message")
