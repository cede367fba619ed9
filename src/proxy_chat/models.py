"""Conversation entities shared by the store, orchestrator and persistence layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import time
from typing import Any
from uuid import uuid4


class MessageRole(str, Enum):
    """Author of a message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageStatus(str, Enum):
    """Lifecycle of a single message."""

    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (MessageStatus.COMPLETED, MessageStatus.ERROR)


# Legal forward moves; completed and error have no exits.
ALLOWED_TRANSITIONS: dict[MessageStatus, frozenset[MessageStatus]] = {
    MessageStatus.SENDING: frozenset(
        {MessageStatus.STREAMING, MessageStatus.COMPLETED, MessageStatus.ERROR}
    ),
    MessageStatus.STREAMING: frozenset({MessageStatus.COMPLETED, MessageStatus.ERROR}),
    MessageStatus.COMPLETED: frozenset(),
    MessageStatus.ERROR: frozenset(),
}


class AttachmentKind(str, Enum):
    """Whether an attachment travels as an image part or inline file text."""

    IMAGE = "image"
    FILE = "file"


def new_id() -> str:
    """Return a fresh random identifier."""
    return uuid4().hex


@dataclass
class Message:
    """One entry of a conversation transcript."""

    role: MessageRole
    content: str = ""
    images: tuple[str, ...] = ()
    status: MessageStatus = MessageStatus.COMPLETED
    error: str | None = None
    id: str = field(default_factory=new_id)
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def user(cls, content: str, images: tuple[str, ...] | list[str] = ()) -> Message:
        """Build a completed user message."""
        return cls(
            role=MessageRole.USER,
            content=content,
            images=tuple(images),
            status=MessageStatus.COMPLETED,
        )

    @classmethod
    def assistant_stub(cls) -> Message:
        """Build an empty assistant message that is about to stream."""
        return cls(role=MessageRole.ASSISTANT, status=MessageStatus.STREAMING)

    @property
    def has_payload(self) -> bool:
        """Return True when the message carries text or at least one image."""
        return bool(self.content.strip()) or bool(self.images)

    def to_api_payload(self) -> dict[str, Any]:
        """Shape the message for an OpenAI-compatible ``messages`` entry."""
        if not self.images:
            return {"role": self.role.value, "content": self.content}
        parts: list[dict[str, Any]] = [{"type": "text", "text": self.content}]
        parts.extend(
            {"type": "image_url", "image_url": {"url": image}} for image in self.images
        )
        return {"role": self.role.value, "content": parts}

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "images": list(self.images),
            "timestamp": self.timestamp,
            "status": self.status.value,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Message:
        status = MessageStatus(str(payload.get("status", "completed")))
        # A message persisted mid-stream can never resume.
        if not status.is_terminal:
            status = MessageStatus.ERROR
        images = payload.get("images") or []
        return cls(
            id=str(payload.get("id") or new_id()),
            role=MessageRole(str(payload.get("role", "user")).strip().lower()),
            content=str(payload.get("content", "")),
            images=tuple(str(item) for item in images),
            timestamp=float(payload.get("timestamp") or time.time()),
            status=status,
            error=payload.get("error"),
        )


@dataclass
class Attachment:
    """A normalized composer attachment awaiting the next send."""

    kind: AttachmentKind
    content: str
    name: str
    mime_type: str
    id: str = field(default_factory=new_id)

    @property
    def is_image(self) -> bool:
        return self.kind is AttachmentKind.IMAGE


@dataclass
class Conversation:
    """An ordered transcript plus the model it talks to."""

    model: str
    title: str = ""
    messages: list[Message] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def has_title(self) -> bool:
        return bool(self.title)

    def touch(self) -> None:
        self.updated_at = time.time()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "model": self.model,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "messages": [message.to_dict() for message in self.messages],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Conversation:
        raw_messages = payload.get("messages") or []
        now = time.time()
        return cls(
            id=str(payload.get("id") or new_id()),
            title=str(payload.get("title", "")),
            model=str(payload.get("model", "")),
            created_at=float(payload.get("created_at") or now),
            updated_at=float(payload.get("updated_at") or now),
            messages=[
                Message.from_dict(item) for item in raw_messages if isinstance(item, dict)
            ],
        )
