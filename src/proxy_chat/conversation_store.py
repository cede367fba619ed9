"""Conversation collection, message lifecycle and history window selection."""

from __future__ import annotations

from collections.abc import Iterable
import copy
import logging
import threading
from typing import Any

from .exceptions import (
    ConversationBusyError,
    ConversationNotFoundError,
    InvalidTransitionError,
    MessageNotFoundError,
)
from .models import (
    ALLOWED_TRANSITIONS,
    Conversation,
    Message,
    MessageRole,
    MessageStatus,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_HISTORY_WINDOW = 10
DEFAULT_TITLE_MAX_LENGTH = 30
ELLIPSIS = "..."
IMAGE_ONLY_TITLE = "Image"


def derive_title(message: Message, max_length: int = DEFAULT_TITLE_MAX_LENGTH) -> str:
    """Build a conversation title from its first user message."""
    text = " ".join(message.content.split())
    if not text:
        return IMAGE_ONLY_TITLE if message.images else ""
    if len(text) <= max_length:
        return text
    return text[:max_length].rstrip() + ELLIPSIS


class ConversationStore:
    """Own every conversation and serialize all message mutations.

    Mutators run under a re-entrant lock and readers receive deep copies, so a
    renderer never sees a message halfway through a delta append.
    """

    def __init__(
        self,
        history_window: int = DEFAULT_HISTORY_WINDOW,
        title_max_length: int = DEFAULT_TITLE_MAX_LENGTH,
    ) -> None:
        self.history_window_size = max(1, history_window)
        self.title_max_length = max(1, title_max_length)
        self._lock = threading.RLock()
        self._conversations: list[Conversation] = []
        self._active_id: str | None = None

    # -- lookup -----------------------------------------------------------

    def _find(self, conv_id: str) -> Conversation:
        for conversation in self._conversations:
            if conversation.id == conv_id:
                return conversation
        raise ConversationNotFoundError(f"Unknown conversation {conv_id!r}.")

    @staticmethod
    def _find_message(conversation: Conversation, msg_id: str) -> Message:
        for message in conversation.messages:
            if message.id == msg_id:
                return message
        raise MessageNotFoundError(
            f"Unknown message {msg_id!r} in conversation {conversation.id!r}."
        )

    @property
    def active_id(self) -> str | None:
        with self._lock:
            return self._active_id

    def get(self, conv_id: str) -> Conversation:
        """Return a snapshot of one conversation."""
        with self._lock:
            return copy.deepcopy(self._find(conv_id))

    def get_active(self) -> Conversation | None:
        with self._lock:
            if self._active_id is None:
                return None
            return copy.deepcopy(self._find(self._active_id))

    def list_conversations(self) -> list[Conversation]:
        """Return snapshots of all conversations, newest first."""
        with self._lock:
            return copy.deepcopy(self._conversations)

    def get_message(self, conv_id: str, msg_id: str) -> Message:
        with self._lock:
            return copy.deepcopy(self._find_message(self._find(conv_id), msg_id))

    def streaming_message(self, conv_id: str) -> Message | None:
        """Return a snapshot of the in-flight assistant message, if any."""
        with self._lock:
            for message in self._find(conv_id).messages:
                if message.status is MessageStatus.STREAMING:
                    return copy.deepcopy(message)
            return None

    # -- conversation lifecycle ------------------------------------------

    def create_conversation(self, model: str) -> str:
        """Insert an empty conversation at the front and make it active."""
        conversation = Conversation(model=model)
        with self._lock:
            self._conversations.insert(0, conversation)
            self._active_id = conversation.id
        LOGGER.info(
            "store.conversation.created",
            extra={
                "event": "store.conversation.created",
                "conversation_id": conversation.id,
                "model": model,
            },
        )
        return conversation.id

    def delete_conversation(self, conv_id: str) -> None:
        """Remove a conversation; re-point the active id when needed."""
        with self._lock:
            conversation = self._find(conv_id)
            self._conversations.remove(conversation)
            if self._active_id == conv_id:
                self._active_id = (
                    self._conversations[0].id if self._conversations else None
                )
            active = self._active_id
        LOGGER.info(
            "store.conversation.deleted",
            extra={
                "event": "store.conversation.deleted",
                "conversation_id": conv_id,
                "active_id": active,
            },
        )

    def activate(self, conv_id: str) -> None:
        with self._lock:
            self._find(conv_id)
            self._active_id = conv_id

    def set_model(self, conv_id: str, model: str) -> None:
        normalized = model.strip()
        if not normalized:
            return
        with self._lock:
            conversation = self._find(conv_id)
            conversation.model = normalized
            conversation.touch()

    def clear_messages(self, conv_id: str) -> None:
        """Drop every message of a conversation; its title stays frozen."""
        with self._lock:
            conversation = self._find(conv_id)
            if any(m.status is MessageStatus.STREAMING for m in conversation.messages):
                raise ConversationBusyError(
                    f"Conversation {conv_id!r} has a response in flight."
                )
            conversation.messages.clear()
            conversation.touch()

    def load(self, conversations: Iterable[Conversation]) -> None:
        """Replace the whole collection, e.g. from persisted snapshots."""
        loaded = [copy.deepcopy(item) for item in conversations]
        with self._lock:
            self._conversations = loaded
            self._active_id = loaded[0].id if loaded else None

    # -- message lifecycle -------------------------------------------------

    def append_turn(
        self, conv_id: str, user_msg: Message, assistant_stub: Message
    ) -> None:
        """Append a user message and its streaming assistant stub together."""
        if user_msg.role is not MessageRole.USER:
            raise ValueError("append_turn expects a user message first.")
        if assistant_stub.role is not MessageRole.ASSISTANT:
            raise ValueError("append_turn expects an assistant stub second.")
        if user_msg.id == assistant_stub.id:
            raise ValueError("Turn messages must have distinct ids.")

        with self._lock:
            conversation = self._find(conv_id)
            existing_ids = {message.id for message in conversation.messages}
            if user_msg.id in existing_ids or assistant_stub.id in existing_ids:
                raise ValueError("Message id already exists in this conversation.")
            if assistant_stub.status is MessageStatus.STREAMING and any(
                m.status is MessageStatus.STREAMING for m in conversation.messages
            ):
                raise ConversationBusyError(
                    f"Conversation {conv_id!r} already has a streaming message."
                )

            is_first_turn = not any(
                m.role is MessageRole.USER for m in conversation.messages
            )
            conversation.messages.append(copy.deepcopy(user_msg))
            conversation.messages.append(copy.deepcopy(assistant_stub))
            if is_first_turn and not conversation.has_title:
                conversation.title = derive_title(user_msg, self.title_max_length)
            conversation.touch()

    def apply_delta(self, conv_id: str, msg_id: str, delta_text: str) -> None:
        """Accumulate streamed text onto a streaming message."""
        with self._lock:
            conversation = self._find(conv_id)
            message = self._find_message(conversation, msg_id)
            if message.status is not MessageStatus.STREAMING:
                raise InvalidTransitionError(
                    f"Message {msg_id!r} is {message.status.value}, not streaming."
                )
            message.content += delta_text
            conversation.touch()

    def finalize(
        self,
        conv_id: str,
        msg_id: str,
        outcome: MessageStatus,
        error_text: str | None = None,
    ) -> None:
        """Move a message into a terminal status."""
        if not outcome.is_terminal:
            raise InvalidTransitionError(
                f"finalize requires a terminal status, got {outcome.value}."
            )
        with self._lock:
            conversation = self._find(conv_id)
            message = self._find_message(conversation, msg_id)
            if outcome not in ALLOWED_TRANSITIONS[message.status]:
                raise InvalidTransitionError(
                    f"Message {msg_id!r} cannot move from "
                    f"{message.status.value} to {outcome.value}."
                )
            message.status = outcome
            message.error = error_text if outcome is MessageStatus.ERROR else None
            conversation.touch()
        LOGGER.info(
            "store.message.finalized",
            extra={
                "event": "store.message.finalized",
                "conversation_id": conv_id,
                "message_id": msg_id,
                "status": outcome.value,
            },
        )

    # -- history -----------------------------------------------------------

    def history_window(
        self, conv_id: str, limit: int | None = None
    ) -> list[dict[str, Any]]:
        """Return the newest completed, non-empty messages in chronological order."""
        size = self.history_window_size if limit is None else max(0, limit)
        with self._lock:
            valid = [
                message
                for message in self._find(conv_id).messages
                if message.status is MessageStatus.COMPLETED and message.has_payload
            ]
            selected = valid[-size:] if size else []
            return [message.to_api_payload() for message in selected]
