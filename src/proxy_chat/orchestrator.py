"""Send orchestration: attachments in, streamed assistant message out.

One turn per conversation at a time. A turn appends the user message and a
streaming assistant stub, opens the transport with the history window plus
the new message, feeds decoded deltas into the store, and finalizes the stub.
Stopping a turn keeps whatever text already arrived and marks it completed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from contextlib import aclosing
from dataclasses import dataclass
import logging
from typing import Any

from .attachments import fold_attachments
from .conversation_store import ConversationStore
from .events import (
    MESSAGE_DELTA,
    MESSAGE_FINALIZED,
    NOTIFICATION,
    TURN_STARTED,
    EventBus,
)
from .exceptions import (
    ConversationBusyError,
    ConversationNotFoundError,
    MessageNotFoundError,
    ProxyUnavailableError,
)
from .models import Attachment, Message, MessageStatus
from .state import SendState, StateManager
from .stream_decoder import StreamDecoder
from .task_manager import TaskManager
from .transport import ChatRequest, ChatTransport, ProxyStatusProvider

LOGGER = logging.getLogger(__name__)


@dataclass
class CancelToken:
    """Stop signal for the single in-flight turn of one conversation."""

    conversation_id: str
    message_id: str
    cancelled: bool = False
    aborted: bool = False
    error: str | None = None


@dataclass(frozen=True)
class TurnResult:
    """How a turn ended."""

    conversation_id: str
    user_message_id: str
    assistant_message_id: str
    status: MessageStatus
    error: str | None = None
    cancelled: bool = False


class SendOrchestrator:
    """Wire the composer, store, transport and decoder together."""

    def __init__(
        self,
        store: ConversationStore,
        transport: ChatTransport,
        status_provider: ProxyStatusProvider,
        *,
        event_bus: EventBus | None = None,
        task_manager: TaskManager | None = None,
    ) -> None:
        self.store = store
        self.transport = transport
        self.status_provider = status_provider
        self.events = event_bus or EventBus()
        self.task_manager = task_manager or TaskManager()
        self._inflight: dict[str, CancelToken] = {}
        self._states: dict[str, StateManager] = {}

    def _state_for(self, conv_id: str) -> StateManager:
        return self._states.setdefault(conv_id, StateManager())

    def is_sending(self, conv_id: str) -> bool:
        return conv_id in self._inflight

    def send_state(self, conv_id: str) -> SendState:
        state = self._states.get(conv_id)
        return state.state if state is not None else SendState.IDLE

    async def send(
        self,
        conv_id: str,
        text: str,
        attachments: Sequence[Attachment] = (),
    ) -> TurnResult | None:
        """Run one turn to completion; returns None when there is nothing to send.

        Raises:
            ProxyUnavailableError: no running backend.
            ConversationBusyError: a turn is already in flight here.
            ConversationNotFoundError: unknown conversation id.
        """
        normalized = text.strip()
        if not normalized and not attachments:
            return None

        conversation = self.store.get(conv_id)
        status = await self.status_provider.get_status()
        if not status.running:
            raise ProxyUnavailableError("The local API proxy service is not running.")

        state = self._state_for(conv_id)
        if not await state.transition_if(SendState.IDLE, SendState.SENDING):
            raise ConversationBusyError(
                f"Conversation {conv_id!r} already has a response in flight."
            )

        try:
            content, images = fold_attachments(normalized, attachments)
            history = self.store.history_window(conv_id)
            user_msg = Message.user(content, images)
            stub = Message.assistant_stub()
            self.store.append_turn(conv_id, user_msg, stub)

            token = CancelToken(conversation_id=conv_id, message_id=stub.id)
            self._inflight[conv_id] = token
            try:
                await self.events.publish(
                    TURN_STARTED,
                    {
                        "conversation_id": conv_id,
                        "user_message_id": user_msg.id,
                        "assistant_message_id": stub.id,
                    },
                    source="orchestrator",
                )

                request = ChatRequest(
                    model=conversation.model,
                    messages=[*history, user_msg.to_api_payload()],
                )
                outcome, error = await self._run_stream(token, status.api_base, request)
                await self._finalize(token, outcome, error)
            except BaseException:
                # The stub must not outlive the turn in a streaming state.
                if token.error is not None:
                    await self._finalize(token, MessageStatus.ERROR, token.error)
                else:
                    await self._finalize(token, MessageStatus.COMPLETED, None)
                raise
            return TurnResult(
                conversation_id=conv_id,
                user_message_id=user_msg.id,
                assistant_message_id=stub.id,
                status=outcome,
                error=error,
                cancelled=token.aborted,
            )
        finally:
            self._inflight.pop(conv_id, None)
            await state.transition_to(SendState.IDLE)
            self._release_state(conv_id, state)

    def _release_state(self, conv_id: str, state: StateManager) -> None:
        """Forget an idle state machine so the map only holds busy conversations."""
        if self._states.get(conv_id) is state and state.state is SendState.IDLE:
            del self._states[conv_id]

    async def _run_stream(
        self, token: CancelToken, base_url: str, request: ChatRequest
    ) -> tuple[MessageStatus, str | None]:
        if token.cancelled:
            token.aborted = True
            return MessageStatus.COMPLETED, None

        task = asyncio.create_task(
            self._pump(token, base_url, request),
            name=f"stream:{token.conversation_id}",
        )
        self.task_manager.add(token.conversation_id, task)
        try:
            await task
        except asyncio.CancelledError:
            if not token.cancelled:
                # The caller itself was cancelled; send() keeps the partial text.
                raise
            token.aborted = True
            LOGGER.info(
                "send.stream.stopped",
                extra={
                    "event": "send.stream.stopped",
                    "conversation_id": token.conversation_id,
                    "message_id": token.message_id,
                },
            )
            return MessageStatus.COMPLETED, None
        except Exception as exc:  # noqa: BLE001 - transport can fail in many ways.
            LOGGER.warning(
                "send.stream.failed",
                extra={
                    "event": "send.stream.failed",
                    "conversation_id": token.conversation_id,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            token.error = str(exc)
            await self.events.publish(
                NOTIFICATION,
                {
                    "conversation_id": token.conversation_id,
                    "level": "error",
                    "message": f"Error: {exc}",
                },
                source="orchestrator",
            )
            return MessageStatus.ERROR, token.error
        return MessageStatus.COMPLETED, None

    async def _pump(self, token: CancelToken, base_url: str, request: ChatRequest) -> None:
        """Read loop: decode chunks and accumulate deltas until the stream ends."""
        decoder = StreamDecoder()
        async with aclosing(
            self.transport.stream_chat(base_url, request)
        ) as chunks, aclosing(decoder.aiter(chunks)) as events:
            async for event in events:
                if token.cancelled:
                    break
                try:
                    self.store.apply_delta(
                        token.conversation_id, token.message_id, event.text
                    )
                except (ConversationNotFoundError, MessageNotFoundError):
                    # Deleted mid-stream: nothing is left to write into.
                    token.cancelled = True
                    token.aborted = True
                    LOGGER.info(
                        "send.stream.orphaned",
                        extra={
                            "event": "send.stream.orphaned",
                            "conversation_id": token.conversation_id,
                            "message_id": token.message_id,
                        },
                    )
                    break
                await self.events.publish(
                    MESSAGE_DELTA,
                    {
                        "conversation_id": token.conversation_id,
                        "message_id": token.message_id,
                        "text": event.text,
                    },
                    source="orchestrator",
                )
        LOGGER.info(
            "send.stream.ended",
            extra={
                "event": "send.stream.ended",
                "conversation_id": token.conversation_id,
                "done_marker": decoder.done,
                "malformed_records": decoder.malformed_records,
            },
        )

    async def _finalize(
        self, token: CancelToken, outcome: MessageStatus, error: str | None
    ) -> None:
        try:
            message = self.store.get_message(token.conversation_id, token.message_id)
            if message.status.is_terminal:
                return
            self.store.finalize(token.conversation_id, token.message_id, outcome, error)
        except (ConversationNotFoundError, MessageNotFoundError):
            LOGGER.debug(
                "send.finalize.skipped",
                extra={
                    "event": "send.finalize.skipped",
                    "conversation_id": token.conversation_id,
                    "message_id": token.message_id,
                },
            )
            return
        payload: dict[str, Any] = {
            "conversation_id": token.conversation_id,
            "message_id": token.message_id,
            "status": outcome.value,
            "error": error,
        }
        await self.events.publish(MESSAGE_FINALIZED, payload, source="orchestrator")

    async def stop(self, conv_id: str) -> bool:
        """Abort the in-flight turn; idempotent, and a no-op once it finished."""
        token = self._inflight.get(conv_id)
        if token is None or token.cancelled:
            return False
        token.cancelled = True
        LOGGER.info(
            "send.stop.requested",
            extra={"event": "send.stop.requested", "conversation_id": conv_id},
        )
        await self.task_manager.cancel(conv_id)
        return True

    async def stop_all(self) -> None:
        for conv_id in list(self._inflight):
            await self.stop(conv_id)

    async def delete_conversation(self, conv_id: str) -> None:
        """Stop any turn in flight, then remove the conversation from the store."""
        await self.stop(conv_id)
        self.store.delete_conversation(conv_id)
        state = self._states.get(conv_id)
        if state is not None:
            self._release_state(conv_id, state)
