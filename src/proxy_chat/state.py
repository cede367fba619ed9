"""Per-conversation send state machine with lock-protected transitions."""

from __future__ import annotations

import asyncio
from enum import Enum


class SendState(str, Enum):
    """Whether a conversation currently has a turn in flight."""

    IDLE = "IDLE"
    SENDING = "SENDING"


class StateManager:
    """Manage send-state transitions with async lock semantics."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._state = SendState.IDLE

    @property
    def state(self) -> SendState:
        """Unlocked read, for display purposes."""
        return self._state

    async def get_state(self) -> SendState:
        """Return the current state under lock."""
        async with self._lock:
            return self._state

    async def transition_to(self, new_state: SendState) -> SendState:
        """Transition to a new state and return it."""
        async with self._lock:
            self._state = new_state
            return self._state

    async def transition_if(self, expected_state: SendState, new_state: SendState) -> bool:
        """Transition only when current state matches expected state."""
        async with self._lock:
            if self._state != expected_state:
                return False
            self._state = new_state
            return True

    async def can_send_message(self) -> bool:
        """Return True when a new turn may start."""
        async with self._lock:
            return self._state == SendState.IDLE
