"""Event names published by the send orchestrator."""

from __future__ import annotations

# data: conversation_id, user_message_id, assistant_message_id
TURN_STARTED = "turn.started"
# data: conversation_id, message_id, text
MESSAGE_DELTA = "message.delta"
# data: conversation_id, message_id, status, error
MESSAGE_FINALIZED = "message.finalized"
# data: conversation_id, level, message
NOTIFICATION = "notification"
