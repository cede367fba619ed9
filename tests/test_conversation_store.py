"""Tests for the conversation store lifecycle and history window."""

from __future__ import annotations

import threading
import unittest
from unittest.mock import patch

from proxy_chat.conversation_store import ConversationStore, derive_title
from proxy_chat.exceptions import (
    ConversationBusyError,
    ConversationNotFoundError,
    InvalidTransitionError,
    MessageNotFoundError,
)
from proxy_chat.models import Conversation, Message, MessageRole, MessageStatus

IMAGE = "data:image/jpeg;base64,AAAA"


def _completed_turn(
    store: ConversationStore, conv_id: str, prompt: str, answer: str
) -> tuple[Message, Message]:
    user = Message.user(prompt)
    stub = Message.assistant_stub()
    store.append_turn(conv_id, user, stub)
    store.apply_delta(conv_id, stub.id, answer)
    store.finalize(conv_id, stub.id, MessageStatus.COMPLETED)
    return user, stub


class ConversationLifecycleTests(unittest.TestCase):
    """Validate creation, deletion and activation rules."""

    def test_create_inserts_at_front_and_activates(self) -> None:
        store = ConversationStore()
        first = store.create_conversation("model-a")
        second = store.create_conversation("model-b")
        ids = [conversation.id for conversation in store.list_conversations()]
        self.assertEqual(ids, [second, first])
        self.assertEqual(store.active_id, second)
        self.assertEqual(store.get(first).model, "model-a")
        self.assertEqual(store.get(second).messages, [])

    def test_delete_active_activates_first_remaining(self) -> None:
        store = ConversationStore()
        a = store.create_conversation("m")
        b = store.create_conversation("m")
        c = store.create_conversation("m")
        # Order is [c, b, a]; c is active.
        store.delete_conversation(c)
        self.assertEqual(store.active_id, b)
        store.delete_conversation(b)
        self.assertEqual(store.active_id, a)
        store.delete_conversation(a)
        self.assertIsNone(store.active_id)
        self.assertIsNone(store.get_active())

    def test_delete_inactive_keeps_active(self) -> None:
        store = ConversationStore()
        a = store.create_conversation("m")
        b = store.create_conversation("m")
        store.delete_conversation(a)
        self.assertEqual(store.active_id, b)

    def test_delete_unknown_raises(self) -> None:
        store = ConversationStore()
        with self.assertRaises(ConversationNotFoundError):
            store.delete_conversation("missing")

    def test_activate_and_set_model(self) -> None:
        store = ConversationStore()
        a = store.create_conversation("m")
        store.create_conversation("m")
        store.activate(a)
        self.assertEqual(store.active_id, a)
        store.set_model(a, "  other  ")
        self.assertEqual(store.get(a).model, "other")
        store.set_model(a, "   ")
        self.assertEqual(store.get(a).model, "other")
        with self.assertRaises(ConversationNotFoundError):
            store.activate("missing")

    def test_load_replaces_collection(self) -> None:
        store = ConversationStore()
        store.create_conversation("m")
        loaded = [Conversation(model="x", title="One"), Conversation(model="y")]
        store.load(loaded)
        ids = [conversation.id for conversation in store.list_conversations()]
        self.assertEqual(ids, [loaded[0].id, loaded[1].id])
        self.assertEqual(store.active_id, loaded[0].id)

    def test_snapshots_are_detached(self) -> None:
        store = ConversationStore()
        conv_id = store.create_conversation("m")
        snapshot = store.get(conv_id)
        snapshot.messages.append(Message.user("sneaky"))
        snapshot.title = "changed"
        self.assertEqual(store.get(conv_id).messages, [])
        self.assertEqual(store.get(conv_id).title, "")


class MessageLifecycleTests(unittest.TestCase):
    """Validate turn appends, delta accumulation and finalization."""

    def setUp(self) -> None:
        self.store = ConversationStore()
        self.conv_id = self.store.create_conversation("m")

    def test_append_turn_adds_both_messages_and_sets_title(self) -> None:
        user = Message.user("  What is\n the  answer to everything today?  ")
        stub = Message.assistant_stub()
        self.store.append_turn(self.conv_id, user, stub)
        conversation = self.store.get(self.conv_id)
        self.assertEqual([m.id for m in conversation.messages], [user.id, stub.id])
        self.assertEqual(conversation.messages[1].status, MessageStatus.STREAMING)
        self.assertEqual(conversation.messages[1].content, "")
        self.assertEqual(conversation.title, "What is the answer to everythi...")

    def test_title_is_frozen_after_first_turn(self) -> None:
        _completed_turn(self.store, self.conv_id, "first", "a")
        _completed_turn(self.store, self.conv_id, "second", "b")
        self.assertEqual(self.store.get(self.conv_id).title, "first")

    def test_title_survives_clear_messages(self) -> None:
        _completed_turn(self.store, self.conv_id, "first", "a")
        self.store.clear_messages(self.conv_id)
        _completed_turn(self.store, self.conv_id, "second", "b")
        conversation = self.store.get(self.conv_id)
        self.assertEqual(conversation.title, "first")
        self.assertEqual(len(conversation.messages), 2)

    def test_image_only_first_message_title(self) -> None:
        self.store.append_turn(
            self.conv_id, Message.user("", [IMAGE]), Message.assistant_stub()
        )
        self.assertEqual(self.store.get(self.conv_id).title, "Image")

    def test_append_turn_rejects_second_streaming_stub(self) -> None:
        self.store.append_turn(
            self.conv_id, Message.user("one"), Message.assistant_stub()
        )
        with self.assertRaises(ConversationBusyError):
            self.store.append_turn(
                self.conv_id, Message.user("two"), Message.assistant_stub()
            )
        self.assertEqual(len(self.store.get(self.conv_id).messages), 2)

    def test_append_turn_rejects_wrong_roles_and_duplicate_ids(self) -> None:
        with self.assertRaises(ValueError):
            self.store.append_turn(
                self.conv_id, Message.assistant_stub(), Message.assistant_stub()
            )
        user, _ = _completed_turn(self.store, self.conv_id, "q", "a")
        with self.assertRaises(ValueError):
            self.store.append_turn(self.conv_id, user, Message.assistant_stub())

    def test_apply_delta_accumulates(self) -> None:
        stub = Message.assistant_stub()
        self.store.append_turn(self.conv_id, Message.user("q"), stub)
        for piece in ("Hel", "lo", ", ", "world"):
            self.store.apply_delta(self.conv_id, stub.id, piece)
        message = self.store.get_message(self.conv_id, stub.id)
        self.assertEqual(message.content, "Hello, world")
        self.assertEqual(message.status, MessageStatus.STREAMING)
        self.assertEqual(self.store.streaming_message(self.conv_id).id, stub.id)

    def test_apply_delta_refreshes_updated_at(self) -> None:
        stub = Message.assistant_stub()
        self.store.append_turn(self.conv_id, Message.user("q"), stub)
        before = self.store.get(self.conv_id).updated_at
        with patch("proxy_chat.models.time") as clock:
            clock.time.return_value = before + 60.0
            self.store.apply_delta(self.conv_id, stub.id, "partial")
        self.assertEqual(self.store.get(self.conv_id).updated_at, before + 60.0)

    def test_apply_delta_after_finalize_is_rejected(self) -> None:
        _, stub = _completed_turn(self.store, self.conv_id, "q", "a")
        with self.assertRaises(InvalidTransitionError):
            self.store.apply_delta(self.conv_id, stub.id, "late")
        self.assertEqual(self.store.get_message(self.conv_id, stub.id).content, "a")

    def test_finalize_is_terminal(self) -> None:
        _, stub = _completed_turn(self.store, self.conv_id, "q", "a")
        with self.assertRaises(InvalidTransitionError):
            self.store.finalize(self.conv_id, stub.id, MessageStatus.ERROR, "boom")
        with self.assertRaises(InvalidTransitionError):
            self.store.finalize(self.conv_id, stub.id, MessageStatus.STREAMING)
        self.assertIsNone(self.store.streaming_message(self.conv_id))

    def test_finalize_error_keeps_error_text(self) -> None:
        stub = Message.assistant_stub()
        self.store.append_turn(self.conv_id, Message.user("q"), stub)
        self.store.finalize(self.conv_id, stub.id, MessageStatus.ERROR, "API Error: 500")
        message = self.store.get_message(self.conv_id, stub.id)
        self.assertEqual(message.status, MessageStatus.ERROR)
        self.assertEqual(message.error, "API Error: 500")

    def test_unknown_message_raises(self) -> None:
        with self.assertRaises(MessageNotFoundError):
            self.store.apply_delta(self.conv_id, "missing", "x")

    def test_clear_refused_while_streaming(self) -> None:
        self.store.append_turn(
            self.conv_id, Message.user("q"), Message.assistant_stub()
        )
        with self.assertRaises(ConversationBusyError):
            self.store.clear_messages(self.conv_id)

    def test_concurrent_deltas_are_not_lost(self) -> None:
        stub = Message.assistant_stub()
        self.store.append_turn(self.conv_id, Message.user("q"), stub)

        def worker() -> None:
            for _ in range(200):
                self.store.apply_delta(self.conv_id, stub.id, "x")

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        message = self.store.get_message(self.conv_id, stub.id)
        self.assertEqual(len(message.content), 800)


class HistoryWindowTests(unittest.TestCase):
    """Validate filtering, bound and order of the outgoing history."""

    def setUp(self) -> None:
        self.store = ConversationStore()
        self.conv_id = self.store.create_conversation("m")

    def test_window_excludes_streaming_error_and_empty_messages(self) -> None:
        _completed_turn(self.store, self.conv_id, "q1", "a1")
        failed = Message.assistant_stub()
        self.store.append_turn(self.conv_id, Message.user("q2"), failed)
        self.store.finalize(self.conv_id, failed.id, MessageStatus.ERROR, "boom")
        empty = Message.assistant_stub()
        self.store.append_turn(self.conv_id, Message.user("q3"), empty)
        self.store.finalize(self.conv_id, empty.id, MessageStatus.COMPLETED)
        self.store.append_turn(
            self.conv_id, Message.user("q4"), Message.assistant_stub()
        )

        window = self.store.history_window(self.conv_id)
        self.assertEqual(
            window,
            [
                {"role": "user", "content": "q1"},
                {"role": "assistant", "content": "a1"},
                {"role": "user", "content": "q2"},
                {"role": "user", "content": "q3"},
                {"role": "user", "content": "q4"},
            ],
        )

    def test_window_is_bounded_and_chronological(self) -> None:
        for index in range(8):
            _completed_turn(self.store, self.conv_id, f"q{index}", f"a{index}")
        window = self.store.history_window(self.conv_id)
        self.assertEqual(len(window), 10)
        self.assertEqual(window[0], {"role": "user", "content": "q3"})
        self.assertEqual(window[-1], {"role": "assistant", "content": "a7"})

        short = self.store.history_window(self.conv_id, limit=3)
        self.assertEqual(
            [item["content"] for item in short], ["a6", "q7", "a7"]
        )
        self.assertEqual(self.store.history_window(self.conv_id, limit=0), [])

    def test_image_only_message_is_kept_with_parts(self) -> None:
        user = Message.user("", [IMAGE])
        stub = Message.assistant_stub()
        self.store.append_turn(self.conv_id, user, stub)
        self.store.apply_delta(self.conv_id, stub.id, "A cat.")
        self.store.finalize(self.conv_id, stub.id, MessageStatus.COMPLETED)
        window = self.store.history_window(self.conv_id)
        self.assertEqual(window[0]["role"], MessageRole.USER.value)
        self.assertEqual(
            window[0]["content"],
            [
                {"type": "text", "text": ""},
                {"type": "image_url", "image_url": {"url": IMAGE}},
            ],
        )


class DeriveTitleTests(unittest.TestCase):
    def test_short_text_is_kept(self) -> None:
        self.assertEqual(derive_title(Message.user("Hello there")), "Hello there")

    def test_long_text_is_truncated_with_marker(self) -> None:
        title = derive_title(Message.user("x" * 40), max_length=10)
        self.assertEqual(title, "x" * 10 + "...")


if __name__ == "__main__":
    unittest.main()
