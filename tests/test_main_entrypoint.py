"""Tests for CLI entrypoint wiring."""

from __future__ import annotations

from collections.abc import AsyncIterator
from copy import deepcopy
import io
from pathlib import Path
import tempfile
import unittest
from unittest.mock import AsyncMock, patch

from proxy_chat.__main__ import main, run_chat
from proxy_chat.config import DEFAULT_CONFIG
from proxy_chat.exceptions import TransportError
from proxy_chat.transport import ChatRequest, ProxyStatus, StaticStatusProvider

STREAM = [
    b'data: {"choices":[{"delta":{"content":"Hel"}}]}\n\n',
    b'data: {"choices":[{"delta":{"content":"lo"}}]}\n\n',
    b"data: [DONE]\n\n",
]


class FakeTransport:
    def __init__(self, chunks: list[bytes], error: Exception | None = None) -> None:
        self.chunks = chunks
        self.error = error
        self.requests: list[ChatRequest] = []

    async def stream_chat(self, base_url: str, request: ChatRequest) -> AsyncIterator[bytes]:
        self.requests.append(request)
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error


def _running() -> StaticStatusProvider:
    return StaticStatusProvider(ProxyStatus(running=True, port=8045))


class MainEntrypointTests(unittest.TestCase):
    """Validate top-level main() flag handling."""

    def test_version_flag_prints_version(self) -> None:
        with patch("sys.stdout", new_callable=io.StringIO) as stdout:
            self.assertEqual(main(["--version"]), 0)
        self.assertTrue(stdout.getvalue().startswith("proxychat "))

    def test_list_models_prints_catalog(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            config_path.write_text(
                '[[models]]\nid = "alpha"\nname = "Alpha"\ngroup = "A"\ndesc = "first"\n',
                encoding="utf-8",
            )
            with patch("proxy_chat.__main__.configure_logging"), patch(
                "sys.stdout", new_callable=io.StringIO
            ) as stdout:
                code = main(["--config", str(config_path), "--list-models"])
        self.assertEqual(code, 0)
        self.assertIn("A:", stdout.getvalue())
        self.assertIn("alpha  (Alpha)  first", stdout.getvalue())

    def test_message_is_forwarded_to_run_chat(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            with patch("proxy_chat.__main__.configure_logging") as logging_mock, patch(
                "proxy_chat.__main__.run_chat", new_callable=AsyncMock, return_value=0
            ) as run_mock:
                code = main(
                    [
                        "--config",
                        str(config_path),
                        "--model",
                        "gemini-2.5-flash",
                        "--attach",
                        "a.txt",
                        "--attach",
                        "b.png",
                        "hello",
                    ]
                )
        self.assertEqual(code, 0)
        logging_mock.assert_called_once()
        args = run_mock.await_args.args
        self.assertEqual(args[0], "hello")
        self.assertEqual(args[1], ["a.txt", "b.png"])
        self.assertEqual(args[2], "gemini-2.5-flash")

    def test_empty_message_prints_usage(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            with patch("proxy_chat.__main__.configure_logging"), patch(
                "sys.stderr", new_callable=io.StringIO
            ) as stderr:
                code = main(["--config", str(config_path), "   "])
        self.assertEqual(code, 2)
        self.assertIn("usage:", stderr.getvalue())


class RunChatTests(unittest.IsolatedAsyncioTestCase):
    """Validate one streamed turn end to end with fake collaborators."""

    def setUp(self) -> None:
        self.config = deepcopy(DEFAULT_CONFIG)
        self.out = io.StringIO()
        self.err = io.StringIO()

    async def test_streams_reply_and_persists(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            base = Path(temp_dir)
            attachment = base / "notes.txt"
            attachment.write_text("remember this", encoding="utf-8")
            self.config["persistence"] = {
                "enabled": True,
                "directory": str(base / "conversations"),
                "metadata_path": str(base / "conversations" / "index.json"),
            }
            transport = FakeTransport(STREAM)

            code = await run_chat(
                "hi",
                [str(attachment)],
                None,
                self.config,
                transport=transport,
                status_provider=_running(),
                out=self.out,
                err=self.err,
            )
            snapshots = list((base / "conversations").glob("*.json"))

        self.assertEqual(code, 0)
        self.assertEqual(self.out.getvalue(), "Hello\n")
        request = transport.requests[0]
        self.assertEqual(request.model, DEFAULT_CONFIG["chat"]["default_model"])
        self.assertIn("--- File: notes.txt ---", request.messages[-1]["content"])
        # One snapshot plus the index file.
        self.assertEqual(len(snapshots), 2)

    async def test_transport_error_returns_failure(self) -> None:
        transport = FakeTransport([], error=TransportError("API Error: 401 - denied", 401))
        with self.assertLogs("proxy_chat.orchestrator", level="WARNING"):
            code = await run_chat(
                "hi",
                [],
                "m",
                self.config,
                transport=transport,
                status_provider=_running(),
                out=self.out,
                err=self.err,
            )
        self.assertEqual(code, 1)
        self.assertIn("Error: API Error: 401 - denied", self.err.getvalue())

    async def test_unavailable_proxy_returns_failure(self) -> None:
        code = await run_chat(
            "hi",
            [],
            "m",
            self.config,
            transport=FakeTransport(STREAM),
            status_provider=StaticStatusProvider(ProxyStatus(running=False, port=8045)),
            out=self.out,
            err=self.err,
        )
        self.assertEqual(code, 1)
        self.assertIn("not running", self.err.getvalue())
        self.assertEqual(self.out.getvalue(), "")

    async def test_missing_attachment_is_a_usage_error(self) -> None:
        transport = FakeTransport(STREAM)
        code = await run_chat(
            "hi",
            ["/definitely/not/here.txt"],
            "m",
            self.config,
            transport=transport,
            status_provider=_running(),
            out=self.out,
            err=self.err,
        )
        self.assertEqual(code, 2)
        self.assertIn("Attachment not found", self.err.getvalue())
        self.assertEqual(transport.requests, [])


if __name__ == "__main__":
    unittest.main()
