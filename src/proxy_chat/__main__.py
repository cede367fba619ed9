"""CLI entrypoint for proxychat."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
from importlib import metadata
import logging
from pathlib import Path
import signal
import sys
from typing import Any, TextIO

from .attachments import AttachmentEncoder, RawFile
from .catalog import ModelCatalog
from .config import ensure_config_dir, load_config
from .conversation_store import ConversationStore
from .events import MESSAGE_DELTA, NOTIFICATION, Event
from .exceptions import AttachmentError, ProxyChatError
from .logging_utils import configure_logging
from .models import MessageStatus
from .orchestrator import SendOrchestrator
from .persistence import ConversationPersistence
from .transport import (
    ChatTransport,
    HttpStatusProvider,
    HttpxChatTransport,
    ProxyStatus,
    ProxyStatusProvider,
    StaticStatusProvider,
)

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="proxychat",
        description="Stream a chat reply from the local OpenAI-compatible proxy",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit",
    )
    parser.add_argument("--model", help="Model id (defaults to chat.default_model)")
    parser.add_argument(
        "--attach",
        action="append",
        default=[],
        metavar="PATH",
        help="Attach an image or text file; may be repeated",
    )
    parser.add_argument(
        "--list-models",
        action="store_true",
        help="Print the configured model catalog and exit",
    )
    parser.add_argument("--config", type=Path, help=argparse.SUPPRESS)
    parser.add_argument("message", nargs="?", default=None, help="Message text")
    return parser


def _print_catalog(catalog: ModelCatalog, out: TextIO) -> None:
    for group, models in catalog.grouped().items():
        print(f"{group or 'Other'}:", file=out)
        for model in models:
            suffix = f"  {model.desc}" if model.desc else ""
            print(f"  {model.id}  ({model.name}){suffix}", file=out)


def build_status_provider(proxy_config: dict[str, Any]) -> ProxyStatusProvider:
    port = int(proxy_config["port"])
    if proxy_config.get("status_probe", True):
        return HttpStatusProvider(port, api_key=str(proxy_config["api_key"]))
    return StaticStatusProvider(ProxyStatus(running=True, port=port))


def build_transport(proxy_config: dict[str, Any]) -> ChatTransport:
    return HttpxChatTransport(
        api_key=str(proxy_config["api_key"]),
        timeout=float(proxy_config["timeout"]),
    )


def _read_attachments(paths: Sequence[str], limits: dict[str, Any]) -> list[RawFile]:
    return [
        RawFile.from_path(
            path,
            max_image_bytes=int(limits["max_image_bytes"]),
            max_file_bytes=int(limits["max_file_bytes"]),
        )
        for path in paths
    ]


async def _aclose(resource: object) -> None:
    closer = getattr(resource, "aclose", None)
    if closer is not None:
        await closer()


async def run_chat(
    message: str,
    attach: Sequence[str],
    model: str | None,
    config: dict[str, Any],
    *,
    transport: ChatTransport | None = None,
    status_provider: ProxyStatusProvider | None = None,
    out: TextIO | None = None,
    err: TextIO | None = None,
) -> int:
    """Send one message in a fresh conversation and stream the reply to ``out``."""
    out = out or sys.stdout
    err = err or sys.stderr

    try:
        raw_files = _read_attachments(attach, config["attachments"])
    except AttachmentError as exc:
        print(f"Error: {exc}", file=err)
        return EXIT_USAGE

    transport = transport or build_transport(config["proxy"])
    status_provider = status_provider or build_status_provider(config["proxy"])
    store = ConversationStore(
        history_window=int(config["chat"]["history_window"]),
        title_max_length=int(config["chat"]["title_max_length"]),
    )
    orchestrator = SendOrchestrator(store, transport, status_provider)

    def on_delta(event: Event) -> None:
        out.write(str(event.data["text"]))
        out.flush()

    def on_notification(event: Event) -> None:
        print(str(event.data["message"]), file=err)

    orchestrator.events.subscribe(MESSAGE_DELTA, on_delta)
    orchestrator.events.subscribe(NOTIFICATION, on_notification)

    conv_id = store.create_conversation(model or str(config["chat"]["default_model"]))
    loop = asyncio.get_running_loop()

    def request_stop() -> None:
        orchestrator.task_manager.add(
            f"stop:{conv_id}", loop.create_task(orchestrator.stop(conv_id))
        )

    sigint_installed = True
    try:
        loop.add_signal_handler(signal.SIGINT, request_stop)
    except (NotImplementedError, RuntimeError):
        # Platforms without loop signal support keep the default KeyboardInterrupt.
        sigint_installed = False

    try:
        encoder = AttachmentEncoder(
            max_image_edge=int(config["attachments"]["max_image_edge"]),
            image_quality=int(config["attachments"]["image_quality"]),
        )
        attachments = await encoder.encode_batch(raw_files)
        result = await orchestrator.send(conv_id, message, attachments)
    except ProxyChatError as exc:
        print(f"Error: {exc}", file=err)
        return EXIT_FAILED
    finally:
        if sigint_installed:
            loop.remove_signal_handler(signal.SIGINT)
        await _aclose(transport)
        await _aclose(status_provider)

    if result is None:
        print("Nothing to send.", file=err)
        return EXIT_USAGE
    print(file=out)
    _persist(store, conv_id, config["persistence"])
    return EXIT_OK if result.status is MessageStatus.COMPLETED else EXIT_FAILED


def _persist(store: ConversationStore, conv_id: str, settings: dict[str, Any]) -> None:
    if not settings.get("enabled"):
        return
    persistence = ConversationPersistence(
        enabled=True,
        directory=str(settings["directory"]),
        metadata_path=str(settings["metadata_path"]),
    )
    try:
        persistence.save_conversation(store.get(conv_id))
    except OSError as exc:
        LOGGER.warning(
            "cli.persist.failed",
            extra={"event": "cli.persist.failed", "error": str(exc)},
        )


def main(argv: Sequence[str] | None = None) -> int:
    """Handle CLI flags, then send one message and stream the reply."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("proxychat")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"proxychat {version}")
        return EXIT_OK

    if args.config is None:
        ensure_config_dir()
    config = load_config(args.config)
    configure_logging(config["logging"])

    if args.list_models:
        _print_catalog(ModelCatalog.from_config(config["models"]), sys.stdout)
        return EXIT_OK

    message = args.message
    if message is None and not sys.stdin.isatty():
        message = sys.stdin.read()
    if not (message or "").strip() and not args.attach:
        parser.print_usage(sys.stderr)
        return EXIT_USAGE

    return asyncio.run(run_chat(message or "", args.attach, args.model, config))


if __name__ == "__main__":
    raise SystemExit(main())
