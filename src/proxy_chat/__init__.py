"""Top-level package for proxychat."""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .attachments import AttachmentEncoder, PendingAttachments, RawFile
    from .catalog import ModelCatalog, ModelInfo
    from .config import ensure_config_dir, load_config
    from .conversation_store import ConversationStore
    from .exceptions import (
        ConfigValidationError,
        ConversationBusyError,
        ProxyChatError,
        ProxyConnectionError,
        ProxyUnavailableError,
        TransportError,
    )
    from .models import Conversation, Message, MessageRole, MessageStatus
    from .orchestrator import SendOrchestrator
    from .persistence import ConversationPersistence
    from .segmenter import segment
    from .stream_decoder import StreamDecoder

_EXPORTS: dict[str, str] = {
    "AttachmentEncoder": "attachments",
    "PendingAttachments": "attachments",
    "RawFile": "attachments",
    "ModelCatalog": "catalog",
    "ModelInfo": "catalog",
    "ensure_config_dir": "config",
    "load_config": "config",
    "ConversationStore": "conversation_store",
    "ConfigValidationError": "exceptions",
    "ConversationBusyError": "exceptions",
    "ProxyChatError": "exceptions",
    "ProxyConnectionError": "exceptions",
    "ProxyUnavailableError": "exceptions",
    "TransportError": "exceptions",
    "Conversation": "models",
    "Message": "models",
    "MessageRole": "models",
    "MessageStatus": "models",
    "SendOrchestrator": "orchestrator",
    "ConversationPersistence": "persistence",
    "segment": "segmenter",
    "StreamDecoder": "stream_decoder",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import symbols so ``import proxy_chat`` stays free of Pillow and httpx."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(import_module(f".{module_name}", __name__), name)
