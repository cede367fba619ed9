"""Conversation snapshots on disk plus markdown export."""

from __future__ import annotations

from datetime import UTC, datetime
import json
import logging
import os
from pathlib import Path
from typing import Any

from .exceptions import ProxyChatError
from .models import Conversation, MessageRole, MessageStatus

LOGGER = logging.getLogger(__name__)

INDEX_KEYS = ("id", "path", "title", "updated_at")


class PersistenceError(ProxyChatError):
    """Raised when persistence operations fail."""


class PersistenceDisabledError(PersistenceError):
    """Raised when persistence is disabled in configuration."""


class PersistenceFormatError(PersistenceError):
    """Raised when a persisted payload cannot be decoded safely."""


class ConversationPersistence:
    """Manage one JSON file per conversation and a metadata index."""

    def __init__(self, enabled: bool, directory: str, metadata_path: str) -> None:
        self.enabled = enabled
        self.directory = Path(directory).expanduser()
        self.metadata_path = Path(metadata_path).expanduser()

    def _enforce_permissions(self, path: Path, mode: int = 0o600) -> None:
        if os.name != "posix":
            return
        try:
            path.chmod(mode)
        except OSError as exc:
            LOGGER.debug("Unable to chmod %s: %s", path, exc)

    def _require_enabled(self) -> None:
        if not self.enabled:
            raise PersistenceDisabledError("Persistence is disabled in configuration.")

    def _ensure_paths(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self._enforce_permissions(self.directory, 0o700)
        self.metadata_path.parent.mkdir(parents=True, exist_ok=True)
        if not self.metadata_path.exists():
            self.metadata_path.write_text("[]", encoding="utf-8")
        self._enforce_permissions(self.metadata_path)

    def _snapshot_path(self, conv_id: str) -> Path:
        return self.directory / f"{conv_id}.json"

    def _resolve_snapshot_path(self, raw_path: str) -> Path | None:
        """Return the path only when it stays inside the snapshot directory."""
        candidate = Path(raw_path).expanduser()
        try:
            base = self.directory.resolve(strict=False)
            resolved = candidate.resolve(strict=False)
        except OSError:
            return None
        try:
            resolved.relative_to(base)
        except ValueError:
            return None
        return resolved

    def _read_index(self) -> list[dict[str, str]]:
        self._ensure_paths()
        try:
            payload = json.loads(self.metadata_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning(
                "persistence.index.unreadable",
                extra={"event": "persistence.index.unreadable", "error": str(exc)},
            )
            return []
        if not isinstance(payload, list):
            return []
        rows: list[dict[str, str]] = []
        for item in payload:
            if not isinstance(item, dict):
                continue
            if all(isinstance(item.get(key), str) for key in INDEX_KEYS):
                rows.append({key: item[key] for key in INDEX_KEYS})
        return rows

    def _write_index(self, rows: list[dict[str, str]]) -> None:
        self.metadata_path.write_text(
            json.dumps(rows, ensure_ascii=False, indent=2, sort_keys=True),
            encoding="utf-8",
        )
        self._enforce_permissions(self.metadata_path)

    def list_conversations(self) -> list[dict[str, str]]:
        """List known snapshots, most recently updated first."""
        rows = self._read_index()
        return sorted(rows, key=lambda item: item["updated_at"], reverse=True)

    def save_conversation(self, conversation: Conversation) -> Path:
        """Write (or overwrite) a conversation snapshot and index it."""
        self._require_enabled()
        self._ensure_paths()
        target = self._snapshot_path(conversation.id)
        target.write_text(
            json.dumps(conversation.to_dict(), ensure_ascii=False, indent=2),
            encoding="utf-8",
        )
        self._enforce_permissions(target)

        updated_at = datetime.fromtimestamp(conversation.updated_at, UTC).isoformat()
        rows = [row for row in self._read_index() if row["id"] != conversation.id]
        rows.append(
            {
                "id": conversation.id,
                "path": str(target),
                "title": conversation.title,
                "updated_at": updated_at,
            }
        )
        self._write_index(rows)
        LOGGER.info(
            "persistence.conversation.saved",
            extra={
                "event": "persistence.conversation.saved",
                "conversation_id": conversation.id,
                "messages": len(conversation.messages),
            },
        )
        return target

    def load_conversation(self, file_path: Path) -> Conversation:
        """Load a conversation from a snapshot file."""
        try:
            payload = json.loads(file_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise PersistenceFormatError(f"Snapshot {file_path} is not JSON.") from exc
        if not isinstance(payload, dict):
            raise PersistenceFormatError("Conversation payload is invalid.")
        try:
            return Conversation.from_dict(payload)
        except (TypeError, ValueError) as exc:
            raise PersistenceFormatError(
                f"Snapshot {file_path} has invalid fields: {exc}"
            ) from exc

    def load_all(self) -> list[Conversation]:
        """Load every indexed snapshot, newest first; broken entries are skipped."""
        self._require_enabled()
        conversations: list[Conversation] = []
        for row in self.list_conversations():
            target = self._resolve_snapshot_path(row["path"])
            if target is None or not target.exists():
                continue
            try:
                conversations.append(self.load_conversation(target))
            except PersistenceFormatError as exc:
                LOGGER.warning(
                    "persistence.snapshot.invalid",
                    extra={
                        "event": "persistence.snapshot.invalid",
                        "path": str(target),
                        "error": str(exc),
                    },
                )
        return conversations

    def load_latest_conversation(self) -> Conversation | None:
        """Load the most recently updated conversation, if any."""
        rows = self.list_conversations()
        if not rows:
            return None
        target = self._resolve_snapshot_path(rows[0]["path"])
        if target is None or not target.exists():
            return None
        return self.load_conversation(target)

    def delete_conversation(self, conv_id: str) -> bool:
        """Remove a snapshot and its index row; returns whether it existed."""
        self._require_enabled()
        rows = self._read_index()
        remaining = [row for row in rows if row["id"] != conv_id]
        target = self._snapshot_path(conv_id)
        existed = target.exists() or len(remaining) != len(rows)
        target.unlink(missing_ok=True)
        self._write_index(remaining)
        return existed

    def export_markdown(self, conversation: Conversation) -> Path:
        """Export a conversation transcript to markdown."""
        self._require_enabled()
        self._ensure_paths()

        stamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
        target = self.directory / f"{stamp}-{conversation.id[:8]}-export.md"
        heading = conversation.title or "Conversation"
        lines = [f"# {heading} ({conversation.model})", ""]
        for message in conversation.messages:
            lines.extend(_markdown_section(message.role, message.status, message.to_dict()))
        target.write_text("\n".join(lines).strip() + "\n", encoding="utf-8")
        self._enforce_permissions(target)
        return target


def _markdown_section(
    role: MessageRole, status: MessageStatus, payload: dict[str, Any]
) -> list[str]:
    lines = [f"## {role.value.capitalize()}", ""]
    content = str(payload.get("content", "")).strip()
    if content:
        lines.append(content)
        lines.append("")
    for index, _ in enumerate(payload.get("images") or [], start=1):
        lines.append(f"_[image {index} attached]_")
        lines.append("")
    if status is MessageStatus.ERROR and payload.get("error"):
        lines.append(f"> Error: {payload['error']}")
        lines.append("")
    return lines
