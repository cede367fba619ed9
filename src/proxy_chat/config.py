"""Configuration loading and validation for the proxy chat client."""

from __future__ import annotations

from copy import deepcopy
import logging
import os
from pathlib import Path
import tomllib
from typing import Any

from platformdirs import user_config_dir, user_state_dir
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import ConfigValidationError

LOGGER = logging.getLogger(__name__)

APP_NAME = "proxychat"
CONFIG_DIR = Path(user_config_dir(APP_NAME))
CONFIG_PATH = CONFIG_DIR / "config.toml"
STATE_DIR = Path(user_state_dir(APP_NAME))

VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


def _required_string(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("Expected a string value.")
    normalized = value.strip()
    if not normalized:
        raise ValueError("String value must not be empty.")
    return normalized


class AppConfig(BaseModel):
    """Application metadata."""

    title: str = "ProxyChat"

    @field_validator("title", mode="before")
    @classmethod
    def _validate_title(cls, value: Any) -> str:
        return _required_string(value)


class ProxyConfig(BaseModel):
    """Local proxy endpoint settings."""

    port: int = Field(default=8045, ge=1, le=65535)
    api_key: str = "sk-antigravity"
    timeout: int = Field(default=120, ge=1, le=3600)
    status_probe: bool = True

    @field_validator("api_key", mode="before")
    @classmethod
    def _validate_required_string(cls, value: Any) -> str:
        return _required_string(value)


class ChatConfig(BaseModel):
    """Conversation behaviour."""

    default_model: str = "gemini-3-pro-image-16-9"
    history_window: int = Field(default=10, ge=1, le=1000)
    title_max_length: int = Field(default=30, ge=4, le=200)

    @field_validator("default_model", mode="before")
    @classmethod
    def _validate_model(cls, value: Any) -> str:
        return _required_string(value)


class AttachmentsConfig(BaseModel):
    """Image recompression and size limits."""

    max_image_edge: int = Field(default=1536, ge=16, le=16384)
    image_quality: int = Field(default=85, ge=1, le=100)
    max_image_bytes: int = Field(default=10 * 1024 * 1024, ge=1)
    max_file_bytes: int = Field(default=2 * 1024 * 1024, ge=1)


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = str(STATE_DIR / "app.log")

    @field_validator("level", mode="before")
    @classmethod
    def _validate_level(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Logging level must be a string.")
        normalized = value.strip().upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(f"Unsupported log level {normalized!r}.")
        return normalized

    @field_validator("log_file_path", mode="before")
    @classmethod
    def _validate_log_file_path(cls, value: Any) -> str:
        return _required_string(value)


class PersistenceConfig(BaseModel):
    """Conversation snapshot settings."""

    enabled: bool = False
    directory: str = str(STATE_DIR / "conversations")
    metadata_path: str = str(STATE_DIR / "conversations" / "index.json")

    @field_validator("directory", "metadata_path", mode="before")
    @classmethod
    def _validate_path_string(cls, value: Any) -> str:
        return _required_string(value)


class ModelEntry(BaseModel):
    """One entry of the model catalog."""

    id: str
    name: str = ""
    group: str = ""
    icon: str = ""
    desc: str = ""

    @field_validator("id", mode="before")
    @classmethod
    def _validate_id(cls, value: Any) -> str:
        return _required_string(value)

    @model_validator(mode="after")
    def _default_name(self) -> ModelEntry:
        if not self.name.strip():
            self.name = self.id
        return self


DEFAULT_MODELS: list[dict[str, str]] = [
    {
        "id": "gemini-3-pro-image-16-9",
        "name": "Gemini 3 Pro Image (16:9)",
        "group": "Gemini",
        "icon": "image",
        "desc": "Image generation, widescreen",
    },
    {
        "id": "gemini-3-pro-high",
        "name": "Gemini 3 Pro (High)",
        "group": "Gemini",
        "icon": "sparkles",
        "desc": "Highest reasoning budget",
    },
    {
        "id": "gemini-2.5-flash",
        "name": "Gemini 2.5 Flash",
        "group": "Gemini",
        "icon": "zap",
        "desc": "Fast general purpose",
    },
    {
        "id": "claude-sonnet-4-5",
        "name": "Claude Sonnet 4.5",
        "group": "Claude",
        "icon": "bot",
        "desc": "Balanced coding and writing",
    },
]


class Config(BaseModel):
    """Root configuration model for all sections."""

    model_config = ConfigDict(populate_by_name=True)
    app: AppConfig = AppConfig()
    proxy: ProxyConfig = ProxyConfig()
    chat: ChatConfig = ChatConfig()
    attachments: AttachmentsConfig = AttachmentsConfig()
    logging: LoggingConfig = LoggingConfig()
    persistence: PersistenceConfig = PersistenceConfig()
    models: list[ModelEntry] = Field(
        default_factory=lambda: [ModelEntry(**entry) for entry in DEFAULT_MODELS]
    )

    @field_validator("models", mode="before")
    @classmethod
    def _validate_models(cls, value: Any) -> Any:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("models must be an array of tables.")
        return value

    @model_validator(mode="after")
    def _unique_model_ids(self) -> Config:
        seen: set[str] = set()
        deduped: list[ModelEntry] = []
        for entry in self.models:
            if entry.id not in seen:
                seen.add(entry.id)
                deduped.append(entry)
        self.models = deduped
        return self


DEFAULT_CONFIG: dict[str, Any] = Config().model_dump(by_alias=True)


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Ensure that the config directory exists and return its path."""
    directory = config_dir or CONFIG_DIR
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create config directory %s: %s", directory, exc)
    return directory


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override values onto base values."""
    merged: dict[str, Any] = deepcopy(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _enforce_private_permissions(path: Path) -> None:
    """Best-effort 0600 on POSIX; the file may hold an API key."""
    if os.name != "posix" or not path.exists():
        return
    try:
        path.chmod(0o600)
    except OSError as exc:
        LOGGER.warning("Unable to enforce 0600 permissions for %s: %s", path, exc)


def _safe_default_config() -> dict[str, Any]:
    """Return a deep copy of validated default config data."""
    return deepcopy(DEFAULT_CONFIG)


def _validate_config(raw: dict[str, Any]) -> dict[str, Any]:
    """Validate merged config and fall back to safe defaults when possible."""
    try:
        config = Config.model_validate(raw)
        return config.model_dump(by_alias=True)
    except ValidationError as exc:
        LOGGER.warning("Configuration validation failed, using safe defaults: %s", exc)
        return _safe_default_config()
    except Exception as exc:  # noqa: BLE001 - unexpected model construction failure.
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc


def load_config(config_path: Path | None = None) -> dict[str, Any]:
    """Load configuration from TOML, merge with defaults, and validate.

    The optional ``config_path`` argument is intended for tests and tooling.
    """
    target_path = config_path or CONFIG_PATH
    ensure_config_dir(target_path.parent)

    raw_data: dict[str, Any] = {}
    if target_path.exists():
        _enforce_private_permissions(target_path)
        try:
            raw_data = tomllib.loads(target_path.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            LOGGER.warning("Failed to parse config at %s: %s", target_path, exc)
            raw_data = {}

    merged = _deep_merge(DEFAULT_CONFIG, raw_data)
    return _validate_config(merged)
