"""Attachment normalization for images and files.

Images are downscaled and recompressed to JPEG data URIs before they reach
the wire; every other file is inlined as text between delimiter lines.
"""

from __future__ import annotations

import asyncio
import base64
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
import io
import logging
import mimetypes
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError

from .exceptions import AttachmentError
from .models import Attachment, AttachmentKind
from .segmenter import format_file_block

LOGGER = logging.getLogger(__name__)

MAX_IMAGE_EDGE = 1536
IMAGE_QUALITY = 85
ENCODED_IMAGE_MIME = "image/jpeg"
DEFAULT_MIME = "application/octet-stream"


@dataclass(frozen=True)
class RawFile:
    """Bytes plus the declared media type and display name."""

    name: str
    data: bytes
    mime_type: str = DEFAULT_MIME

    @property
    def is_image(self) -> bool:
        return self.mime_type.lower().startswith("image/")

    @classmethod
    def from_path(
        cls,
        path: str | Path,
        *,
        max_image_bytes: int = 10 * 1024 * 1024,
        max_file_bytes: int = 2 * 1024 * 1024,
    ) -> RawFile:
        """Read a file from disk after validating existence, type and size."""
        try:
            resolved = Path(path).expanduser().resolve()
        except OSError as exc:
            raise AttachmentError(f"Error resolving attachment {path}: {exc}") from exc

        if not resolved.exists():
            raise AttachmentError(f"Attachment not found: {path}")
        if not resolved.is_file():
            raise AttachmentError(f"Not a file: {path}")

        mime_type = mimetypes.guess_type(resolved.name)[0] or DEFAULT_MIME
        kind = "image" if mime_type.startswith("image/") else "file"
        max_bytes = max_image_bytes if kind == "image" else max_file_bytes
        size = resolved.stat().st_size
        if size > max_bytes:
            max_mb = max_bytes / (1024 * 1024)
            raise AttachmentError(f"{kind.capitalize()} too large (max {max_mb:.1f}MB)")

        try:
            data = resolved.read_bytes()
        except OSError as exc:
            raise AttachmentError(f"Error reading {kind} {path}: {exc}") from exc
        return cls(name=resolved.name, data=data, mime_type=mime_type)


class AttachmentEncoder:
    """Turn raw files into attachments, concurrently and failure-tolerant."""

    def __init__(
        self,
        *,
        max_image_edge: int = MAX_IMAGE_EDGE,
        image_quality: int = IMAGE_QUALITY,
    ) -> None:
        self.max_image_edge = max(1, max_image_edge)
        self.image_quality = min(100, max(1, image_quality))

    def encode_image(self, raw: RawFile) -> Attachment:
        """Downscale (never upscale) and recompress an image to a data URI."""
        with Image.open(io.BytesIO(raw.data)) as source:
            image = ImageOps.exif_transpose(source)
            image.thumbnail((self.max_image_edge, self.max_image_edge))
            if image.mode not in ("RGB", "L"):
                image = image.convert("RGB")
            buffer = io.BytesIO()
            image.save(buffer, format="JPEG", quality=self.image_quality)
        encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
        return Attachment(
            kind=AttachmentKind.IMAGE,
            content=f"data:{ENCODED_IMAGE_MIME};base64,{encoded}",
            name=raw.name,
            mime_type=ENCODED_IMAGE_MIME,
        )

    @staticmethod
    def encode_text(raw: RawFile) -> Attachment:
        # Undecodable bytes become replacement characters, never an error.
        return Attachment(
            kind=AttachmentKind.FILE,
            content=raw.data.decode("utf-8", errors="replace"),
            name=raw.name,
            mime_type=raw.mime_type,
        )

    def encode(self, raw: RawFile) -> Attachment | None:
        """Encode one file; returns None when the image cannot be processed."""
        if not raw.is_image:
            return self.encode_text(raw)
        try:
            return self.encode_image(raw)
        except (
            UnidentifiedImageError,
            Image.DecompressionBombError,
            OSError,
            ValueError,
        ) as exc:
            LOGGER.warning(
                "attachment.encode.failed",
                extra={
                    "event": "attachment.encode.failed",
                    "name": raw.name,
                    "mime_type": raw.mime_type,
                    "error": str(exc),
                },
            )
            return None

    async def encode_batch(self, files: Iterable[RawFile]) -> list[Attachment]:
        """Encode all files concurrently; failures are dropped, order is kept."""
        pending = list(files)
        results = await asyncio.gather(
            *(asyncio.to_thread(self.encode, raw) for raw in pending)
        )
        attachments = [item for item in results if item is not None]
        LOGGER.info(
            "attachment.batch.encoded",
            extra={
                "event": "attachment.batch.encoded",
                "requested": len(pending),
                "encoded": len(attachments),
            },
        )
        return attachments


@dataclass
class PendingAttachments:
    """Composer attachments awaiting the next send."""

    items: list[Attachment] = field(default_factory=list)

    @property
    def images(self) -> list[Attachment]:
        return [item for item in self.items if item.is_image]

    @property
    def files(self) -> list[Attachment]:
        return [item for item in self.items if not item.is_image]

    def extend(self, attachments: Sequence[Attachment]) -> None:
        """Append a settled batch in one update."""
        self.items = [*self.items, *attachments]

    def remove(self, index: int) -> Attachment:
        """Drop the attachment at ``index`` and return it."""
        return self.items.pop(index)

    def clear(self) -> None:
        self.items = []

    def take(self) -> list[Attachment]:
        """Hand over every pending attachment and reset the composer."""
        taken, self.items = self.items, []
        return taken

    def has_any(self) -> bool:
        return bool(self.items)

    async def add_files(self, encoder: AttachmentEncoder, files: Iterable[RawFile]) -> int:
        """Encode a batch and append whatever succeeded; returns the count added."""
        attachments = await encoder.encode_batch(files)
        self.extend(attachments)
        return len(attachments)


def fold_attachments(
    text: str, attachments: Sequence[Attachment]
) -> tuple[str, tuple[str, ...]]:
    """Split attachments into the outgoing image list and inline file text."""
    images = tuple(item.content for item in attachments if item.is_image)
    file_blocks = [
        format_file_block(item.name, item.content)
        for item in attachments
        if not item.is_image
    ]
    if not file_blocks:
        return text, images
    inline = "\n\n".join(file_blocks)
    content = f"{text}\n\n{inline}" if text else inline
    return content, images
