"""Split a message body into typed, renderable content blocks.

The scanner walks the text once. File attachment spans are cut out first;
the remaining text is tokenized into plain runs and fenced code regions, and
a fence whose only content is a single markdown image is unwrapped so the
image renders instead of showing up as code.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass
import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import Message

FENCE = "```"
FILE_HEADER_RE = re.compile(r"--- File: (?P<name>[^\n]+?) ---")
IMAGE_REF_RE = re.compile(r"!\[(?P<alt>[^\]]*)\]\((?P<src>[^)]*)\)")
RAW_DATA_URI_RE = re.compile(r"data:image/[A-Za-z0-9.+-]+;base64,[A-Za-z0-9+/]+=*")
FENCE_INFO_RE = re.compile(r"[\w-]*")

GENERATED_IMAGE_ALT = "Generated Image"
ATTACHED_IMAGE_ALT = "Attached"


def file_header(name: str) -> str:
    return f"--- File: {name} ---"


def file_footer(name: str) -> str:
    return f"--- End of File {name} ---"


def format_file_block(name: str, body: str) -> str:
    """Render one file attachment in the inline delimiter format."""
    return f"{file_header(name)}\n{body}\n{file_footer(name)}"


@dataclass(frozen=True)
class FileBlock:
    """A collapsible attached file."""

    name: str
    body: str

    @property
    def char_count(self) -> int:
        return len(self.body)

    def to_text(self) -> str:
        return format_file_block(self.name, self.body)


@dataclass(frozen=True)
class ImageBlock:
    """A standalone image reference."""

    alt_text: str
    source: str

    def to_text(self) -> str:
        return f"![{self.alt_text}]({self.source})"


@dataclass(frozen=True)
class ProseBlock:
    """Markdown text handed to an external renderer."""

    markdown: str

    def to_text(self) -> str:
        return self.markdown


ContentBlock = FileBlock | ImageBlock | ProseBlock


@dataclass(frozen=True)
class _Piece:
    text: str
    fenced: bool = False


def _strip_one_newline(body: str) -> str:
    if body.startswith("\r\n"):
        body = body[2:]
    elif body.startswith("\n"):
        body = body[1:]
    if body.endswith("\r\n"):
        body = body[:-2]
    elif body.endswith("\n"):
        body = body[:-1]
    return body


def _split_files(text: str) -> Iterator[str | FileBlock]:
    """Yield plain text spans and :class:`FileBlock` items in order."""
    cursor = 0
    search_from = 0
    while True:
        header = FILE_HEADER_RE.search(text, search_from)
        if header is None:
            break
        name = header.group("name")
        footer_at = text.find(file_footer(name), header.end())
        if footer_at < 0:
            # Unterminated header: leave it in the surrounding text.
            search_from = header.end()
            continue
        if header.start() > cursor:
            yield text[cursor : header.start()]
        yield FileBlock(name=name, body=_strip_one_newline(text[header.end() : footer_at]))
        cursor = footer_at + len(file_footer(name))
        search_from = cursor
    if cursor < len(text):
        yield text[cursor:]


def _unwrap_fence(interior: str) -> str | None:
    """Return the bare image reference when a fence holds exactly one image."""
    info = FENCE_INFO_RE.match(interior)
    candidates = [interior]
    if info is not None and info.end() > 0:
        rest = interior[info.end() :]
        if rest.startswith("\n"):
            candidates.insert(0, rest)
    for candidate in candidates:
        stripped = candidate.strip()
        if IMAGE_REF_RE.fullmatch(stripped):
            return stripped
    return None


def _scan_fences(span: str) -> list[_Piece]:
    """Tokenize a text span into plain runs and fenced code regions."""
    pieces: list[_Piece] = []
    cursor = 0
    plain_start = 0
    while True:
        opening = span.find(FENCE, cursor)
        if opening < 0:
            break
        closing = span.find(FENCE, opening + len(FENCE))
        if closing < 0:
            break
        end = closing + len(FENCE)
        unwrapped = _unwrap_fence(span[opening + len(FENCE) : closing])
        if unwrapped is not None:
            pieces.append(_Piece(span[plain_start:opening]))
            pieces.append(_Piece(unwrapped))
        else:
            pieces.append(_Piece(span[plain_start:opening]))
            pieces.append(_Piece(span[opening:end], fenced=True))
        plain_start = end
        cursor = end
    pieces.append(_Piece(span[plain_start:]))
    return [piece for piece in pieces if piece.text]


def _merge(pieces: Sequence[_Piece]) -> str:
    return "".join(piece.text for piece in pieces)


def _wrap_raw_data_uri(text: str) -> str:
    stripped = text.strip()
    if RAW_DATA_URI_RE.fullmatch(stripped):
        return f"![{GENERATED_IMAGE_ALT}]({stripped})"
    return text


def _split_images(pieces: Sequence[_Piece]) -> list[ContentBlock]:
    """Break prose around image references that sit outside code fences."""
    blocks: list[ContentBlock] = []
    prose: list[str] = []

    def flush() -> None:
        markdown = "".join(prose).strip()
        prose.clear()
        if markdown:
            blocks.append(ProseBlock(markdown))

    for piece in pieces:
        if piece.fenced:
            prose.append(piece.text)
            continue
        cursor = 0
        for match in IMAGE_REF_RE.finditer(piece.text):
            prose.append(piece.text[cursor : match.start()])
            flush()
            blocks.append(ImageBlock(alt_text=match.group("alt"), source=match.group("src")))
            cursor = match.end()
        prose.append(piece.text[cursor:])
    flush()
    return blocks


def _segment_span(span: str, split_images: bool) -> list[ContentBlock]:
    if not span.strip():
        return []
    pieces = _scan_fences(span)
    raw = _merge(pieces)
    merged = _wrap_raw_data_uri(raw)
    if not split_images:
        return [ProseBlock(merged.strip())]
    if merged != raw:
        # The span was a bare data URI, now a single image reference.
        pieces = [_Piece(merged)]
    return _split_images(pieces)


def segment(text: str, *, split_images: bool = False) -> list[ContentBlock]:
    """Classify ``text`` into an ordered list of content blocks.

    With ``split_images`` the prose is further split around markdown image
    references, yielding :class:`ImageBlock` items in place.
    """
    blocks: list[ContentBlock] = []
    for item in _split_files(text):
        if isinstance(item, FileBlock):
            blocks.append(item)
        else:
            blocks.extend(_segment_span(item, split_images))
    return blocks


def join_blocks(blocks: Sequence[ContentBlock]) -> str:
    """Render blocks back into linear message text."""
    return "\n".join(block.to_text() for block in blocks)


def message_blocks(message: Message, *, split_images: bool = False) -> list[ContentBlock]:
    """Blocks for a stored message: attached images first, then its content."""
    blocks: list[ContentBlock] = [
        ImageBlock(alt_text=ATTACHED_IMAGE_ALT, source=image) for image in message.images
    ]
    blocks.extend(segment(message.content, split_images=split_images))
    return blocks
