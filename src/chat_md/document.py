"""Data models for chat-md extraction and export."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union


@dataclass(frozen=True)
class TraversalContext:
    """Per-call state carried down the conversion recursion."""
    in_preformatted: bool = False   # keep whitespace verbatim
    in_inline: bool = False         # inside a heading/paragraph/link run
    list_depth: int = 0             # nesting level of the enclosing list


@dataclass
class ImageReference:
    """An image registered during conversion, fetched later by the packager."""
    source_url: str
    placeholder_key: str        # image-001, image-002, ...
    alt_text: str
    ordinal: int                # 1-based encounter order
    placeholder_path: str       # <assets folder>/<placeholder key>, no extension


class BlockKind(str, Enum):
    """Kinds of content that make up an assistant turn."""
    ASSISTANT_MESSAGE = 'assistant_message'
    TOOL_CODE = 'tool_code'
    TOOL_OUTPUT = 'tool_output'


@dataclass
class TurnBlock:
    """One piece of assistant-turn content anchored at a markup element."""
    kind: BlockKind
    anchor: object


@dataclass(frozen=True)
class ExtractOptions:
    """Options recognized by the conversation extractor."""
    download_images: bool = False
    title_override: Optional[str] = None
    fallback_title: Optional[str] = None     # used when the document has no title
    base_url: Optional[str] = None


@dataclass(frozen=True)
class ExtractionResult:
    """Markdown produced from one conversation document."""
    title: str
    filename: str
    markdown: str
    images: List[ImageReference] = field(default_factory=list)

    ok = True


@dataclass(frozen=True)
class ExtractionFailure:
    """Tagged failure returned when the document holds no conversation."""
    error: str

    ok = False


Extraction = Union[ExtractionResult, ExtractionFailure]


@dataclass
class ExportResult:
    """Result of an export operation."""
    success: bool
    title: Optional[str] = None
    output_path: Optional[Path] = None
    image_count: int = 0
    error: Optional[str] = None
