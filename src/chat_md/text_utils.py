"""Small text helpers shared by the converter, segmenter and packager."""

import codecs
import re
from typing import Optional
from urllib.parse import quote

from chat_md.errors import EncodingUnavailableError

DEFAULT_TITLE = "ChatGPT Conversation"

BLOCK_TAGS = {'p', 'div', 'section', 'article', 'ul', 'ol', 'li', 'pre', 'table', 'hr',
              'h1', 'h2', 'h3', 'h4', 'h5', 'h6'}

CONTROL_CHARS_PATTERN = re.compile(r'[\x00-\x1f\x7f]')
ILLEGAL_FILENAME_PATTERN = re.compile(r'[<>:"/\\|?*]+')
WHITESPACE_PATTERN = re.compile(r'\s+')
LANGUAGE_CLASS_PATTERN = re.compile(r'\blanguage-([a-zA-Z0-9_+-]+)\b')

# Characters encodeURI leaves alone besides alphanumerics and -_.~
URI_SAFE_CHARS = ";,/?:@&=+$!*'()#"


def sanitize_filename_part(value: Optional[str]) -> str:
    """Turn a title into something safe to use as a file name.

    Control characters are dropped, characters illegal on common filesystems
    become spaces, whitespace runs collapse to one space. An empty result
    falls back to DEFAULT_TITLE.
    """
    text = str(value if value is not None else "").strip()
    text = CONTROL_CHARS_PATTERN.sub('', text)
    text = ILLEGAL_FILENAME_PATTERN.sub(' ', text)
    text = WHITESPACE_PATTERN.sub(' ', text).strip()
    return text or DEFAULT_TITLE


def normalize_text(text: Optional[str]) -> str:
    """Collapse whitespace runs to a single space (no trimming)."""
    return WHITESPACE_PATTERN.sub(' ', text or '')


def clean_cell_text(text: Optional[str]) -> str:
    """Normalize table cell text and escape pipes."""
    return normalize_text(text).replace('|', '\\|').strip()


def escape_inline_code(text: Optional[str]) -> str:
    """Wrap text in a backtick code span that survives embedded backticks."""
    text = text or ''
    if '`' not in text:
        return f"`{text}`"
    return f"``{text.replace('``', '` `')}``"


def link_destination(raw: Optional[str]) -> str:
    """Percent-encode a URL and wrap it in angle brackets for a Markdown link."""
    return f"<{quote(raw or '', safe=URI_SAFE_CHARS)}>"


def class_string(element) -> str:
    """Return an element's class attribute as one space-joined string."""
    classes = element.get('class') or []
    if isinstance(classes, str):
        return classes
    return ' '.join(classes)


def extract_language(code_el) -> str:
    """Read the language token from a `language-<token>` class, if any."""
    if code_el is None:
        return ''
    match = LANGUAGE_CLASS_PATTERN.search(class_string(code_el))
    return match.group(1) if match else ''


def is_block_tag(name: Optional[str]) -> bool:
    """Whether a tag separates its content from siblings with a blank line."""
    return (name or '').lower() in BLOCK_TAGS


def encode_markdown(markdown: str, encoding: str = 'utf-8') -> bytes:
    """Encode Markdown text for delivery.

    Raises:
        EncodingUnavailableError: If the codec is unknown or cannot represent the text
    """
    try:
        codecs.lookup(encoding)
    except LookupError as e:
        raise EncodingUnavailableError(f"Text encoding not available: {encoding}") from e
    try:
        return markdown.encode(encoding)
    except UnicodeEncodeError as e:
        raise EncodingUnavailableError(f"Markdown cannot be encoded as {encoding}: {e.reason}") from e
