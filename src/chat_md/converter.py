"""Convert rendered conversation HTML (BeautifulSoup trees) into Markdown."""

import re
from dataclasses import replace
from enum import Enum
from typing import Callable, Dict, List, Optional
from urllib.parse import urljoin
from loguru import logger
from bs4.element import NavigableString, PreformattedString, Tag

from chat_md.document import ImageReference, TraversalContext
from chat_md.media import ImageResolver, is_likely_content_image
from chat_md.text_utils import (
    clean_cell_text,
    escape_inline_code,
    extract_language,
    is_block_tag,
    link_destination,
    normalize_text,
)

HEADING_PATTERN = re.compile(r'^h([1-6])$')


class NodeKind(Enum):
    """Closed set of node kinds the converter knows how to render."""
    TEXT = 'text'
    OTHER = 'other'                 # comments, doctypes, processing instructions
    DISPLAY_MATH = 'display_math'
    INLINE_MATH = 'inline_math'
    IGNORED = 'ignored'
    LINE_BREAK = 'line_break'
    RULE = 'rule'
    HEADING = 'heading'
    PARAGRAPH = 'paragraph'
    STRONG = 'strong'
    EMPHASIS = 'emphasis'
    INLINE_CODE = 'inline_code'
    CODE_BLOCK = 'code_block'
    LINK = 'link'
    IMAGE = 'image'
    LIST = 'list'
    LIST_ITEM = 'list_item'
    TABLE = 'table'
    BLOCKQUOTE = 'blockquote'
    CONTAINER = 'container'


TAG_KINDS = {
    'script': NodeKind.IGNORED,
    'style': NodeKind.IGNORED,
    'noscript': NodeKind.IGNORED,
    'template': NodeKind.IGNORED,
    'button': NodeKind.IGNORED,
    'svg': NodeKind.IGNORED,
    'use': NodeKind.IGNORED,
    'label': NodeKind.IGNORED,
    'br': NodeKind.LINE_BREAK,
    'hr': NodeKind.RULE,
    'p': NodeKind.PARAGRAPH,
    'strong': NodeKind.STRONG,
    'b': NodeKind.STRONG,
    'em': NodeKind.EMPHASIS,
    'i': NodeKind.EMPHASIS,
    'code': NodeKind.INLINE_CODE,
    'pre': NodeKind.CODE_BLOCK,
    'a': NodeKind.LINK,
    'img': NodeKind.IMAGE,
    'ul': NodeKind.LIST,
    'ol': NodeKind.LIST,
    'li': NodeKind.LIST_ITEM,
    'table': NodeKind.TABLE,
    'blockquote': NodeKind.BLOCKQUOTE,
}


def classify(node) -> NodeKind:
    """Map a markup node to the kind that decides how it is rendered."""
    if isinstance(node, PreformattedString):
        return NodeKind.OTHER
    if isinstance(node, NavigableString):
        return NodeKind.TEXT
    if not isinstance(node, Tag):
        return NodeKind.OTHER

    classes = node.get('class') or []
    if 'katex-display' in classes:
        return NodeKind.DISPLAY_MATH
    if 'katex' in classes:
        return NodeKind.INLINE_MATH

    name = (node.name or '').lower()
    if HEADING_PATTERN.match(name):
        return NodeKind.HEADING
    return TAG_KINDS.get(name, NodeKind.CONTAINER)


# Math source extractors, tried in order. KaTeX renders each formula twice
# (MathML and HTML), so plain text extraction concatenates both.

def _tex_annotation(el: Tag) -> str:
    annotation = el.find('annotation', attrs={'encoding': 'application/x-tex'})
    return annotation.get_text().strip() if annotation else ''


def _mathml_alttext(el: Tag) -> str:
    math = el.find('math')
    return (math.get('alttext') or '').strip() if math else ''


def _rendered_math(el: Tag) -> str:
    rendered = el.find(class_='katex-html')
    return normalize_text(rendered.get_text()).strip() if rendered else ''


MATH_SOURCE_EXTRACTORS = (_tex_annotation, _mathml_alttext, _rendered_math)


def extract_math_source(el: Tag) -> str:
    """Return the best available source notation for a rendered formula."""
    for extractor in MATH_SOURCE_EXTRACTORS:
        source = extractor(el)
        if source:
            return source
    return ''


class MarkdownConverter:
    """Render markup subtrees as Markdown.

    Images found along the way are appended to an explicit ``images`` list
    passed through every call, so one conversion pass yields both the text and
    the references the archive packager needs later.
    """

    def __init__(self, download_images: bool = False, resolver: Optional[ImageResolver] = None,
                 base_url: Optional[str] = None):
        if download_images and resolver is None:
            raise ValueError("An ImageResolver is required when downloading images")
        self.download_images = download_images
        self.resolver = resolver
        self.base_url = base_url
        self._handlers: Dict[NodeKind, Callable[[object, TraversalContext, List[ImageReference]], str]] = {
            NodeKind.TEXT: self._convert_text,
            NodeKind.OTHER: self._convert_nothing,
            NodeKind.DISPLAY_MATH: self._convert_display_math,
            NodeKind.INLINE_MATH: self._convert_inline_math,
            NodeKind.IGNORED: self._convert_nothing,
            NodeKind.LINE_BREAK: lambda el, ctx, images: '\n',
            NodeKind.RULE: lambda el, ctx, images: '\n---\n\n',
            NodeKind.HEADING: self._convert_heading,
            NodeKind.PARAGRAPH: self._convert_paragraph,
            NodeKind.STRONG: self._convert_strong,
            NodeKind.EMPHASIS: self._convert_emphasis,
            NodeKind.INLINE_CODE: self._convert_inline_code,
            NodeKind.CODE_BLOCK: self._convert_code_block,
            NodeKind.LINK: self._convert_link,
            NodeKind.IMAGE: self._convert_image,
            NodeKind.LIST: self._convert_list,
            NodeKind.LIST_ITEM: self.convert_children,
            NodeKind.TABLE: self._convert_table,
            NodeKind.BLOCKQUOTE: self._convert_blockquote,
            NodeKind.CONTAINER: self._convert_container,
        }

    def convert_element(self, node, images: Optional[List[ImageReference]] = None) -> str:
        """Convert a subtree starting from a fresh top-level context."""
        if images is None:
            images = []
        return self.convert(node, TraversalContext(), images)

    def convert(self, node, ctx: TraversalContext, images: List[ImageReference]) -> str:
        """Convert one node under the given context."""
        return self._handlers[classify(node)](node, ctx, images)

    def convert_children(self, el: Tag, ctx: TraversalContext, images: List[ImageReference]) -> str:
        return ''.join(self.convert(child, ctx, images) for child in el.children)

    @staticmethod
    def _convert_nothing(el, ctx: TraversalContext, images: List[ImageReference]) -> str:
        return ''

    @staticmethod
    def _convert_text(node, ctx: TraversalContext, images: List[ImageReference]) -> str:
        text = str(node)
        if not text:
            return ''
        if ctx.in_preformatted:
            return text
        return normalize_text(text)

    def _convert_display_math(self, el: Tag, ctx: TraversalContext, images: List[ImageReference]) -> str:
        source = extract_math_source(el)
        if not source:
            return self._convert_container(el, ctx, images)
        return f"\n$$\n{source}\n$$\n\n"

    def _convert_inline_math(self, el: Tag, ctx: TraversalContext, images: List[ImageReference]) -> str:
        source = extract_math_source(el)
        if not source:
            return self._convert_container(el, ctx, images)
        return f"${source}$"

    def _convert_heading(self, el: Tag, ctx: TraversalContext, images: List[ImageReference]) -> str:
        level = int(HEADING_PATTERN.match(el.name.lower()).group(1))
        text = self.convert_children(el, replace(ctx, in_inline=True), images).strip()
        return f"\n{'#' * level} {text}\n\n"

    def _convert_paragraph(self, el: Tag, ctx: TraversalContext, images: List[ImageReference]) -> str:
        text = self.convert_children(el, replace(ctx, in_inline=True), images).strip()
        return f"{text}\n\n" if text else ''

    def _convert_strong(self, el: Tag, ctx: TraversalContext, images: List[ImageReference]) -> str:
        return f"**{self.convert_children(el, replace(ctx, in_inline=True), images)}**"

    def _convert_emphasis(self, el: Tag, ctx: TraversalContext, images: List[ImageReference]) -> str:
        return f"*{self.convert_children(el, replace(ctx, in_inline=True), images)}*"

    @staticmethod
    def _convert_inline_code(el: Tag, ctx: TraversalContext, images: List[ImageReference]) -> str:
        if ctx.in_preformatted:
            return el.get_text()
        return escape_inline_code(el.get_text().strip())

    @staticmethod
    def _convert_code_block(el: Tag, ctx: TraversalContext, images: List[ImageReference]) -> str:
        code_el = el.find('code')
        language = extract_language(code_el)
        raw = (code_el if code_el is not None else el).get_text()
        if raw.endswith('\n'):
            raw = raw[:-1]
        return f"\n```{language}\n{raw}\n```\n\n"

    def _convert_link(self, el: Tag, ctx: TraversalContext, images: List[ImageReference]) -> str:
        href = el.get('href') or ''
        text = self.convert_children(el, replace(ctx, in_inline=True), images).strip() or href
        if not href:
            return text
        return f"[{text}]({link_destination(href)})"

    def _convert_image(self, el: Tag, ctx: TraversalContext, images: List[ImageReference]) -> str:
        if not is_likely_content_image(el):
            logger.debug("Skipping non-content image: {}", el.get('src'))
            return ''
        alt = (el.get('alt') or '').strip()
        src = el.get('src') or ''
        url = urljoin(self.base_url, src) if self.base_url else src
        if not url:
            return ''

        if self.download_images:
            ref = self.resolver.register(images, url, alt)
            return f"![{alt}]({link_destination(ref.placeholder_path)})"

        return f"![{alt}]({link_destination(url)})"

    def _convert_list(self, el: Tag, ctx: TraversalContext, images: List[ImageReference]) -> str:
        ordered = el.name.lower() == 'ol'
        items = [child for child in el.children
                 if isinstance(child, Tag) and child.name.lower() == 'li']
        indent = '  ' * ctx.list_depth
        item_ctx = replace(ctx, list_depth=ctx.list_depth + 1)

        parts = []
        for number, item in enumerate(items, 1):
            marker = f"{number}. " if ordered else "- "
            lines = self.convert_children(item, item_ctx, images).strip().split('\n')
            parts.append(f"{indent}{marker}{lines[0]}\n")
            for line in lines[1:]:
                parts.append(f"{indent}   {line}\n")
        return ''.join(parts) + '\n'

    @staticmethod
    def _convert_table(el: Tag, ctx: TraversalContext, images: List[ImageReference]) -> str:
        rows = el.find_all('tr')
        if not rows:
            return ''

        def row_cells(row: Tag) -> List[str]:
            return [clean_cell_text(cell.get_text())
                    for cell in row.find_all(['td', 'th'], recursive=False)]

        first_cells = row_cells(rows[0])
        if rows[0].find('th', recursive=False) is not None:
            header = first_cells
            body = [row_cells(row) for row in rows[1:]]
        else:
            header = [f"Column {i + 1}" for i in range(len(first_cells))]
            body = [row_cells(row) for row in rows]

        col_count = max([len(header), 1] + [len(cells) for cells in body])

        def pad(cells: List[str]) -> List[str]:
            clipped = cells[:col_count]
            return clipped + [''] * (col_count - len(clipped))

        lines = [pad(header), ['---'] * col_count] + [pad(cells) for cells in body]
        return '\n'.join(f"| {' | '.join(cells)} |" for cells in lines) + '\n\n'

    def _convert_blockquote(self, el: Tag, ctx: TraversalContext, images: List[ImageReference]) -> str:
        inner = self.convert_children(el, ctx, images).strip()
        lines = [f"> {line}".rstrip() for line in inner.split('\n')]
        return '\n'.join(lines) + '\n\n'

    def _convert_container(self, el: Tag, ctx: TraversalContext, images: List[ImageReference]) -> str:
        out = self.convert_children(el, ctx, images)
        if is_block_tag(el.name) and out.strip():
            return f"{out}\n\n"
        return out
