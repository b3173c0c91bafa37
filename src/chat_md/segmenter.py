"""Split a rendered conversation into turns and assemble the Markdown document."""

from typing import Dict, List, Optional
from loguru import logger
from bs4 import BeautifulSoup
from bs4.element import Tag

from chat_md.converter import MarkdownConverter
from chat_md.document import (
    BlockKind,
    Extraction,
    ExtractionFailure,
    ExtractionResult,
    ExtractOptions,
    ImageReference,
    TurnBlock,
)
from chat_md.media import ImageResolver, is_likely_content_image
from chat_md.text_utils import DEFAULT_TITLE, sanitize_filename_part

TURN_SELECTOR = 'article[data-testid^="conversation-turn-"]'
AUTHOR_ROLE_ATTR = 'data-message-author-role'
TURN_ROLE_ATTR = 'data-turn'
USER_TEXT_SELECTOR = '.whitespace-pre-wrap'
MARKDOWN_BODY_SELECTOR = '.markdown'
RESULT_LABEL = 'Result'
NO_TURNS_ERROR = "No conversation turns found."


class DocumentOrder:
    """Total order over the nodes of one tree, following traversal order.

    Positions are recorded once from a single walk of the tree, so comparing
    two nodes is a dictionary lookup. Nodes are keyed by identity because bs4
    tags compare equal when their markup is equal.
    """

    def __init__(self, root: Tag):
        self._positions: Dict[int, int] = {id(root): 0}
        for index, node in enumerate(root.descendants, 1):
            self._positions[id(node)] = index

    def position(self, node) -> int:
        return self._positions[id(node)]

    def sort(self, blocks: List[TurnBlock]) -> List[TurnBlock]:
        """Sort blocks by anchor position; ties keep their original order."""
        return sorted(blocks, key=lambda block: self.position(block.anchor))


def has_conversation(soup: BeautifulSoup) -> bool:
    """Check whether a document contains any conversation turns."""
    return soup.select_one(TURN_SELECTOR) is not None


class ConversationExtractor:
    """Turn a rendered chat page into one Markdown document."""

    def extract(self, soup: BeautifulSoup, options: Optional[ExtractOptions] = None) -> Extraction:
        """Extract the conversation from a parsed document.

        Args:
            soup: Parsed conversation page
            options: Extraction options (image download, title override, base URL)

        Returns:
            ExtractionResult, or ExtractionFailure if no turns were found
        """
        options = options or ExtractOptions()
        title = sanitize_filename_part(options.title_override
                                      or self._document_title(soup)
                                      or options.fallback_title
                                      or DEFAULT_TITLE)
        assets_folder = f"{title}-assets"

        root = self._find_root(soup)
        turns = root.select(TURN_SELECTOR)
        if not turns:
            logger.warning("No conversation turns found in document")
            return ExtractionFailure(error=NO_TURNS_ERROR)

        logger.info("Extracting conversation '{}': {} turns", title, len(turns))

        converter = MarkdownConverter(
            download_images=options.download_images,
            resolver=ImageResolver(assets_folder),
            base_url=options.base_url or self._document_base_url(soup),
        )
        order = DocumentOrder(soup)
        images: List[ImageReference] = []

        sections = [f"# {title}\n\n"]
        for turn in turns:
            sections.append(self._convert_turn(turn, converter, order, images))

        markdown = ''.join(sections).strip() + '\n'
        logger.info("Extracted {} characters of markdown, {} images", len(markdown), len(images))

        return ExtractionResult(
            title=title,
            filename=f"{title}.md",
            markdown=markdown,
            images=images if options.download_images else [],
        )

    @staticmethod
    def _document_title(soup: BeautifulSoup) -> str:
        title_el = soup.select_one('head > title') or soup.find('title')
        return title_el.get_text().strip() if title_el else ''

    @staticmethod
    def _document_base_url(soup: BeautifulSoup) -> Optional[str]:
        base = soup.find('base', href=True)
        return base['href'] if base else None

    @staticmethod
    def _find_root(soup: BeautifulSoup) -> Tag:
        return (soup.select_one('main')
                or soup.select_one('[role="main"]')
                or soup.body
                or soup)

    def _convert_turn(self, turn: Tag, converter: MarkdownConverter, order: DocumentOrder,
                      images: List[ImageReference]) -> str:
        role = turn.get(TURN_ROLE_ATTR) or ''
        messages = turn.select(f'[{AUTHOR_ROLE_ATTR}]')
        if not messages:
            logger.debug("Skipping turn without messages: {}", turn.get('data-testid'))
            return ''

        if role == 'user':
            return self._convert_user_turn(messages, converter, images)
        if role == 'assistant':
            return self._convert_assistant_turn(turn, messages, converter, order, images)
        return self._convert_other_turn(messages, converter, images)

    @staticmethod
    def _convert_user_turn(messages: List[Tag], converter: MarkdownConverter,
                           images: List[ImageReference]) -> str:
        user_messages = [m for m in messages if m.get(AUTHOR_ROLE_ATTR) == 'user']
        if not user_messages:
            return ''

        parts = ["## User\n\n"]
        for message in user_messages:
            text_el = message.select_one(USER_TEXT_SELECTOR)
            text = (text_el if text_el is not None else message).get_text().strip()
            if text:
                parts.append(f"{text}\n\n")

            for img in message.find_all('img'):
                if not is_likely_content_image(img):
                    continue
                image_md = converter.convert_element(img, images).strip()
                if image_md:
                    parts.append(f"{image_md}\n\n")
        return ''.join(parts)

    def _convert_assistant_turn(self, turn: Tag, messages: List[Tag], converter: MarkdownConverter,
                                order: DocumentOrder, images: List[ImageReference]) -> str:
        parts = ["## Assistant\n\n"]
        blocks = order.sort(self.collect_assistant_blocks(turn, messages))

        seen = set()
        for block in blocks:
            if id(block.anchor) in seen:
                continue
            seen.add(id(block.anchor))

            if block.kind == BlockKind.TOOL_OUTPUT:
                output = block.anchor.get_text().lstrip('\n').rstrip()
                if not output.strip():
                    continue
                parts.append(f"**Result:**\n\n```text\n{output}\n```\n\n")
                continue

            chunk = converter.convert_element(block.anchor, images).strip()
            if chunk:
                parts.append(f"{chunk}\n\n")
        return ''.join(parts)

    @staticmethod
    def _convert_other_turn(messages: List[Tag], converter: MarkdownConverter,
                            images: List[ImageReference]) -> str:
        parts = []
        for message in messages:
            role = message.get(AUTHOR_ROLE_ATTR) or 'unknown'
            parts.append(f"## {role}\n\n{converter.convert_element(message, images).strip()}\n\n")
        return ''.join(parts)

    def collect_assistant_blocks(self, turn: Tag, messages: List[Tag]) -> List[TurnBlock]:
        """Gather assistant message bodies plus tool blocks rendered outside them."""
        blocks = []
        for message in messages:
            if message.get(AUTHOR_ROLE_ATTR) != 'assistant':
                continue
            body = message.select_one(MARKDOWN_BODY_SELECTOR)
            blocks.append(TurnBlock(BlockKind.ASSISTANT_MESSAGE, body if body is not None else message))

        for pre in turn.find_all('pre'):
            if self._inside_message(pre):
                continue
            if pre.find('code') is not None:
                blocks.append(TurnBlock(BlockKind.TOOL_CODE, pre))
            elif self._looks_like_result(pre):
                blocks.append(TurnBlock(BlockKind.TOOL_OUTPUT, pre))

        logger.debug("Assistant turn blocks: {}", [block.kind.value for block in blocks])
        return blocks

    @staticmethod
    def _inside_message(el: Tag) -> bool:
        return el.has_attr(AUTHOR_ROLE_ATTR) or el.find_parent(attrs={AUTHOR_ROLE_ATTR: True}) is not None

    @staticmethod
    def _looks_like_result(pre: Tag) -> bool:
        """A plain <pre> whose enclosing div also holds a "Result" label."""
        container = pre.find_parent('div')
        if container is None:
            return False
        return any(div.get_text().strip() == RESULT_LABEL for div in container.find_all('div'))
