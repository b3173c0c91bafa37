"""Tests for turn segmentation and whole-document extraction."""

import pytest
from bs4 import BeautifulSoup

from chat_md.document import BlockKind, ExtractionFailure, ExtractionResult, ExtractOptions
from chat_md.segmenter import ConversationExtractor, DocumentOrder, has_conversation
from chat_md.text_utils import DEFAULT_TITLE

from html_builders import ASSISTANT_HI, USER_HELLO, assistant, page, turn


@pytest.fixture
def extractor():
    return ConversationExtractor()


def extract(html, **options):
    return ConversationExtractor().extract(BeautifulSoup(html, "html.parser"), ExtractOptions(**options))


class TestEndToEnd:
    def test_user_and_assistant_turns(self):
        result = extract(page(turn(1, "user", USER_HELLO), turn(2, "assistant", ASSISTANT_HI)))

        assert isinstance(result, ExtractionResult)
        assert result.ok
        assert result.markdown == "# Test Chat\n\n## User\n\nHello\n\n## Assistant\n\nHi there\n"
        assert result.title == "Test Chat"
        assert result.filename == "Test Chat.md"
        assert result.images == []

    def test_code_block_in_assistant_turn(self):
        code = '<pre><code class="language-python">print(1)\n</code></pre>'
        result = extract(page(turn(1, "assistant", assistant(code))))
        assert result.markdown == "# Test Chat\n\n## Assistant\n\n```python\nprint(1)\n```\n"

    def test_table_in_assistant_turn(self):
        table = ("<table><thead><tr><th>A</th><th>B</th></tr></thead>"
                 "<tbody><tr><td>1</td><td>2</td><td>3</td></tr></tbody></table>")
        result = extract(page(turn(1, "assistant", assistant(table))))
        assert "| A | B |  |\n| --- | --- | --- |\n| 1 | 2 | 3 |" in result.markdown

    def test_single_trailing_newline(self):
        result = extract(page(turn(1, "assistant", assistant("<p>x</p><p></p><div> </div>"))))
        assert result.markdown.endswith("x\n")
        assert not result.markdown.endswith("\n\n")

    def test_no_turns_is_a_tagged_failure(self):
        result = extract("<html><body><main><p>Nothing here</p></main></body></html>")
        assert isinstance(result, ExtractionFailure)
        assert not result.ok
        assert result.error == "No conversation turns found."


class TestTitle:
    def test_override_wins(self):
        result = extract(page(turn(1, "user", USER_HELLO)), title_override="Custom: Name")
        assert result.title == "Custom Name"
        assert result.markdown.startswith("# Custom Name\n\n")

    def test_document_title_is_sanitized(self):
        result = extract(page(turn(1, "user", USER_HELLO), title="a/b | c"))
        assert result.title == "a b c"

    def test_missing_title_uses_default(self):
        result = extract(page(turn(1, "user", USER_HELLO), title=None))
        assert result.title == DEFAULT_TITLE

    def test_missing_title_uses_fallback_when_given(self):
        result = extract(page(turn(1, "user", USER_HELLO), title=None), fallback_title="Saved chat")
        assert result.title == "Saved chat"


class TestUserTurns:
    def test_prefers_pre_wrap_text(self):
        message = ('<div data-message-author-role="user"><span>Edit</span>'
                   '<div class="whitespace-pre-wrap">  line one\nline two  </div></div>')
        result = extract(page(turn(1, "user", message)))
        assert "## User\n\nline one\nline two\n" in result.markdown
        assert "Edit" not in result.markdown

    def test_falls_back_to_message_text(self):
        message = '<div data-message-author-role="user"><p>plain message</p></div>'
        result = extract(page(turn(1, "user", message)))
        assert "## User\n\nplain message" in result.markdown

    def test_one_heading_for_several_messages(self):
        messages = (
            '<div data-message-author-role="user"><div class="whitespace-pre-wrap">first</div></div>'
            '<div data-message-author-role="user"><div class="whitespace-pre-wrap">second</div></div>'
        )
        result = extract(page(turn(1, "user", messages)))
        assert result.markdown.count("## User") == 1
        assert "first\n\nsecond" in result.markdown

    def test_images_follow_text(self):
        message = ('<div data-message-author-role="user">'
                   '<img src="https://files.example.com/upload" alt="Uploaded image">'
                   '<img class="icon" src="https://files.example.com/icon.png">'
                   '<div class="whitespace-pre-wrap">Look at this</div></div>')
        result = extract(page(turn(1, "user", message), title="Chat"), download_images=True)

        assert "Look at this\n\n![Uploaded image](<Chat-assets/image-001>)" in result.markdown
        assert len(result.images) == 1
        assert result.images[0].source_url == "https://files.example.com/upload"
        assert result.images[0].placeholder_path == "Chat-assets/image-001"

    def test_turn_without_user_messages_is_skipped(self):
        message = '<div data-message-author-role="assistant"><p>odd</p></div>'
        result = extract(page(turn(1, "user", message), turn(2, "assistant", ASSISTANT_HI)))
        assert "## User" not in result.markdown


class TestAssistantTurns:
    TOOL_TURN = (
        assistant("<p>First</p>")
        + '<div class="tool"><pre><code class="language-python">x = 1</code></pre></div>'
        + '<div class="out"><div>Result</div><pre>42\n</pre></div>'
        + assistant("<p>Done</p>")
    )

    def test_tool_blocks_are_interleaved_by_position(self):
        result = extract(page(turn(1, "assistant", self.TOOL_TURN)))
        assert result.markdown.endswith(
            "## Assistant\n\n"
            "First\n\n"
            "```python\nx = 1\n```\n\n"
            "**Result:**\n\n```text\n42\n```\n\n"
            "Done\n"
        )

    def test_block_kinds(self, extractor):
        soup = BeautifulSoup(page(turn(1, "assistant", self.TOOL_TURN)), "html.parser")
        article = soup.find("article")
        messages = article.select("[data-message-author-role]")
        kinds = [block.kind for block in extractor.collect_assistant_blocks(article, messages)]
        assert kinds == [BlockKind.ASSISTANT_MESSAGE, BlockKind.ASSISTANT_MESSAGE,
                         BlockKind.TOOL_CODE, BlockKind.TOOL_OUTPUT]

    def test_code_inside_message_is_not_a_tool_block(self, extractor):
        body = assistant('<pre><code class="language-sh">ls</code></pre>')
        soup = BeautifulSoup(page(turn(1, "assistant", body)), "html.parser")
        article = soup.find("article")
        blocks = extractor.collect_assistant_blocks(article, article.select("[data-message-author-role]"))
        assert [block.kind for block in blocks] == [BlockKind.ASSISTANT_MESSAGE]

    def test_blank_result_is_skipped(self):
        body = assistant("<p>Hi</p>") + '<div><div>Result</div><pre>  \n</pre></div>'
        result = extract(page(turn(1, "assistant", body)))
        assert "**Result:**" not in result.markdown

    def test_result_keeps_indentation_and_drops_surrounding_blank_lines(self):
        body = assistant("<p>Hi</p>") + '<div><div>Result</div><pre>\n\n  indented\nline  \n\n</pre></div>'
        result = extract(page(turn(1, "assistant", body)))
        assert "**Result:**\n\n```text\n  indented\nline\n```" in result.markdown

    def test_plain_pre_without_result_label_is_ignored(self):
        body = assistant("<p>Hi</p>") + '<div><div>Output</div><pre>stray</pre></div>'
        result = extract(page(turn(1, "assistant", body)))
        assert "stray" not in result.markdown

    def test_shared_anchor_is_emitted_once(self):
        nested = ('<div data-message-author-role="assistant">'
                  '<div data-message-author-role="assistant">'
                  '<div class="markdown"><p>Nested</p></div></div></div>')
        result = extract(page(turn(1, "assistant", nested)))
        assert result.markdown.count("Nested") == 1

    def test_message_without_markdown_body(self):
        body = '<div data-message-author-role="assistant"><p>bare</p></div>'
        result = extract(page(turn(1, "assistant", body)))
        assert result.markdown.endswith("## Assistant\n\nbare\n")


class TestOtherTurns:
    def test_role_heading_per_message(self):
        body = ('<div data-message-author-role="tool"><p>Ran search</p></div>'
                '<div data-message-author-role=""><p>mystery</p></div>')
        result = extract(page(turn(1, "system", body)))
        assert "## tool\n\nRan search\n\n## unknown\n\nmystery" in result.markdown

    def test_turn_without_messages_is_skipped(self):
        result = extract(page(turn(1, "user", "<p>no message</p>"), turn(2, "assistant", ASSISTANT_HI)))
        assert result.markdown == "# Test Chat\n\n## Assistant\n\nHi there\n"


class TestRootAndOrder:
    def test_turns_outside_main_are_ignored(self):
        stray = turn(9, "user", USER_HELLO)
        html = (f"<html><body><nav>{stray}</nav>"
                f"<main>{turn(1, 'assistant', ASSISTANT_HI)}</main></body></html>")
        result = extract(html)
        assert "## User" not in result.markdown

    def test_body_is_used_without_main(self):
        html = f"<html><body>{turn(1, 'user', USER_HELLO)}</body></html>"
        assert extract(html).ok

    def test_document_order_follows_traversal(self):
        soup = BeautifulSoup("<div><p>a</p><p>b<span>c</span></p></div>", "html.parser")
        nodes = [soup.div] + soup.find_all(["p", "span"])
        order = DocumentOrder(soup)
        positions = [order.position(node) for node in nodes]
        assert positions == sorted(positions)
        assert len(set(positions)) == len(positions)

    def test_has_conversation(self):
        assert has_conversation(BeautifulSoup(page(turn(1, "user", USER_HELLO)), "html.parser"))
        assert not has_conversation(BeautifulSoup("<main></main>", "html.parser"))

    def test_base_tag_resolves_relative_images(self):
        body = assistant('<p><img src="/img/chart.png" alt="chart"></p>')
        html = page(turn(1, "assistant", body)).replace(
            "<head>", '<head><base href="https://chat.example.com/c/1">'
        )
        result = extract(html)
        assert "![chart](<https://chat.example.com/img/chart.png>)" in result.markdown
