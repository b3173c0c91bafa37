"""Export engine: parse a saved conversation page and write Markdown or a zip."""

from pathlib import Path
from typing import Optional, Union
from urllib.parse import quote
from loguru import logger
from bs4 import BeautifulSoup

from chat_md.archive import ArchivePackager, ImageFetcher
from chat_md.config import Settings
from chat_md.document import Extraction, ExtractOptions, ExportResult
from chat_md.errors import ChatMdError
from chat_md.segmenter import ConversationExtractor
from chat_md.text_utils import encode_markdown

Source = Union[Path, str]

# Characters encodeURIComponent leaves alone besides alphanumerics and -_.~
URI_COMPONENT_SAFE_CHARS = "!*'()"


def markdown_data_url(markdown: str, encoding: str = 'utf-8') -> str:
    """Build a data: URL carrying the Markdown text.

    Raises:
        EncodingUnavailableError: If the text cannot be encoded with ``encoding``
    """
    payload = quote(encode_markdown(markdown, encoding), safe=URI_COMPONENT_SAFE_CHARS)
    return f"data:text/markdown;charset={encoding},{payload}"


class Exporter:
    """Orchestrate extraction and delivery of one conversation."""

    def __init__(self, settings: Optional[Settings] = None,
                 extractor: Optional[ConversationExtractor] = None,
                 packager: Optional[ArchivePackager] = None):
        self.settings = settings or Settings()
        self.extractor = extractor or ConversationExtractor()
        self.packager = packager or ArchivePackager(
            ImageFetcher(timeout=self.settings.request_timeout),
            encoding=self.settings.encoding,
        )
        logger.debug("Exporter initialized")

    @staticmethod
    def load_document(source: Source) -> BeautifulSoup:
        """Parse a conversation page from a file path or an HTML string."""
        if isinstance(source, Path):
            logger.info("Reading conversation page: {}", source)
            html = source.read_text(encoding='utf-8', errors='replace')
        else:
            html = source
        return BeautifulSoup(html, 'html.parser')

    def extract(self, source: Source, download_images: Optional[bool] = None,
                title_override: Optional[str] = None, base_url: Optional[str] = None) -> Extraction:
        """Parse and extract without writing anything."""
        if download_images is None:
            download_images = self.settings.download_images
        options = ExtractOptions(
            download_images=download_images,
            title_override=title_override,
            fallback_title=self.settings.default_title or None,
            base_url=base_url,
        )
        return self.extractor.extract(self.load_document(source), options)

    def export(self, source: Source, output_dir: Optional[Path] = None,
               download_images: Optional[bool] = None, title_override: Optional[str] = None,
               base_url: Optional[str] = None) -> ExportResult:
        """Export a conversation to ``<title>.md`` or, with images, ``<title>.zip``.

        Args:
            source: Path to a saved page, or the page's HTML
            output_dir: Destination directory (defaults to the configured one)
            download_images: Bundle images into a zip (defaults to the setting)
            title_override: Title to use instead of the page title
            base_url: URL that relative image sources are resolved against

        Returns:
            ExportResult describing the written file or the failure reason
        """
        output_dir = output_dir or self.settings.output_path

        try:
            extraction = self.extract(source, download_images, title_override, base_url)
            if not extraction.ok:
                logger.error("Extraction failed: {}", extraction.error)
                return ExportResult(success=False, error=extraction.error)

            output_dir.mkdir(parents=True, exist_ok=True)

            if extraction.images:
                logger.info("Bundling {} images into archive", len(extraction.images))
                archive = self.packager.build_archive(
                    extraction.title, extraction.filename, extraction.markdown, extraction.images
                )
                output_path = output_dir / f"{extraction.title}.zip"
                output_path.write_bytes(archive)
            else:
                output_path = output_dir / extraction.filename
                output_path.write_bytes(encode_markdown(extraction.markdown, self.settings.encoding))

            logger.success("Exported: {}", output_path)
            return ExportResult(
                success=True,
                title=extraction.title,
                output_path=output_path,
                image_count=len(extraction.images),
            )

        except (ChatMdError, OSError) as e:
            logger.error("Export failed: {}", e)
            return ExportResult(success=False, error=str(e))
