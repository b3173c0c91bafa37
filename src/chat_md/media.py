"""Image reference registration, content filtering and placeholder resolution."""

import re
from typing import List, Optional, Tuple
from loguru import logger

from chat_md.document import ImageReference
from chat_md.text_utils import class_string, link_destination

ICON_MAX_SIZE = 64


def _dimension(value) -> float:
    """Parse a width/height attribute; anything unparseable counts as 0."""
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def is_likely_content_image(img) -> bool:
    """Decide whether an <img> is conversation content rather than UI chrome."""
    if img is None:
        return False
    src = img.get('src') or ''
    width = _dimension(img.get('width'))
    height = _dimension(img.get('height'))

    if not src:
        return False
    if 'icon' in class_string(img):
        return False
    if 0 < width <= ICON_MAX_SIZE and 0 < height <= ICON_MAX_SIZE:
        return False
    if src.startswith('data:'):
        return False

    # Uploads, generated images and anything else inside a turn are content
    return True


class ImageResolver:
    """Assign placeholder references to images and resolve them once fetched.

    Placeholders are extension-less paths inside the assets folder. The real
    extension is only known after the image bytes and content type have been
    fetched, at which point every occurrence in the Markdown is rewritten.
    """

    CONTENT_TYPE_EXTENSIONS = {
        'image/jpeg': 'jpg',
        'image/jpg': 'jpg',
        'image/pjpeg': 'jpg',
        'image/png': 'png',
        'image/webp': 'webp',
        'image/gif': 'gif',
        'image/svg+xml': 'svg',
    }
    FALLBACK_EXTENSION = 'bin'

    def __init__(self, assets_folder: str):
        self.assets_folder = assets_folder

    @staticmethod
    def placeholder_key(ordinal: int) -> str:
        """Stable, zero-padded key for the nth image."""
        return f"image-{ordinal:03d}"

    def register(self, images: List[ImageReference], source_url: str, alt_text: str) -> ImageReference:
        """Append a new reference to the collected images and return it."""
        ordinal = len(images) + 1
        key = self.placeholder_key(ordinal)
        ref = ImageReference(
            source_url=source_url,
            placeholder_key=key,
            alt_text=alt_text,
            ordinal=ordinal,
            placeholder_path=f"{self.assets_folder}/{key}",
        )
        images.append(ref)
        logger.debug("Registered image {}: {}", key, source_url)
        return ref

    @classmethod
    def extension_for_content_type(cls, content_type: Optional[str]) -> str:
        """Map a Content-Type header value to a file extension."""
        media_type = (content_type or '').split(';', 1)[0].strip().lower()
        extension = cls.CONTENT_TYPE_EXTENSIONS.get(media_type)
        if extension is None:
            logger.warning("Unrecognized image content type '{}', using .{}",
                           media_type or 'missing', cls.FALLBACK_EXTENSION)
            return cls.FALLBACK_EXTENSION
        return extension

    def resolve_asset_path(self, ref: ImageReference, extension: str) -> str:
        """Archive path of an image once its extension is known."""
        return f"{self.assets_folder}/{ref.placeholder_key}.{extension}"

    @staticmethod
    def patch_markdown(markdown: str, placeholder_path: str, resolved_path: str) -> Tuple[str, int]:
        """Rewrite every placeholder occurrence to the resolved path.

        Handles both the link destination form (<percent-encoded path>) and the
        bare path. A bare occurrence that already carries an extension or runs
        into a longer key is left alone.

        Returns:
            Tuple of (patched_markdown, replacement_count)
        """
        wrapped = link_destination(placeholder_path)
        pattern = re.compile(
            re.escape(wrapped) + '|' + re.escape(placeholder_path) + r'(?![\w-]|\.\w)'
        )
        wrapped_resolved = link_destination(resolved_path)

        def replace(match):
            return wrapped_resolved if match.group(0) == wrapped else resolved_path

        return pattern.subn(replace, markdown)
