"""Fetch conversation images and bundle them with the Markdown into a zip."""

import io
import zipfile
from http.cookiejar import DefaultCookiePolicy
from typing import Dict, List, Optional, Tuple
import requests
from requests.auth import AuthBase
from loguru import logger

from chat_md.document import ImageReference
from chat_md.errors import ArchiveError, ImageFetchError
from chat_md.media import ImageResolver
from chat_md.text_utils import encode_markdown, sanitize_filename_part

# Fixed entry timestamp so identical inputs give identical archives
ZIP_TIMESTAMP = (1980, 1, 1, 0, 0, 0)

CREDENTIAL_HEADERS = ('Authorization', 'Cookie')


def _strip_credentials(request):
    for header in CREDENTIAL_HEADERS:
        request.headers.pop(header, None)
    return request


class _NoCredentials(AuthBase):
    """Send the first request without credential headers or a ~/.netrc lookup."""

    def __call__(self, request):
        return _strip_credentials(request)


class CredentialFreeSession(requests.Session):
    """Session that never stores cookies or attaches credentials, redirects included."""

    def __init__(self):
        super().__init__()
        self.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))

    def rebuild_auth(self, prepared_request, response):
        # Runs on every redirect hop, after cookies are prepared; skips the netrc lookup
        _strip_credentials(prepared_request)


class ImageFetcher:
    """Download image bytes and their declared content type.

    A session created here is closed by ``close()`` and recreated on the next
    fetch. A session passed in belongs to the caller and is left open.
    """

    def __init__(self, timeout: Optional[float] = None, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self._owns_session = session is None
        self.session = session

    def fetch(self, url: str) -> Tuple[bytes, Optional[str]]:
        """Fetch one URL.

        Returns:
            Tuple of (content, content_type)
        """
        if self.session is None:
            self.session = CredentialFreeSession()
        logger.debug("Fetching image: {}", url)
        response = self.session.get(url, auth=_NoCredentials(), timeout=self.timeout)
        response.raise_for_status()
        return response.content, response.headers.get('Content-Type')

    def close(self):
        if self._owns_session and self.session is not None:
            self.session.close()
            self.session = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()


class ArchiveManifest:
    """Ordered mapping of archive paths to file contents."""

    def __init__(self):
        self._entries: Dict[str, bytes] = {}

    def put(self, path: str, content: bytes):
        """Add an entry, replacing the content of an existing path in place."""
        if path in self._entries:
            logger.debug("Rewriting archive entry: {}", path)
        self._entries[path] = content

    def get(self, path: str) -> Optional[bytes]:
        return self._entries.get(path)

    def paths(self) -> List[str]:
        return list(self._entries)

    def __contains__(self, path: str) -> bool:
        return path in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def to_zip_bytes(self) -> bytes:
        """Write every entry into a zip archive and return its bytes."""
        buffer = io.BytesIO()
        try:
            with zipfile.ZipFile(buffer, 'w', compression=zipfile.ZIP_DEFLATED) as archive:
                for path, content in self._entries.items():
                    info = zipfile.ZipInfo(path, date_time=ZIP_TIMESTAMP)
                    info.compress_type = zipfile.ZIP_DEFLATED
                    info.external_attr = 0o644 << 16
                    archive.writestr(info, content)
        except (zipfile.BadZipFile, OSError, ValueError) as e:
            raise ArchiveError(f"Failed to write archive: {e}") from e
        return buffer.getvalue()


class ArchivePackager:
    """Build a zip holding the Markdown file and every referenced image.

    Images are fetched one at a time in encounter order. Each fetch resolves
    the image's extension, after which its placeholder is rewritten across the
    whole Markdown text. Any failed fetch aborts the build; no archive is
    returned.
    """

    def __init__(self, fetcher: Optional[ImageFetcher] = None, encoding: str = 'utf-8'):
        self.fetcher = fetcher or ImageFetcher()
        self.encoding = encoding

    def build_archive(self, title: str, md_filename: str, markdown: str,
                      images: List[ImageReference]) -> bytes:
        """Fetch images, patch the Markdown and return the zip bytes.

        Args:
            title: Conversation title (sanitized again for the assets folder)
            md_filename: Name of the Markdown entry in the archive
            markdown: Markdown text containing placeholder image paths
            images: References in encounter order

        Raises:
            ImageFetchError: If any image cannot be downloaded
        """
        resolver = ImageResolver(f"{sanitize_filename_part(title)}-assets")
        manifest = ArchiveManifest()
        manifest.put(md_filename, encode_markdown(markdown, self.encoding))

        patched = markdown
        try:
            for ref in images:
                content, content_type = self._fetch(ref)
                extension = resolver.extension_for_content_type(content_type)
                asset_path = resolver.resolve_asset_path(ref, extension)
                manifest.put(asset_path, content)

                patched, count = resolver.patch_markdown(patched, ref.placeholder_path, asset_path)
                logger.debug("Resolved {} -> {} ({} references)", ref.placeholder_key, asset_path, count)
        finally:
            self.fetcher.close()

        manifest.put(md_filename, encode_markdown(patched, self.encoding))
        archive_bytes = manifest.to_zip_bytes()
        logger.info("Archive built: {} entries, {} bytes", len(manifest), len(archive_bytes))
        return archive_bytes

    def _fetch(self, ref: ImageReference) -> Tuple[bytes, Optional[str]]:
        try:
            return self.fetcher.fetch(ref.source_url)
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            logger.error("Image {} returned HTTP {}: {}", ref.ordinal, status, ref.source_url)
            raise ImageFetchError(ref.source_url, ref.ordinal, f"HTTP {status}", status_code=status) from e
        except requests.exceptions.RequestException as e:
            logger.error("Image {} could not be fetched: {}", ref.ordinal, e)
            raise ImageFetchError(ref.source_url, ref.ordinal, str(e)) from e
