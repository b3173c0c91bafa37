"""Exceptions raised by chat-md export stages."""

from typing import Optional


class ChatMdError(Exception):
    """Base class for export failures reported to the user."""


class ImageFetchError(ChatMdError):
    """An image could not be downloaded while building the archive."""

    def __init__(self, url: str, ordinal: int, reason: str, status_code: Optional[int] = None):
        self.url = url
        self.ordinal = ordinal
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"Failed to fetch image {ordinal} ({url}): {reason}")


class EncodingUnavailableError(ChatMdError):
    """The requested text encoding is not available for delivery."""


class ArchiveError(ChatMdError):
    """The zip archive could not be assembled."""
