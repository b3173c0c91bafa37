import sys
from pathlib import Path

import pytest
from bs4 import BeautifulSoup
from loguru import logger

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture
def parse():
    """Parse an HTML snippet and return its first top-level node."""

    def _parse(html: str):
        return BeautifulSoup(html, "html.parser").contents[0]

    return _parse


@pytest.fixture
def restore_logger():
    """Put loguru back on a plain stderr sink after a test reconfigures it."""
    yield
    logger.remove()
    logger.add(sys.stderr)


class FakeFetcher:
    """Image fetcher returning canned responses and recording call order."""

    def __init__(self, responses):
        self.responses = responses
        self.calls = []
        self.closed = False

    def fetch(self, url):
        self.calls.append(url)
        response = self.responses[url]
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        self.closed = True


@pytest.fixture
def fake_fetcher():
    return FakeFetcher
