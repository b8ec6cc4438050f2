"""Shared pytest configuration and fixtures for the screen-recap test suite."""

import base64
import inspect
import io
import sys
from pathlib import Path

import pytest
from PIL import Image

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from config import SummaryConfig  # noqa: E402


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


# =============================================================================
# Fakes
# =============================================================================

class FakeProvider:
    """
    Stands in for a Provider. Records every request it receives.

    `describe(n, image_b64)` and `complete(n, text)` compute the answer for
    the n-th request (1-based). They may return a string, return an
    awaitable, or raise.
    """

    def __init__(self, describe=None, complete=None):
        self._describe = describe
        self._complete = complete
        self.image_requests: list[str] = []
        self.text_requests: list[str] = []
        self.max_tokens: list[int] = []
        self.closed = False

    async def describe_image(self, image_b64, prompt=None, timeout=None):
        self.image_requests.append(image_b64)
        n = len(self.image_requests)
        if self._describe is None:
            return f"description {n}"
        return await _resolve(self._describe(n, image_b64))

    async def complete(self, text, system_prompt="", max_tokens=1000, timeout=None):
        self.text_requests.append(text)
        self.max_tokens.append(max_tokens)
        n = len(self.text_requests)
        if self._complete is None:
            return f"summary {n}"
        return await _resolve(self._complete(n, text))

    async def aclose(self):
        self.closed = True


async def _resolve(result):
    if inspect.isawaitable(result):
        return await result
    return result


def image_width(image_b64: str) -> int:
    """Width of a base64 JPEG, used to tell test frames apart."""
    with Image.open(io.BytesIO(base64.b64decode(image_b64))) as img:
        return img.width


def write_frame(path: Path, width: int = 64, height: int = 48, color=(40, 90, 160)) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", (width, height), color).save(path, format="JPEG")
    return path


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture
def config() -> SummaryConfig:
    """Valid config with no pacing, so tests run fast."""
    return SummaryConfig(
        provider="openai",
        api_key="test-key",
        model="gpt-4o",
        inter_request_delay=0.0,
        queue_poll_interval=0.01,
    )


@pytest.fixture
def make_frame(tmp_path):
    """Factory: make_frame(width) writes a small JPEG and returns its path."""
    frames_dir = tmp_path / "frames"

    def _make(width: int = 64, name: str | None = None) -> Path:
        return write_frame(frames_dir / (name or f"frame_w{width}.jpg"), width=width)

    return _make
