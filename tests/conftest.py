"""Shared pytest fixtures for the opensubs_ai test suite.

RULES:
- Fakes live in tests/fakes.py; fixtures here only construct them
- Token caches always live under tmp_path
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from opensubs_ai.core.session import TokenCache

from tests.fakes import FakeClock, make_fake_client


# ---------------------------------------------------------------------------
# Fixtures


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_client() -> MagicMock:
    return make_fake_client()


@pytest.fixture
def token_cache(tmp_path: Path) -> TokenCache:
    """TokenCache in a temp dir, never the user's real token file."""
    return TokenCache(path=tmp_path / "auth_token.txt")


@pytest.fixture
def media_file(tmp_path: Path) -> Path:
    path = tmp_path / "interview.mp3"
    path.write_bytes(b"fake audio data")
    return path


@pytest.fixture
def subtitle_file(tmp_path: Path) -> Path:
    path = tmp_path / "movie.srt"
    path.write_text("1\n00:00:01,000 --> 00:00:02,000\nHello\n", encoding="utf-8")
    return path
