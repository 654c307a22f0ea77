"""Pytest configuration and fixtures."""

from __future__ import annotations

import os

from collections.abc import Callable
from typing import TYPE_CHECKING

import httpx
import pytest

from smartlaunch.config import clear_settings
from tests.fakes import MockAuthUIHandler, MockOAuth2, SleepRecorder, make_response


if TYPE_CHECKING:
    from collections.abc import Generator
    from pathlib import Path


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[None]:
    """Keep tests independent of the developer's environment and config files."""
    for key in list(os.environ):
        if key.startswith("SMARTLAUNCH_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    clear_settings()
    yield
    clear_settings()


@pytest.fixture
def mock_oauth() -> MockOAuth2:
    """A registered public client with no tokens yet."""
    return MockOAuth2()


@pytest.fixture
def mock_ui() -> MockAuthUIHandler:
    """A UI handler completing every session immediately."""
    return MockAuthUIHandler()


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    """Sleep replacement recording retry delays."""
    return SleepRecorder()


@pytest.fixture
def response_factory() -> Callable[..., httpx.Response]:
    """Factory for request-bound responses."""
    return make_response
