import asyncio
from collections.abc import Callable, Generator
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from src.app.main import app
from src.app.services.relay.exceptions import EngineLaunchError
from src.app.services.relay.session import EngineSession


@pytest.fixture
def client() -> Generator[TestClient, Any, None]:
    """Test client without lifespan (no browser is launched)."""
    yield TestClient(app)
    app.dependency_overrides = {}


def override_dependency(dependency: Callable[..., Any], mocked_response: Any) -> None:
    app.dependency_overrides[dependency] = lambda: mocked_response


# ============== Fake engine sessions ==============
def make_browser() -> MagicMock:
    """nodriver Browser stand-in: stop() is sync like the real one."""
    browser = MagicMock()
    browser.stopped = False

    def _stop() -> None:
        browser.stopped = True

    browser.stop = MagicMock(side_effect=_stop)
    return browser


def make_session(pooled: bool = False) -> EngineSession:
    return EngineSession(make_browser(), ["--no-sandbox"], pooled=pooled)


class FakeLauncher:
    """Async launch callable that records every session it creates."""

    def __init__(self, delay: float = 0.0, fail_after: int | None = None) -> None:
        self.delay = delay
        self.fail_after = fail_after
        self.sessions: list[EngineSession] = []

    async def __call__(self, *args: Any, **kwargs: Any) -> EngineSession:
        if self.fail_after is not None and len(self.sessions) >= self.fail_after:
            raise EngineLaunchError("Failed to start browser: boom")
        if self.delay:
            await asyncio.sleep(self.delay)
        session = make_session(pooled=kwargs.get("pooled", False))
        self.sessions.append(session)
        return session

    @property
    def count(self) -> int:
        return len(self.sessions)


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def mock_tab() -> MagicMock:
    """nodriver Tab stand-in recording CDP commands."""
    tab = MagicMock()
    tab.send = AsyncMock(return_value=None)
    tab.close = AsyncMock()
    tab.enabled_domains = []
    tab.target.target_id = "MAIN-FRAME"
    return tab


@pytest.fixture
def session_maker() -> Callable[..., EngineSession]:
    return make_session


@pytest.fixture
def launcher_factory() -> type[FakeLauncher]:
    return FakeLauncher
