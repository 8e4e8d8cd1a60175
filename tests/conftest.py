import asyncio
import logging

import pytest
from typer.testing import CliRunner

from quotaflow.infrastructure.config import settings

CREDENTIAL_ENV_BASES = ("TEXT_API_KEY", "MEDIA_API_KEY")


class FakeClock:
    """Manually advanced time source; ``sleep`` advances it instead of waiting."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture(scope="session")
def runner():
    """Provides a Typer CliRunner instance."""
    return CliRunner()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keeps tests away from the developer's real config, .env files and keys."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(settings, "_config", {})
    monkeypatch.setattr(settings, "_loaded", False)
    for base in CREDENTIAL_ENV_BASES:
        monkeypatch.delenv(base, raising=False)
        for i in range(1, settings.MAX_NUMBERED_KEYS + 1):
            monkeypatch.delenv(f"{base}_{i}", raising=False)
    settings.clear_test_config()
    yield
    settings.clear_test_config()


@pytest.fixture
def restore_root_logging():
    """setup_logging() replaces root handlers; put the originals back afterwards."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
