"""tests/conftest.py

Pytest configuration and shared fixtures for the chatkeeper test suite.
"""

from __future__ import annotations

# Standard Library
import os

# Third-Party Libraries
import pytest

# Local Modules
from chatkeeper.chat import ChatClient
from chatkeeper.memory import ConversationCache
from chatkeeper.settings import ChatKeeperSettings
from fakes import FakeClock, FakeCompletionService, make_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep CHATKEEPER_* variables from the host out of the tests."""
    for var in list(os.environ):
        if var.startswith("CHATKEEPER_"):
            monkeypatch.delenv(var, raising=False)


@pytest.fixture
def clock() -> FakeClock:
    """Create a fake clock for expiration tests."""
    return FakeClock()


@pytest.fixture
def settings() -> ChatKeeperSettings:
    """Create test settings: model "test-model", limit 10, one hour expiration."""
    return make_settings()


@pytest.fixture
def service() -> FakeCompletionService:
    """Create a scripted completion service with no queued replies."""
    return FakeCompletionService()


@pytest.fixture
def client(
    service: FakeCompletionService,
    settings: ChatKeeperSettings,
    clock: FakeClock,
) -> ChatClient:
    """Create a ChatClient wired to the fake service and the fake clock."""
    cache = ConversationCache(
        message_limit=settings.message_limit,
        expiration=settings.message_expiration,
        clock=clock,
    )
    return ChatClient(service, settings=settings, cache=cache)


@pytest.fixture
def system_message() -> str:
    """Create a sample system message.

    Returns:
        System prompt string.
    """
    return "You are a helpful AI assistant for testing purposes."
