from unittest.mock import AsyncMock, Mock

import pytest

from sales_agent.services.conversation_store import InMemoryConversationStore
from sales_agent.services.notifier_client import ImageSendResult


@pytest.fixture
def store():
    """Process-local conversation store."""
    return InMemoryConversationStore()


@pytest.fixture
def channel():
    """Mock channel transport that also acts as the staff notifier."""
    channel = Mock()
    channel.send = AsyncMock()
    channel.send_images = AsyncMock(return_value=ImageSendResult(success=True, products=[]))
    channel.mark_as_read_and_show_typing = AsyncMock()
    channel.notify = AsyncMock()
    return channel


@pytest.fixture
def analytics():
    return Mock()


@pytest.fixture
def recorded_sleeps():
    """sleep_func replacement that records requested durations without waiting."""
    calls = []

    async def _sleep(seconds):
        calls.append(seconds)

    _sleep.calls = calls
    return _sleep


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setenv("DEBOUNCE_DELAY_MS", "3000")
    monkeypatch.setenv("BOT_RESPONSE_DELAY_MS", "1500")
    monkeypatch.setenv("ALERT_BOT_TOKEN", "test-token")
