from __future__ import annotations

import pytest

from tests.flowguard.support.fakes import FakeLogger, FakeTransport, RecordingSleep


@pytest.fixture
def fake_logger() -> FakeLogger:
    """Provide a fresh structured logger test double per test."""
    return FakeLogger()


@pytest.fixture
def fake_transport() -> FakeTransport:
    """Provide a transport double answering every call with 200."""
    return FakeTransport()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    """Provide a backoff sleep that records delays instead of waiting."""
    return RecordingSleep()
