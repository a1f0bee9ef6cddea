from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from idverify_bot.ledger import VerificationLedger
from idverify_bot.models import PROVIDER_SESSION, ProviderSession, VerificationRecord

START = datetime(2024, 5, 1, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock shared by the ledger and coordinator."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeNotifier:
    def __init__(self) -> None:
        self.notified: list[tuple[str, object]] = []
        self.announced: list[object] = []
        self.mentions: list[str | None] = []

    async def notify(self, subject_id, notification) -> bool:
        self.notified.append((subject_id, notification))
        return True

    async def announce(self, notification, *, content=None) -> bool:
        self.announced.append(notification)
        self.mentions.append(content)
        return True

    def titles_for(self, subject_id: str) -> list[str]:
        return [n.title for sid, n in self.notified if sid == subject_id]


def make_record(
    session_key: str = "scan-1",
    subject_id: str = "1001",
    external_key: str = "alice",
    kind: str = PROVIDER_SESSION,
    created_at: datetime = START,
    **kwargs,
) -> VerificationRecord:
    return VerificationRecord(
        session_key=session_key,
        subject_id=subject_id,
        external_key=external_key,
        kind=kind,  # type: ignore[arg-type]
        created_at=created_at,
        **kwargs,
    )


def make_session(session_key: str = "scan-1", token: str = "tok-1") -> ProviderSession:
    return ProviderSession(
        session_key=session_key,
        session_token=token,
        redirect_url=f"https://ivs.idenfy.com/api/v2/redirect?authToken={token}",
        client_correlation_id="discord-1001",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest_asyncio.fixture
async def ledger(tmp_path, clock):
    store = VerificationLedger(tmp_path / "pending.json", clock=clock)
    yield store
    await store.force_flush()


@pytest.fixture
def backend() -> AsyncMock:
    client = AsyncMock()
    client.get_verification.return_value = None
    client.submit_verification.return_value = {"ok": True}
    client.get_recent_verification_count.return_value = 0
    return client


@pytest.fixture
def provider() -> AsyncMock:
    client = AsyncMock()
    client.create_session.return_value = make_session()
    return client


@pytest.fixture
def gate() -> AsyncMock:
    limit = AsyncMock()
    limit.is_exceeded.return_value = False
    return limit


@pytest.fixture
def reconciler() -> MagicMock:
    return MagicMock()
