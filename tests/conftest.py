import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from mailcomposer.schemas import DeliveryReceipt


async def settle(rounds: int = 10):
    """Let freshly created tasks run up to their next real suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeClock:
    """Injectable clock + sleep pair; time only moves when advance() is awaited."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        self._sleepers: list[tuple[datetime, asyncio.Future]] = []

    def __call__(self) -> datetime:
        return self.now

    async def sleep(self, seconds: float) -> None:
        fut = asyncio.get_running_loop().create_future()
        self._sleepers.append((self.now + timedelta(seconds=seconds), fut))
        await fut

    async def advance(self, seconds: float) -> None:
        await settle()
        self.now += timedelta(seconds=seconds)
        due = [(when, fut) for when, fut in self._sleepers if when <= self.now]
        self._sleepers = [(when, fut) for when, fut in self._sleepers if when > self.now]
        for _, fut in due:
            if not fut.done():
                fut.set_result(None)
        await settle()


class FakeTransport:
    """Records every send attempt; optionally fails them."""

    def __init__(self, fail_with: Exception | None = None, ready_error: Exception | None = None):
        self.sent = []
        self.fail_with = fail_with
        self.ready_error = ready_error
        self.closed = False

    async def ensure_ready(self) -> bool:
        if self.ready_error is not None:
            raise self.ready_error
        return True

    async def send(self, message):
        self.sent.append(message)
        if self.fail_with is not None:
            raise self.fail_with
        return DeliveryReceipt(
            message_id=f"<{len(self.sent)}@test.local>",
            response="250 2.0.0 OK",
            accepted=[message.recipient],
            rejected=[],
        )

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()
