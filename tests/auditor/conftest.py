"""Scripted relay sessions for pagination and sync tests."""

from __future__ import annotations

import asyncio
import json
from collections import deque

import pytest

from relayaudit.auditor.errors import MalformedFrame, TransportError
from relayaudit.auditor.transport import EndOfStoredEvents, EventFrame
from relayaudit.ledger.models import RawEvent, RelayFilter


def make_balance_event(event_id: str, created_at: int, account: str = "abc", millisats: int = 1000) -> RawEvent:
    return RawEvent(
        id=event_id, kind=31111, pubkey="ledger", created_at=created_at,
        tags=[["d", f"balance:BTC:{account}"], ["amount", str(millisats)]],
        content="", sig="",
    )


def make_tx_event(event_id: str, created_at: int, ref: str, t: str = "inbound-transaction-ok", millisats: int = 3000) -> RawEvent:
    return RawEvent(
        id=event_id, kind=1112, pubkey="ledger", created_at=created_at,
        tags=[["t", t], ["p", "alice"], ["e", ref]],
        content=json.dumps({"tokens": {"BTC": millisats}}), sig="",
    )


class FakeSession:
    """In-memory relay: answers REQ with stored events newest-first, then EOSE.

    ``until`` is inclusive, matching relay semantics. Options:
      fail_after: raise TransportError once this many frames were served
      hold_eose: never send EOSE (next_frame blocks once the queue drains)
      noise: frames or exceptions queued ahead of each round's events
    """

    def __init__(self, events, fail_after=None, hold_eose=False, noise=None):
        self.events = sorted(events, key=lambda e: e.created_at, reverse=True)
        self.fail_after = fail_after
        self.hold_eose = hold_eose
        self.noise = list(noise or [])
        self.requests: list[RelayFilter] = []
        self.unsubscribed: list[str] = []
        self.frames_served = 0
        self.closed = False
        self._queue: deque = deque()

    async def subscribe(self, relay_filter: RelayFilter) -> str:
        sub_id = f"sub{len(self.requests)}"
        self.requests.append(relay_filter)
        self._queue.extend(self.noise)
        matched = [
            e for e in self.events
            if relay_filter.until is None or e.created_at <= relay_filter.until
        ][: relay_filter.limit]
        self._queue.extend(EventFrame(sub_id, e) for e in matched)
        if not self.hold_eose:
            self._queue.append(EndOfStoredEvents(sub_id))
        return sub_id

    async def unsubscribe(self, subscription_id: str) -> None:
        self.unsubscribed.append(subscription_id)

    async def next_frame(self):
        if self.fail_after is not None and self.frames_served >= self.fail_after:
            raise TransportError("connection reset by peer")
        if not self._queue:
            await asyncio.Event().wait()
        self.frames_served += 1
        item = self._queue.popleft()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def balance_event():
    return make_balance_event


@pytest.fixture
def tx_event():
    return make_tx_event


@pytest.fixture
def fake_session():
    return FakeSession


@pytest.fixture
def malformed():
    return lambda: MalformedFrame("not json")
