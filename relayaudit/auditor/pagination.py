"""Paginated pull of stored events from a relay.

Rounds walk backwards in time. Round 0 has no ``until`` bound (newest
first). A round that returns exactly ``page_limit`` events may be cut
short by the relay, so the next round asks for events strictly older
than the oldest one seen (``until = min(created_at) - 1``). A round
with fewer events is the last one.

Known limitation: the cursor has one-second resolution, so events that
share the oldest timestamp of a full round but did not fit in it are
not fetched by the next round. Re-delivered events are harmless since
merges are idempotent.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable

import bittensor as bt

from relayaudit.auditor.errors import MalformedFrame, TransportError
from relayaudit.auditor.transport import (
    ClosedFrame,
    EndOfStoredEvents,
    EventFrame,
    Notice,
    Session,
)
from relayaudit.ledger.models import RawEvent, RelayFilter, SyncCursor


class _Cancelled(Exception):
    pass


@dataclass
class Page:
    """All events delivered in one round."""

    round_index: int
    events: list[RawEvent] = field(default_factory=list)
    until: int | None = None

    @property
    def oldest(self) -> int | None:
        return min((e.created_at for e in self.events), default=None)


class PaginationController:
    """Drives successive REQ rounds over one session until exhausted."""

    def __init__(
        self,
        session: Session,
        page_limit: int = 500,
        round_delay: float = 0.1,
        scope: str = "default",
        on_malformed: Callable[[], None] | None = None,
        on_round_end: Callable[[int, int], None] | None = None,
    ):
        if page_limit <= 0:
            raise ValueError("page_limit must be positive")
        self.session = session
        self.page_limit = page_limit
        self.round_delay = round_delay
        self.on_malformed = on_malformed
        self.on_round_end = on_round_end
        self.cursor: SyncCursor | None = SyncCursor(scope=scope)

        self.rounds_completed = 0
        self.round_counts: list[int] = []
        self.round_untils: list[int | None] = []
        self.malformed_frames = 0
        self.complete = False
        self.cancelled = False
        self._cancel = asyncio.Event()
        self._started = False

    def cancel(self) -> None:
        """Request a stop. Honoured mid-round and between rounds."""
        self._cancel.set()

    async def _wait_or_cancel(self, coro) -> object:
        """Await coro unless cancel() fires first."""
        if self._cancel.is_set():
            coro.close()
            raise _Cancelled()
        work = asyncio.ensure_future(coro)
        stopper = asyncio.ensure_future(self._cancel.wait())
        try:
            done, _ = await asyncio.wait({work, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (work, stopper):
                if not task.done():
                    task.cancel()
        if work in done:
            return work.result()
        raise _Cancelled()

    async def _pause(self) -> None:
        if self.round_delay <= 0:
            return
        try:
            await asyncio.wait_for(self._cancel.wait(), timeout=self.round_delay)
        except asyncio.TimeoutError:
            return
        raise _Cancelled()

    async def stream(self, filter_template: RelayFilter) -> AsyncIterator[tuple[int, RawEvent]]:
        """Yield (round_index, event) pairs as events arrive.

        Single use: a fresh run needs a fresh controller.

        Raises:
            TransportError: the session failed or the relay closed the
                subscription. Counters stay valid.
        """
        if self._started:
            raise RuntimeError("PaginationController.stream() is single use")
        self._started = True

        template = filter_template.model_copy(update={"limit": self.page_limit, "until": None})
        until: int | None = None
        round_index = 0

        try:
            while True:
                if round_index > 0:
                    await self._pause()

                request = template.with_until(until)
                self.round_untils.append(until)
                sub_id = await self._wait_or_cancel(self.session.subscribe(request))
                bt.logging.debug({"pagination": {"round": round_index, "until": until, "sub": sub_id}})

                count = 0
                oldest: int | None = None
                while True:
                    try:
                        frame = await self._wait_or_cancel(self.session.next_frame())
                    except MalformedFrame as e:
                        self.malformed_frames += 1
                        if self.on_malformed is not None:
                            self.on_malformed()
                        bt.logging.warning({"pagination_malformed_frame": str(e)})
                        continue

                    if isinstance(frame, EventFrame):
                        if frame.subscription_id != sub_id:
                            continue
                        count += 1
                        created = frame.event.created_at
                        oldest = created if oldest is None else min(oldest, created)
                        yield round_index, frame.event
                    elif isinstance(frame, EndOfStoredEvents):
                        if frame.subscription_id == sub_id:
                            break
                    elif isinstance(frame, ClosedFrame):
                        if frame.subscription_id == sub_id:
                            raise TransportError(f"relay closed subscription: {frame.message}")
                    elif isinstance(frame, Notice):
                        bt.logging.debug({"pagination_notice": frame.text})

                self.round_counts.append(count)
                self.rounds_completed += 1
                if self.on_round_end is not None:
                    self.on_round_end(round_index, count)

                if count < self.page_limit or oldest is None:
                    bt.logging.info({"pagination": {
                        "status": "exhausted",
                        "rounds": self.rounds_completed,
                        "last_round_events": count,
                    }})
                    self.complete = True
                    self.cursor = None
                    return

                await self.session.unsubscribe(sub_id)
                until = oldest - 1
                self.cursor = SyncCursor(scope=self.cursor.scope, until=until)
                round_index += 1
        except _Cancelled:
            self.cancelled = True
            bt.logging.info({"pagination": {"status": "cancelled", "rounds": self.rounds_completed}})

    async def pages(self, filter_template: RelayFilter) -> AsyncIterator[Page]:
        """Group stream() into one Page per completed round.

        A round interrupted by cancel() is not emitted as a page.
        """
        pending = Page(round_index=0)
        async for round_index, event in self.stream(filter_template):
            if round_index != pending.round_index:
                yield pending
                pending = Page(round_index=round_index, until=self.round_untils[round_index])
            pending.events.append(event)

        if pending.round_index < self.rounds_completed:
            yield pending
            for idx in range(pending.round_index + 1, self.rounds_completed):
                yield Page(round_index=idx, until=self.round_untils[idx])


__all__ = ["Page", "PaginationController"]
