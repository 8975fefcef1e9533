"""Relay sync engine for one audit scope.

Wires a relay session, the pagination controller, a record extractor and
the deduplicating aggregator together. The ledger is seeded from the
store on load() and persisted after every completed round, so a failed
or cancelled run still leaves a valid partial ledger behind.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

import bittensor as bt

from relayaudit.auditor.aggregator import Aggregator, MergeOutcome, Record
from relayaudit.auditor.errors import (
    InvariantViolation,
    LedgerStoreError,
    RelayConnectionError,
    TransportError,
)
from relayaudit.auditor.extractors import RecordExtractor, Rejected
from relayaudit.auditor.pagination import PaginationController
from relayaudit.auditor.transport import Session, open_session
from relayaudit.ledger.models import AggregateStats
from relayaudit.ledger.store.interface import LedgerStore

SessionFactory = Callable[..., Awaitable[Session]]
ProgressCallback = Callable[[MergeOutcome, AggregateStats], None]


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class RunResult:
    """Outcome of one audit run."""

    scope: str
    status: RunStatus
    rounds: int
    stats: AggregateStats
    error: str = ""
    rejections: dict[str, int] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return self.status == RunStatus.COMPLETE


class RelaySync:
    """Audits one relay for one extractor scope.

    Each run() opens a fresh session and subscription. The ledger lives
    across runs (and across processes via the store); per-run counters
    reset at the start of every run.
    """

    def __init__(
        self,
        endpoint: str,
        extractor: RecordExtractor,
        store: LedgerStore,
        page_limit: int = 500,
        round_delay: float = 0.1,
        connect_timeout: float = 10.0,
        receive_timeout: float | None = 30.0,
        session_factory: SessionFactory | None = None,
        on_progress: ProgressCallback | None = None,
    ):
        self.endpoint = endpoint
        self.extractor = extractor
        self.store = store
        self.scope = extractor.name
        self.page_limit = page_limit
        self.round_delay = round_delay
        self.connect_timeout = connect_timeout
        self.receive_timeout = receive_timeout
        self.session_factory = session_factory or open_session
        self.on_progress = on_progress

        self.aggregator = Aggregator(extractor.record_type)
        self.status = RunStatus.IDLE
        self._rounds = 0
        self._last_error: str | None = None
        self._controller: PaginationController | None = None
        self._cancel_requested = False
        self._loaded = False

    # -- State persistence --

    async def load(self) -> int:
        """Seed the ledger from the store. Returns records seeded."""
        records = await self.store.load_records(self.scope)
        seeded = self.aggregator.seed(records)
        self._loaded = True
        bt.logging.info({"relay_sync": {"scope": self.scope, "seeded": seeded}})
        return seeded

    async def _persist(self) -> None:
        try:
            await self.store.save_records(self.scope, self.aggregator.records())
        except Exception as e:
            raise LedgerStoreError(f"cannot save '{self.scope}' ledger: {e!r}") from e

    # -- Run --

    def cancel(self) -> None:
        """Stop the current run; the partial ledger is kept and persisted."""
        self._cancel_requested = True
        if self._controller is not None:
            self._controller.cancel()

    async def run(self) -> RunResult:
        """Run one full audit against the relay.

        Connection, transport and store failures come back as a FAILED
        result. Anything else propagates after the status is set.
        """
        if self.status == RunStatus.RUNNING:
            raise RuntimeError(f"audit '{self.scope}' is already running")
        if not self._loaded:
            await self.load()

        self.aggregator.begin_run()
        self.status = RunStatus.RUNNING
        self._rounds = 0
        self._last_error = None
        self._cancel_requested = False

        bt.logging.info({"relay_sync": {
            "scope": self.scope, "status": "starting", "endpoint": self.endpoint,
            "records": len(self.aggregator),
        }})

        try:
            session = await self.session_factory(
                self.endpoint,
                connect_timeout=self.connect_timeout,
                receive_timeout=self.receive_timeout,
            )
        except RelayConnectionError as e:
            return self._finish(RunStatus.FAILED, str(e))

        controller = PaginationController(
            session,
            page_limit=self.page_limit,
            round_delay=self.round_delay,
            scope=self.scope,
            on_malformed=self.aggregator.observe_malformed,
            on_round_end=self.aggregator.end_round,
        )
        self._controller = controller
        if self._cancel_requested:
            controller.cancel()

        persisted_rounds = 0
        status = RunStatus.COMPLETE
        error = ""
        store_failed = False
        try:
            template = self.extractor.filter_template(self.page_limit)
            stream = controller.stream(template)
            try:
                async for round_index, event in stream:
                    if controller.rounds_completed > persisted_rounds:
                        persisted_rounds = controller.rounds_completed
                        self._rounds = persisted_rounds
                        await self._persist()
                    self._ingest(round_index, event)
            finally:
                await stream.aclose()
            if controller.cancelled:
                status = RunStatus.CANCELLED
        except TransportError as e:
            status = RunStatus.FAILED
            error = str(e)
        except LedgerStoreError as e:
            status = RunStatus.FAILED
            error = str(e)
            store_failed = True
        except asyncio.CancelledError:
            self.status = RunStatus.CANCELLED
            raise
        except InvariantViolation as e:
            self.status = RunStatus.FAILED
            self._last_error = f"invariant violated: {e}"
            raise
        except Exception as e:
            self.status = RunStatus.FAILED
            self._last_error = f"unexpected error: {e!r}"
            raise
        finally:
            self._rounds = controller.rounds_completed
            self._controller = None
            try:
                await session.close()
            except Exception as e:
                bt.logging.warning({"relay_sync": {"scope": self.scope, "close_error": str(e)}})
            if not store_failed:
                try:
                    await self._persist()
                except LedgerStoreError as e:
                    if self.status == RunStatus.RUNNING:
                        status = RunStatus.FAILED
                        error = error or str(e)
                    bt.logging.error({"relay_sync": {"scope": self.scope, "save_error": str(e)}})

        return self._finish(status, error)

    def _ingest(self, round_index: int, event: Any) -> None:
        self.aggregator.observe_event(round_index)
        result = self.extractor.extract(event)
        if isinstance(result, Rejected):
            self.aggregator.observe_rejection(result.reason)
            bt.logging.debug({"relay_sync_rejected": {"id": event.id, "reason": result.reason}})
            return

        self.aggregator.observe_accepted()
        outcome = self.aggregator.merge(result)
        if self.on_progress is not None:
            self.on_progress(outcome, self.aggregator.stats())

    def _finish(self, status: RunStatus, error: str) -> RunResult:
        self.status = status
        self._last_error = error or None
        stats = self.aggregator.stats()
        log = {
            "relay_sync": {
                "scope": self.scope,
                "status": status.value,
                "rounds": self._rounds,
                "events": stats.events_observed,
                "accepted": stats.events_accepted,
                "rejected": stats.events_rejected,
                "records": stats.records,
                "total": stats.total,
            }
        }
        if status == RunStatus.FAILED:
            log["relay_sync"]["error"] = error
            bt.logging.error(log)
        else:
            bt.logging.info(log)
        return RunResult(
            scope=self.scope,
            status=status,
            rounds=self._rounds,
            stats=stats,
            error=error,
            rejections=dict(self.aggregator.rejections),
        )

    # -- Read API --

    def current_ledger(self) -> dict[str, Record]:
        return self.aggregator.snapshot()[0]

    def current_stats(self) -> AggregateStats:
        return self.aggregator.stats()

    def rounds_completed(self) -> int:
        if self._controller is not None:
            return self._controller.rounds_completed
        return self._rounds

    def is_run_complete(self) -> bool:
        return self.status == RunStatus.COMPLETE

    def last_error(self) -> str | None:
        return self._last_error


__all__ = ["RelaySync", "RunResult", "RunStatus"]
