"""Deduplicating aggregator for audit ledgers.

Keeps one authoritative record per business key (last write wins by
event timestamp, ties keep the existing record) and maintains running
totals that always match a fold over the ledger.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable

import bittensor as bt

from relayaudit.auditor.errors import InvariantViolation
from relayaudit.ledger.models import (
    AggregateStats,
    BalanceRecord,
    CategoryStats,
    TransactionCategory,
    TransactionRecord,
)

Record = BalanceRecord | TransactionRecord


class MergeOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    IGNORED = "ignored"


class Aggregator:
    """Owns the ledger and its aggregate counters for one audit scope."""

    def __init__(self, record_type: type[BalanceRecord] | type[TransactionRecord]):
        self.record_type = record_type
        self._ledger: dict[str, Record] = {}
        self._total = 0
        self._error_records = 0
        self._category_counts: dict[str, int] = {}
        self._category_totals: dict[str, int] = {}
        if record_type is TransactionRecord:
            for category in TransactionCategory:
                self._category_counts[category.value] = 0
                self._category_totals[category.value] = 0

        # Per-run counters
        self._events_observed = 0
        self._events_accepted = 0
        self._events_rejected = 0
        self._malformed_frames = 0
        self._events_per_round: list[int] = []
        self.rejections: dict[str, int] = {}

    # -- Merge --

    def merge(self, record: Record) -> MergeOutcome:
        """Merge one record under last-write-wins."""
        if not isinstance(record, self.record_type):
            raise InvariantViolation(
                f"{type(record).__name__} merged into a {self.record_type.__name__} ledger"
            )

        existing = self._ledger.get(record.key)
        if existing is None:
            self._ledger[record.key] = record
            self._add(record)
            return MergeOutcome.INSERTED

        if existing.created_at < record.created_at:
            self._remove(existing)
            self._ledger[record.key] = record
            self._add(record)
            return MergeOutcome.UPDATED

        return MergeOutcome.IGNORED

    def seed(self, records: Iterable[Record]) -> int:
        """Apply previously persisted records before a run. Returns count merged in."""
        merged = 0
        for record in records:
            if self.merge(record) is not MergeOutcome.IGNORED:
                merged += 1
        bt.logging.debug({"aggregator_seed": {"type": self.record_type.__name__, "records": merged}})
        return merged

    def _add(self, record: Record) -> None:
        self._total += record.value
        if getattr(record, "error", False):
            self._error_records += 1
        if isinstance(record, TransactionRecord):
            self._category_counts[record.category.value] += 1
            self._category_totals[record.category.value] += record.value

    def _remove(self, record: Record) -> None:
        self._total -= record.value
        if getattr(record, "error", False):
            self._error_records -= 1
        if isinstance(record, TransactionRecord):
            self._category_counts[record.category.value] -= 1
            self._category_totals[record.category.value] -= record.value

    # -- Run counters --

    def begin_run(self) -> None:
        """Reset per-run counters. The ledger itself is kept."""
        self._events_observed = 0
        self._events_accepted = 0
        self._events_rejected = 0
        self._malformed_frames = 0
        self._events_per_round = []
        self.rejections = {}

    def observe_event(self, round_index: int) -> None:
        while len(self._events_per_round) <= round_index:
            self._events_per_round.append(0)
        self._events_per_round[round_index] += 1
        self._events_observed += 1

    def end_round(self, round_index: int, count: int) -> None:
        """Record the final event count of a completed round, including empty ones."""
        while len(self._events_per_round) <= round_index:
            self._events_per_round.append(0)
        self._events_per_round[round_index] = count

    def observe_accepted(self) -> None:
        self._events_accepted += 1

    def observe_rejection(self, reason: str) -> None:
        self._events_rejected += 1
        self.rejections[reason] = self.rejections.get(reason, 0) + 1

    def observe_malformed(self) -> None:
        self._malformed_frames += 1

    # -- Reads --

    def __len__(self) -> int:
        return len(self._ledger)

    def get(self, key: str) -> Record | None:
        return self._ledger.get(key)

    def records(self) -> list[Record]:
        """Ledger content ordered by key, for persistence."""
        return [self._ledger[k] for k in sorted(self._ledger)]

    def recompute_total(self) -> int:
        """Fold the ledger from scratch; must equal the running total."""
        return sum(r.value for r in self._ledger.values())

    def stats(self) -> AggregateStats:
        return AggregateStats(
            total=self._total,
            records=len(self._ledger),
            error_records=self._error_records,
            by_category={
                name: CategoryStats(count=count, total=self._category_totals[name])
                for name, count in self._category_counts.items()
            },
            events_observed=self._events_observed,
            events_accepted=self._events_accepted,
            events_rejected=self._events_rejected,
            malformed_frames=self._malformed_frames,
            events_per_round=list(self._events_per_round),
        )

    def snapshot(self) -> tuple[dict[str, Record], AggregateStats]:
        """Consistent copy of the ledger and its stats."""
        return dict(self._ledger), self.stats()


__all__ = ["Aggregator", "MergeOutcome", "Record"]
