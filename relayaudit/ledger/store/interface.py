"""LedgerStore protocol - pluggable persistence interface.

Implementations: FilesystemStore (v1). The engine only needs
"load prior state" and "save current state" per audit scope.
"""

from __future__ import annotations

from typing import Protocol, Sequence, runtime_checkable

from relayaudit.ledger.models import BalanceRecord, TransactionRecord


@runtime_checkable
class LedgerStore(Protocol):
    """Abstract interface for reading/writing persisted ledgers."""

    async def load_records(
        self, scope: str,
    ) -> list[BalanceRecord | TransactionRecord]:
        """Load the persisted ledger for a scope. Empty if none exists."""
        ...

    async def save_records(
        self, scope: str, records: Sequence[BalanceRecord | TransactionRecord],
    ) -> None:
        """Replace the persisted ledger for a scope."""
        ...


__all__ = ["LedgerStore"]
