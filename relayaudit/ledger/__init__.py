"""Ledger data model and persistence for relay audits.

Records extracted from relay events are deduplicated into a keyed ledger:
- BalanceRecord: latest balance per account (kind 31111 events)
- TransactionRecord: latest state per referenced transaction (kind 1112 events)

The ledger is persisted as a JSON array of records so later runs can resume.
"""

from .models import (
    BALANCE_EVENT_KIND,
    TRANSACTION_EVENT_KIND,
    AggregateStats,
    BalanceRecord,
    CategoryStats,
    DomainRecord,
    RawEvent,
    RelayFilter,
    SyncCursor,
    TransactionCategory,
    TransactionRecord,
)

__all__ = [
    "BALANCE_EVENT_KIND",
    "TRANSACTION_EVENT_KIND",
    "AggregateStats",
    "BalanceRecord",
    "CategoryStats",
    "DomainRecord",
    "RawEvent",
    "RelayFilter",
    "SyncCursor",
    "TransactionCategory",
    "TransactionRecord",
]
