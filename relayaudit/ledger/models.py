"""Pydantic models for the relay audit ledger.

Three groups:
- RawEvent / RelayFilter: what travels over the relay wire
- BalanceRecord / TransactionRecord: typed records extracted from events
- SyncCursor / AggregateStats: pagination state and derived ledger totals
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# ---------------------------------------------------------------------------
# Event kinds used by the LaWallet ledger
# ---------------------------------------------------------------------------

BALANCE_EVENT_KIND = 31111
TRANSACTION_EVENT_KIND = 1112

MILLISATS_PER_SAT = 1000


# ---------------------------------------------------------------------------
# Wire types
# ---------------------------------------------------------------------------


class RawEvent(BaseModel):
    """A signed relay event. Append-only; never mutated after decode."""

    model_config = ConfigDict(frozen=True)

    id: str
    kind: int
    pubkey: str
    created_at: int
    tags: list[list[str]] = Field(default_factory=list)
    content: str = ""
    sig: str = ""

    def tag(self, name: str) -> list[str] | None:
        """First tag row whose name matches, or None."""
        for row in self.tags:
            if row and row[0] == name:
                return row
        return None

    def tag_value(self, name: str) -> str | None:
        """Second element of the first matching tag row, if present."""
        row = self.tag(name)
        if row is None or len(row) < 2:
            return None
        return row[1]


class RelayFilter(BaseModel):
    """Subscription filter sent inside a REQ frame.

    Tag filters are keyed "#<tagname>" on the wire.
    """

    kinds: list[int] = Field(default_factory=list)
    authors: list[str] | None = None
    limit: int = Field(default=500, gt=0)
    until: int | None = None
    tag_filters: dict[str, list[str]] = Field(default_factory=dict)

    def with_until(self, until: int | None) -> RelayFilter:
        return self.model_copy(update={"until": until})

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the relay filter object, omitting unset fields."""
        data: dict[str, Any] = {"kinds": list(self.kinds), "limit": self.limit}
        if self.authors:
            data["authors"] = list(self.authors)
        if self.until is not None:
            data["until"] = self.until
        for name, values in self.tag_filters.items():
            data[f"#{name.lstrip('#')}"] = list(values)
        return data


# ---------------------------------------------------------------------------
# Domain records
# ---------------------------------------------------------------------------


class TransactionCategory(str, Enum):
    INTERNAL = "internal"
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class BalanceRecord(BaseModel):
    """Latest known balance for one account."""

    record_type: Literal["balance"] = "balance"
    account: str = Field(min_length=1)
    amount: int = Field(ge=0, description="Balance in sats")
    created_at: int

    @property
    def key(self) -> str:
        return self.account

    @property
    def value(self) -> int:
        return self.amount


class TransactionRecord(BaseModel):
    """One ledger transaction, keyed by the event it references.

    Start and outcome events for the same transfer share ``event_ref``,
    so the latest of them wins.
    """

    record_type: Literal["transaction"] = "transaction"
    event_ref: str = Field(min_length=1)
    counterparty: str
    amount: int = Field(ge=0, description="Amount in sats")
    category: TransactionCategory
    error: bool = False
    created_at: int

    @property
    def key(self) -> str:
        return self.event_ref

    @property
    def value(self) -> int:
        return self.amount


DomainRecord = Annotated[
    Union[BalanceRecord, TransactionRecord],
    Field(discriminator="record_type"),
]

domain_record_list = TypeAdapter(list[DomainRecord])


# ---------------------------------------------------------------------------
# Pagination + aggregate state
# ---------------------------------------------------------------------------


class SyncCursor(BaseModel):
    """Exclusive upper time bound for the next page of a scope."""

    scope: str
    until: int | None = None


class CategoryStats(BaseModel):
    """Record count and amount sum for one transaction category."""

    count: int = 0
    total: int = 0


class AggregateStats(BaseModel):
    """Totals derived from a ledger plus the current run's counters.

    ``by_category`` is filled for transaction ledgers only and always
    holds every category, keyed by its value.
    """

    total: int = 0
    records: int = 0
    error_records: int = 0
    by_category: dict[str, CategoryStats] = Field(default_factory=dict)
    events_observed: int = 0
    events_accepted: int = 0
    events_rejected: int = 0
    malformed_frames: int = 0
    events_per_round: list[int] = Field(default_factory=list)


__all__ = [
    "BALANCE_EVENT_KIND",
    "MILLISATS_PER_SAT",
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
    "domain_record_list",
]
