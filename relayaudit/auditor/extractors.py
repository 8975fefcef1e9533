"""Record extractors: turn raw relay events into ledger records.

Each audit mode is one extractor strategy. The engine is identical for
balances and transactions; only the subscription filter and the
extraction rules differ. Extraction never raises on bad input, it
returns a Rejected value instead, because unrelated events are expected
on an open relay.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol, Union, runtime_checkable

from relayaudit.auditor.errors import ExtractionRejected
from relayaudit.ledger.models import (
    BALANCE_EVENT_KIND,
    MILLISATS_PER_SAT,
    TRANSACTION_EVENT_KIND,
    BalanceRecord,
    RawEvent,
    RelayFilter,
    TransactionCategory,
    TransactionRecord,
)

DEFAULT_ASSET = "BTC"

# Outcome types only; "-start" events are not requested by default.
TRANSACTION_TYPES = [
    "internal-transaction-ok",
    "internal-transaction-error",
    "inbound-transaction-ok",
    "inbound-transaction-error",
    "outbound-transaction-ok",
    "outbound-transaction-error",
]

# Segments past the account are ignored.
_BALANCE_TAG = re.compile(r"^balance:(?P<asset>[^:]+):(?P<account>[^:]+)(?::.*)?$")


@dataclass(frozen=True)
class Rejected:
    """An event the extractor declined, with a short machine-readable reason."""

    reason: str


ExtractResult = Union[BalanceRecord, TransactionRecord, Rejected]


@runtime_checkable
class RecordExtractor(Protocol):
    """Strategy for one audit mode."""

    name: str
    record_type: type

    def filter_template(self, page_limit: int) -> RelayFilter:
        """Subscription filter for round 0 (no until bound)."""
        ...

    def extract(self, event: RawEvent) -> ExtractResult:
        ...


def _parse_millisats(raw: Any) -> int:
    """Parse a non-negative millisat amount, truncating any fraction.

    Accepts ints, finite floats and numeric strings ("500000", "3000.0").
    """
    if isinstance(raw, bool):
        raise ExtractionRejected("amount_not_numeric")
    if isinstance(raw, (int, float)):
        number = raw
    elif isinstance(raw, str):
        try:
            number = Decimal(raw.strip())
        except InvalidOperation:
            raise ExtractionRejected("amount_not_numeric") from None
    else:
        raise ExtractionRejected("amount_not_numeric")
    if isinstance(number, float) and not math.isfinite(number):
        raise ExtractionRejected("amount_not_numeric")
    if isinstance(number, Decimal) and not number.is_finite():
        raise ExtractionRejected("amount_not_numeric")
    if number < 0:
        raise ExtractionRejected("amount_negative")
    return int(number)


class BalanceExtractor:
    """Extracts BalanceRecords from kind 31111 balance events.

    Expected tags:
        ["d", "balance:<ASSET>:<account>"]
        ["amount", "<millisats>"]
    """

    name = "balance"
    record_type = BalanceRecord

    def __init__(self, asset: str = DEFAULT_ASSET):
        self.asset = asset

    def filter_template(self, page_limit: int) -> RelayFilter:
        return RelayFilter(kinds=[BALANCE_EVENT_KIND], limit=page_limit)

    def extract(self, event: RawEvent) -> ExtractResult:
        try:
            return self._extract(event)
        except ExtractionRejected as e:
            return Rejected(e.reason)

    def _extract(self, event: RawEvent) -> BalanceRecord:
        account = None
        for row in event.tags:
            if len(row) < 2 or row[0] != "d":
                continue
            match = _BALANCE_TAG.match(row[1])
            if match and match.group("asset") == self.asset:
                account = match.group("account")
                break
        if not account:
            raise ExtractionRejected("missing_balance_tag")

        amount = event.tag_value("amount")
        if amount is None or amount == "":
            raise ExtractionRejected("missing_amount")

        return BalanceRecord(
            account=account,
            amount=_parse_millisats(amount) // MILLISATS_PER_SAT,
            created_at=event.created_at,
        )


class TransactionExtractor:
    """Extracts TransactionRecords from kind 1112 ledger events.

    Expected tags ``t`` (e.g. "inbound-transaction-ok"), ``p`` (counterparty)
    and ``e`` (referenced transaction event), plus JSON content of the form
    {"tokens": {"<ASSET>": <millisats>}}.
    """

    name = "transactions"
    record_type = TransactionRecord

    def __init__(
        self,
        ledger_pubkey: str | None = None,
        asset: str = DEFAULT_ASSET,
        transaction_types: list[str] | None = None,
    ):
        self.ledger_pubkey = ledger_pubkey
        self.asset = asset
        self.transaction_types = list(transaction_types or TRANSACTION_TYPES)

    def filter_template(self, page_limit: int) -> RelayFilter:
        return RelayFilter(
            kinds=[TRANSACTION_EVENT_KIND],
            authors=[self.ledger_pubkey] if self.ledger_pubkey else None,
            limit=page_limit,
            tag_filters={"t": self.transaction_types},
        )

    def extract(self, event: RawEvent) -> ExtractResult:
        try:
            return self._extract(event)
        except ExtractionRejected as e:
            return Rejected(e.reason)

    def _extract(self, event: RawEvent) -> TransactionRecord:
        type_token = event.tag_value("t")
        counterparty = event.tag_value("p")
        event_ref = event.tag_value("e")
        if not type_token:
            raise ExtractionRejected("missing_t_tag")
        if counterparty is None:
            raise ExtractionRejected("missing_p_tag")
        if not event_ref:
            raise ExtractionRejected("missing_e_tag")

        try:
            payload = json.loads(event.content) if event.content else None
        except ValueError:
            raise ExtractionRejected("content_not_json") from None
        if not isinstance(payload, dict) or not isinstance(payload.get("tokens"), dict):
            raise ExtractionRejected("missing_tokens")

        raw_amount = payload["tokens"].get(self.asset)
        if raw_amount is None:
            raise ExtractionRejected("missing_asset_amount")
        millisats = _parse_millisats(raw_amount)
        if millisats == 0:
            raise ExtractionRejected("zero_amount")

        segments = type_token.split("-")
        try:
            category = TransactionCategory(segments[0])
        except ValueError:
            raise ExtractionRejected("unknown_category") from None

        return TransactionRecord(
            event_ref=event_ref,
            counterparty=counterparty,
            amount=millisats // MILLISATS_PER_SAT,
            category=category,
            error=len(segments) > 2 and segments[2] == "error",
            created_at=event.created_at,
        )


_EXTRACTORS: dict[str, type] = {
    BalanceExtractor.name: BalanceExtractor,
    TransactionExtractor.name: TransactionExtractor,
}


def available_modes() -> list[str]:
    return list(_EXTRACTORS.keys())


def get_extractor(mode: str, **options: Any) -> RecordExtractor:
    """Build the extractor for an audit mode."""
    try:
        cls = _EXTRACTORS[mode]
    except KeyError:
        raise ValueError(f"Unknown audit mode: {mode} (expected one of {available_modes()})") from None
    return cls(**options)


__all__ = [
    "DEFAULT_ASSET",
    "TRANSACTION_TYPES",
    "BalanceExtractor",
    "ExtractResult",
    "RecordExtractor",
    "Rejected",
    "TransactionExtractor",
    "available_modes",
    "get_extractor",
]
