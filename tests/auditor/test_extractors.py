"""Tests for balance and transaction record extractors."""

import json

import pytest

from relayaudit.auditor.extractors import (
    TRANSACTION_TYPES,
    BalanceExtractor,
    RecordExtractor,
    Rejected,
    TransactionExtractor,
    get_extractor,
)
from relayaudit.ledger.models import (
    BalanceRecord,
    RawEvent,
    TransactionCategory,
    TransactionRecord,
)


def _event(tags, content="", created_at=10, event_id="ev", kind=31111) -> RawEvent:
    return RawEvent(
        id=event_id, kind=kind, pubkey="ledger", created_at=created_at,
        tags=tags, content=content, sig="",
    )


def _tx_event(t="inbound-transaction-ok", e="tx1", p="alice", content=None, created_at=10):
    tags = []
    if t is not None:
        tags.append(["t", t])
    if p is not None:
        tags.append(["p", p])
    if e is not None:
        tags.append(["e", e])
    if content is None:
        content = json.dumps({"tokens": {"BTC": 3000}})
    return _event(tags, content=content, created_at=created_at, kind=1112)


class TestBalanceExtractor:

    def test_extracts_balance_in_sats(self):
        ev = _event([["d", "balance:BTC:abc"], ["amount", "500000"]], created_at=10)
        record = BalanceExtractor().extract(ev)
        assert record == BalanceRecord(account="abc", amount=500, created_at=10)

    def test_floors_millisats(self):
        ev = _event([["d", "balance:BTC:abc"], ["amount", "1999"]])
        assert BalanceExtractor().extract(ev).amount == 1

    def test_missing_d_tag_rejected(self):
        result = BalanceExtractor().extract(_event([["amount", "1000"]]))
        assert result == Rejected("missing_balance_tag")

    def test_d_tag_for_other_purpose_rejected(self):
        result = BalanceExtractor().extract(_event([["d", "profile:abc"], ["amount", "1000"]]))
        assert isinstance(result, Rejected)

    def test_other_asset_rejected(self):
        ev = _event([["d", "balance:USD:abc"], ["amount", "1000"]])
        assert isinstance(BalanceExtractor().extract(ev), Rejected)
        assert isinstance(BalanceExtractor(asset="USD").extract(ev), BalanceRecord)

    def test_empty_account_rejected(self):
        ev = _event([["d", "balance:BTC:"], ["amount", "1000"]])
        assert isinstance(BalanceExtractor().extract(ev), Rejected)

    def test_missing_amount_rejected(self):
        result = BalanceExtractor().extract(_event([["d", "balance:BTC:abc"]]))
        assert result == Rejected("missing_amount")

    @pytest.mark.parametrize("amount", ["abc", "nan", "inf", "12,5", "-1000", "-0.5"])
    def test_bad_amount_rejected(self, amount):
        ev = _event([["d", "balance:BTC:abc"], ["amount", amount]])
        assert isinstance(BalanceExtractor().extract(ev), Rejected)

    @pytest.mark.parametrize("amount, sats", [
        ("500000.0", 500),
        ("1999.9", 1),
        ("1e6", 1000),
        (" 2000 ", 2),
    ])
    def test_decimal_amount_strings_accepted(self, amount, sats):
        ev = _event([["d", "balance:BTC:abc"], ["amount", amount]])
        assert BalanceExtractor().extract(ev).amount == sats

    def test_extra_tag_segments_ignored(self):
        ev = _event([["d", "balance:BTC:abc:v2"], ["amount", "3000"]])
        assert BalanceExtractor().extract(ev).account == "abc"

    def test_zero_balance_accepted(self):
        ev = _event([["d", "balance:BTC:abc"], ["amount", "0"]])
        assert BalanceExtractor().extract(ev).amount == 0

    def test_filter_template(self):
        f = BalanceExtractor().filter_template(500)
        assert f.to_wire() == {"kinds": [31111], "limit": 500}


class TestTransactionExtractor:

    def test_inbound_ok(self):
        record = TransactionExtractor().extract(_tx_event())
        assert record == TransactionRecord(
            event_ref="tx1", counterparty="alice", amount=3,
            category=TransactionCategory.INBOUND, error=False, created_at=10,
        )

    def test_key_is_referenced_event_not_wrapper(self):
        record = TransactionExtractor().extract(_tx_event(e="original"))
        assert record.key == "original"

    def test_error_outcome_sets_fault(self):
        record = TransactionExtractor().extract(_tx_event(t="outbound-transaction-error"))
        assert record.category is TransactionCategory.OUTBOUND
        assert record.error is True

    def test_start_event_is_not_fault(self):
        record = TransactionExtractor().extract(_tx_event(t="internal-transaction-start"))
        assert record.category is TransactionCategory.INTERNAL
        assert record.error is False

    def test_amount_as_string(self):
        content = json.dumps({"tokens": {"BTC": "2500"}})
        assert TransactionExtractor().extract(_tx_event(content=content)).amount == 2

    @pytest.mark.parametrize("amount, sats", [(3000.0, 3), ("4500.0", 4), (1234.9, 1)])
    def test_float_amounts_accepted(self, amount, sats):
        content = json.dumps({"tokens": {"BTC": amount}})
        assert TransactionExtractor().extract(_tx_event(content=content)).amount == sats

    @pytest.mark.parametrize("missing", ["t", "p", "e"])
    def test_missing_required_tag_rejected(self, missing):
        ev = _tx_event(**{missing: None})
        assert isinstance(TransactionExtractor().extract(ev), Rejected)

    @pytest.mark.parametrize("content", [
        "",
        "not json",
        "[]",
        json.dumps({"tokens": {}}),
        json.dumps({"tokens": {"BTC": 0}}),
        json.dumps({"tokens": {"BTC": "abc"}}),
        json.dumps({"tokens": {"BTC": True}}),
        json.dumps({"tokens": {"BTC": 0.4}}),
        json.dumps({"tokens": {"BTC": -3000.0}}),
        json.dumps({"tokens": {"BTC": [3000]}}),
        json.dumps({"tokens": {"USD": 1000}}),
        json.dumps({"amount": 1000}),
    ])
    def test_bad_content_rejected(self, content):
        assert isinstance(TransactionExtractor().extract(_tx_event(content=content)), Rejected)

    def test_unknown_category_rejected(self):
        result = TransactionExtractor().extract(_tx_event(t="refund-transaction-ok"))
        assert result == Rejected("unknown_category")

    def test_filter_template_with_ledger(self):
        f = TransactionExtractor(ledger_pubkey="ledgerpk").filter_template(100)
        wire = f.to_wire()
        assert wire["kinds"] == [1112]
        assert wire["authors"] == ["ledgerpk"]
        assert wire["#t"] == TRANSACTION_TYPES
        assert wire["limit"] == 100

    def test_filter_template_without_ledger(self):
        wire = TransactionExtractor().filter_template(100).to_wire()
        assert "authors" not in wire


class TestRegistry:

    def test_get_extractor(self):
        ext = get_extractor("transactions", ledger_pubkey="pk")
        assert isinstance(ext, TransactionExtractor)
        assert isinstance(ext, RecordExtractor)
        assert ext.ledger_pubkey == "pk"

    def test_unknown_mode(self):
        with pytest.raises(ValueError, match="Unknown audit mode"):
            get_extractor("nope")
