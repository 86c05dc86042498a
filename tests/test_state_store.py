"""Tests for the local state cache."""

from __future__ import annotations

import json
from decimal import Decimal

import pytest

from caixa_pdv import engine, state_store
from caixa_pdv.constants import OutboxKind, PaymentMethod
from caixa_pdv.outbox import Outbox
from caixa_pdv.records import FixedDiscount, SaleItem


def test_load_cache_returns_none_when_missing(tmp_path):
    assert state_store.load_cache(tmp_path / "absent.json") is None


def test_cache_round_trip_keeps_state_and_outbox(tmp_path, state, at, store_tz):
    """Everything needed to resume the register survives a save and load."""

    engine.start_day(state, Decimal("50.00"))
    sale = engine.commit_sale(
        state,
        [SaleItem("P-1", "Coxinha", 2, Decimal("5.00"))],
        PaymentMethod.CASH,
        FixedDiscount(Decimal("1.00")),
        timestamp=at(hour=10),
    )
    engine.record_withdrawal(state, "2025-10-30", Decimal("5.00"), "Troco", now=at(hour=11), tz=store_tz)
    outbox = Outbox()
    outbox.enqueue(OutboxKind.SALE, sale.sale_id, {"sale_id": sale.sale_id})

    path = tmp_path / "cache" / "state.json"
    state_store.save_cache(path, state, outbox)
    restored_state, restored_outbox = state_store.load_cache(path)

    assert restored_state == state
    assert restored_outbox.entries == outbox.entries


def test_save_cache_writes_money_as_text(tmp_path, state):
    """Money is stored as strings so no precision is lost."""

    path = tmp_path / "state.json"
    state_store.save_cache(path, state, Outbox())

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["version"] == state_store.CACHE_FORMAT_VERSION
    assert payload["products"][1]["price"] == "7.50"
    assert not list(tmp_path.glob(".tmp_*"))


@pytest.mark.parametrize("content", ["{not json", "[]", '{"products": [{"name": "x"}]}'])
def test_load_cache_rejects_corrupt_files(tmp_path, content):
    """Unreadable caches surface as ValueError instead of a silent reset."""

    path = tmp_path / "state.json"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(ValueError, match="Corrupt local cache"):
        state_store.load_cache(path)
