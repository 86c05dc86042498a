"""Tests for the persistence outbox."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import Mock

import pytest

from caixa_pdv import outbox as outbox_module
from caixa_pdv.constants import OutboxKind, PaymentMethod
from caixa_pdv.outbox import Outbox
from caixa_pdv.records import (
    NO_DISCOUNT,
    Sale,
    SaleItem,
    Withdrawal,
    product_to_payload,
    sale_to_payload,
    withdrawal_to_payload,
)


@pytest.fixture
def sale(at) -> Sale:
    return Sale(
        sale_id="S1",
        items=(SaleItem("P-1", "Coxinha", 2, Decimal("5.00")),),
        subtotal=Decimal("10.00"),
        discount=NO_DISCOUNT,
        discount_amount=Decimal("0.00"),
        total=Decimal("10.00"),
        payment_method=PaymentMethod.CASH,
        timestamp=at(hour=10),
    )


def test_enqueue_deduplicates_and_moves_to_back(product_factory):
    """Queueing the same entity twice keeps one entry, carrying the newest payload, at the end."""

    box = Outbox()
    box.enqueue(OutboxKind.PRODUCT, "P-1", product_to_payload(product_factory(stock=5)))
    box.enqueue(OutboxKind.DRAWER_OPEN, "2025-10-30", {"day_key": "2025-10-30"})
    box.enqueue(OutboxKind.PRODUCT, "P-1", product_to_payload(product_factory(stock=3)))

    assert len(box) == 2
    assert [entry.kind for entry in box.entries] == [OutboxKind.DRAWER_OPEN, OutboxKind.PRODUCT]
    assert box.entries[-1].payload["stock"] == 3


def test_enqueue_replacement_keeps_failure_history():
    """A newer payload for a failing entity inherits its attempts and last error."""

    box = Outbox()
    box.enqueue(OutboxKind.DRAWER_CLOSE, "2025-10-30", {"day_key": "2025-10-30", "closing_cash": "80.00"})
    repository = Mock()
    repository.persist_drawer_close.side_effect = OSError("workbook locked")
    box.flush(repository)

    updated = box.enqueue(OutboxKind.DRAWER_CLOSE, "2025-10-30", {"day_key": "2025-10-30", "closing_cash": "60.00"})

    assert updated.attempts == 1
    assert updated.last_error == "workbook locked"
    assert box.entries == [updated]


def test_enqueue_copies_payload():
    """Later changes to the caller's dict do not leak into the queue."""

    box = Outbox()
    payload = {"day_key": "2025-10-30", "closing_cash": "80.00"}
    box.enqueue("drawer_close", "2025-10-30", payload)
    payload["closing_cash"] = "0.00"

    assert box.entries[0].payload["closing_cash"] == "80.00"
    assert box.entries[0].kind is OutboxKind.DRAWER_CLOSE


def test_flush_delivers_in_fifo_order_and_batches_products(product_factory, sale, at):
    """Products go out in one call; the remaining entries follow in queue order."""

    box = Outbox()
    box.enqueue(
        OutboxKind.DRAWER_OPEN,
        "2025-10-30",
        {"day_key": "2025-10-30", "opening_amount": "50.00", "previous_closing_cash": "0.00"},
    )
    box.enqueue(OutboxKind.SALE, sale.sale_id, sale_to_payload(sale))
    box.enqueue(OutboxKind.PRODUCT, "P-1", product_to_payload(product_factory("P-1", stock=8)))
    box.enqueue(OutboxKind.PRODUCT, "P-2", product_to_payload(product_factory("P-2", name="Suco")))
    withdrawal = Withdrawal("W1", Decimal("5.00"), "Troco", at(hour=11))
    box.enqueue(
        OutboxKind.WITHDRAWAL,
        "W1",
        {"day_key": "2025-10-30", "withdrawal": withdrawal_to_payload(withdrawal)},
    )
    box.enqueue(OutboxKind.DRAWER_CLOSE, "2025-10-30", {"day_key": "2025-10-30", "closing_cash": "55.00"})

    repository = Mock()
    result = box.flush(repository)

    assert result.delivered == 6
    assert result.clean
    assert len(box) == 0
    (products,), _ = repository.persist_products.call_args
    assert [p.product_id for p in products] == ["P-1", "P-2"]
    repository.persist_drawer_open.assert_called_once_with("2025-10-30", Decimal("50.00"), Decimal("0.00"))
    repository.persist_sale.assert_called_once_with(sale)
    repository.persist_withdrawal.assert_called_once_with(withdrawal, "2025-10-30")
    repository.persist_drawer_close.assert_called_once_with("2025-10-30", Decimal("55.00"))
    called = [name for name, _, _ in repository.method_calls]
    assert called.index("persist_drawer_open") < called.index("persist_sale") < called.index("persist_withdrawal")


def test_flush_records_failures_and_keeps_entries(sale):
    """A failing write stays queued with its attempt count and the error message."""

    box = Outbox()
    box.enqueue(OutboxKind.SALE, sale.sale_id, sale_to_payload(sale))
    box.enqueue(OutboxKind.DRAWER_CLOSE, "2025-10-30", {"day_key": "2025-10-30", "closing_cash": "10.00"})
    repository = Mock()
    repository.persist_sale.side_effect = OSError("workbook locked")

    result = box.flush(repository)

    assert result.delivered == 1
    assert result.failed == 1
    assert not result.clean
    (entry,) = box.entries
    assert entry.kind is OutboxKind.SALE
    assert entry.attempts == 1
    assert entry.last_error == "workbook locked"


def test_flush_failure_of_product_batch_marks_every_product(product_factory):
    box = Outbox()
    box.enqueue(OutboxKind.PRODUCT, "P-1", product_to_payload(product_factory("P-1")))
    box.enqueue(OutboxKind.PRODUCT, "P-2", product_to_payload(product_factory("P-2")))
    repository = Mock()
    repository.persist_products.side_effect = PermissionError("read only")

    result = box.flush(repository)

    assert result.failed == 2
    assert [entry.attempts for entry in box.entries] == [1, 1]


def test_exhausted_entries_are_skipped_until_reset(sale):
    """Entries that reached max_attempts are parked; reset_attempts revives them."""

    box = Outbox()
    box.enqueue(OutboxKind.SALE, sale.sale_id, sale_to_payload(sale))
    repository = Mock()
    repository.persist_sale.side_effect = OSError("offline")

    box.flush(repository, max_attempts=2)
    box.flush(repository, max_attempts=2)
    parked = box.flush(repository, max_attempts=2)

    assert parked.skipped == 1
    assert parked.failed == 0
    assert repository.persist_sale.call_count == 2
    assert box.exhausted(2) == box.entries
    assert box.pending(2) == []

    assert box.reset_attempts() == 1
    repository.persist_sale.side_effect = None
    assert box.flush(repository, max_attempts=2).delivered == 1
    assert len(box) == 0


def test_flush_on_empty_queue_is_clean():
    result = Outbox().flush(Mock())
    assert result == outbox_module.FlushResult()
    assert result.clean


def test_entry_payload_codec_keeps_attempts():
    """Cache serialization preserves the retry bookkeeping."""

    box = Outbox()
    entry = box.enqueue(OutboxKind.DRAWER_CLOSE, "2025-10-30", {"day_key": "2025-10-30", "closing_cash": "1.00"})
    failed = outbox_module.OutboxEntry(
        entry_id=entry.entry_id,
        kind=entry.kind,
        ref_id=entry.ref_id,
        payload=entry.payload,
        created_at=entry.created_at,
        attempts=2,
        last_error="boom",
    )

    restored = outbox_module.entry_from_payload(outbox_module.entry_to_payload(failed))
    assert restored == failed
