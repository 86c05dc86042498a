"""Behavior tests for the register engine."""

from __future__ import annotations

from decimal import Decimal

import pytest

from caixa_pdv import engine
from caixa_pdv.constants import PaymentMethod, ProductCategory
from caixa_pdv.records import CashDrawer, HistoricalReport, PercentageDiscount, SaleItem


def _line(product_id: str, quantity: int, price: str, name: str = "Coxinha") -> SaleItem:
    return SaleItem(product_id, name, quantity, Decimal(price))


# ---------------------------------------------------------------------------
# Product registry
# ---------------------------------------------------------------------------


def test_register_product_assigns_identifier(state):
    """New products get a fresh identifier and a normalized price."""

    product = engine.register_product(state, name="  Pastel ", stock=4, price="6.5", category="Food")

    assert product.product_id
    assert product.name == "Pastel"
    assert product.price == Decimal("6.50")
    assert product.category is ProductCategory.FOOD
    assert engine.get_product(state, product.product_id) == product


@pytest.mark.parametrize(
    "name, stock, price",
    [("", 1, "1.00"), ("Pastel", -1, "1.00"), ("Pastel", 1, "-0.01"), ("Pastel", 1, "abc")],
)
def test_register_product_rejects_invalid_values(state, name, stock, price):
    """Blank names, negative stock and invalid prices are rejected."""

    with pytest.raises(ValueError):
        engine.register_product(state, name=name, stock=stock, price=price)
    assert len(state.products) == 3


def test_register_products_is_all_or_nothing(state):
    """One invalid draft rejects the whole batch."""

    drafts = [
        {"name": "Pastel", "stock": 2, "price": "6.00"},
        {"name": "", "stock": 2, "price": "6.00"},
    ]
    with pytest.raises(ValueError):
        engine.register_products(state, drafts)
    assert len(state.products) == 3

    created = engine.register_products(state, drafts[:1])
    assert [p.name for p in created] == ["Pastel"]
    assert len(state.products) == 4


def test_list_products_filters_and_sorts(state):
    """Listing is sorted by name and honors category and stock filters."""

    assert [p.name for p in engine.list_products(state)] == ["Caderno", "Coxinha", "Suco"]
    assert [p.name for p in engine.list_products(state, category=ProductCategory.STORE)] == ["Caderno"]
    assert [p.name for p in engine.list_products(state, in_stock_only=True)] == ["Coxinha", "Suco"]


def test_update_product_replaces_fields(state):
    """Only the supplied fields change."""

    updated = engine.update_product(state, "P-2", stock=8, price=Decimal("8"))

    assert updated.stock == 8
    assert updated.price == Decimal("8.00")
    assert updated.name == "Suco"
    assert engine.get_product(state, "P-2") == updated


def test_update_product_rejects_unknown_input(state):
    """Unknown products and unknown fields are both errors."""

    with pytest.raises(engine.MissingReferenceError):
        engine.update_product(state, "nope", stock=1)
    with pytest.raises(KeyError):
        engine.update_product(state, "P-1", color="red")


# ---------------------------------------------------------------------------
# Cart helpers
# ---------------------------------------------------------------------------


def test_add_to_cart_merges_and_clamps_to_stock(state):
    """Repeated additions merge into one line that never exceeds stock."""

    juice = engine.get_product(state, "P-2")
    cart = engine.add_to_cart([], juice, 2)
    cart = engine.add_to_cart(cart, juice, 5)

    assert len(cart) == 1
    assert cart[0].quantity == 3
    assert cart[0].price_per_item == Decimal("7.50")


def test_add_to_cart_rejects_out_of_stock(state):
    """Products without stock cannot enter the cart."""

    with pytest.raises(engine.OutOfStockError):
        engine.add_to_cart([], engine.get_product(state, "P-3"))


def test_add_to_cart_rejects_non_positive_quantity(state):
    with pytest.raises(ValueError):
        engine.add_to_cart([], engine.get_product(state, "P-1"), 0)


def test_update_cart_quantity_removes_line_at_zero(state):
    """Setting a quantity of zero drops the line; larger values are clamped."""

    coxinha = engine.get_product(state, "P-1")
    cart = engine.add_to_cart([], coxinha, 2)

    assert engine.update_cart_quantity(cart, coxinha, 50)[0].quantity == 10
    assert engine.update_cart_quantity(cart, coxinha, 0) == []


# ---------------------------------------------------------------------------
# Sale ledger and inventory
# ---------------------------------------------------------------------------


def test_commit_sale_records_totals_and_deducts_stock(state, at):
    """Committing a sale prices the cart and takes the units out of stock."""

    cart = [_line("P-1", 2, "5.00"), _line("P-2", 1, "7.50", name="Suco")]
    sale = engine.commit_sale(
        state,
        cart,
        PaymentMethod.PIX,
        PercentageDiscount(Decimal("10")),
        timestamp=at(hour=10),
    )

    assert sale.subtotal == Decimal("17.50")
    assert sale.discount_amount == Decimal("1.75")
    assert sale.total == Decimal("15.75")
    assert sale.sale_id.startswith("S20251030100000")
    assert state.sales == [sale]
    assert engine.get_product(state, "P-1").stock == 8
    assert engine.get_product(state, "P-2").stock == 2


def test_commit_sale_rejects_empty_cart(state):
    """An empty cart leaves the state untouched."""

    with pytest.raises(engine.EmptyCartError):
        engine.commit_sale(state, [], PaymentMethod.CASH)
    assert state.sales == []


def test_stock_deduction_clamps_at_zero_and_skips_unknown(state):
    """Overselling clamps stock to zero; unknown products are ignored."""

    products = engine.apply_stock_deduction(
        state.products,
        [_line("P-2", 5, "7.50"), _line("ghost", 1, "1.00")],
    )
    assert {p.product_id: p.stock for p in products} == {"P-1": 10, "P-2": 0, "P-3": 0}


# ---------------------------------------------------------------------------
# Cash drawer
# ---------------------------------------------------------------------------


def test_full_day_closes_with_cash_sales_only(state, at, store_tz):
    """Opening 50 + cash 30 closes at 80; the Pix sale never enters the drawer."""

    engine.start_day(state, Decimal("50.00"))
    engine.commit_sale(state, [_line("P-1", 6, "5.00")], PaymentMethod.CASH, timestamp=at(hour=10))
    engine.commit_sale(state, [_line("P-1", 4, "5.00")], PaymentMethod.PIX, timestamp=at(hour=11))

    report = engine.end_day(state, now=at(hour=18), tz=store_tz)

    assert report.date == "2025-10-30"
    assert report.opening_cash == Decimal("50.00")
    assert report.closing_cash == Decimal("80.00")
    assert report.is_closed
    assert state.drawer == CashDrawer(is_open=False, previous_closing_cash=Decimal("80.00"))
    assert engine.get_product(state, "P-1").stock == 0


def test_drawer_state_machine_rejects_repeated_transitions(state, at, store_tz):
    """Opening twice or closing a closed drawer raises DrawerStateError."""

    with pytest.raises(engine.DrawerStateError):
        engine.end_day(state, now=at(), tz=store_tz)

    engine.start_day(state, Decimal("10"))
    with pytest.raises(engine.DrawerStateError):
        engine.start_day(state, Decimal("20"))
    assert state.drawer.opening_cash == Decimal("10.00")


def test_start_day_rejects_negative_amount(state):
    with pytest.raises(ValueError):
        engine.start_day(state, Decimal("-1"))
    assert not state.drawer.is_open


def test_end_day_keeps_earlier_withdrawals(state, at, store_tz):
    """Withdrawals taken while the day is open reduce the closing balance."""

    engine.start_day(state, Decimal("50.00"))
    engine.commit_sale(state, [_line("P-1", 2, "5.00")], PaymentMethod.CASH, timestamp=at(hour=9))
    engine.record_withdrawal(state, "2025-10-30", Decimal("15.00"), "Troco", now=at(hour=10), tz=store_tz)

    report = engine.end_day(state, now=at(hour=18), tz=store_tz)

    assert report.closing_cash == Decimal("45.00")
    assert len(report.withdrawals) == 1


# ---------------------------------------------------------------------------
# Withdrawals
# ---------------------------------------------------------------------------


@pytest.fixture
def closed_day(state, at, store_tz):
    """A day opened with 50.00, one 30.00 cash sale, one 20.00 Pix sale, closed."""

    engine.start_day(state, Decimal("50.00"))
    engine.commit_sale(state, [_line("P-1", 6, "5.00")], PaymentMethod.CASH, timestamp=at(hour=10))
    engine.commit_sale(state, [_line("P-1", 4, "5.00")], PaymentMethod.PIX, timestamp=at(hour=11))
    engine.end_day(state, now=at(hour=18), tz=store_tz)
    return state


def test_withdrawal_after_close_deducts_from_closing(closed_day, at, store_tz):
    """A withdrawal on a closed day lowers its closing cash and the carried balance."""

    withdrawal = engine.record_withdrawal(
        closed_day, "2025-10-30", Decimal("20.00"), "change fund", now=at(hour=19), tz=store_tz
    )

    report = closed_day.reports["2025-10-30"]
    assert withdrawal.withdrawal_id.startswith("W")
    assert withdrawal.reason == "change fund"
    assert report.withdrawals == (withdrawal,)
    assert report.closing_cash == Decimal("60.00")
    assert closed_day.drawer.previous_closing_cash == Decimal("60.00")


def test_withdrawal_exceeding_remaining_cash_is_rejected(closed_day, at, store_tz):
    """After withdrawing 20.00 only 60.00 remains, so 70.00 is rejected."""

    engine.record_withdrawal(closed_day, "2025-10-30", Decimal("20.00"), "change fund", now=at(hour=19), tz=store_tz)

    with pytest.raises(engine.InsufficientCashError, match="amount exceeds available cash: 60.00"):
        engine.record_withdrawal(closed_day, "2025-10-30", Decimal("70.00"), "deposit", now=at(hour=20), tz=store_tz)

    assert len(closed_day.reports["2025-10-30"].withdrawals) == 1
    assert closed_day.reports["2025-10-30"].closing_cash == Decimal("60.00")


@pytest.mark.parametrize("amount, reason", [(Decimal("0"), "Troco"), (Decimal("-5"), "Troco"), (Decimal("5"), "   ")])
def test_withdrawal_validates_amount_and_reason(closed_day, at, store_tz, amount, reason):
    """Non-positive amounts and blank reasons are rejected before any check of cash."""

    with pytest.raises(ValueError):
        engine.record_withdrawal(closed_day, "2025-10-30", amount, reason, now=at(hour=19), tz=store_tz)


def test_withdrawal_on_past_day_keeps_latest_balance(closed_day, at, store_tz):
    """Withdrawing from an older day does not touch the carried closing balance."""

    closed_day.reports["2025-10-29"] = HistoricalReport(
        date="2025-10-29",
        opening_cash=Decimal("100.00"),
        closing_cash=Decimal("100.00"),
        closed_at=at("2025-10-29", 18),
    )
    engine.record_withdrawal(closed_day, "2025-10-29", Decimal("40.00"), "Banco", now=at(hour=19), tz=store_tz)

    assert closed_day.reports["2025-10-29"].closing_cash == Decimal("60.00")
    assert closed_day.drawer.previous_closing_cash == Decimal("80.00")


def test_withdrawal_on_empty_day_has_no_cash(state, at, store_tz):
    """A day without drawer activity has nothing to withdraw."""

    with pytest.raises(engine.InsufficientCashError):
        engine.record_withdrawal(state, "2025-10-01", Decimal("1.00"), "Troco", now=at(), tz=store_tz)
    assert state.reports == {}


def test_closed_day_cannot_be_reopened(closed_day, at, store_tz):
    """A reconciled day stays closed; the next day opens from its closing balance."""

    with pytest.raises(engine.DrawerStateError, match="already closed for 2025-10-30"):
        engine.start_day(closed_day, Decimal("80.00"), now=at(hour=19), tz=store_tz)
    assert not closed_day.drawer.is_open
    assert engine.available_cash(closed_day, "2025-10-30", now=at(hour=19), tz=store_tz) == Decimal("80.00")

    engine.start_day(closed_day, closed_day.drawer.previous_closing_cash, now=at("2025-10-31", 8), tz=store_tz)
    report = engine.end_day(closed_day, now=at("2025-10-31", 18), tz=store_tz)

    assert report.closing_cash == Decimal("80.00")
    assert closed_day.reports["2025-10-30"].closing_cash == Decimal("80.00")


def test_summarize_uses_open_drawer_for_today(state, at, store_tz):
    """The day in progress takes its opening balance from the open drawer."""

    engine.start_day(state, Decimal("25.00"))
    engine.commit_sale(state, [_line("P-1", 1, "5.00")], PaymentMethod.CASH, timestamp=at(hour=9))

    summary = engine.summarize(state, "2025-10-30", now=at(hour=12), tz=store_tz)

    assert summary.opening_cash == Decimal("25.00")
    assert summary.expected_closing_cash == Decimal("30.00")
    assert summary.report is None
    assert engine.available_cash(state, "2025-10-30", now=at(hour=12), tz=store_tz) == Decimal("30.00")


def test_to_money_rejects_garbage():
    assert engine.to_money("3.456") == Decimal("3.46")
    with pytest.raises(ValueError):
        engine.to_money("three")
    with pytest.raises(ValueError):
        engine.to_money("NaN")
