"""Immutable domain records shared by the engine, the DAL, and the cache.

Every record is a frozen dataclass so that committed sales, withdrawals and
archived reports cannot be edited in place; state changes always produce a
new record. The bottom half of the module holds the payload codec used by the
outbox and the local state cache: monetary values travel as strings to keep
:class:`~decimal.Decimal` precision and instants travel as ISO-8601 text.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple, Union

from .constants import ZERO, DiscountType, PaymentMethod, ProductCategory


@dataclass(frozen=True)
class Product:
    """A sellable product and its current stock level."""

    product_id: str
    name: str
    stock: int
    price: Decimal
    category: ProductCategory


@dataclass(frozen=True)
class SaleItem:
    """Cart line; name and price are snapshots taken when the line was added."""

    product_id: str
    product_name: str
    quantity: int
    price_per_item: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.price_per_item * self.quantity


@dataclass(frozen=True)
class NoDiscount:
    """Explicit absence of a discount."""

    @property
    def discount_type(self) -> Optional[DiscountType]:
        return None

    @property
    def value(self) -> Optional[Decimal]:
        return None


@dataclass(frozen=True)
class PercentageDiscount:
    """Discount expressed as a percentage of the subtotal."""

    value: Decimal

    @property
    def discount_type(self) -> Optional[DiscountType]:
        return DiscountType.PERCENTAGE


@dataclass(frozen=True)
class FixedDiscount:
    """Discount expressed as a flat amount off the subtotal."""

    value: Decimal

    @property
    def discount_type(self) -> Optional[DiscountType]:
        return DiscountType.FIXED


Discount = Union[NoDiscount, PercentageDiscount, FixedDiscount]
NO_DISCOUNT = NoDiscount()


@dataclass(frozen=True)
class Sale:
    """A committed sale. Created once by the sale ledger and never mutated."""

    sale_id: str
    items: Tuple[SaleItem, ...]
    subtotal: Decimal
    discount: Discount
    discount_amount: Decimal
    total: Decimal
    payment_method: PaymentMethod
    timestamp: datetime

    @property
    def discount_type(self) -> Optional[DiscountType]:
        return self.discount.discount_type

    @property
    def discount_value(self) -> Optional[Decimal]:
        return self.discount.value


@dataclass(frozen=True)
class Withdrawal:
    """Cash removed from the drawer ("sangria")."""

    withdrawal_id: str
    amount: Decimal
    reason: str
    timestamp: datetime


@dataclass(frozen=True)
class HistoricalReport:
    """Reconciled cash figures for one business day.

    ``closed_at`` is ``None`` for stubs created by a withdrawal on a day that
    has not been closed yet; ``end_day`` fills it in together with the opening
    and closing balances.
    """

    date: str
    opening_cash: Decimal = ZERO
    closing_cash: Decimal = ZERO
    withdrawals: Tuple[Withdrawal, ...] = ()
    closed_at: Optional[datetime] = None

    @property
    def is_closed(self) -> bool:
        return self.closed_at is not None

    @property
    def total_withdrawals(self) -> Decimal:
        return sum((withdrawal.amount for withdrawal in self.withdrawals), ZERO)


@dataclass(frozen=True)
class CashDrawer:
    """Open/closed state of the register's cash drawer."""

    is_open: bool = False
    opening_cash: Decimal = ZERO
    previous_closing_cash: Decimal = ZERO


@dataclass(frozen=True)
class StoreSnapshot:
    """Bootstrap view returned by the persistence collaborator."""

    products: Tuple[Product, ...] = ()
    sales: Tuple[Sale, ...] = ()
    drawer: CashDrawer = field(default_factory=CashDrawer)
    reports: Dict[str, HistoricalReport] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Payload codec
# ---------------------------------------------------------------------------


def _money(raw: Any) -> Decimal:
    return Decimal(str(raw)) if raw is not None else ZERO


def _instant(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw))


def product_to_payload(product: Product) -> Dict[str, Any]:
    return {
        "product_id": product.product_id,
        "name": product.name,
        "stock": product.stock,
        "price": str(product.price),
        "category": product.category.value,
    }


def product_from_payload(payload: Dict[str, Any]) -> Product:
    return Product(
        product_id=str(payload["product_id"]),
        name=str(payload["name"]),
        stock=int(payload["stock"]),
        price=_money(payload["price"]),
        category=ProductCategory(payload["category"]),
    )


def discount_to_payload(discount: Discount) -> Dict[str, Any]:
    discount_type = discount.discount_type
    return {
        "type": discount_type.value if discount_type is not None else None,
        "value": str(discount.value) if discount.value is not None else None,
    }


def discount_from_payload(payload: Optional[Dict[str, Any]]) -> Discount:
    """Rebuild the tagged discount variant from its payload form."""

    if not payload or payload.get("type") is None:
        return NO_DISCOUNT
    discount_type = DiscountType(payload["type"])
    value = _money(payload.get("value"))
    if discount_type is DiscountType.PERCENTAGE:
        return PercentageDiscount(value)
    return FixedDiscount(value)


def sale_to_payload(sale: Sale) -> Dict[str, Any]:
    return {
        "sale_id": sale.sale_id,
        "items": [
            {
                "product_id": item.product_id,
                "product_name": item.product_name,
                "quantity": item.quantity,
                "price_per_item": str(item.price_per_item),
            }
            for item in sale.items
        ],
        "subtotal": str(sale.subtotal),
        "discount": discount_to_payload(sale.discount),
        "discount_amount": str(sale.discount_amount),
        "total": str(sale.total),
        "payment_method": sale.payment_method.value,
        "timestamp": sale.timestamp.isoformat(),
    }


def sale_from_payload(payload: Dict[str, Any]) -> Sale:
    items = tuple(
        SaleItem(
            product_id=str(raw["product_id"]),
            product_name=str(raw["product_name"]),
            quantity=int(raw["quantity"]),
            price_per_item=_money(raw["price_per_item"]),
        )
        for raw in payload["items"]
    )
    return Sale(
        sale_id=str(payload["sale_id"]),
        items=items,
        subtotal=_money(payload["subtotal"]),
        discount=discount_from_payload(payload.get("discount")),
        discount_amount=_money(payload["discount_amount"]),
        total=_money(payload["total"]),
        payment_method=PaymentMethod(payload["payment_method"]),
        timestamp=_instant(payload["timestamp"]),
    )


def withdrawal_to_payload(withdrawal: Withdrawal) -> Dict[str, Any]:
    return {
        "withdrawal_id": withdrawal.withdrawal_id,
        "amount": str(withdrawal.amount),
        "reason": withdrawal.reason,
        "timestamp": withdrawal.timestamp.isoformat(),
    }


def withdrawal_from_payload(payload: Dict[str, Any]) -> Withdrawal:
    return Withdrawal(
        withdrawal_id=str(payload["withdrawal_id"]),
        amount=_money(payload["amount"]),
        reason=str(payload["reason"]),
        timestamp=_instant(payload["timestamp"]),
    )


def report_to_payload(report: HistoricalReport) -> Dict[str, Any]:
    return {
        "date": report.date,
        "opening_cash": str(report.opening_cash),
        "closing_cash": str(report.closing_cash),
        "withdrawals": [withdrawal_to_payload(w) for w in report.withdrawals],
        "closed_at": report.closed_at.isoformat() if report.closed_at else None,
    }


def report_from_payload(payload: Dict[str, Any]) -> HistoricalReport:
    closed_raw = payload.get("closed_at")
    return HistoricalReport(
        date=str(payload["date"]),
        opening_cash=_money(payload.get("opening_cash")),
        closing_cash=_money(payload.get("closing_cash")),
        withdrawals=tuple(withdrawal_from_payload(w) for w in payload.get("withdrawals", [])),
        closed_at=_instant(closed_raw) if closed_raw else None,
    )


def drawer_to_payload(drawer: CashDrawer) -> Dict[str, Any]:
    return {
        "is_open": drawer.is_open,
        "opening_cash": str(drawer.opening_cash),
        "previous_closing_cash": str(drawer.previous_closing_cash),
    }


def drawer_from_payload(payload: Dict[str, Any]) -> CashDrawer:
    return CashDrawer(
        is_open=bool(payload.get("is_open", False)),
        opening_cash=_money(payload.get("opening_cash")),
        previous_closing_cash=_money(payload.get("previous_closing_cash")),
    )
