"""Register engine: inventory, sales, cash drawer, and withdrawals.

Every operation receives the owned :class:`AppState` explicitly and either
returns a value or replaces parts of that state. Nothing here talks to the
workbook or the outbox; :mod:`caixa_pdv.core_logic` sequences the engine with
persistence. Checks run before the first assignment so a rejected operation
leaves the state untouched.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, tzinfo
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from . import log
from .constants import ZERO, PaymentMethod, ProductCategory
from .pricing import price_cart, quantize_money
from .records import (
    NO_DISCOUNT,
    CashDrawer,
    Discount,
    HistoricalReport,
    Product,
    Sale,
    SaleItem,
    Withdrawal,
)
from .reporting import (
    DaySummary,
    attach_withdrawal,
    day_key,
    latest_closed_key,
    local_now,
    merge_closing,
    sales_for_day,
    summarize_day,
)


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product is unknown."""


class EmptyCartError(BusinessRuleViolation):
    """Raised when a sale is attempted without any cart lines."""


class OutOfStockError(BusinessRuleViolation):
    """Raised when a product without stock is added to a cart."""


class InsufficientCashError(BusinessRuleViolation):
    """Raised when a withdrawal exceeds the cash available for the day."""


class DrawerStateError(BusinessRuleViolation):
    """Raised when an action is not allowed in the drawer's current state."""


@dataclass
class AppState:
    """Mutable register state owned by a single runtime context."""

    products: List[Product] = field(default_factory=list)
    sales: List[Sale] = field(default_factory=list)
    drawer: CashDrawer = field(default_factory=CashDrawer)
    reports: Dict[str, HistoricalReport] = field(default_factory=dict)


def generate_record_id(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier such as ``S20251030184501123456-1a2b3c``.

    The timestamp digits keep identifiers in creation order; the random suffix
    keeps them unique when two records share the same microsecond.
    """

    when = when or local_now()
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:6]}"


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is a strictly positive integer.

    Raises:
        ValueError: If ``quantity`` is not an ``int`` or is zero or negative.
    """

    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be a whole number greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """

    if amount < ZERO:
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def to_money(raw: Union[Decimal, str, int, float]) -> Decimal:
    """Coerce ``raw`` into a cent-quantized :class:`~decimal.Decimal`.

    Raises:
        ValueError: If ``raw`` is not a finite number.
    """

    try:
        amount = Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {raw!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {raw!r}")
    return quantize_money(amount)


# ---------------------------------------------------------------------------
# Product registry
# ---------------------------------------------------------------------------


def _build_product(product_id: str, *, name: str, stock: int, price: Any, category: Any) -> Product:
    clean_name = (name or "").strip()
    if not clean_name:
        raise ValueError("Product name must not be empty")
    if isinstance(stock, bool) or not isinstance(stock, int) or stock < 0:
        log.error("Stock validation failed: %s", stock)
        raise ValueError("Stock must be a whole number, zero or positive")
    amount = to_money(price)
    require_nonnegative_money(amount)
    return Product(
        product_id=product_id,
        name=clean_name,
        stock=stock,
        price=amount,
        category=ProductCategory(category),
    )


def get_product(state: AppState, product_id: str) -> Product:
    """Resolve a product by identifier.

    Raises:
        MissingReferenceError: If ``product_id`` is not registered.
    """

    for product in state.products:
        if product.product_id == product_id:
            return product
    log.warning("Product lookup failed for id '%s'", product_id)
    raise MissingReferenceError(f"Unknown product id: {product_id}")


def list_products(
    state: AppState,
    *,
    category: Optional[ProductCategory] = None,
    in_stock_only: bool = False,
) -> List[Product]:
    """Return registered products sorted by name, optionally filtered."""

    products = [
        product
        for product in state.products
        if (category is None or product.category == category)
        and (not in_stock_only or product.stock > 0)
    ]
    return sorted(products, key=lambda product: product.name.casefold())


def register_product(
    state: AppState,
    *,
    name: str,
    stock: int,
    price: Any,
    category: Any = ProductCategory.FOOD,
) -> Product:
    """Validate and register a new product under a fresh identifier."""

    product = _build_product(str(uuid.uuid4()), name=name, stock=stock, price=price, category=category)
    state.products = [*state.products, product]
    log.info("Registered product '%s' (%s, stock=%s)", product.name, product.product_id, product.stock)
    return product


def register_products(state: AppState, drafts: Iterable[Mapping[str, Any]]) -> List[Product]:
    """Register several products at once.

    Every draft is validated before any product is added, so one bad entry
    rejects the whole batch.
    """

    created = [
        _build_product(
            str(uuid.uuid4()),
            name=draft.get("name", ""),
            stock=draft.get("stock", 0),
            price=draft.get("price", ZERO),
            category=draft.get("category", ProductCategory.FOOD),
        )
        for draft in drafts
    ]
    state.products = [*state.products, *created]
    log.info("Registered %d products in bulk", len(created))
    return created


def update_product(state: AppState, product_id: str, **changes: Any) -> Product:
    """Replace selected fields of an existing product.

    Args:
        state (AppState): Register state owning the product list.
        product_id (str): Identifier of the product to edit.
        **changes: Any of ``name``, ``stock``, ``price``, ``category``.

    Returns:
        Product: The updated product record.

    Raises:
        MissingReferenceError: If the product does not exist.
        KeyError: If an unsupported field is supplied.
        ValueError: When the resulting values fail validation.
    """

    current = get_product(state, product_id)
    unknown = set(changes) - {"name", "stock", "price", "category"}
    if unknown:
        raise KeyError(f"Unknown product field(s): {', '.join(sorted(unknown))}")
    updated = _build_product(
        product_id,
        name=changes.get("name", current.name),
        stock=changes.get("stock", current.stock),
        price=changes.get("price", current.price),
        category=changes.get("category", current.category),
    )
    state.products = [updated if p.product_id == product_id else p for p in state.products]
    log.info("Updated product '%s' (%s)", updated.name, product_id)
    return updated


# ---------------------------------------------------------------------------
# Cart helpers
# ---------------------------------------------------------------------------


def add_to_cart(cart: Sequence[SaleItem], product: Product, quantity: int = 1) -> List[SaleItem]:
    """Return a new cart with ``quantity`` units of ``product`` added.

    Lines for the same product are merged and clamped to the product's stock.
    Name and price are captured from ``product`` the first time it enters the
    cart.

    Raises:
        OutOfStockError: If the product has no stock.
        ValueError: If ``quantity`` is not a positive integer.
    """

    require_positive_quantity(quantity)
    if product.stock <= 0:
        log.warning("Attempted to add out-of-stock product '%s' to cart", product.product_id)
        raise OutOfStockError(f"Product '{product.name}' is out of stock")

    result = list(cart)
    for index, item in enumerate(result):
        if item.product_id == product.product_id:
            wanted = item.quantity + quantity
            if wanted > product.stock:
                log.warning("Clamped cart quantity for '%s' to stock %s", product.product_id, product.stock)
            result[index] = replace(item, quantity=min(wanted, product.stock))
            return result

    if quantity > product.stock:
        log.warning("Clamped cart quantity for '%s' to stock %s", product.product_id, product.stock)
    result.append(
        SaleItem(
            product_id=product.product_id,
            product_name=product.name,
            quantity=min(quantity, product.stock),
            price_per_item=product.price,
        )
    )
    return result


def update_cart_quantity(cart: Sequence[SaleItem], product: Product, quantity: int) -> List[SaleItem]:
    """Set the quantity of ``product`` in the cart; zero removes the line."""

    clamped = max(0, min(quantity, product.stock))
    if clamped == 0:
        return [item for item in cart if item.product_id != product.product_id]
    return [
        replace(item, quantity=clamped) if item.product_id == product.product_id else item
        for item in cart
    ]


# ---------------------------------------------------------------------------
# Inventory ledger
# ---------------------------------------------------------------------------


def apply_stock_deduction(products: Sequence[Product], items: Iterable[SaleItem]) -> List[Product]:
    """Return a new product list with the sold quantities taken out of stock.

    Stock is clamped at zero instead of rejecting a sale that was already
    paid for. Lines whose product is no longer registered are skipped.
    """

    sold: Dict[str, int] = {}
    for item in items:
        sold[item.product_id] = sold.get(item.product_id, 0) + item.quantity

    known = {product.product_id for product in products}
    for product_id in sold.keys() - known:
        log.debug("Skipping stock deduction for unknown product '%s'", product_id)

    return [
        replace(product, stock=max(0, product.stock - sold[product.product_id]))
        if product.product_id in sold
        else product
        for product in products
    ]


# ---------------------------------------------------------------------------
# Sale ledger
# ---------------------------------------------------------------------------


def commit_sale(
    state: AppState,
    cart: Sequence[SaleItem],
    payment_method: PaymentMethod,
    discount: Discount = NO_DISCOUNT,
    *,
    timestamp: Optional[datetime] = None,
) -> Sale:
    """Turn ``cart`` into an immutable :class:`Sale` and deduct stock.

    The drawer state is not checked here; callers that expose selling to a
    user must reject sales while the drawer is closed.

    Args:
        state (AppState): Register state receiving the sale.
        cart (Sequence[SaleItem]): Cart lines to sell. Copied into the sale.
        payment_method (PaymentMethod): How the customer paid.
        discount (Discount): Discount variant applied to the subtotal.
        timestamp (datetime | None): Sale instant; defaults to now.

    Returns:
        Sale: The committed sale, already appended to ``state.sales``.

    Raises:
        EmptyCartError: If ``cart`` has no lines.
        ValueError: If a line carries an invalid quantity or price.
    """

    if not cart:
        log.warning("Rejected sale with an empty cart")
        raise EmptyCartError("Cannot finalize a sale with an empty cart")
    for item in cart:
        require_positive_quantity(item.quantity)
        require_nonnegative_money(item.price_per_item)
    payment = PaymentMethod(payment_method)

    totals = price_cart(cart, discount)
    moment = timestamp or local_now()
    sale = Sale(
        sale_id=generate_record_id("S", when=moment),
        items=tuple(cart),
        subtotal=totals.subtotal,
        discount=discount,
        discount_amount=totals.discount_amount,
        total=totals.total,
        payment_method=payment,
        timestamp=moment,
    )
    updated_products = apply_stock_deduction(state.products, sale.items)

    state.sales = [*state.sales, sale]
    state.products = updated_products
    log.info(
        "Committed sale '%s' (%d lines, total=%s, payment=%s)",
        sale.sale_id,
        len(sale.items),
        sale.total,
        sale.payment_method.value,
    )
    return sale


# ---------------------------------------------------------------------------
# Cash drawer state machine
# ---------------------------------------------------------------------------


def start_day(
    state: AppState,
    opening_amount: Decimal,
    *,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> CashDrawer:
    """Open the drawer with ``opening_amount`` in it.

    A business day is closed at most once. Once ``end_day`` has archived the
    report for the local day of ``now``, that day cannot be opened again.

    Raises:
        DrawerStateError: If the drawer is already open or today's report is
            already closed.
        ValueError: If ``opening_amount`` is negative.
    """

    if state.drawer.is_open:
        log.warning("Rejected start of day: drawer already open")
        raise DrawerStateError("Cash drawer is already open")
    key = day_key(now or local_now(tz), tz)
    report = state.reports.get(key)
    if report is not None and report.is_closed:
        log.warning("Rejected start of day: %s was already closed", key)
        raise DrawerStateError(f"Cash drawer was already closed for {key}")
    amount = to_money(opening_amount)
    require_nonnegative_money(amount)

    state.drawer = replace(state.drawer, is_open=True, opening_cash=amount)
    log.info("Opened cash drawer with %s", amount)
    return state.drawer


def end_day(
    state: AppState,
    *,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> HistoricalReport:
    """Close the drawer and archive the day's report.

    The closing balance is the opening cash plus the day's cash sales, minus
    any withdrawal already attached to the day. Pix sales never enter the
    drawer.

    Args:
        state (AppState): Register state; the drawer must be open.
        now (datetime | None): Closing instant; defaults to now. Its local
            day selects the sales and the report.
        tz (tzinfo | None): Zone that defines the business day.

    Returns:
        HistoricalReport: The merged report stored under today's key.

    Raises:
        DrawerStateError: If the drawer is already closed.
    """

    if not state.drawer.is_open:
        log.warning("Rejected end of day: drawer already closed")
        raise DrawerStateError("Cash drawer is already closed")

    moment = now or local_now(tz)
    key = day_key(moment, tz)
    cash_sales = sum(
        (
            sale.total
            for sale in sales_for_day(state.sales, key, tz)
            if sale.payment_method is PaymentMethod.CASH
        ),
        ZERO,
    )
    existing = state.reports.get(key)
    withdrawn = existing.total_withdrawals if existing is not None else ZERO
    opening = state.drawer.opening_cash
    closing = opening + cash_sales - withdrawn

    report = merge_closing(existing, key, opening_cash=opening, closing_cash=closing, closed_at=moment)
    state.reports = {**state.reports, key: report}
    state.drawer = CashDrawer(is_open=False, opening_cash=ZERO, previous_closing_cash=closing)
    log.info(
        "Closed cash drawer for %s (opening=%s, cash sales=%s, withdrawals=%s, closing=%s)",
        key,
        opening,
        cash_sales,
        withdrawn,
        closing,
    )
    return report


# ---------------------------------------------------------------------------
# Withdrawal ledger and day summaries
# ---------------------------------------------------------------------------


def opening_cash_for_day(
    state: AppState,
    key: str,
    *,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> Decimal:
    """Return the opening balance that applies to ``key``.

    A closed report carries its own opening cash; the day currently in
    progress uses the open drawer's balance; anything else starts from zero.
    """

    report = state.reports.get(key)
    if report is not None and report.is_closed:
        return report.opening_cash
    if state.drawer.is_open and key == day_key(now or local_now(tz), tz):
        return state.drawer.opening_cash
    return report.opening_cash if report is not None else ZERO


def summarize(
    state: AppState,
    key: str,
    *,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> DaySummary:
    """Return the :class:`DaySummary` for ``key`` using the register state."""

    return summarize_day(
        state.sales,
        state.reports.get(key),
        key,
        opening_cash=opening_cash_for_day(state, key, now=now, tz=tz),
        tz=tz,
    )


def available_cash(
    state: AppState,
    key: str,
    *,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> Decimal:
    """Cash that can still be withdrawn on ``key``: opening + cash sales - withdrawals."""

    return summarize(state, key, now=now, tz=tz).available_cash


def record_withdrawal(
    state: AppState,
    key: str,
    amount: Decimal,
    reason: str,
    *,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> Withdrawal:
    """Take ``amount`` out of the drawer for day ``key``.

    Args:
        state (AppState): Register state owning the report archive.
        key (str): Day key the withdrawal belongs to.
        amount (Decimal): Amount removed; must be positive and no larger than
            the cash available for that day.
        reason (str): Free-text justification; must not be blank.
        now (datetime | None): Withdrawal instant; defaults to now.
        tz (tzinfo | None): Zone that defines the business day.

    Returns:
        Withdrawal: The recorded withdrawal.

    Raises:
        ValueError: If the amount is not positive or the reason is blank.
        InsufficientCashError: If the amount exceeds the available cash.
    """

    value = to_money(amount)
    if value <= ZERO:
        log.error("Withdrawal validation failed: amount %s", value)
        raise ValueError("Withdrawal amount must be greater than zero")
    clean_reason = (reason or "").strip()
    if not clean_reason:
        log.error("Withdrawal validation failed: empty reason")
        raise ValueError("Withdrawal reason must not be empty")

    moment = now or local_now(tz)
    available = available_cash(state, key, now=moment, tz=tz)
    if value > available:
        log.warning("Rejected withdrawal of %s on %s: only %s available", value, key, available)
        raise InsufficientCashError(f"amount exceeds available cash: {available}")

    withdrawal = Withdrawal(
        withdrawal_id=generate_record_id("W", when=moment),
        amount=value,
        reason=clean_reason,
        timestamp=moment,
    )
    report = attach_withdrawal(state.reports.get(key), key, withdrawal, deduct=True)
    reports = {**state.reports, key: report}

    drawer = state.drawer
    if report.is_closed and latest_closed_key(reports) == key:
        drawer = replace(drawer, previous_closing_cash=report.closing_cash)

    state.reports = reports
    state.drawer = drawer
    log.info("Recorded withdrawal '%s' of %s on %s (%s)", withdrawal.withdrawal_id, value, key, clean_reason)
    return withdrawal
