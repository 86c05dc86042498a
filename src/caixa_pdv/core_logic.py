"""Business logic layer for Caixa PDV.

This module sequences the register engine with persistence. Every
user-facing action validates its preconditions, lets :mod:`caixa_pdv.engine`
update the owned :class:`~caixa_pdv.engine.AppState`, and queues the matching
remote write on the outbox. Nothing here touches the workbook directly; the
outbox delivers to the repository when :func:`persist_context` runs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from . import data_manager, engine, log, reporting, state_store
from .constants import EXPECTED_SCHEMA_VERSION, OutboxKind, PaymentMethod, ProductCategory
from .engine import (
    AppState,
    BusinessRuleViolation,
    DrawerStateError,
    EmptyCartError,
    InsufficientCashError,
    MissingReferenceError,
    OutOfStockError,
)
from .outbox import FlushResult, Outbox
from .records import (
    NO_DISCOUNT,
    Discount,
    HistoricalReport,
    Product,
    Sale,
    SaleItem,
    StoreSnapshot,
    Withdrawal,
    product_to_payload,
    sale_to_payload,
    withdrawal_to_payload,
)
from .repository import Repository, WorkbookRepository


__all__ = [
    "BusinessRuleViolation",
    "DrawerStateError",
    "EmptyCartError",
    "InsufficientCashError",
    "MissingReferenceError",
    "OutOfStockError",
    "ProductCommand",
    "RuntimeContext",
    "SaleCommand",
    "StartDayCommand",
    "WithdrawalCommand",
    "add_product",
    "apply_snapshot",
    "close_drawer",
    "day_summary",
    "edit_product",
    "ensure_schema_version",
    "import_products",
    "list_products",
    "load_runtime_context",
    "open_drawer",
    "outbox_status",
    "persist_context",
    "record_cash_withdrawal",
    "record_sale",
    "refresh_context",
    "sales_for_day",
    "sync_outbox",
]


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, register state, outbox and repository."""

    settings: data_manager.ConfigSettings
    state: AppState = field(default_factory=AppState)
    outbox: Outbox = field(default_factory=Outbox)
    repository: Optional[Repository] = field(default=None, repr=False, compare=False)

    @property
    def tz(self):
        return self.settings.time_zone


@dataclass(frozen=True)
class SaleCommand:
    """User intent for ringing up a sale.

    ``items`` pairs product identifiers with quantities; repeated identifiers
    are merged into a single cart line.
    """

    items: Tuple[Tuple[str, int], ...]
    payment_method: PaymentMethod
    discount: Discount = NO_DISCOUNT
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class StartDayCommand:
    """User intent for opening the drawer.

    Either ``amount`` is given (manual seeding) or ``use_previous`` reuses the
    previous day's closing balance.
    """

    amount: Optional[Decimal] = None
    use_previous: bool = False


@dataclass(frozen=True)
class WithdrawalCommand:
    """User intent for taking cash out of the drawer."""

    amount: Decimal
    reason: str
    day_key: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ProductCommand:
    """User intent for registering a product."""

    name: str
    stock: int
    price: Decimal
    category: ProductCategory = ProductCategory.FOOD


def _resolve_timestamp(context: RuntimeContext, candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current instant in the configured zone."""

    return candidate if candidate is not None else reporting.local_now(context.tz)


def _enqueue_products(context: RuntimeContext, products: Iterable[Product]) -> None:
    for product in products:
        context.outbox.enqueue(OutboxKind.PRODUCT, product.product_id, product_to_payload(product))


def _enqueue_drawer_close(context: RuntimeContext, report: HistoricalReport) -> None:
    context.outbox.enqueue(
        OutboxKind.DRAWER_CLOSE,
        report.date,
        {"day_key": report.date, "closing_cash": str(report.closing_cash)},
    )


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------


def apply_snapshot(state: AppState, snapshot: StoreSnapshot) -> None:
    """Overlay a remote snapshot on top of the locally cached state.

    Products and sales are only replaced when the snapshot carries some, so an
    empty workbook never wipes a populated cache. The report archive always
    follows the snapshot; so does the drawer, except that a drawer open locally
    is never closed by a snapshot, since only ``end_day`` may close it.
    """

    if snapshot.products:
        state.products = list(snapshot.products)
    if snapshot.sales:
        state.sales = list(snapshot.sales)
    if state.drawer.is_open and not snapshot.drawer.is_open:
        log.warning("Workbook shows the drawer closed; keeping the open local drawer")
    else:
        state.drawer = snapshot.drawer
    state.reports = dict(snapshot.reports)


def load_runtime_context(
    config_path: Optional[Path] = None,
    *,
    repository: Optional[Repository] = None,
) -> RuntimeContext:
    """Load configuration, the local cache and the remote snapshot.

    The local cache is restored first. When it has no pending outbox entries
    the repository snapshot is overlaid on top of it; when entries are still
    pending the local state is ahead of the workbook and the snapshot is
    skipped. A failing snapshot is logged and the register keeps working from
    the local state.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.
        repository (Repository | None): Persistence collaborator. Defaults to a
            :class:`WorkbookRepository` over the configured data file.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
        ValueError: When the local cache is corrupt or a setting is malformed.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    if repository is None:
        repository = WorkbookRepository(
            settings.data_file,
            history_days=settings.history_days,
            tz=settings.time_zone,
        )

    cached = state_store.load_cache(settings.cache_file)
    state, outbox = cached if cached is not None else (AppState(), Outbox())

    if len(outbox):
        log.info("Skipping remote snapshot: %d outbox entries still pending", len(outbox))
    else:
        try:
            snapshot = repository.fetch_snapshot()
        except Exception as exc:
            log.warning("Could not fetch remote snapshot, continuing with local state: %s", exc)
        else:
            apply_snapshot(state, snapshot)

    log.info("Loaded runtime context for store '%s'", settings.store_name)
    return RuntimeContext(settings=settings, state=state, outbox=outbox, repository=repository)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------


def list_products(
    context: RuntimeContext,
    *,
    category: Optional[ProductCategory] = None,
    in_stock_only: bool = False,
) -> List[Product]:
    return engine.list_products(context.state, category=category, in_stock_only=in_stock_only)


def add_product(context: RuntimeContext, command: ProductCommand) -> Product:
    """Register a product and queue it for persistence."""

    product = engine.register_product(
        context.state,
        name=command.name,
        stock=command.stock,
        price=command.price,
        category=command.category,
    )
    _enqueue_products(context, [product])
    return product


def import_products(context: RuntimeContext, drafts: Iterable[Mapping[str, Any]]) -> List[Product]:
    """Register a batch of products; one invalid draft rejects the batch."""

    products = engine.register_products(context.state, drafts)
    _enqueue_products(context, products)
    return products


def edit_product(context: RuntimeContext, product_id: str, **changes: Any) -> Product:
    """Update a product and queue the new version for persistence."""

    product = engine.update_product(context.state, product_id, **changes)
    _enqueue_products(context, [product])
    return product


# ---------------------------------------------------------------------------
# Sales
# ---------------------------------------------------------------------------


def record_sale(context: RuntimeContext, command: SaleCommand) -> Sale:
    """Build a cart from ``command`` and commit it as a sale.

    Quantities above the available stock are clamped to the stock, the same way
    the cart behaves while items are being added. The sale and every product
    whose stock changed are queued for persistence.

    Args:
        context (RuntimeContext): Runtime context owning the register state.
        command (SaleCommand): Structured intent describing the sale request.

    Returns:
        Sale: Newly committed sale.

    Raises:
        DrawerStateError: If the drawer is closed.
        MissingReferenceError: If a product identifier is unknown.
        OutOfStockError: If a requested product has no stock.
        EmptyCartError: If the command carries no items.
        ValueError: When quantities or the payment method are invalid.
    """
    if not context.state.drawer.is_open:
        log.warning("Attempted sale while the cash drawer is closed")
        raise DrawerStateError("Open the cash drawer before selling")

    cart: List[SaleItem] = []
    for product_id, quantity in command.items:
        product = engine.get_product(context.state, product_id)
        cart = engine.add_to_cart(cart, product, quantity)

    sale = engine.commit_sale(
        context.state,
        cart,
        command.payment_method,
        command.discount,
        timestamp=_resolve_timestamp(context, command.timestamp),
    )
    context.outbox.enqueue(OutboxKind.SALE, sale.sale_id, sale_to_payload(sale))
    sold = {item.product_id for item in sale.items}
    _enqueue_products(context, [p for p in context.state.products if p.product_id in sold])
    return sale


def sales_for_day(context: RuntimeContext, key: Optional[str] = None) -> List[Sale]:
    """Return the sales of ``key`` (today by default) in commit order."""

    key = key or reporting.day_key(reporting.local_now(context.tz), context.tz)
    return reporting.sales_for_day(context.state.sales, key, context.tz)


# ---------------------------------------------------------------------------
# Cash drawer
# ---------------------------------------------------------------------------


def open_drawer(context: RuntimeContext, command: StartDayCommand, *, now: Optional[datetime] = None) -> Decimal:
    """Open the drawer and queue the opening for persistence.

    Returns:
        Decimal: The opening balance placed in the drawer.

    Raises:
        ValueError: If neither a manual amount nor ``use_previous`` is given,
            or the amount is negative.
        DrawerStateError: If the drawer is already open or the day was
            already closed.
    """
    previous = context.state.drawer.previous_closing_cash
    if command.use_previous:
        amount = previous
    elif command.amount is not None:
        amount = command.amount
    else:
        raise ValueError("Provide an opening amount or reuse the previous closing balance")

    moment = _resolve_timestamp(context, now)
    drawer = engine.start_day(context.state, amount, now=moment, tz=context.tz)
    key = reporting.day_key(moment, context.tz)
    context.outbox.enqueue(
        OutboxKind.DRAWER_OPEN,
        key,
        {
            "day_key": key,
            "opening_amount": str(drawer.opening_cash),
            "previous_closing_cash": str(previous),
        },
    )
    return drawer.opening_cash


def close_drawer(context: RuntimeContext, *, now: Optional[datetime] = None) -> HistoricalReport:
    """Close the drawer, archive the day's report and queue the closing.

    Raises:
        DrawerStateError: If the drawer is already closed.
    """
    report = engine.end_day(context.state, now=_resolve_timestamp(context, now), tz=context.tz)
    _enqueue_drawer_close(context, report)
    return report


def record_cash_withdrawal(context: RuntimeContext, command: WithdrawalCommand) -> Withdrawal:
    """Record a withdrawal and queue it for persistence.

    When the withdrawal lands on an already closed day, the reduced closing
    balance is queued as well.

    Raises:
        ValueError: If the amount, reason or day key is invalid.
        InsufficientCashError: If the amount exceeds the available cash.
    """
    moment = _resolve_timestamp(context, command.timestamp)
    key = (
        reporting.parse_day_key(command.day_key)
        if command.day_key
        else reporting.day_key(moment, context.tz)
    )
    withdrawal = engine.record_withdrawal(
        context.state,
        key,
        command.amount,
        command.reason,
        now=moment,
        tz=context.tz,
    )
    context.outbox.enqueue(
        OutboxKind.WITHDRAWAL,
        withdrawal.withdrawal_id,
        {"day_key": key, "withdrawal": withdrawal_to_payload(withdrawal)},
    )
    report = context.state.reports[key]
    if report.is_closed:
        _enqueue_drawer_close(context, report)
    return withdrawal


def day_summary(context: RuntimeContext, key: Optional[str] = None, *, now: Optional[datetime] = None) -> reporting.DaySummary:
    """Summarize ``key`` (today by default) for the report screens."""

    moment = _resolve_timestamp(context, now)
    key = reporting.parse_day_key(key) if key else reporting.day_key(moment, context.tz)
    return engine.summarize(context.state, key, now=moment, tz=context.tz)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def persist_context(context: RuntimeContext) -> FlushResult:
    """Save the local cache, flush the outbox, then save the cache again.

    The first save makes the local state durable before any remote write is
    attempted; the second records which outbox entries were delivered.

    Returns:
        FlushResult: Outcome of the outbox flush.
    """
    cache_file = context.settings.cache_file
    state_store.save_cache(cache_file, context.state, context.outbox)
    if context.repository is None:
        log.warning("No repository configured; %d outbox entries left pending", len(context.outbox))
        return FlushResult(skipped=len(context.outbox))
    result = context.outbox.flush(context.repository, max_attempts=context.settings.max_attempts)
    state_store.save_cache(cache_file, context.state, context.outbox)
    exhausted = context.outbox.exhausted(context.settings.max_attempts)
    if exhausted:
        log.warning(
            "%d outbox entries reached %d attempts; run 'sync --retry-exhausted' to retry them",
            len(exhausted),
            context.settings.max_attempts,
        )
    return result


def sync_outbox(context: RuntimeContext, *, retry_exhausted: bool = False) -> FlushResult:
    """Retry pending outbox entries, optionally including parked ones."""

    if retry_exhausted:
        context.outbox.reset_attempts()
    return persist_context(context)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the state from the local cache, discarding unsaved changes.

    Returns:
        RuntimeContext: Fresh context sharing the settings and repository.

    Raises:
        ValueError: If the local cache is corrupt.
    """
    cached = state_store.load_cache(context.settings.cache_file)
    state, outbox = cached if cached is not None else (AppState(), Outbox())
    log.info("Reloaded local state from '%s'", context.settings.cache_file)
    return RuntimeContext(
        settings=context.settings,
        state=state,
        outbox=outbox,
        repository=context.repository,
    )


def outbox_status(context: RuntimeContext) -> Dict[str, int]:
    """Return counts of pending and parked outbox entries."""

    max_attempts = context.settings.max_attempts
    return {
        "pending": len(context.outbox.pending(max_attempts)),
        "exhausted": len(context.outbox.exhausted(max_attempts)),
    }
