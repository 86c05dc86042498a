"""Persistence collaborator backed by the store workbook.

:class:`Repository` is the interface the outbox and the bootstrap talk to.
:class:`WorkbookRepository` implements it on top of :mod:`caixa_pdv.data_manager`;
every write opens the workbook, upserts the affected rows by key, and saves,
so replaying the same write leaves the workbook unchanged.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta, tzinfo
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Protocol, Sequence

from openpyxl.workbook import Workbook

from . import log
from . import data_manager as dm
from .constants import ZERO, PaymentMethod, ProductCategory
from .data_manager import CashDrawerRow
from .records import (
    CashDrawer,
    HistoricalReport,
    Product,
    Sale,
    SaleItem,
    StoreSnapshot,
    Withdrawal,
    discount_from_payload,
)
from .reporting import day_key, local_now


# Workbooks filled in by hand may still use the Portuguese shelf names.
_CATEGORY_ALIASES = {
    "food": ProductCategory.FOOD,
    "alimentos": ProductCategory.FOOD,
    "store": ProductCategory.STORE,
    "loja": ProductCategory.STORE,
}


class Repository(Protocol):
    """Remote store the outbox flushes into. Every write must be idempotent."""

    def fetch_snapshot(self) -> StoreSnapshot: ...

    def persist_product(self, product: Product) -> None: ...

    def persist_products(self, products: Sequence[Product]) -> None: ...

    def persist_sale(self, sale: Sale) -> None: ...

    def persist_drawer_open(self, day_key: str, opening_amount: Decimal, previous_closing_cash: Decimal) -> None: ...

    def persist_drawer_close(self, day_key: str, closing_cash: Decimal) -> None: ...

    def persist_withdrawal(self, withdrawal: Withdrawal, day_key: str) -> None: ...


def sale_item_id(sale_id: str, index: int) -> str:
    """Return the row key of the ``index``-th line of ``sale_id``."""

    return f"{sale_id}-i{index}"


def parse_category(raw: str) -> ProductCategory:
    category = _CATEGORY_ALIASES.get((raw or "").strip().casefold())
    if category is None:
        log.debug("Unknown product category %r; defaulting to %s", raw, ProductCategory.FOOD.value)
        return ProductCategory.FOOD
    return category


class WorkbookRepository:
    """Workbook-backed implementation of :class:`Repository`.

    Args:
        data_file (Path): Store workbook created by ``caixa-setup``.
        history_days (int): Size of the window loaded by :meth:`fetch_snapshot`.
        tz (tzinfo | None): Zone that defines the business day.
        clock: Callable returning the current instant; injectable for tests.
    """

    def __init__(
        self,
        data_file: Path,
        *,
        history_days: int = dm.DEFAULT_HISTORY_DAYS,
        tz: Optional[tzinfo] = None,
        clock=None,
    ) -> None:
        self.data_file = Path(data_file)
        self.history_days = history_days
        self.tz = tz
        self._clock = clock or (lambda: local_now(tz))

    @contextmanager
    def _editing(self) -> Iterator[Workbook]:
        workbook = dm.open_workbook(self.data_file)
        yield workbook
        dm.save_workbook(workbook, self.data_file)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def persist_product(self, product: Product) -> None:
        self.persist_products([product])

    def persist_products(self, products: Sequence[Product]) -> None:
        if not products:
            return
        stamp = self._clock().isoformat()
        with self._editing() as workbook:
            for product in products:
                row = dm.ProductRow(
                    product_id=product.product_id,
                    product_name=product.name,
                    stock=product.stock,
                    price=product.price,
                    category=product.category.value,
                    updated_at=stamp,
                )
                dm.upsert_row(workbook, dm.PRODUCTS_SHEET, "ProductID", dm.serialize_product(row))
        log.info("Persisted %d product(s) to %s", len(products), self.data_file.name)

    def persist_sale(self, sale: Sale) -> None:
        header = dm.SaleRow(
            sale_id=sale.sale_id,
            timestamp_iso=sale.timestamp.isoformat(),
            subtotal=sale.subtotal,
            discount_type=sale.discount_type.value if sale.discount_type else None,
            discount_value=sale.discount_value,
            discount_amount=sale.discount_amount,
            total=sale.total,
            payment_method=sale.payment_method.value,
        )
        with self._editing() as workbook:
            dm.upsert_row(workbook, dm.SALES_SHEET, "SaleID", dm.serialize_sale(header))
            for index, item in enumerate(sale.items):
                line = dm.SaleItemRow(
                    sale_item_id=sale_item_id(sale.sale_id, index),
                    sale_id=sale.sale_id,
                    product_id=item.product_id,
                    product_name=item.product_name,
                    quantity=item.quantity,
                    price_per_item=item.price_per_item,
                )
                dm.upsert_row(workbook, dm.SALE_ITEMS_SHEET, "SaleItemID", dm.serialize_sale_item(line))
        log.info("Persisted sale '%s' to %s", sale.sale_id, self.data_file.name)

    def persist_drawer_open(self, day_key: str, opening_amount: Decimal, previous_closing_cash: Decimal) -> None:
        row = CashDrawerRow(
            date=day_key,
            opening_cash=opening_amount,
            previous_closing_cash=previous_closing_cash,
            closing_cash=None,
            closed_at_iso=None,
        )
        with self._editing() as workbook:
            dm.upsert_row(workbook, dm.CASH_DRAWERS_SHEET, "Date", dm.serialize_cash_drawer(row))
        log.info("Persisted drawer opening for %s", day_key)

    def persist_drawer_close(self, day_key: str, closing_cash: Decimal) -> None:
        """Write the closing balance for ``day_key``.

        The first close stamps ``ClosedAt``; later writes (a withdrawal after
        the close) only move the balance.
        """

        with self._editing() as workbook:
            row_index = dm.locate_row(workbook, dm.CASH_DRAWERS_SHEET, "Date", day_key)
            if row_index is None:
                row = CashDrawerRow(
                    date=day_key,
                    opening_cash=ZERO,
                    previous_closing_cash=ZERO,
                    closing_cash=closing_cash,
                    closed_at_iso=self._clock().isoformat(),
                )
                dm.upsert_row(workbook, dm.CASH_DRAWERS_SHEET, "Date", dm.serialize_cash_drawer(row))
            else:
                sheet = workbook[dm.CASH_DRAWERS_SHEET]
                closed_col = dm.header_map(workbook, dm.CASH_DRAWERS_SHEET)["ClosedAt"]
                fields: Dict[str, object] = {"ClosingCash": closing_cash}
                if sheet.cell(row=row_index, column=closed_col).value in (None, ""):
                    fields["ClosedAt"] = self._clock().isoformat()
                dm.update_row(workbook, dm.CASH_DRAWERS_SHEET, "Date", day_key, field_values=fields)
        log.info("Persisted drawer closing for %s (%s)", day_key, closing_cash)

    def persist_withdrawal(self, withdrawal: Withdrawal, day_key: str) -> None:
        row = dm.WithdrawalRow(
            withdrawal_id=withdrawal.withdrawal_id,
            date=day_key,
            amount=withdrawal.amount,
            reason=withdrawal.reason,
            timestamp_iso=withdrawal.timestamp.isoformat(),
        )
        with self._editing() as workbook:
            dm.upsert_row(workbook, dm.WITHDRAWALS_SHEET, "WithdrawalID", dm.serialize_withdrawal(row))
        log.info("Persisted withdrawal '%s' for %s", withdrawal.withdrawal_id, day_key)

    # ------------------------------------------------------------------
    # Bootstrap read
    # ------------------------------------------------------------------

    def fetch_snapshot(self) -> StoreSnapshot:
        """Load products plus the recent history window from the workbook.

        The most recent drawer row decides the drawer state: without a closing
        balance the drawer is still open, even when it was opened on an earlier
        day. Otherwise the drawer is closed and seeded with the most recent
        closing balance on record. Days with withdrawals but no drawer
        row come back as stub reports.

        Returns:
            StoreSnapshot: Products, recent sales, drawer and reports.

        Raises:
            FileNotFoundError: If the workbook does not exist.
        """

        now = self._clock()
        cutoff = day_key(now - timedelta(days=self.history_days), self.tz)

        workbook = dm.open_workbook(self.data_file)
        products = tuple(self._to_product(row) for row in dm.iter_products(workbook))
        sales = tuple(self._load_sales(workbook, cutoff))
        drawer_rows = sorted(dm.iter_cash_drawers(workbook), key=lambda row: row.date)
        withdrawal_rows = [row for row in dm.iter_withdrawals(workbook) if row.date >= cutoff]

        drawer = self._drawer_from_rows(drawer_rows)
        reports = self._reports_from_rows(
            [row for row in drawer_rows if row.date >= cutoff],
            withdrawal_rows,
        )
        log.info(
            "Fetched snapshot: %d products, %d sales, %d reports (drawer %s)",
            len(products),
            len(sales),
            len(reports),
            "open" if drawer.is_open else "closed",
        )
        return StoreSnapshot(products=products, sales=sales, drawer=drawer, reports=reports)

    @staticmethod
    def _to_product(row: dm.ProductRow) -> Product:
        return Product(
            product_id=row.product_id,
            name=row.product_name,
            stock=max(0, row.stock),
            price=row.price,
            category=parse_category(row.category),
        )

    def _load_sales(self, workbook: Workbook, cutoff: str) -> List[Sale]:
        lines: Dict[str, List[dm.SaleItemRow]] = {}
        for item in dm.iter_sale_items(workbook):
            lines.setdefault(item.sale_id, []).append(item)

        sales: List[Sale] = []
        for row in dm.iter_sales(workbook):
            timestamp = datetime.fromisoformat(row.timestamp_iso)
            if day_key(timestamp, self.tz) < cutoff:
                continue
            ordered = sorted(lines.get(row.sale_id, []), key=_line_position)
            sales.append(
                Sale(
                    sale_id=row.sale_id,
                    items=tuple(
                        SaleItem(
                            product_id=line.product_id,
                            product_name=line.product_name,
                            quantity=line.quantity,
                            price_per_item=line.price_per_item,
                        )
                        for line in ordered
                    ),
                    subtotal=row.subtotal,
                    discount=discount_from_payload(
                        {"type": row.discount_type, "value": row.discount_value}
                    ),
                    discount_amount=row.discount_amount,
                    total=row.total,
                    payment_method=PaymentMethod(row.payment_method),
                    timestamp=timestamp,
                )
            )
        sales.sort(key=lambda sale: sale.timestamp)
        return sales

    @staticmethod
    def _drawer_from_rows(rows: Sequence[CashDrawerRow]) -> CashDrawer:
        # rows are sorted by day key
        closed = [row for row in rows if row.closing_cash is not None]
        seed = closed[-1].closing_cash if closed else ZERO
        current = rows[-1] if rows else None
        if current is not None and current.closing_cash is None:
            return CashDrawer(
                is_open=True,
                opening_cash=current.opening_cash,
                previous_closing_cash=current.previous_closing_cash,
            )
        return CashDrawer(is_open=False, opening_cash=ZERO, previous_closing_cash=seed)

    @staticmethod
    def _reports_from_rows(
        drawer_rows: Sequence[CashDrawerRow],
        withdrawal_rows: Sequence[dm.WithdrawalRow],
    ) -> Dict[str, HistoricalReport]:
        withdrawals: Dict[str, List[Withdrawal]] = {}
        for row in sorted(withdrawal_rows, key=lambda row: row.timestamp_iso):
            withdrawals.setdefault(row.date, []).append(
                Withdrawal(
                    withdrawal_id=row.withdrawal_id,
                    amount=row.amount,
                    reason=row.reason,
                    timestamp=datetime.fromisoformat(row.timestamp_iso),
                )
            )

        reports: Dict[str, HistoricalReport] = {}
        for row in drawer_rows:
            if row.closing_cash is None:
                continue
            reports[row.date] = HistoricalReport(
                date=row.date,
                opening_cash=row.opening_cash,
                closing_cash=row.closing_cash,
                withdrawals=tuple(withdrawals.get(row.date, ())),
                closed_at=datetime.fromisoformat(row.closed_at_iso or row.date),
            )

        for key, items in withdrawals.items():
            if key not in reports:
                reports[key] = HistoricalReport(date=key, withdrawals=tuple(items))
        return reports


def _line_position(line: dm.SaleItemRow) -> int:
    _, _, suffix = line.sale_item_id.rpartition("-i")
    return int(suffix) if suffix.isdigit() else 0
