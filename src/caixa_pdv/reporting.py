"""Day keys and per-day financial aggregation.

A day key is the ``YYYY-MM-DD`` rendering of the *local* calendar date of an
instant. Slicing an ISO timestamp in UTC attributes late-evening sales to the
following day, so every caller (sale attribution, report lookup, withdrawal
attribution) goes through :func:`day_key`.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, tzinfo
from decimal import Decimal
from typing import Iterable, List, Mapping, Optional

from .constants import ZERO, PaymentMethod
from .records import HistoricalReport, Sale, Withdrawal


DAY_KEY_FORMAT = "%Y-%m-%d"


@dataclass(frozen=True)
class DailyTotals:
    """Sales aggregates for one day."""

    sale_count: int
    total_sales: Decimal
    cash_sales: Decimal
    pix_sales: Decimal
    total_discounts: Decimal


@dataclass(frozen=True)
class DaySummary:
    """Everything a daily or historical report screen needs for one day.

    ``report`` stays ``None`` when no close (and no withdrawal) happened for
    the day, which is different from a report whose values are all zero.
    """

    date: str
    totals: DailyTotals
    report: Optional[HistoricalReport]
    opening_cash: Decimal
    expected_closing_cash: Decimal
    total_withdrawals: Decimal
    available_cash: Decimal

    @property
    def recorded_closing_cash(self) -> Optional[Decimal]:
        if self.report is None or not self.report.is_closed:
            return None
        return self.report.closing_cash


def local_now(tz: Optional[tzinfo] = None) -> datetime:
    """Return the current instant as an aware datetime in the local zone."""

    if tz is not None:
        return datetime.now(tz)
    return datetime.now().astimezone()


def day_key(instant: datetime, tz: Optional[tzinfo] = None) -> str:
    """Return the local calendar-day key for ``instant``.

    Args:
        instant (datetime): Moment to classify. Aware values are converted to
            ``tz``; naive values are taken as local wall-clock time already.
        tz (tzinfo | None): Zone that defines the business day. ``None`` uses
            the system local zone.

    Returns:
        str: Key formatted as ``YYYY-MM-DD``.
    """

    if instant.tzinfo is not None:
        instant = instant.astimezone(tz)
    return instant.strftime(DAY_KEY_FORMAT)


def parse_day_key(text: str) -> str:
    """Validate a user-supplied day key and return it in canonical form.

    Raises:
        ValueError: If ``text`` is not an ISO calendar date.
    """

    try:
        return date.fromisoformat(text.strip()).strftime(DAY_KEY_FORMAT)
    except (AttributeError, ValueError) as exc:
        raise ValueError(f"Invalid day key: {text!r} (expected YYYY-MM-DD)") from exc


def sales_for_day(sales: Iterable[Sale], key: str, tz: Optional[tzinfo] = None) -> List[Sale]:
    """Filter ``sales`` down to the ones whose timestamp falls on ``key``."""

    return [sale for sale in sales if day_key(sale.timestamp, tz) == key]


def daily_totals(sales: Iterable[Sale]) -> DailyTotals:
    """Aggregate totals by payment method plus the discounts granted."""

    count = 0
    total_sales = ZERO
    cash_sales = ZERO
    pix_sales = ZERO
    total_discounts = ZERO
    for sale in sales:
        count += 1
        total_sales += sale.total
        total_discounts += sale.discount_amount
        if sale.payment_method is PaymentMethod.CASH:
            cash_sales += sale.total
        elif sale.payment_method is PaymentMethod.PIX:
            pix_sales += sale.total
    return DailyTotals(
        sale_count=count,
        total_sales=total_sales,
        cash_sales=cash_sales,
        pix_sales=pix_sales,
        total_discounts=total_discounts,
    )


def report_for(reports: Mapping[str, HistoricalReport], key: str) -> Optional[HistoricalReport]:
    """Return the archived report for ``key``, or ``None`` when the day has none (not a zero report)."""

    return reports.get(key)


def latest_closed_key(reports: Mapping[str, HistoricalReport]) -> Optional[str]:
    """Return the most recent day key whose report went through ``end_day``."""

    closed = [key for key, report in reports.items() if report.is_closed]
    return max(closed) if closed else None


def attach_withdrawal(
    report: Optional[HistoricalReport],
    key: str,
    withdrawal: Withdrawal,
    *,
    deduct: bool = True,
) -> HistoricalReport:
    """Append ``withdrawal`` to the report for ``key``.

    A stub report (zero opening and closing cash) is created when the day has
    none yet; ``end_day`` later fills in the real balances. When the day is
    already closed and ``deduct`` is set, the stored closing cash drops by the
    withdrawn amount.
    """

    if report is None:
        report = HistoricalReport(date=key)
    closing = report.closing_cash
    if deduct and report.is_closed:
        closing -= withdrawal.amount
    return replace(
        report,
        closing_cash=closing,
        withdrawals=report.withdrawals + (withdrawal,),
    )


def merge_closing(
    existing: Optional[HistoricalReport],
    key: str,
    *,
    opening_cash: Decimal,
    closing_cash: Decimal,
    closed_at: datetime,
) -> HistoricalReport:
    """Write closing figures for ``key`` while keeping attached withdrawals."""

    withdrawals = existing.withdrawals if existing is not None else ()
    return HistoricalReport(
        date=key,
        opening_cash=opening_cash,
        closing_cash=closing_cash,
        withdrawals=withdrawals,
        closed_at=closed_at,
    )


def summarize_day(
    sales: Iterable[Sale],
    report: Optional[HistoricalReport],
    key: str,
    *,
    opening_cash: Decimal,
    tz: Optional[tzinfo] = None,
) -> DaySummary:
    """Build the :class:`DaySummary` for ``key``.

    Args:
        sales (Iterable[Sale]): Full sales history; filtered by ``key`` here.
        report (HistoricalReport | None): Archived report for the day, if any.
        key (str): Day key being summarized.
        opening_cash (Decimal): Opening balance that applies to the day. The
            caller decides whether it comes from the report or the drawer.
        tz (tzinfo | None): Zone that defines the business day.

    Returns:
        DaySummary: Totals plus expected and available cash figures, where
            ``available = opening + cash sales - withdrawals``.
    """

    totals = daily_totals(sales_for_day(sales, key, tz))
    withdrawn = report.total_withdrawals if report is not None else ZERO
    expected = opening_cash + totals.cash_sales
    return DaySummary(
        date=key,
        totals=totals,
        report=report,
        opening_cash=opening_cash,
        expected_closing_cash=expected,
        total_withdrawals=withdrawn,
        available_cash=expected - withdrawn,
    )
