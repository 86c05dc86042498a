"""Enumerations shared across the Caixa PDV modules.

Centralises domain constants so that the data access layer (DAL), the
register engine, and the command-line front end rely on a single source of
truth for identifiers that end up persisted in the store workbook and in the
local state cache.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Smallest monetary unit; every stored amount is quantized to it.
CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


class PaymentMethod(str, Enum):
    """Enumerate supported payment mechanisms for sales."""

    CASH = "Cash"
    PIX = "Pix"


class ProductCategory(str, Enum):
    """Enumerate the shelves a product can be sold from."""

    FOOD = "Food"
    STORE = "Store"


class DiscountType(str, Enum):
    """Enumerate the discount flavours a sale can carry."""

    PERCENTAGE = "percentage"
    FIXED = "fixed"


class OutboxKind(str, Enum):
    """Enumerate the remote writes queued by the persistence outbox."""

    PRODUCT = "product"
    SALE = "sale"
    DRAWER_OPEN = "drawer_open"
    DRAWER_CLOSE = "drawer_close"
    WITHDRAWAL = "withdrawal"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    PRODUCTS = "Products"
    SALES = "Sales"
    SALE_ITEMS = "SaleItems"
    CASH_DRAWERS = "CashDrawers"
    WITHDRAWALS = "Withdrawals"


__all__ = [
    "CENTS",
    "EXPECTED_SCHEMA_VERSION",
    "ZERO",
    "DiscountType",
    "OutboxKind",
    "PaymentMethod",
    "ProductCategory",
    "SheetName",
]
