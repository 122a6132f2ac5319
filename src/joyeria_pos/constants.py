"""Enumerations shared across the Joyería POS modules.

Centralises domain constants so that the document store, the sale engine,
the cash-register ledger, and the command-line front end rely on a single
source of truth for the values that end up persisted in the JSON documents.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating the store.
EXPECTED_SCHEMA_VERSION = "1.0.0"

DEFAULT_CATEGORY_NAME = "Sin categoría"
DEFAULT_TAX_RATE = Decimal("0.16")
CENT = Decimal("0.01")


class PaymentMethod(str, Enum):
    """Enumerate supported payment mechanisms for sales."""

    CASH = "Efectivo"
    CARD = "Tarjeta"
    TRANSFER = "Transferencia"


class SaleStatus(str, Enum):
    """Lifecycle states recorded on a sale."""

    COMPLETED = "Completada"
    CANCELLED = "Cancelada"
    PENDING = "Pendiente"


class ItemType(str, Enum):
    """Distinguish catalog-bound sale lines from free-form category lines."""

    PRODUCT = "product"
    MANUAL = "manual"


class MovementType(str, Enum):
    """Inventory movement kinds kept in the stock audit trail."""

    ENTRY = "entrada"
    EXIT = "salida"
    ADJUSTMENT = "ajuste"


class CashMovementType(str, Enum):
    """Manual cash movements recorded against an open register session."""

    DEPOSIT = "ingreso"
    WITHDRAWAL = "retiro"
    REFUND = "devolucion"


class SessionStatus(str, Enum):
    """Register session states."""

    OPEN = "Abierta"
    CLOSED = "Cerrada"


class ProductStatus(str, Enum):
    """Whether a product is offered at the till."""

    ACTIVE = "Activo"
    INACTIVE = "Inactivo"


class DiscountLevel(str, Enum):
    """Customer tiers that map onto configured discount percentages."""

    BRONZE = "Bronze"
    SILVER = "Silver"
    GOLD = "Gold"
    PLATINUM = "Platinum"


class Collection(str, Enum):
    """Enumerate the JSON document collections managed by the store."""

    PRODUCTS = "products"
    CUSTOMERS = "customers"
    SALES = "sales"
    INVENTORY_MOVEMENTS = "inventory_movements"
    CASH_SESSIONS = "cash_sessions"
    CASH_MOVEMENTS = "cash_movements"


DEFAULT_DISCOUNT_PERCENTS = {
    DiscountLevel.BRONZE.value: Decimal("0"),
    DiscountLevel.SILVER.value: Decimal("5"),
    DiscountLevel.GOLD.value: Decimal("10"),
    DiscountLevel.PLATINUM.value: Decimal("15"),
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_CATEGORY_NAME",
    "DEFAULT_TAX_RATE",
    "DEFAULT_DISCOUNT_PERCENTS",
    "CENT",
    "PaymentMethod",
    "SaleStatus",
    "ItemType",
    "MovementType",
    "CashMovementType",
    "SessionStatus",
    "ProductStatus",
    "DiscountLevel",
    "Collection",
]
