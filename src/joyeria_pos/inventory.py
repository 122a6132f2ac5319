"""Product maintenance and manual stock adjustments.

Every mutation here runs under ``context.lock`` and commits through
:func:`joyeria_pos.core_logic.commit`, the same path the sale engine uses, so
adjustments can never interleave with an order allocation.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional

from . import data_manager, log
from .catalog import CategoryOption, collapse_whitespace, format_category_name, normalize_category_id
from .constants import MovementType, ProductStatus
from .core_logic import (
    RuntimeContext,
    _resolve_timestamp,
    commit,
    get_catalog,
    list_inventory_movements,
    next_inventory_movement_id,
    require_nonnegative_money,
    require_positive_quantity,
    snapshot_catalog,
    to_decimal,
)
from .exceptions import ValidationError


SKU_PREFIX = "JOY"
LOW_STOCK_THRESHOLD = 10
MEDIUM_STOCK_THRESHOLD = 20


@dataclass(frozen=True)
class ProductCommand:
    """Intent to create a product."""

    name: str
    price: Any
    stock: Any
    category: str
    sku: Optional[str] = None
    description: Optional[str] = None
    status: ProductStatus = ProductStatus.ACTIVE
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ProductUpdateCommand:
    """Partial update of a product; ``None`` leaves a field as is."""

    product_id: int
    name: Optional[str] = None
    price: Any = None
    stock: Any = None
    category: Optional[str] = None
    sku: Optional[str] = None
    description: Optional[str] = None
    status: Optional[ProductStatus] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class StockMovementCommand:
    """Intent to move ``quantity`` units into or out of a product."""

    product_id: int
    quantity: int
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class StockAdjustmentCommand:
    """Intent to set a product's stock to an absolute value."""

    product_id: int
    stock: int
    reason: str
    timestamp: Optional[datetime] = None


def stock_level(stock: int) -> str:
    """Classify a stock figure as ``low``, ``medium`` or ``ok``."""

    if stock < LOW_STOCK_THRESHOLD:
        return "low"
    if stock < MEDIUM_STOCK_THRESHOLD:
        return "medium"
    return "ok"


def list_products(context: RuntimeContext, *, include_inactive: bool = True) -> List[data_manager.ProductRow]:
    """Return products ordered by id, optionally hiding inactive ones."""

    products = get_catalog(context).products()
    if include_inactive:
        return products
    return [product for product in products if product.status == ProductStatus.ACTIVE.value]


def filter_products(products: List[data_manager.ProductRow], term: Optional[str]) -> List[data_manager.ProductRow]:
    """Keep products whose name, sku or category contains ``term``."""

    needle = (term or "").strip().lower()
    if not needle:
        return list(products)
    return [
        product
        for product in products
        if needle in product.name.lower() or needle in product.sku.lower() or needle in product.category.lower()
    ]


def list_categories(context: RuntimeContext, term: Optional[str] = None) -> List[CategoryOption]:
    """Return the category catalog, filtered by a case-insensitive substring."""

    options = get_catalog(context).categories()
    needle = collapse_whitespace(term).lower()
    if not needle:
        return options
    return [option for option in options if needle in option.name.lower() or needle in option.category_id]


def generate_sku(existing: List[str], *, when: datetime) -> str:
    """Return the first free ``JOY-YYYYMMDD-NNNN`` code for ``when``."""

    prefix = f"{SKU_PREFIX}-{when:%Y%m%d}-"
    taken = {sku.strip() for sku in existing}
    sequence = 1
    while f"{prefix}{sequence:04d}" in taken:
        sequence += 1
    return f"{prefix}{sequence:04d}"


def _validated_name(value: Optional[str]) -> str:
    name = collapse_whitespace(value)
    if not name:
        log.error("Product validation failed: empty name")
        raise ValidationError("El nombre es obligatorio", field="name")
    return name


def _validated_category(value: Optional[str]) -> str:
    category = collapse_whitespace(value)
    if not category:
        log.error("Product validation failed: empty category")
        raise ValidationError("La categoría es obligatoria", field="category")
    return category


def _validated_stock(value: Any, *, field: str = "stock") -> int:
    number: Optional[Decimal] = None
    if not isinstance(value, bool):
        try:
            number = Decimal(str(value).strip())
        except InvalidOperation:
            number = None
    if number is None or not number.is_finite() or number != number.to_integral_value() or number < 0:
        log.error("Stock validation failed: %r", value)
        raise ValidationError("Stock inválido", field=field, value=value)
    return int(number)


def _validated_price(value: Any) -> Decimal:
    price = to_decimal(value, field="price")
    require_nonnegative_money(price, field="price")
    return price


def _optional_text(value: Optional[str]) -> Optional[str]:
    cleaned = (value or "").strip()
    return cleaned or None


def add_product(context: RuntimeContext, command: ProductCommand) -> data_manager.ProductRow:
    """Validate and insert a new product.

    A blank ``sku`` is replaced by a generated ``JOY-YYYYMMDD-NNNN`` code that
    is unique within the catalog.

    Raises:
        ValidationError: If name, category, stock, price or an explicitly
            provided sku is invalid.
    """
    name = _validated_name(command.name)
    category = _validated_category(command.category)
    stock = _validated_stock(command.stock)
    price = _validated_price(command.price)
    if command.sku is not None and not command.sku.strip():
        log.error("Product validation failed: blank sku")
        raise ValidationError("El SKU es obligatorio", field="sku")

    timestamp = _resolve_timestamp(command.timestamp)
    with context.lock:
        catalog = snapshot_catalog(context)
        sku = command.sku.strip() if command.sku else generate_sku(
            [product.sku for product in catalog.products()], when=timestamp
        )
        product = catalog.upsert(
            data_manager.ProductRow(
                product_id=catalog.next_product_id(),
                sku=sku,
                name=name,
                price=price,
                stock=stock,
                category_id=normalize_category_id(category),
                category=category,
                status=ProductStatus(command.status).value,
                created_at=timestamp,
                updated_at=timestamp,
                description=_optional_text(command.description),
            )
        )
        commit(context, catalog=catalog)

    log.info("Added product '%s' (id=%s, sku=%s, stock=%s)", product.name, product.product_id, product.sku, product.stock)
    return product


def update_product(context: RuntimeContext, command: ProductUpdateCommand) -> data_manager.ProductRow:
    """Apply a partial update to an existing product.

    Raises:
        MissingReferenceError: If the product does not exist.
        ValidationError: If a supplied field is invalid.
    """
    changes = {}
    if command.name is not None:
        changes["name"] = _validated_name(command.name)
    if command.category is not None:
        category = _validated_category(command.category)
        changes["category"] = category
        changes["category_id"] = normalize_category_id(category)
    if command.stock is not None:
        changes["stock"] = _validated_stock(command.stock)
    if command.price is not None:
        changes["price"] = _validated_price(command.price)
    if command.sku is not None:
        if not command.sku.strip():
            log.error("Product validation failed: blank sku")
            raise ValidationError("El SKU es obligatorio", field="sku")
        changes["sku"] = command.sku.strip()
    if command.description is not None:
        changes["description"] = _optional_text(command.description)
    if command.status is not None:
        changes["status"] = ProductStatus(command.status).value

    timestamp = _resolve_timestamp(command.timestamp)
    with context.lock:
        catalog = snapshot_catalog(context)
        current = catalog.require(command.product_id)
        product = catalog.upsert(replace(current, updated_at=timestamp, **changes))
        commit(context, catalog=catalog)

    log.info("Updated product '%s' (fields=%s)", product.product_id, ", ".join(sorted(changes)) or "none")
    return product


def delete_product(context: RuntimeContext, product_id: int) -> data_manager.ProductRow:
    """Remove a product from the catalog and return the removed row.

    Raises:
        MissingReferenceError: If the product does not exist.
    """
    with context.lock:
        catalog = snapshot_catalog(context)
        removed = catalog.remove(product_id)
        commit(context, catalog=catalog)

    log.info("Deleted product '%s' (%s)", removed.product_id, removed.name)
    return removed


def _build_movement(
    context: RuntimeContext,
    product: data_manager.ProductRow,
    *,
    quantity: int,
    movement_type: MovementType,
    timestamp: datetime,
    notes: Optional[str],
) -> data_manager.InventoryMovementRow:
    return data_manager.InventoryMovementRow(
        movement_id=next_inventory_movement_id(context),
        sale_id=None,
        product_id=product.product_id,
        category_id=product.category_id,
        category_name=format_category_name(product.category or product.category_id),
        quantity=quantity,
        movement_type=movement_type.value,
        created_at=timestamp,
        notes=notes,
    )


def record_stock_entry(context: RuntimeContext, command: StockMovementCommand) -> data_manager.ProductRow:
    """Add units to a product and append an ``entrada`` movement.

    Raises:
        MissingReferenceError: If the product does not exist.
        ValidationError: If the quantity is not a positive integer.
    """
    require_positive_quantity(command.quantity)
    timestamp = _resolve_timestamp(command.timestamp)
    with context.lock:
        catalog = snapshot_catalog(context)
        product = catalog.increment_stock(command.product_id, command.quantity, when=timestamp)
        movement = _build_movement(
            context,
            product,
            quantity=command.quantity,
            movement_type=MovementType.ENTRY,
            timestamp=timestamp,
            notes=_optional_text(command.notes),
        )
        commit(context, catalog=catalog, inventory_movements=[*list_inventory_movements(context), movement])

    log.info("Stock entry for product '%s': +%s (stock=%s)", product.product_id, command.quantity, product.stock)
    return product


def record_stock_exit(context: RuntimeContext, command: StockMovementCommand) -> data_manager.ProductRow:
    """Remove units from a product and append a ``salida`` movement.

    Raises:
        MissingReferenceError: If the product does not exist.
        InsufficientStock: If the product holds fewer units than requested.
        ValidationError: If the quantity is not a positive integer.
    """
    require_positive_quantity(command.quantity)
    timestamp = _resolve_timestamp(command.timestamp)
    with context.lock:
        catalog = snapshot_catalog(context)
        product = catalog.decrement_stock(command.product_id, command.quantity, when=timestamp)
        movement = _build_movement(
            context,
            product,
            quantity=command.quantity,
            movement_type=MovementType.EXIT,
            timestamp=timestamp,
            notes=_optional_text(command.notes),
        )
        commit(context, catalog=catalog, inventory_movements=[*list_inventory_movements(context), movement])

    log.info("Stock exit for product '%s': -%s (stock=%s)", product.product_id, command.quantity, product.stock)
    return product


def adjust_stock(context: RuntimeContext, command: StockAdjustmentCommand) -> data_manager.ProductRow:
    """Set a product's stock to an absolute value and record an ``ajuste``.

    The movement quantity is the absolute difference; an adjustment that does
    not change the stock is a no-op and records nothing.

    Raises:
        MissingReferenceError: If the product does not exist.
        ValidationError: If the new stock is invalid or no reason is given.
    """
    stock = _validated_stock(command.stock)
    reason = _optional_text(command.reason)
    if reason is None:
        log.error("Stock adjustment rejected: missing reason")
        raise ValidationError("Indica una razón de ajuste", field="reason")

    timestamp = _resolve_timestamp(command.timestamp)
    with context.lock:
        catalog = snapshot_catalog(context)
        previous = catalog.require(command.product_id)
        if previous.stock == stock:
            log.info("Stock adjustment for product '%s' left stock unchanged at %s", previous.product_id, stock)
            return previous
        product = catalog.set_stock(command.product_id, stock, when=timestamp)
        movement = _build_movement(
            context,
            product,
            quantity=abs(stock - previous.stock),
            movement_type=MovementType.ADJUSTMENT,
            timestamp=timestamp,
            notes=f"{reason} ({previous.stock} -> {stock})",
        )
        commit(context, catalog=catalog, inventory_movements=[*list_inventory_movements(context), movement])

    log.info("Adjusted stock for product '%s': %s -> %s (%s)", product.product_id, previous.stock, stock, reason)
    return product
