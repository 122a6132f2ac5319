"""Sale transaction engine.

``create_sale`` turns an order into a persisted sale while drawing stock from
a cloned catalog: every line is validated, then allocated against the clone,
and only when all lines succeed are the clone and the new sale committed
together. Deleting sales replays their ``salida`` movements to put the units
back.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_FLOOR, Decimal
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from . import data_manager, log
from .catalog import ProductCatalog, format_category_name, normalize_category_id
from .constants import DiscountLevel, ItemType, MovementType, PaymentMethod, SaleStatus
from .core_logic import (
    RuntimeContext,
    _resolve_timestamp,
    commit,
    get_customer,
    get_sale,
    list_inventory_movements,
    list_sales,
    next_id,
    next_inventory_movement_id,
    round_money,
    snapshot_catalog,
    to_decimal,
)
from .exceptions import InsufficientStock, InvalidItem, ValidationError


__all__ = [
    "SaleItemCommand",
    "SaleCommand",
    "OrderTotals",
    "normalize_payment_method",
    "compute_order_totals",
    "compute_sale_amounts",
    "resolve_customer_discount",
    "build_quick_sale_item",
    "build_sale_command",
    "create_sale",
    "delete_sale",
    "clear_sales",
    "delete_all_sales",
    "list_sales",
    "get_sale",
    "sales_between",
]


ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class SaleItemCommand:
    """One requested order line.

    Either ``product_id`` names a catalog product, or ``category_id`` /
    ``category_name`` ask for units of a category drawn from whichever
    products hold the most stock.
    """

    quantity: Any
    unit_price: Any
    product_id: Optional[int] = None
    category_id: Optional[str] = None
    category_name: Optional[str] = None
    item_type: Optional[ItemType] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class SaleCommand:
    """Intent to register a sale."""

    items: Sequence[SaleItemCommand]
    payment_method: Any = None
    customer_id: Optional[int] = None
    discount: Any = ZERO
    tax: Any = ZERO
    applied_discount_level: Optional[str] = None
    applied_discount_percent: Optional[Decimal] = None
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    discount_rate: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal


@dataclass(frozen=True)
class _ValidatedLine:
    index: int
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    product: Optional[data_manager.ProductRow]
    category_id: str
    category_name: Optional[str]
    item_type: ItemType
    notes: Optional[str]


@dataclass
class _Allocation:
    line: _ValidatedLine
    category_id: str
    category_name: str
    draws: List[Tuple[data_manager.ProductRow, int]] = field(default_factory=list)


def normalize_payment_method(value: Any) -> str:
    """Collapse anything other than Tarjeta or Transferencia to Efectivo."""

    raw = value.value if isinstance(value, PaymentMethod) else str(value or "")
    candidate = raw.strip().lower()
    for method in (PaymentMethod.CARD, PaymentMethod.TRANSFER):
        if candidate == method.value.lower():
            return method.value
    return PaymentMethod.CASH.value


def line_subtotal(unit_price: Decimal, quantity: int) -> Decimal:
    """``round2(unit_price * quantity)`` on the exact decimal product."""

    return round_money(unit_price * quantity)


def _floor_quantity(value: Any, *, index: int) -> int:
    amount = to_decimal(value, field="quantity", error=InvalidItem, index=index)
    quantity = int(amount.to_integral_value(rounding=ROUND_FLOOR))
    if quantity < 1:
        log.error("Sale item %s rejected: quantity %s", index, value)
        raise InvalidItem(f"Cantidad inválida en el artículo {index + 1}", index=index, field="quantity", value=value)
    return quantity


def _validate_line(catalog: ProductCatalog, item: SaleItemCommand, index: int) -> _ValidatedLine:
    quantity = _floor_quantity(item.quantity, index=index)
    unit_price = to_decimal(item.unit_price, field="unitPrice", error=InvalidItem, index=index)
    if round_money(unit_price) <= ZERO:
        log.error("Sale item %s rejected: unit price %s", index, item.unit_price)
        raise InvalidItem(
            f"Precio inválido en el artículo {index + 1}", index=index, field="unitPrice", value=item.unit_price
        )

    notes = (item.notes or "").strip() or None
    if item.product_id is not None:
        product = catalog.find_by_id(item.product_id)
        if product is None:
            log.error("Sale item %s rejected: unknown product %s", index, item.product_id)
            raise InvalidItem(
                f"Producto {item.product_id} no encontrado (artículo {index + 1})",
                index=index,
                field="productId",
                value=item.product_id,
            )
        return _ValidatedLine(
            index=index,
            quantity=quantity,
            unit_price=unit_price,
            subtotal=line_subtotal(unit_price, quantity),
            product=product,
            category_id=product.category_id,
            category_name=product.category,
            item_type=ItemType(item.item_type or ItemType.PRODUCT),
            notes=notes,
        )

    category_id = normalize_category_id(item.category_id or item.category_name)
    if not category_id:
        log.error("Sale item %s rejected: no product or category", index)
        raise InvalidItem(
            f"El artículo {index + 1} necesita un producto o una categoría", index=index, field="categoryId"
        )
    return _ValidatedLine(
        index=index,
        quantity=quantity,
        unit_price=unit_price,
        subtotal=line_subtotal(unit_price, quantity),
        product=None,
        category_id=category_id,
        category_name=item.category_name,
        item_type=ItemType(item.item_type or ItemType.MANUAL),
        notes=notes,
    )


def allocate_line(catalog: ProductCatalog, line: _ValidatedLine, *, when: datetime) -> _Allocation:
    """Draw ``line.quantity`` units from ``catalog`` in place.

    Product-bound lines take everything from that product. Category lines
    require the category total to cover the quantity, then draw from the
    largest remaining stock first (ties by product id).

    Raises:
        InsufficientStock: If the product or category cannot cover the line.
    """

    if line.product is not None:
        category_name = catalog.category_name(line.product.category_id, line.product.category)
        catalog.decrement_stock(line.product.product_id, line.quantity, when=when)
        allocation = _Allocation(line=line, category_id=line.product.category_id, category_name=category_name)
        allocation.draws.append((line.product, line.quantity))
        return allocation

    category_name = catalog.category_name(line.category_id, line.category_name)
    candidates = catalog.find_by_category_id(line.category_id)
    available = sum(product.stock for product in candidates)
    if available < line.quantity:
        log.warning(
            "Category '%s' short of stock: requested %s, available %s", line.category_id, line.quantity, available
        )
        raise InsufficientStock(
            f"Stock insuficiente en la categoría '{category_name}' ({available} disponibles, {line.quantity} solicitados)",
            category_id=line.category_id,
            category_name=category_name,
            requested=line.quantity,
            available=available,
        )

    allocation = _Allocation(line=line, category_id=line.category_id, category_name=category_name)
    remaining = line.quantity
    for product in sorted(candidates, key=lambda row: (-row.stock, row.product_id)):
        if remaining == 0:
            break
        take = min(product.stock, remaining)
        if take == 0:
            continue
        catalog.decrement_stock(product.product_id, take, when=when)
        allocation.draws.append((product, take))
        remaining -= take
    return allocation


def compute_sale_amounts(subtotals: Iterable[Decimal], discount: Any, tax: Any) -> Tuple[Decimal, Decimal, Decimal, Decimal]:
    """Return ``(subtotal, discount, tax, total)`` with half-up cents at each step.

    The discount is clamped to ``[0, subtotal]`` and the tax floored at zero.
    """

    subtotal = round_money(sum(subtotals, ZERO))
    discount_amount = round_money(to_decimal(discount if discount is not None else ZERO, field="discount"))
    discount_amount = min(max(discount_amount, ZERO), subtotal)
    tax_amount = max(ZERO, round_money(to_decimal(tax if tax is not None else ZERO, field="tax")))
    total = round_money(subtotal - discount_amount + tax_amount)
    return subtotal, discount_amount, tax_amount, total


def compute_order_totals(items: Sequence[SaleItemCommand], discount_rate: Any, tax_rate: Any) -> OrderTotals:
    """Till-side totals: a percentage discount then tax on the discounted base.

    ``discount_rate`` and ``tax_rate`` are fractions (``0.10`` for 10 %).
    """

    subtotal = round_money(
        sum(
            (
                line_subtotal(to_decimal(item.unit_price, field="unitPrice"), _floor_quantity(item.quantity, index=i))
                for i, item in enumerate(items)
            ),
            ZERO,
        )
    )
    rate = max(ZERO, to_decimal(discount_rate, field="discount_rate"))
    discount = round_money(subtotal * rate)
    tax = round_money((subtotal - discount) * to_decimal(tax_rate, field="tax_rate"))
    total = round_money(subtotal - discount + tax)
    return OrderTotals(subtotal=subtotal, discount_rate=rate, discount=discount, tax=tax, total=total)


def resolve_customer_discount(context: RuntimeContext, customer_id: Optional[int]) -> Tuple[Optional[str], Decimal]:
    """Return the customer's tier and its configured discount percent.

    Walk-in sales (no customer) get no tier and a zero percent.

    Raises:
        MissingReferenceError: If ``customer_id`` is unknown.
    """

    if customer_id is None:
        return None, ZERO
    customer = get_customer(context, customer_id)
    percent = context.settings.discount_levels.get(customer.discount_level, ZERO)
    return customer.discount_level, max(ZERO, Decimal(percent))


def build_quick_sale_item(
    category: str,
    quantity: Any,
    unit_price: Any,
    notes: Optional[str] = None,
) -> SaleItemCommand:
    """Build a manual, category-level order line ("venta rápida").

    Raises:
        ValidationError: If ``category`` is blank.
    """

    category_id = normalize_category_id(category)
    if not category_id:
        raise ValidationError("La categoría es obligatoria", field="category")
    return SaleItemCommand(
        quantity=quantity,
        unit_price=unit_price,
        category_id=category_id,
        category_name=format_category_name(category),
        item_type=ItemType.MANUAL,
        notes=(notes or "").strip() or None,
    )


def _manual_notes(items: Sequence[SaleItemCommand]) -> Optional[str]:
    parts = []
    for item in items:
        if item.product_id is not None:
            continue
        label = format_category_name(item.category_name or item.category_id)
        parts.append(f"Categoría: {label}" + (f" | {item.notes.strip()}" if item.notes and item.notes.strip() else ""))
    return " || ".join(parts) or None


def build_sale_command(
    context: RuntimeContext,
    items: Sequence[SaleItemCommand],
    *,
    customer_id: Optional[int] = None,
    payment_method: Any = None,
    notes: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> SaleCommand:
    """Price an order the way the till does and wrap it in a :class:`SaleCommand`.

    The customer's tier sets the discount, the configured tax rate applies to
    the discounted subtotal, and manual lines are summarised into the notes
    when none are given.
    """

    level, percent = resolve_customer_discount(context, customer_id)
    totals = compute_order_totals(items, percent / HUNDRED, context.settings.tax_rate)
    applied_percent = round_money(totals.discount / totals.subtotal * HUNDRED) if totals.subtotal > ZERO else ZERO
    return SaleCommand(
        items=tuple(items),
        payment_method=payment_method if payment_method is not None else context.settings.default_payment_method,
        customer_id=customer_id,
        discount=totals.discount,
        tax=totals.tax,
        applied_discount_level=level or DiscountLevel.BRONZE.value,
        applied_discount_percent=applied_percent,
        notes=notes if notes else _manual_notes(items),
        timestamp=timestamp,
    )


def create_sale(context: RuntimeContext, command: SaleCommand) -> data_manager.SaleRow:
    """Validate, allocate and persist a sale as a single transaction.

    Args:
        context (RuntimeContext): Runtime context providing the store, caches
            and the serialization lock.
        command (SaleCommand): Order to register.

    Returns:
        data_manager.SaleRow: The committed sale, with its items and the
            ``salida`` movements of every product it drew from.

    Raises:
        ValidationError: If the order has no items or the discount or tax is
            not a number.
        InvalidItem: If a line has a bad quantity, price or product reference.
        InsufficientStock: If any line cannot be covered. Nothing is written.
        PersistenceFailure: If the store rejects the commit.
    """
    if not command.items:
        log.error("Sale rejected: no items")
        raise ValidationError("La venta no tiene artículos", field="items")

    timestamp = _resolve_timestamp(command.timestamp)
    payment_method = normalize_payment_method(command.payment_method)

    with context.lock:
        catalog = snapshot_catalog(context)
        lines = [_validate_line(catalog, item, index) for index, item in enumerate(command.items)]
        allocations = [allocate_line(catalog, line, when=timestamp) for line in lines]
        subtotal, discount, tax, total = compute_sale_amounts(
            (line.subtotal for line in lines), command.discount, command.tax
        )

        sales = list_sales(context)
        sale_id = next_id(sale.sale_id for sale in sales)
        item_id = next_id(item.item_id for sale in sales for item in sale.items)
        movement_id = next_inventory_movement_id(context)

        items: List[data_manager.SaleItemRow] = []
        movements: List[data_manager.InventoryMovementRow] = []
        for allocation in allocations:
            line = allocation.line
            items.append(
                data_manager.SaleItemRow(
                    item_id=item_id,
                    sale_id=sale_id,
                    product_id=line.product.product_id if line.product is not None else None,
                    category_id=allocation.category_id,
                    category_name=allocation.category_name,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    subtotal=line.subtotal,
                    item_type=line.item_type.value,
                    notes=line.notes,
                )
            )
            item_id += 1
            for product, taken in allocation.draws:
                movements.append(
                    data_manager.InventoryMovementRow(
                        movement_id=movement_id,
                        sale_id=sale_id,
                        product_id=product.product_id,
                        category_id=allocation.category_id,
                        category_name=allocation.category_name,
                        quantity=taken,
                        movement_type=MovementType.EXIT.value,
                        created_at=timestamp,
                        notes=line.notes,
                    )
                )
                movement_id += 1

        sale = data_manager.SaleRow(
            sale_id=sale_id,
            customer_id=command.customer_id,
            subtotal=subtotal,
            discount=discount,
            tax=tax,
            total=total,
            payment_method=payment_method,
            status=SaleStatus.COMPLETED.value,
            created_at=timestamp,
            updated_at=timestamp,
            items=tuple(items),
            inventory_movements=tuple(movements),
            applied_discount_level=command.applied_discount_level,
            applied_discount_percent=command.applied_discount_percent,
            notes=command.notes,
        )
        commit(context, catalog=catalog, sales=[*sales, sale])

    log.info(
        "Recorded sale #%s (%s items, total=%s, payment=%s)", sale.sale_id, len(sale.items), sale.total, payment_method
    )
    return sale


def _restore_sale_stock(
    catalog: ProductCatalog,
    sale: data_manager.SaleRow,
    *,
    first_movement_id: int,
    when: datetime,
) -> List[data_manager.InventoryMovementRow]:
    """Credit a sale's units back to ``catalog`` and return ``entrada`` rows."""

    credits: List[Tuple[data_manager.ProductRow, int, str, str]] = []
    exits = [m for m in sale.inventory_movements if m.movement_type == MovementType.EXIT.value]
    if exits:
        for movement in exits:
            if movement.product_id is None or movement.product_id not in catalog:
                log.warning(
                    "Sale #%s: product %s no longer exists, %s units not restored",
                    sale.sale_id,
                    movement.product_id,
                    movement.quantity,
                )
                continue
            product = catalog.increment_stock(movement.product_id, movement.quantity, when=when)
            credits.append((product, movement.quantity, movement.category_id, movement.category_name))
    else:
        log.warning("Sale #%s has no tracked movements; restoring stock by item match", sale.sale_id)
        for item in sale.items:
            target = catalog.find_by_id(item.product_id)
            if target is None:
                matches = catalog.find_by_category_id(item.category_id or item.category_name)
                target = matches[0] if matches else None
            if target is None:
                log.warning(
                    "Sale #%s: no product matches item %s, %s units not restored", sale.sale_id, item.item_id, item.quantity
                )
                continue
            product = catalog.increment_stock(target.product_id, item.quantity, when=when)
            credits.append(
                (product, item.quantity, product.category_id, catalog.category_name(product.category_id, product.category))
            )

    return [
        data_manager.InventoryMovementRow(
            movement_id=first_movement_id + offset,
            sale_id=sale.sale_id,
            product_id=product.product_id,
            category_id=category_id,
            category_name=category_name,
            quantity=quantity,
            movement_type=MovementType.ENTRY.value,
            created_at=when,
            notes=f"Reversión de venta #{sale.sale_id}",
        )
        for offset, (product, quantity, category_id, category_name) in enumerate(credits)
    ]


def _remove_sales(context: RuntimeContext, doomed: Sequence[data_manager.SaleRow], *, when: datetime) -> None:
    """Delete ``doomed`` sales and restore their stock in one commit. Hold the lock."""

    catalog = snapshot_catalog(context)
    movement_id = next_inventory_movement_id(context)
    restorations: List[data_manager.InventoryMovementRow] = []
    for sale in doomed:
        restored = _restore_sale_stock(catalog, sale, first_movement_id=movement_id, when=when)
        movement_id += len(restored)
        restorations.extend(restored)

    doomed_ids = {sale.sale_id for sale in doomed}
    remaining = [sale for sale in list_sales(context) if sale.sale_id not in doomed_ids]
    commit(
        context,
        catalog=catalog,
        sales=remaining,
        inventory_movements=[*list_inventory_movements(context), *restorations],
    )


def delete_sale(context: RuntimeContext, sale_id: int, *, timestamp: Optional[datetime] = None) -> bool:
    """Delete one sale and restore its stock.

    Returns:
        bool: ``False`` when no sale carries ``sale_id``.
    """
    when = _resolve_timestamp(timestamp)
    with context.lock:
        sale = next((row for row in list_sales(context) if row.sale_id == sale_id), None)
        if sale is None:
            log.warning("Delete requested for unknown sale #%s", sale_id)
            return False
        _remove_sales(context, [sale], when=when)

    log.info("Deleted sale #%s and restored its stock", sale_id)
    return True


def clear_sales(context: RuntimeContext, *, timestamp: Optional[datetime] = None) -> bool:
    """Delete every sale, restoring stock for each one."""

    when = _resolve_timestamp(timestamp)
    with context.lock:
        sales = list_sales(context)
        _remove_sales(context, sales, when=when)

    log.info("Cleared %d sales and restored their stock", len(sales))
    return True


def delete_all_sales(context: RuntimeContext, *, timestamp: Optional[datetime] = None) -> bool:
    return clear_sales(context, timestamp=timestamp)


def sales_between(context: RuntimeContext, start: datetime, end: datetime) -> List[data_manager.SaleRow]:
    """Return sales whose ``created_at`` lies in ``[start, end]``."""

    start, end = _resolve_timestamp(start), _resolve_timestamp(end)
    return [sale for sale in list_sales(context) if start <= sale.created_at <= end]
