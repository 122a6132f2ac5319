"""Tests for product maintenance and manual stock movements."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

from joyeria_pos import core_logic, data_manager, inventory
from joyeria_pos.constants import ProductStatus
from joyeria_pos.exceptions import InsufficientStock, MissingReferenceError, PersistenceFailure, ValidationError


MOMENT = datetime(2025, 3, 1, 10, 0, tzinfo=UTC)
LATER = datetime(2025, 3, 1, 12, 30, tzinfo=UTC)


@pytest.mark.parametrize("stock, expected", [(0, "low"), (9, "low"), (10, "medium"), (19, "medium"), (20, "ok")])
def test_stock_level_thresholds(stock, expected):
    assert inventory.stock_level(stock) == expected


def test_generate_sku_uses_first_free_sequence():
    existing = ["JOY-20250301-0001", "JOY-20250301-0003", "OTHER"]

    assert inventory.generate_sku(existing, when=MOMENT) == "JOY-20250301-0002"
    assert inventory.generate_sku([], when=MOMENT) == "JOY-20250301-0001"


def test_add_product_generates_sku_and_normalizes_category(context):
    first = inventory.add_product(
        context,
        inventory.ProductCommand(
            name="  Anillo   solitario ",
            price="1500.50",
            stock="3",
            category="  anillos  DE oro",
            timestamp=MOMENT,
        ),
    )
    second = inventory.add_product(
        context,
        inventory.ProductCommand(name="Anillo doble", price=900, stock=1, category="Anillos de oro", timestamp=MOMENT),
    )

    assert first.product_id == 1
    assert first.sku == "JOY-20250301-0001"
    assert first.name == "Anillo solitario"
    assert first.price == Decimal("1500.50")
    assert first.category_id == "anillos de oro"
    assert second.product_id == 2
    assert second.sku == "JOY-20250301-0002"
    assert inventory.list_categories(context) == [
        inventory.CategoryOption(category_id="anillos de oro", name="Anillos De Oro")
    ]


def test_add_product_keeps_explicit_sku(context):
    product = inventory.add_product(
        context,
        inventory.ProductCommand(name="Arete", price="10", stock=0, category="Aretes", sku=" AR-01 ", timestamp=MOMENT),
    )
    assert product.sku == "AR-01"
    assert product.stock == 0


@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"name": "   "}, "name"),
        ({"category": ""}, "category"),
        ({"stock": -1}, "stock"),
        ({"stock": "2.5"}, "stock"),
        ({"stock": "muchos"}, "stock"),
        ({"price": "-3"}, "price"),
        ({"price": "gratis"}, "price"),
        ({"sku": "  "}, "sku"),
    ],
)
def test_add_product_rejects_invalid_fields(context, overrides, field):
    values = {"name": "Collar", "price": "10", "stock": 1, "category": "Collares", "timestamp": MOMENT}
    values.update(overrides)

    with pytest.raises(ValidationError) as excinfo:
        inventory.add_product(context, inventory.ProductCommand(**values))

    assert excinfo.value.field == field
    assert len(core_logic.get_catalog(context)) == 0


def test_update_product_applies_partial_changes(context_factory, product_factory):
    context = context_factory([product_factory(1, category="Anillos", price="100")])

    updated = inventory.update_product(
        context,
        inventory.ProductUpdateCommand(product_id=1, category="Pulseras", price="80", timestamp=LATER),
    )

    assert updated.category_id == "pulseras"
    assert updated.price == Decimal("80")
    assert updated.name == "Producto 1"
    assert updated.updated_at == LATER
    assert [option.category_id for option in inventory.list_categories(context)] == ["pulseras"]


def test_update_product_can_deactivate(context_factory, product_factory):
    context = context_factory([product_factory(1), product_factory(2)])

    inventory.update_product(context, inventory.ProductUpdateCommand(product_id=2, status=ProductStatus.INACTIVE))

    assert [p.product_id for p in inventory.list_products(context, include_inactive=False)] == [1]
    assert len(inventory.list_products(context)) == 2


def test_update_missing_product_raises(context):
    with pytest.raises(MissingReferenceError):
        inventory.update_product(context, inventory.ProductUpdateCommand(product_id=7, name="Nada"))


def test_delete_product_removes_row(context_factory, product_factory):
    context = context_factory([product_factory(1), product_factory(2, category="Aretes")])

    removed = inventory.delete_product(context, 2)

    assert removed.product_id == 2
    assert 2 not in core_logic.get_catalog(context)
    with pytest.raises(MissingReferenceError):
        inventory.delete_product(context, 2)


def test_record_stock_entry_appends_movement(context_factory, product_factory):
    context = context_factory([product_factory(1, stock=2)])

    product = inventory.record_stock_entry(
        context, inventory.StockMovementCommand(product_id=1, quantity=5, notes="Proveedor", timestamp=LATER)
    )

    assert product.stock == 7
    (movement,) = core_logic.list_inventory_movements(context)
    assert movement.movement_type == "entrada"
    assert movement.quantity == 5
    assert movement.sale_id is None
    assert movement.notes == "Proveedor"
    assert movement.category_name == "Anillos"


def test_record_stock_exit_rejects_overdraw(context_factory, product_factory):
    context = context_factory([product_factory(1, stock=2)])

    with pytest.raises(InsufficientStock):
        inventory.record_stock_exit(context, inventory.StockMovementCommand(product_id=1, quantity=3))

    assert core_logic.get_catalog(context).find_by_id(1).stock == 2
    assert core_logic.list_inventory_movements(context) == []


def test_record_stock_exit_rejects_nonpositive_quantity(context_factory, product_factory):
    context = context_factory([product_factory(1, stock=2)])

    with pytest.raises(ValidationError):
        inventory.record_stock_exit(context, inventory.StockMovementCommand(product_id=1, quantity=0))


def test_adjust_stock_records_absolute_difference(context_factory, product_factory):
    context = context_factory([product_factory(1, stock=10)])

    product = inventory.adjust_stock(
        context, inventory.StockAdjustmentCommand(product_id=1, stock=4, reason="Conteo físico", timestamp=LATER)
    )

    assert product.stock == 4
    (movement,) = core_logic.list_inventory_movements(context)
    assert movement.movement_type == "ajuste"
    assert movement.quantity == 6
    assert movement.notes == "Conteo físico (10 -> 4)"


def test_adjust_stock_unchanged_is_a_no_op(context_factory, product_factory):
    store = Mock(wraps=data_manager.MemoryStore({"products": [data_manager.serialize_product(product_factory(1, stock=3))]}))
    context = context_factory(store=store)

    product = inventory.adjust_stock(context, inventory.StockAdjustmentCommand(product_id=1, stock=3, reason="Conteo"))

    assert product.stock == 3
    store.save_many.assert_not_called()


def test_adjust_stock_requires_reason(context_factory, product_factory):
    context = context_factory([product_factory(1, stock=3)])

    with pytest.raises(ValidationError) as excinfo:
        inventory.adjust_stock(context, inventory.StockAdjustmentCommand(product_id=1, stock=1, reason="  "))

    assert excinfo.value.field == "reason"


def test_movement_ids_continue_across_operations(context_factory, product_factory):
    context = context_factory([product_factory(1, stock=5)])

    inventory.record_stock_entry(context, inventory.StockMovementCommand(product_id=1, quantity=1, timestamp=MOMENT))
    inventory.record_stock_exit(context, inventory.StockMovementCommand(product_id=1, quantity=2, timestamp=LATER))

    assert [m.movement_id for m in core_logic.list_inventory_movements(context)] == [1, 2]


def test_failed_write_leaves_stock_untouched(context_factory, product_factory):
    store = Mock(wraps=data_manager.MemoryStore({"products": [data_manager.serialize_product(product_factory(1, stock=5))]}))
    store.save_many.side_effect = PersistenceFailure("disk full")
    context = context_factory(store=store)

    with pytest.raises(PersistenceFailure):
        inventory.record_stock_entry(context, inventory.StockMovementCommand(product_id=1, quantity=1))

    assert core_logic.get_catalog(context).find_by_id(1).stock == 5
    assert core_logic.list_inventory_movements(context) == []


def test_filter_products_matches_name_sku_and_category(product_factory):
    products = [
        product_factory(1, name="Anillo Oro", category="Anillos"),
        product_factory(2, name="Collar Perla", category="Collares"),
    ]

    assert [p.product_id for p in inventory.filter_products(products, "perla")] == [2]
    assert [p.product_id for p in inventory.filter_products(products, "sku-001")] == [1]
    assert [p.product_id for p in inventory.filter_products(products, "COLLARES")] == [2]
    assert len(inventory.filter_products(products, "  ")) == 2


def test_list_categories_filters_by_substring(context_factory, product_factory):
    context = context_factory(
        [product_factory(1, category="Anillos"), product_factory(2, category="Aretes"), product_factory(3, category="Dijes")]
    )

    assert [option.name for option in inventory.list_categories(context, " a")] == ["Anillos", "Aretes"]
    assert [option.name for option in inventory.list_categories(context, "DIJ")] == ["Dijes"]
    assert len(inventory.list_categories(context)) == 3
