"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
import json
import threading
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path

import pytest

from joyeria_pos import constants, data_manager
from joyeria_pos.constants import Collection
from joyeria_pos.exceptions import PersistenceFailure, PersistenceTimeout


MOMENT = datetime(2025, 3, 1, 10, 0, tzinfo=UTC)


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_parent_directories(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataDir=data\n")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    result = data_manager.find_config_file()
    assert result == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    isolated = tmp_path / "isolated"
    isolated.mkdir()
    monkeypatch.chdir(isolated)
    monkeypatch.setattr(data_manager, "CONFIG_FILE_NAME", f"missing-{isolated.name}-{id(isolated)}.ini")
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "BusinessName") == "Joyería de Prueba"
    assert parser.get("DiscountLevels", "Gold") == "10"


def test_read_config_preserves_option_case(config_file: Path):
    """Discount tier names must keep their capitalisation."""

    parser = data_manager.read_config(config_file)
    assert "Platinum" in dict(parser.items("DiscountLevels"))


def test_read_config_missing_file_raises(tmp_path):
    """Missing files should propagate a FileNotFoundError."""

    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataDir entries should be anchored to the config location."""

    bundle = config_factory(make_relative=True)
    parser = data_manager.read_config(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)
    assert settings.data_dir == (bundle.config_path.parent / "data").resolve()
    assert settings.tax_rate == Decimal("0.16")
    assert settings.discount_levels["Platinum"] == Decimal("15")
    assert settings.persistence_timeout == 5.0


def test_parse_settings_requires_expected_sections(tmp_path):
    """Missing keys should result in a descriptive KeyError."""

    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_falls_back_to_defaults(tmp_path):
    """Optional sections should default to the store defaults."""

    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataDir=data\nBusinessName=Joyería\nSchemaVersion=1.0.0\n")
    settings = data_manager.parse_settings(parser, base_path=tmp_path)
    assert settings.tax_rate == constants.DEFAULT_TAX_RATE
    assert settings.default_payment_method == "Efectivo"
    assert settings.discount_levels == constants.DEFAULT_DISCOUNT_PERCENTS


def test_parse_settings_rejects_invalid_tax_rate(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataDir=data\nBusinessName=Joyería\nSchemaVersion=1.0.0\n\n[Sales]\nTaxRate=mucho\n"
    )
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_parse_settings_rejects_nonpositive_timeout(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataDir=data\nBusinessName=Joyería\nSchemaVersion=1.0.0\nPersistenceTimeout=0\n")
    with pytest.raises(ValueError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_open_store_requires_existing_directory(tmp_path):
    """open_store should refuse to create a store over a missing directory."""

    with pytest.raises(FileNotFoundError):
        data_manager.open_store(tmp_path / "nope")


def test_open_store_returns_json_store(tmp_path):
    store = data_manager.open_store(tmp_path, timeout=2)
    try:
        assert isinstance(store, data_manager.JsonStore)
        assert store.timeout == 2
        assert store.path_for(Collection.SALES) == tmp_path.resolve() / "sales.json"
    finally:
        store.close()


def test_json_store_load_missing_collection_returns_empty_list(tmp_path):
    store = data_manager.JsonStore(tmp_path)
    try:
        assert store.load(Collection.PRODUCTS) == []
    finally:
        store.close()


def test_json_store_round_trips_decimals(tmp_path):
    """Money written as JSON numbers must come back as Decimal values."""

    store = data_manager.JsonStore(tmp_path)
    try:
        store.save_many({Collection.PRODUCTS: [{"id": 1, "price": Decimal("30.02")}]})
        loaded = store.load(Collection.PRODUCTS)
    finally:
        store.close()

    assert loaded == [{"id": 1, "price": Decimal("30.02")}]
    assert isinstance(loaded[0]["price"], Decimal)
    assert json.loads((tmp_path / "products.json").read_text(encoding="utf-8")) == [{"id": 1, "price": 30.02}]


def test_json_store_rejects_non_array_documents(tmp_path):
    (tmp_path / "sales.json").write_text('{"id": 1}', encoding="utf-8")
    store = data_manager.JsonStore(tmp_path)
    try:
        with pytest.raises(PersistenceFailure):
            store.load(Collection.SALES)
    finally:
        store.close()


def test_json_store_failed_batch_leaves_previous_files(tmp_path):
    """A batch that fails to serialize must not replace any collection."""

    store = data_manager.JsonStore(tmp_path)
    try:
        store.save_many({Collection.PRODUCTS: [{"id": 1}]})
        with pytest.raises(PersistenceFailure):
            store.save_many(
                {
                    Collection.PRODUCTS: [{"id": 2}],
                    Collection.SALES: [{"id": 1, "broken": object()}],
                }
            )
        assert store.load(Collection.PRODUCTS) == [{"id": 1}]
        assert not (tmp_path / "sales.json").exists()
        assert not list(tmp_path.glob("*.tmp"))
    finally:
        store.close()


def test_json_store_times_out_slow_operations(tmp_path):
    """Operations exceeding the timeout should raise PersistenceTimeout."""

    release = threading.Event()
    store = data_manager.JsonStore(tmp_path, timeout=0.05)

    def slow_read(collection):
        release.wait(5)
        return []

    store._read_collection = slow_read
    try:
        with pytest.raises(PersistenceTimeout):
            store.load(Collection.PRODUCTS)
    finally:
        release.set()
        store.close()


def test_memory_store_hands_out_copies():
    store = data_manager.MemoryStore({Collection.PRODUCTS: [{"id": 1, "stock": 5}]})
    loaded = store.load(Collection.PRODUCTS)
    loaded[0]["stock"] = 0
    assert store.load(Collection.PRODUCTS) == [{"id": 1, "stock": 5}]


def test_product_serialization_uses_camel_case(product_factory):
    product = product_factory(7, category="Collares De Perla")
    raw = data_manager.serialize_product(product)
    assert raw["categoryId"] == "collares de perla"
    assert raw["createdAt"] == "2025-03-01T10:00:00+00:00"
    assert "description" not in raw
    assert data_manager.deserialize_product(raw) == product


def test_deserialize_legacy_sale_without_movements():
    """Sales written before movement tracking deserialize with no movements."""

    raw = {
        "id": 4,
        "total": 116,
        "paymentMethod": "Tarjeta",
        "createdAt": "2024-12-01T09:30:00",
        "items": [{"productId": 3, "quantity": 1, "unitPrice": 100, "subtotal": 100}],
    }
    sale = data_manager.deserialize_sale(raw)
    assert sale.inventory_movements == ()
    assert sale.items[0].sale_id == 4
    assert sale.items[0].item_type == "product"
    assert sale.created_at.tzinfo is not None
    assert sale.status == "Completada"


def test_cash_session_summary_round_trip():
    session = data_manager.CashSessionRow(
        session_id=1,
        start_time=MOMENT,
        initial_amount=Decimal("1000"),
        status="Cerrada",
        created_at=MOMENT,
        updated_at=MOMENT,
        end_time=MOMENT,
        summary={"efectivoEsperado": Decimal("2160.00")},
    )
    restored = data_manager.deserialize_cash_session(data_manager.serialize_cash_session(session))
    assert restored == session


def test_cash_movement_uses_spanish_keys():
    movement = data_manager.CashMovementRow(
        movement_id="abc",
        session_id=2,
        movement_type="retiro",
        amount=Decimal("50"),
        created_at=MOMENT,
        reason="Cambio",
    )
    raw = data_manager.serialize_cash_movement(movement)
    assert set(raw) == {"id", "sessionId", "tipo", "monto", "motivo", "fecha"}
    assert data_manager.deserialize_cash_movement(raw) == movement
