"""Shared pytest fixtures and utilities for Joyería POS tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional, Sequence

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from joyeria_pos import catalog, cli, constants, core_logic, data_manager  # noqa: E402
from joyeria_pos.setup_store import create_data_store  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
BASE_TIME = datetime(2025, 3, 1, 10, 0, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataDir = {data_dir}\n"
    "BusinessName = {business_name}\n"
    "SchemaVersion = {schema_version}\n"
    "PersistenceTimeout = 5\n\n"
    "[Sales]\n"
    "TaxRate = 0.16\n"
    "DefaultPaymentMethod = Efectivo\n\n"
    "[DiscountLevels]\n"
    "Bronze = 0\n"
    "Silver = 5\n"
    "Gold = 10\n"
    "Platinum = 15\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    data_dir: Path
    schema_version: str
    business_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the repository root path."""

    return PROJECT_ROOT


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/data-directory bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        business_name: str = "Joyería de Prueba",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        data_dir = create_data_store(bundle_dir / "data")
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_dir="data" if make_relative else str(data_dir),
                business_name=business_name,
                schema_version=schema_version,
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            data_dir=data_dir,
            schema_version=schema_version,
            business_name=business_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> Iterator[core_logic.RuntimeContext]:
    """Load an on-disk runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    try:
        yield context
    finally:
        core_logic.close_context(context)


# ---------------------------------------------------------------------------
# In-memory context fixtures
# ---------------------------------------------------------------------------


def make_product(
    product_id: int,
    *,
    stock: int = 10,
    category: str = "Anillos",
    price: str = "100.00",
    name: Optional[str] = None,
    when: datetime = BASE_TIME,
) -> data_manager.ProductRow:
    return data_manager.ProductRow(
        product_id=product_id,
        sku=f"SKU-{product_id:03d}",
        name=name or f"Producto {product_id}",
        price=Decimal(price),
        stock=stock,
        category_id=catalog.normalize_category_id(category),
        category=category,
        status=constants.ProductStatus.ACTIVE.value,
        created_at=when,
        updated_at=when,
    )


@pytest.fixture
def product_factory() -> Callable[..., data_manager.ProductRow]:
    """Return a builder for product rows with sensible defaults."""

    return make_product


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_dir=tmp_path / "data",
        business_name="Joyería de Prueba",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def context_factory(settings: data_manager.ConfigSettings) -> Callable[..., core_logic.RuntimeContext]:
    """Build runtime contexts over a seeded :class:`MemoryStore`."""

    def _build(
        products: Iterable[data_manager.ProductRow] = (),
        *,
        customers: Sequence[Mapping[str, Any]] = (),
        sales: Sequence[Mapping[str, Any]] = (),
        store: Optional[data_manager.DocumentStore] = None,
    ) -> core_logic.RuntimeContext:
        if store is None:
            store = data_manager.MemoryStore(
                {
                    constants.Collection.PRODUCTS: [data_manager.serialize_product(p) for p in products],
                    constants.Collection.CUSTOMERS: list(customers),
                    constants.Collection.SALES: list(sales),
                }
            )
        return core_logic.RuntimeContext(settings=settings, store=store)

    return _build


@pytest.fixture
def context(context_factory: Callable[..., core_logic.RuntimeContext]) -> core_logic.RuntimeContext:
    """An empty in-memory runtime context."""

    return context_factory()


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="joyeria-cli", description="Joyería CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_table_entry() -> tuple[str, cli.CommandSpec]:
    """Provide a placeholder command table entry for dispatch tests."""

    def execute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
        execute.__dict__["called"] = True
        return 0

    def register(
        subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    ) -> argparse.ArgumentParser:
        return subparsers.add_parser("catalog-test")

    spec = cli.CommandSpec(
        name="catalog-test",
        help_text="help",
        register=register,
        execute=execute,
    )
    return "catalog-test", spec


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
