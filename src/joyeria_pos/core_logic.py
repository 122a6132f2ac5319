"""Runtime context and shared plumbing for the business logic layer.

This module owns the :class:`RuntimeContext` every operation receives, the
per-context caches of loaded collections, and :func:`commit`, the single
place where new state reaches the document store. Mutating operations in
:mod:`joyeria_pos.sales`, :mod:`joyeria_pos.inventory` and
:mod:`joyeria_pos.cash_register` hold ``context.lock`` for the whole
snapshot, validate, commit sequence, which makes the lock the one
serialization point for stock, sales and register state.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Type

from . import data_manager, log
from .catalog import ProductCatalog
from .constants import CENT, EXPECTED_SCHEMA_VERSION, Collection
from .exceptions import MissingReferenceError, PersistenceTimeout, ValidationError


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, the document store and cached state."""

    settings: data_manager.ConfigSettings
    store: data_manager.DocumentStore
    lock: Any = field(default_factory=threading.RLock, repr=False, compare=False)
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` when given, otherwise the current UTC time.

    Naive values are taken as UTC, matching how stored timestamps are parsed.
    """

    if candidate is None:
        return datetime.now(UTC)
    if candidate.tzinfo is None:
        return candidate.replace(tzinfo=UTC)
    return candidate


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name."""

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets so the next read reloads the store."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_catalog_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, Collection.PRODUCTS.value)
    if "catalog" not in bucket:
        rows = [data_manager.deserialize_product(raw) for raw in context.store.load(Collection.PRODUCTS)]
        bucket["catalog"] = ProductCatalog(rows)
        log.debug("Populated catalog cache with %d products", len(rows))
    return bucket


def _ensure_rows_cache(context: RuntimeContext, collection: Collection, loader, key) -> Dict[str, Any]:
    """Populate ``all`` and ``by_id`` for a collection on demand."""

    bucket = _get_cache_bucket(context, collection.value)
    if "all" not in bucket:
        rows = [loader(raw) for raw in context.store.load(collection)]
        bucket["all"] = rows
        bucket["by_id"] = {key(row): row for row in rows}
        log.debug("Populated %s cache with %d entries", collection.value, len(rows))
    return bucket


def _ensure_sales_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_rows_cache(context, Collection.SALES, data_manager.deserialize_sale, lambda row: row.sale_id)


def _ensure_customers_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_rows_cache(
        context, Collection.CUSTOMERS, data_manager.deserialize_customer, lambda row: row.customer_id
    )


def _ensure_inventory_movements_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_rows_cache(
        context,
        Collection.INVENTORY_MOVEMENTS,
        data_manager.deserialize_inventory_movement,
        lambda row: row.movement_id,
    )


def _ensure_cash_sessions_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_rows_cache(
        context, Collection.CASH_SESSIONS, data_manager.deserialize_cash_session, lambda row: row.session_id
    )


def _ensure_cash_movements_cache(context: RuntimeContext) -> Dict[str, Any]:
    return _ensure_rows_cache(
        context, Collection.CASH_MOVEMENTS, data_manager.deserialize_cash_movement, lambda row: row.movement_id
    )


def build_runtime_context(
    settings: data_manager.ConfigSettings,
    store: data_manager.DocumentStore,
) -> RuntimeContext:
    """Bundle already-resolved settings and a store into a fresh context."""

    return RuntimeContext(settings=settings, store=store)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open the document store.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or data directory cannot
            be located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    store = data_manager.open_store(settings.data_dir, timeout=settings.persistence_timeout)
    log.info("Loaded runtime context for data directory '%s'", settings.data_dir)
    return build_runtime_context(settings, store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate store compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Store schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Store schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Return a context over the same store with every cache dropped."""

    log.info("Refreshing runtime context for '%s'", context.settings.data_dir)
    return RuntimeContext(settings=context.settings, store=context.store, lock=context.lock)


def close_context(context: RuntimeContext) -> None:
    """Release the store's worker resources."""

    context.store.close()


def get_catalog(context: RuntimeContext) -> ProductCatalog:
    """Return the live catalog. Callers that mutate must work on a clone."""

    return _ensure_catalog_cache(context)["catalog"]


def snapshot_catalog(context: RuntimeContext) -> ProductCatalog:
    """Return an independent copy of the live catalog for a transaction."""

    return get_catalog(context).clone()


def list_sales(context: RuntimeContext) -> List[data_manager.SaleRow]:
    """Return every sale in store order."""

    return list(_ensure_sales_cache(context)["all"])


def get_sale(context: RuntimeContext, sale_id: int) -> data_manager.SaleRow:
    """Resolve a sale by id.

    Raises:
        MissingReferenceError: If no sale carries ``sale_id``.
    """
    try:
        return _ensure_sales_cache(context)["by_id"][sale_id]
    except KeyError as exc:
        log.warning("Sale lookup failed for id '%s'", sale_id)
        raise MissingReferenceError(f"Unknown sale id: {sale_id}", sale_id=sale_id) from exc


def list_customers(context: RuntimeContext) -> List[data_manager.CustomerRow]:
    return list(_ensure_customers_cache(context)["all"])


def get_customer(context: RuntimeContext, customer_id: int) -> data_manager.CustomerRow:
    try:
        return _ensure_customers_cache(context)["by_id"][customer_id]
    except KeyError as exc:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise MissingReferenceError(f"Unknown customer id: {customer_id}", customer_id=customer_id) from exc


def list_inventory_movements(context: RuntimeContext) -> List[data_manager.InventoryMovementRow]:
    """Return standalone stock movements (adjustments and sale reversals)."""

    return list(_ensure_inventory_movements_cache(context)["all"])


def list_cash_sessions(context: RuntimeContext) -> List[data_manager.CashSessionRow]:
    return list(_ensure_cash_sessions_cache(context)["all"])


def list_cash_movements(context: RuntimeContext) -> List[data_manager.CashMovementRow]:
    return list(_ensure_cash_movements_cache(context)["all"])


def next_id(existing: Iterable[int]) -> int:
    """Return ``max(existing) + 1`` (``1`` for an empty collection)."""

    return max(existing, default=0) + 1


def next_inventory_movement_id(context: RuntimeContext) -> int:
    """Next id across sale-embedded and standalone inventory movements."""

    embedded = (m.movement_id for sale in list_sales(context) for m in sale.inventory_movements)
    standalone = (m.movement_id for m in list_inventory_movements(context))
    return max(max(embedded, default=0), max(standalone, default=0)) + 1


def commit(
    context: RuntimeContext,
    *,
    catalog: Optional[ProductCatalog] = None,
    sales: Optional[Sequence[data_manager.SaleRow]] = None,
    inventory_movements: Optional[Sequence[data_manager.InventoryMovementRow]] = None,
    cash_sessions: Optional[Sequence[data_manager.CashSessionRow]] = None,
    cash_movements: Optional[Sequence[data_manager.CashMovementRow]] = None,
) -> None:
    """Write the supplied collections wholesale, then swap them into the cache.

    Callers must hold ``context.lock``. When the store raises, the cache is
    left untouched so the previous state stays authoritative. A timed-out
    write may still land, so on timeout every cache bucket is dropped and the
    next read reloads whatever the store ends up holding.

    Raises:
        PersistenceFailure: If the store cannot write the batch.
        PersistenceTimeout: If the write exceeds the configured timeout.
    """

    batch: Dict[Collection, List[Dict[str, Any]]] = {}
    if catalog is not None:
        batch[Collection.PRODUCTS] = [data_manager.serialize_product(p) for p in catalog.products()]
    if sales is not None:
        batch[Collection.SALES] = [data_manager.serialize_sale(s) for s in sales]
    if inventory_movements is not None:
        batch[Collection.INVENTORY_MOVEMENTS] = [
            data_manager.serialize_inventory_movement(m) for m in inventory_movements
        ]
    if cash_sessions is not None:
        batch[Collection.CASH_SESSIONS] = [data_manager.serialize_cash_session(s) for s in cash_sessions]
    if cash_movements is not None:
        batch[Collection.CASH_MOVEMENTS] = [data_manager.serialize_cash_movement(m) for m in cash_movements]
    if not batch:
        return

    try:
        context.store.save_many(batch)
    except PersistenceTimeout:
        log.warning("Write of %s timed out; dropping cached state", ", ".join(name.value for name in batch))
        _invalidate_cache(context, *list(context._cache))
        raise

    if catalog is not None:
        _get_cache_bucket(context, Collection.PRODUCTS.value)["catalog"] = catalog
    _replace_rows(context, Collection.SALES, sales, lambda row: row.sale_id)
    _replace_rows(context, Collection.INVENTORY_MOVEMENTS, inventory_movements, lambda row: row.movement_id)
    _replace_rows(context, Collection.CASH_SESSIONS, cash_sessions, lambda row: row.session_id)
    _replace_rows(context, Collection.CASH_MOVEMENTS, cash_movements, lambda row: row.movement_id)
    log.debug("Committed collections: %s", ", ".join(name.value for name in batch))


def _replace_rows(context: RuntimeContext, collection: Collection, rows: Optional[Sequence[Any]], key) -> None:
    if rows is None:
        return
    bucket = _get_cache_bucket(context, collection.value)
    bucket["all"] = list(rows)
    bucket["by_id"] = {key(row): row for row in rows}


def round_money(amount: Decimal) -> Decimal:
    """Round half-up to cents."""

    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(
    value: Any,
    *,
    field: str,
    error: Type[ValidationError] = ValidationError,
    **details: Any,
) -> Decimal:
    """Coerce ``value`` to a finite :class:`Decimal`.

    Floats go through ``str`` so ``10.005`` stays ``Decimal("10.005")``.

    Raises:
        ValidationError: (or the supplied subclass) when ``value`` is not a
            finite number.
    """
    if isinstance(value, bool):
        raise error(f"{field} must be a number", field=field, value=value, **details)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError) as exc:
        log.error("Numeric validation failed for %s: %r", field, value)
        raise error(f"{field} must be a number", field=field, value=value, **details) from exc
    if not amount.is_finite():
        log.error("Numeric validation failed for %s: %r", field, value)
        raise error(f"{field} must be finite", field=field, value=value, **details)
    return amount


def require_positive_quantity(quantity: int, *, field: str = "quantity") -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValidationError: If ``quantity`` is zero or negative.
    """
    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValidationError("Quantity must be greater than zero", field=field, value=quantity)


def require_nonnegative_money(amount: Decimal, *, field: str = "amount") -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValidationError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValidationError("Amount must be zero or positive", field=field, value=amount)
