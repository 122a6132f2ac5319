"""Data access layer for Joyería POS.

This module provides low-level helpers that read from and write to the JSON
documents kept in the configured data directory. Business logic belongs
elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Store lifecycle: opening the data directory and persisting whole
   collections, one JSON array per collection, written wholesale.
3. Record conversion: turning raw JSON objects into typed rows and back.
"""


from __future__ import annotations

import configparser
import copy
import json
import os
import tempfile
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from . import log
from .constants import (
    DEFAULT_DISCOUNT_PERCENTS,
    DEFAULT_TAX_RATE,
    Collection,
    PaymentMethod,
)
from .exceptions import PersistenceFailure, PersistenceTimeout


CONFIG_FILE_NAME = "config.ini"
DEFAULT_PERSISTENCE_TIMEOUT = 5.0


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_dir: Path
    business_name: str
    schema_version: str
    persistence_timeout: float = DEFAULT_PERSISTENCE_TIMEOUT
    tax_rate: Decimal = DEFAULT_TAX_RATE
    default_payment_method: str = PaymentMethod.CASH.value
    discount_levels: Mapping[str, Decimal] = field(default_factory=lambda: dict(DEFAULT_DISCOUNT_PERCENTS))


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a record from the ``products`` collection."""

    product_id: int
    sku: str
    name: str
    price: Decimal
    stock: int
    category_id: str
    category: str
    status: str
    created_at: datetime
    updated_at: datetime
    description: Optional[str] = None


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of the customer fields the sale engine reads."""

    customer_id: int
    name: str
    discount_level: str
    email: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool = True


@dataclass(frozen=True)
class SaleItemRow:
    """One line of a persisted sale."""

    item_id: int
    sale_id: int
    product_id: Optional[int]
    category_id: str
    category_name: str
    quantity: int
    unit_price: Decimal
    subtotal: Decimal
    item_type: str
    notes: Optional[str] = None


@dataclass(frozen=True)
class InventoryMovementRow:
    """Stock audit entry, either embedded in a sale or standalone."""

    movement_id: int
    sale_id: Optional[int]
    product_id: Optional[int]
    category_id: str
    category_name: str
    quantity: int
    movement_type: str
    created_at: datetime
    notes: Optional[str] = None


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a record from the ``sales`` collection."""

    sale_id: int
    customer_id: Optional[int]
    subtotal: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal
    payment_method: str
    status: str
    created_at: datetime
    updated_at: datetime
    items: Tuple[SaleItemRow, ...]
    inventory_movements: Tuple[InventoryMovementRow, ...] = ()
    applied_discount_level: Optional[str] = None
    applied_discount_percent: Optional[Decimal] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class CashSessionRow:
    """In-memory view of a register session (apertura)."""

    session_id: int
    start_time: datetime
    initial_amount: Decimal
    status: str
    created_at: datetime
    updated_at: datetime
    end_time: Optional[datetime] = None
    final_amount: Optional[Decimal] = None
    expected_amount: Optional[Decimal] = None
    difference: Optional[Decimal] = None
    notes: Optional[str] = None
    summary: Optional[Mapping[str, Decimal]] = None


@dataclass(frozen=True)
class CashMovementRow:
    """Append-only manual cash movement (ingreso, retiro, devolucion)."""

    movement_id: str
    session_id: int
    movement_type: str
    amount: Decimal
    created_at: datetime
    reason: Optional[str] = None


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the
    current working directory toward the filesystem root looking for a file
    named ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    # Discount tier names are case-sensitive ("Gold", not "gold").
    parser.optionxform = str  # type: ignore[assignment]
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. ``[Sales]`` and ``[DiscountLevels]``
    are optional and fall back to the store defaults. Relative ``DataDir``
    entries are expanded against ``base_path`` when provided, or against the
    current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used as the anchor for a relative
            ``DataDir``.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required options is missing.
        ValueError: If a numeric option cannot be parsed.
    """

    try:
        data_dir_raw = parser.get("System", "DataDir")
        business_name = parser.get("System", "BusinessName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    timeout = parser.getfloat("System", "PersistenceTimeout", fallback=DEFAULT_PERSISTENCE_TIMEOUT)
    if timeout <= 0:
        raise ValueError(f"PersistenceTimeout must be positive, got {timeout}")

    tax_raw = parser.get("Sales", "TaxRate", fallback=str(DEFAULT_TAX_RATE))
    default_payment = parser.get("Sales", "DefaultPaymentMethod", fallback=PaymentMethod.CASH.value)

    discount_levels: Dict[str, Decimal] = dict(DEFAULT_DISCOUNT_PERCENTS)
    if parser.has_section("DiscountLevels"):
        for level, percent in parser.items("DiscountLevels"):
            discount_levels[level.strip()] = _parse_decimal_option(percent, f"DiscountLevels.{level}")

    data_dir_path = Path(data_dir_raw).expanduser()
    if not data_dir_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_dir_path = (base_path / data_dir_path).resolve()

    return ConfigSettings(
        data_dir=data_dir_path,
        business_name=business_name,
        schema_version=schema_version,
        persistence_timeout=timeout,
        tax_rate=_parse_decimal_option(tax_raw, "Sales.TaxRate"),
        default_payment_method=default_payment,
        discount_levels=discount_levels,
    )


def _parse_decimal_option(raw: str, name: str) -> Decimal:
    try:
        value = Decimal(raw.strip())
    except InvalidOperation as exc:
        raise ValueError(f"Invalid numeric value for {name}: {raw!r}") from exc
    if not value.is_finite() or value < 0:
        raise ValueError(f"Invalid numeric value for {name}: {raw!r}")
    return value


class DocumentStore(Protocol):
    """Persistence collaborator: whole collections in, whole collections out."""

    def load(self, collection: Collection) -> List[Dict[str, Any]]:
        ...

    def save_many(self, collections: Mapping[Collection, Sequence[Mapping[str, Any]]]) -> None:
        ...

    def close(self) -> None:
        ...


class MemoryStore:
    """In-memory document store used for tests and throwaway sessions."""

    def __init__(self, initial: Optional[Mapping[Collection, Sequence[Mapping[str, Any]]]] = None) -> None:
        self._documents: Dict[Collection, List[Dict[str, Any]]] = {}
        for collection, records in (initial or {}).items():
            self._documents[Collection(collection)] = _normalize_documents(records)

    def load(self, collection: Collection) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._documents.get(Collection(collection), []))

    def save_many(self, collections: Mapping[Collection, Sequence[Mapping[str, Any]]]) -> None:
        staged = {Collection(name): _normalize_documents(records) for name, records in collections.items()}
        self._documents.update(staged)

    def close(self) -> None:
        return None


class JsonStore:
    """Directory of JSON documents, one array per collection.

    Every call runs on a dedicated worker thread and is awaited for at most
    ``timeout`` seconds. Writes go to temporary files first and are moved into
    place only once every collection in the batch serialized successfully.
    """

    def __init__(self, data_dir: Path, *, timeout: float = DEFAULT_PERSISTENCE_TIMEOUT) -> None:
        self.data_dir = Path(data_dir)
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="joyeria-store")

    def path_for(self, collection: Collection) -> Path:
        return self.data_dir / f"{Collection(collection).value}.json"

    def load(self, collection: Collection) -> List[Dict[str, Any]]:
        return self._run(self._read_collection, Collection(collection))

    def save_many(self, collections: Mapping[Collection, Sequence[Mapping[str, Any]]]) -> None:
        staged = {Collection(name): _normalize_documents(records) for name, records in collections.items()}
        self._run(self._write_collections, staged)

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def _run(self, operation: Callable[..., Any], *args: Any) -> Any:
        future = self._executor.submit(operation, *args)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError as exc:
            log.error("Store operation '%s' timed out after %ss", operation.__name__, self.timeout)
            raise PersistenceTimeout(
                f"Store operation timed out after {self.timeout}s",
                operation=operation.__name__,
                timeout=self.timeout,
            ) from exc
        except (OSError, ValueError, TypeError) as exc:
            log.error("Store operation '%s' failed: %s", operation.__name__, exc)
            raise PersistenceFailure(f"Store operation failed: {exc}", operation=operation.__name__) from exc

    def _read_collection(self, collection: Collection) -> List[Dict[str, Any]]:
        path = self.path_for(collection)
        if not path.exists():
            return []
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle, parse_float=Decimal)
        if not isinstance(data, list):
            raise ValueError(f"Collection '{collection.value}' is not a JSON array: {path}")
        return data

    def _write_collections(self, collections: Mapping[Collection, List[Dict[str, Any]]]) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        staged: List[Tuple[Path, Path]] = []
        try:
            for collection, records in collections.items():
                fd, tmp_name = tempfile.mkstemp(prefix=f".{collection.value}.", suffix=".tmp", dir=self.data_dir)
                tmp_path = Path(tmp_name)
                staged.append((tmp_path, self.path_for(collection)))
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(records, handle, ensure_ascii=False, indent=2, default=_json_default)
            for tmp_path, target in staged:
                os.replace(tmp_path, target)
        finally:
            for tmp_path, _ in staged:
                if tmp_path.exists():
                    tmp_path.unlink()


def open_store(data_dir: Path, *, timeout: float = DEFAULT_PERSISTENCE_TIMEOUT) -> JsonStore:
    """Open the JSON document store rooted at ``data_dir``.

    Args:
        data_dir (Path): Directory holding the collection files.
        timeout (float): Seconds to wait for each store operation.

    Returns:
        JsonStore: Store bound to the resolved directory.

    Raises:
        FileNotFoundError: If ``data_dir`` does not exist after expansion and
            resolution.
    """

    data_dir = Path(data_dir).expanduser().resolve()
    if not data_dir.is_dir():
        raise FileNotFoundError(f"Data directory not found: {data_dir}")
    return JsonStore(data_dir, timeout=timeout)


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return format_timestamp(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _normalize_documents(records: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    return [copy.deepcopy(dict(record)) for record in records]


def format_timestamp(moment: datetime) -> str:
    """Render a timestamp as ISO 8601, assuming UTC for naive values."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.isoformat()


def parse_timestamp(raw: Any) -> datetime:
    """Parse an ISO 8601 string into an aware datetime (UTC when unspecified)."""

    if isinstance(raw, datetime):
        moment = raw
    else:
        moment = datetime.fromisoformat(str(raw))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment


def _decimal(raw: Any, default: str = "0") -> Decimal:
    if raw is None or raw == "":
        return Decimal(default)
    return Decimal(str(raw))


def _optional_decimal(raw: Any) -> Optional[Decimal]:
    return None if raw is None else Decimal(str(raw))


def _optional_int(raw: Any) -> Optional[int]:
    return None if raw is None or raw == "" else int(raw)


def _optional_str(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    text = str(raw)
    return text if text else None


def _drop_none(record: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in record.items() if value is not None}


def serialize_product(record: ProductRow) -> Dict[str, Any]:
    """Convert a product row into its persisted JSON shape."""

    return _drop_none({
        "id": record.product_id,
        "sku": record.sku,
        "name": record.name,
        "price": record.price,
        "stock": record.stock,
        "categoryId": record.category_id,
        "category": record.category,
        "status": record.status,
        "description": record.description,
        "createdAt": format_timestamp(record.created_at),
        "updatedAt": format_timestamp(record.updated_at),
    })


def deserialize_product(raw: Mapping[str, Any]) -> ProductRow:
    """Convert a raw product document into a typed row.

    ``categoryId`` is left empty for legacy documents that predate it; the
    catalog derives it from ``category`` when the row is loaded.
    """

    created = parse_timestamp(raw["createdAt"]) if raw.get("createdAt") else datetime.now(UTC)
    return ProductRow(
        product_id=int(raw["id"]),
        sku=str(raw.get("sku") or ""),
        name=str(raw.get("name") or ""),
        price=_decimal(raw.get("price")),
        stock=int(raw.get("stock") or 0),
        category_id=str(raw.get("categoryId") or ""),
        category=str(raw.get("category") or ""),
        status=str(raw.get("status") or "Activo"),
        description=_optional_str(raw.get("description")),
        created_at=created,
        updated_at=parse_timestamp(raw["updatedAt"]) if raw.get("updatedAt") else created,
    )


def deserialize_customer(raw: Mapping[str, Any]) -> CustomerRow:
    """Convert a raw customer document into the fields the till reads."""

    return CustomerRow(
        customer_id=int(raw["id"]),
        name=str(raw.get("name") or ""),
        discount_level=str(raw.get("discountLevel") or "Bronze"),
        email=_optional_str(raw.get("email")),
        phone=_optional_str(raw.get("phone")),
        is_active=bool(raw.get("isActive", True)),
    )


def serialize_sale_item(record: SaleItemRow) -> Dict[str, Any]:
    return _drop_none({
        "id": record.item_id,
        "saleId": record.sale_id,
        "productId": record.product_id,
        "categoryId": record.category_id,
        "categoryName": record.category_name,
        "quantity": record.quantity,
        "unitPrice": record.unit_price,
        "subtotal": record.subtotal,
        "type": record.item_type,
        "notes": record.notes,
    })


def deserialize_sale_item(raw: Mapping[str, Any], *, sale_id: int) -> SaleItemRow:
    product_id = _optional_int(raw.get("productId"))
    return SaleItemRow(
        item_id=int(raw.get("id") or 0),
        sale_id=int(raw.get("saleId") or sale_id),
        product_id=product_id,
        category_id=str(raw.get("categoryId") or ""),
        category_name=str(raw.get("categoryName") or ""),
        quantity=int(raw.get("quantity") or 0),
        unit_price=_decimal(raw.get("unitPrice")),
        subtotal=_decimal(raw.get("subtotal")),
        item_type=str(raw.get("type") or ("product" if product_id is not None else "manual")),
        notes=_optional_str(raw.get("notes")),
    )


def serialize_inventory_movement(record: InventoryMovementRow) -> Dict[str, Any]:
    return _drop_none({
        "id": record.movement_id,
        "saleId": record.sale_id,
        "productId": record.product_id,
        "categoryId": record.category_id,
        "categoryName": record.category_name,
        "quantity": record.quantity,
        "type": record.movement_type,
        "createdAt": format_timestamp(record.created_at),
        "notes": record.notes,
    })


def deserialize_inventory_movement(raw: Mapping[str, Any]) -> InventoryMovementRow:
    return InventoryMovementRow(
        movement_id=int(raw.get("id") or 0),
        sale_id=_optional_int(raw.get("saleId")),
        product_id=_optional_int(raw.get("productId")),
        category_id=str(raw.get("categoryId") or ""),
        category_name=str(raw.get("categoryName") or ""),
        quantity=int(raw.get("quantity") or 0),
        movement_type=str(raw.get("type") or ""),
        created_at=parse_timestamp(raw["createdAt"]) if raw.get("createdAt") else datetime.now(UTC),
        notes=_optional_str(raw.get("notes")),
    )


def serialize_sale(record: SaleRow) -> Dict[str, Any]:
    """Convert a sale row, including its lines and movements, into JSON."""

    return _drop_none({
        "id": record.sale_id,
        "customerId": record.customer_id,
        "subtotal": record.subtotal,
        "discount": record.discount,
        "tax": record.tax,
        "total": record.total,
        "paymentMethod": record.payment_method,
        "status": record.status,
        "createdAt": format_timestamp(record.created_at),
        "updatedAt": format_timestamp(record.updated_at),
        "items": [serialize_sale_item(item) for item in record.items],
        "inventoryMovements": [serialize_inventory_movement(m) for m in record.inventory_movements],
        "appliedDiscountLevel": record.applied_discount_level,
        "appliedDiscountPercent": record.applied_discount_percent,
        "notes": record.notes,
    })


def deserialize_sale(raw: Mapping[str, Any]) -> SaleRow:
    """Convert a raw sale document into a typed row.

    Sales written before movement tracking carry no ``inventoryMovements``;
    they deserialize with an empty tuple so stock restoration can fall back
    to the item lines.
    """

    sale_id = int(raw["id"])
    created = parse_timestamp(raw["createdAt"]) if raw.get("createdAt") else datetime.now(UTC)
    return SaleRow(
        sale_id=sale_id,
        customer_id=_optional_int(raw.get("customerId")),
        subtotal=_decimal(raw.get("subtotal")),
        discount=_decimal(raw.get("discount")),
        tax=_decimal(raw.get("tax")),
        total=_decimal(raw.get("total")),
        payment_method=str(raw.get("paymentMethod") or PaymentMethod.CASH.value),
        status=str(raw.get("status") or "Completada"),
        created_at=created,
        updated_at=parse_timestamp(raw["updatedAt"]) if raw.get("updatedAt") else created,
        items=tuple(deserialize_sale_item(item, sale_id=sale_id) for item in raw.get("items") or ()),
        inventory_movements=tuple(
            deserialize_inventory_movement(m) for m in raw.get("inventoryMovements") or ()
        ),
        applied_discount_level=_optional_str(raw.get("appliedDiscountLevel")),
        applied_discount_percent=_optional_decimal(raw.get("appliedDiscountPercent")),
        notes=_optional_str(raw.get("notes")),
    )


def serialize_cash_session(record: CashSessionRow) -> Dict[str, Any]:
    return _drop_none({
        "id": record.session_id,
        "startTime": format_timestamp(record.start_time),
        "endTime": format_timestamp(record.end_time) if record.end_time else None,
        "initialAmount": record.initial_amount,
        "finalAmount": record.final_amount,
        "expectedAmount": record.expected_amount,
        "difference": record.difference,
        "status": record.status,
        "notes": record.notes,
        "summary": dict(record.summary) if record.summary is not None else None,
        "createdAt": format_timestamp(record.created_at),
        "updatedAt": format_timestamp(record.updated_at),
    })


def deserialize_cash_session(raw: Mapping[str, Any]) -> CashSessionRow:
    start = parse_timestamp(raw["startTime"])
    summary_raw = raw.get("summary")
    return CashSessionRow(
        session_id=int(raw["id"]),
        start_time=start,
        initial_amount=_decimal(raw.get("initialAmount")),
        status=str(raw.get("status") or "Abierta"),
        created_at=parse_timestamp(raw["createdAt"]) if raw.get("createdAt") else start,
        updated_at=parse_timestamp(raw["updatedAt"]) if raw.get("updatedAt") else start,
        end_time=parse_timestamp(raw["endTime"]) if raw.get("endTime") else None,
        final_amount=_optional_decimal(raw.get("finalAmount")),
        expected_amount=_optional_decimal(raw.get("expectedAmount")),
        difference=_optional_decimal(raw.get("difference")),
        notes=_optional_str(raw.get("notes")),
        summary=(
            {str(key): _decimal(value) for key, value in summary_raw.items()}
            if isinstance(summary_raw, Mapping)
            else None
        ),
    )


def serialize_cash_movement(record: CashMovementRow) -> Dict[str, Any]:
    return _drop_none({
        "id": record.movement_id,
        "sessionId": record.session_id,
        "tipo": record.movement_type,
        "monto": record.amount,
        "motivo": record.reason,
        "fecha": format_timestamp(record.created_at),
    })


def deserialize_cash_movement(raw: Mapping[str, Any]) -> CashMovementRow:
    return CashMovementRow(
        movement_id=str(raw["id"]),
        session_id=int(raw.get("sessionId") or 0),
        movement_type=str(raw.get("tipo") or ""),
        amount=_decimal(raw.get("monto")),
        created_at=parse_timestamp(raw["fecha"]),
        reason=_optional_str(raw.get("motivo")),
    )
