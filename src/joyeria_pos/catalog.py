"""In-memory product catalog with stock operations and category index.

The catalog is the unit the sale engine snapshots: :meth:`ProductCatalog.clone`
produces an independent copy that can be mutated freely and either committed
as the new live state or thrown away when an order fails.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Dict, Iterable, List, Optional

from . import log
from .constants import DEFAULT_CATEGORY_NAME
from .data_manager import ProductRow
from .exceptions import InsufficientStock, MissingReferenceError, ValidationError


_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class CategoryOption:
    """One entry of the category catalog."""

    category_id: str
    name: str


def collapse_whitespace(value: Optional[str]) -> str:
    """Trim ``value`` and collapse internal runs of whitespace to one space."""

    return _WHITESPACE.sub(" ", str(value or "")).strip()


def normalize_category_id(value: Optional[str]) -> str:
    """Return the lowercase, trimmed, whitespace-collapsed category key."""

    return collapse_whitespace(value).lower()


def format_category_name(value: Optional[str]) -> str:
    """Return the display form of a category (each word capitalised).

    Blank input maps to ``"Sin categoría"``.
    """

    cleaned = collapse_whitespace(value)
    if not cleaned:
        return DEFAULT_CATEGORY_NAME
    return " ".join(word[0].upper() + word[1:].lower() for word in cleaned.split(" "))


class ProductCatalog:
    """Products keyed by id plus an incrementally maintained category index.

    Rows are immutable dataclasses, so cloning only copies the two dictionaries.
    The category index maps each normalized ``category_id`` to a single display
    name; the most recently written product wins.
    """

    def __init__(self, products: Iterable[ProductRow] = ()) -> None:
        self._products: Dict[int, ProductRow] = {}
        self._categories: Dict[str, str] = {}
        for product in sorted(products, key=lambda row: (row.updated_at, row.product_id)):
            self._store(product)

    def clone(self) -> "ProductCatalog":
        twin = ProductCatalog()
        twin._products = dict(self._products)
        twin._categories = dict(self._categories)
        return twin

    def __len__(self) -> int:
        return len(self._products)

    def __contains__(self, product_id: object) -> bool:
        return product_id in self._products

    def products(self) -> List[ProductRow]:
        """Return every product ordered by id."""

        return [self._products[key] for key in sorted(self._products)]

    def total_stock(self) -> int:
        return sum(product.stock for product in self._products.values())

    def find_by_id(self, product_id: Optional[int]) -> Optional[ProductRow]:
        if product_id is None:
            return None
        return self._products.get(product_id)

    def find_by_category_id(self, category_id: Optional[str]) -> List[ProductRow]:
        key = normalize_category_id(category_id)
        return [product for product in self.products() if product.category_id == key]

    def require(self, product_id: int) -> ProductRow:
        product = self.find_by_id(product_id)
        if product is None:
            log.warning("Product lookup failed for id '%s'", product_id)
            raise MissingReferenceError(f"Unknown product id: {product_id}", product_id=product_id)
        return product

    def categories(self) -> List[CategoryOption]:
        """Return the category catalog sorted by display name."""

        options = [CategoryOption(category_id=key, name=name) for key, name in self._categories.items()]
        return sorted(options, key=lambda option: (option.name.lower(), option.category_id))

    def category_name(self, category_id: Optional[str], fallback: Optional[str] = None) -> str:
        key = normalize_category_id(category_id)
        if key in self._categories:
            return self._categories[key]
        return format_category_name(fallback if fallback else category_id)

    def next_product_id(self) -> int:
        return max(self._products, default=0) + 1

    def upsert(self, product: ProductRow) -> ProductRow:
        """Insert or replace ``product`` and refresh its category entry."""

        previous = self._products.get(product.product_id)
        stored = self._store(product)
        if previous is not None and previous.category_id != stored.category_id:
            self._reindex_category(previous.category_id)
        return stored

    def remove(self, product_id: int) -> ProductRow:
        product = self.require(product_id)
        del self._products[product_id]
        self._reindex_category(product.category_id)
        return product

    def decrement_stock(self, product_id: int, quantity: int, *, when: Optional[datetime] = None) -> ProductRow:
        """Take ``quantity`` units from a product.

        Raises:
            MissingReferenceError: If the product does not exist.
            InsufficientStock: If ``quantity`` exceeds the current stock.
        """

        product = self.require(product_id)
        if quantity > product.stock:
            raise InsufficientStock(
                f"Stock insuficiente para '{product.name}' ({product.stock} disponibles, {quantity} solicitados)",
                category_id=product.category_id,
                category_name=self.category_name(product.category_id, product.category),
                product_id=product.product_id,
                requested=quantity,
                available=product.stock,
            )
        return self._set_stock(product, product.stock - quantity, when)

    def increment_stock(self, product_id: int, quantity: int, *, when: Optional[datetime] = None) -> ProductRow:
        product = self.require(product_id)
        return self._set_stock(product, product.stock + quantity, when)

    def set_stock(self, product_id: int, stock: int, *, when: Optional[datetime] = None) -> ProductRow:
        if stock < 0:
            raise ValidationError("Stock cannot be negative", field="stock", value=stock)
        product = self.require(product_id)
        return self._set_stock(product, stock, when)

    def _set_stock(self, product: ProductRow, stock: int, when: Optional[datetime]) -> ProductRow:
        updated = replace(product, stock=stock, updated_at=when or datetime.now(UTC))
        self._products[updated.product_id] = updated
        return updated

    def _store(self, product: ProductRow) -> ProductRow:
        category_id = normalize_category_id(product.category_id or product.category)
        if category_id != product.category_id:
            product = replace(product, category_id=category_id)
        self._products[product.product_id] = product
        self._categories[category_id] = format_category_name(product.category or category_id)
        return product

    def _reindex_category(self, category_id: str) -> None:
        members = [product for product in self._products.values() if product.category_id == category_id]
        if not members:
            self._categories.pop(category_id, None)
            return
        latest = max(members, key=lambda row: (row.updated_at, row.product_id))
        self._categories[category_id] = format_category_name(latest.category or category_id)
