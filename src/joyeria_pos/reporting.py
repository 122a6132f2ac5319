"""Sales reporting over loaded collections and ``.xlsx`` export.

The aggregation helpers are pure functions over rows; only
:func:`build_sales_report` reads from a runtime context and only
:func:`export_report_workbook` touches the filesystem.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log
from .catalog import format_category_name
from .core_logic import RuntimeContext, get_catalog, list_customers, list_sales, round_money


ZERO = Decimal("0")
GRANULARITIES = ("day", "month", "year")

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    "Resumen": ["Concepto", "Valor"],
    "Productos": ["ProductoID", "Producto", "Categoría", "Cantidad", "Ingresos"],
    "Clientes": ["ClienteID", "Cliente", "Total", "Compras", "Promedio"],
    "Ingresos": ["Periodo", "Total"],
}


@dataclass(frozen=True)
class ProductRanking:
    product_id: int
    name: str
    category: str
    quantity: int
    revenue: Decimal


@dataclass(frozen=True)
class CustomerRanking:
    customer_id: int
    name: str
    total: Decimal
    purchases: int
    average: Decimal


@dataclass(frozen=True)
class PeriodBucket:
    key: str
    start: date
    total: Decimal


@dataclass(frozen=True)
class SalesReport:
    """Aggregated view of the sales registered between two dates."""

    business_name: str
    start: date
    end: date
    granularity: str
    sale_count: int
    total_sales: Decimal
    total_tax: Decimal
    total_discounts: Decimal
    top_products: List[ProductRanking] = field(default_factory=list)
    top_customers: List[CustomerRanking] = field(default_factory=list)
    revenue: List[PeriodBucket] = field(default_factory=list)


def total_sales(sales: Iterable[data_manager.SaleRow]) -> Decimal:
    return round_money(sum((sale.total for sale in sales), ZERO))


def total_tax(sales: Iterable[data_manager.SaleRow]) -> Decimal:
    return round_money(sum((sale.tax for sale in sales), ZERO))


def total_discounts(sales: Iterable[data_manager.SaleRow]) -> Decimal:
    return round_money(sum((sale.discount for sale in sales), ZERO))


def top_products(
    sales: Iterable[data_manager.SaleRow],
    products: Iterable[data_manager.ProductRow],
    n: int = 10,
) -> List[ProductRanking]:
    """Rank catalog products by revenue; lines without a known product are ignored."""

    by_id = {product.product_id: product for product in products}
    quantities: Dict[int, int] = defaultdict(int)
    revenue: Dict[int, Decimal] = defaultdict(lambda: ZERO)
    for sale in sales:
        for item in sale.items:
            if item.product_id is None or item.product_id not in by_id:
                continue
            quantities[item.product_id] += item.quantity
            revenue[item.product_id] += item.subtotal

    rankings = [
        ProductRanking(
            product_id=product_id,
            name=by_id[product_id].name,
            category=format_category_name(by_id[product_id].category),
            quantity=quantities[product_id],
            revenue=round_money(revenue[product_id]),
        )
        for product_id in quantities
    ]
    rankings.sort(key=lambda row: (-row.revenue, row.product_id))
    return rankings[:n]


def top_customers(
    sales: Iterable[data_manager.SaleRow],
    customers: Iterable[data_manager.CustomerRow],
    n: int = 10,
) -> List[CustomerRanking]:
    """Rank known customers by total spent."""

    by_id = {customer.customer_id: customer for customer in customers}
    totals: Dict[int, Decimal] = defaultdict(lambda: ZERO)
    purchases: Dict[int, int] = defaultdict(int)
    for sale in sales:
        if not sale.customer_id:
            continue
        totals[sale.customer_id] += sale.total
        purchases[sale.customer_id] += 1

    rankings = [
        CustomerRanking(
            customer_id=customer_id,
            name=by_id[customer_id].name,
            total=round_money(totals[customer_id]),
            purchases=purchases[customer_id],
            average=round_money(totals[customer_id] / purchases[customer_id]),
        )
        for customer_id in totals
        if customer_id in by_id
    ]
    rankings.sort(key=lambda row: (-row.total, row.customer_id))
    return rankings[:n]


def _bucket_key(moment: date, granularity: str) -> str:
    if granularity == "year":
        return f"{moment.year:04d}"
    if granularity == "month":
        return f"{moment.year:04d}-{moment.month:02d}"
    return moment.isoformat()


def _bucket_starts(start: date, end: date, granularity: str) -> List[date]:
    starts: List[date] = []
    if granularity == "day":
        cursor = start
        while cursor <= end:
            starts.append(cursor)
            cursor += timedelta(days=1)
    elif granularity == "month":
        cursor = date(start.year, start.month, 1)
        while cursor <= end:
            starts.append(cursor)
            cursor = date(cursor.year + cursor.month // 12, cursor.month % 12 + 1, 1)
    else:
        starts = [date(year, 1, 1) for year in range(start.year, end.year + 1)]
    return starts


def window_bounds(start: date, end: date) -> tuple[datetime, datetime]:
    """UTC datetimes covering ``start`` 00:00 through the last instant of ``end``."""

    return (
        datetime.combine(start, time.min, tzinfo=UTC),
        datetime.combine(end, time.max, tzinfo=UTC),
    )


def revenue_by_period(
    sales: Iterable[data_manager.SaleRow],
    start: date,
    end: date,
    granularity: str = "day",
) -> List[PeriodBucket]:
    """Sum sale totals into zero-filled day, month or year buckets.

    Raises:
        ValueError: If ``granularity`` is unknown or ``end`` precedes ``start``.
    """

    if granularity not in GRANULARITIES:
        raise ValueError(f"Unknown granularity: {granularity}")
    if end < start:
        raise ValueError("Report end date precedes its start date")

    lower, upper = window_bounds(start, end)
    starts = _bucket_starts(start, end, granularity)
    totals: Dict[str, Decimal] = {_bucket_key(moment, granularity): ZERO for moment in starts}
    for sale in sales:
        if not lower <= sale.created_at <= upper:
            continue
        key = _bucket_key(sale.created_at.astimezone(UTC).date(), granularity)
        if key in totals:
            totals[key] += sale.total

    buckets = []
    for moment in starts:
        key = _bucket_key(moment, granularity)
        buckets.append(PeriodBucket(key=key, start=moment, total=round_money(totals[key])))
    return buckets


def build_sales_report(
    context: RuntimeContext,
    start: date,
    end: date,
    *,
    granularity: str = "day",
    limit: int = 10,
) -> SalesReport:
    """Aggregate every sale registered between ``start`` and ``end`` (inclusive).

    Args:
        context (RuntimeContext): Runtime context providing the cached
            collections.
        start (date): First day of the report (UTC).
        end (date): Last day of the report (UTC).
        granularity (str): ``day``, ``month`` or ``year`` revenue buckets.
        limit (int): Number of entries kept in each ranking.

    Returns:
        SalesReport: Totals, rankings and the revenue series.
    """
    revenue = revenue_by_period(list_sales(context), start, end, granularity)
    lower, upper = window_bounds(start, end)
    sales = [sale for sale in list_sales(context) if lower <= sale.created_at <= upper]
    report = SalesReport(
        business_name=context.settings.business_name,
        start=start,
        end=end,
        granularity=granularity,
        sale_count=len(sales),
        total_sales=total_sales(sales),
        total_tax=total_tax(sales),
        total_discounts=total_discounts(sales),
        top_products=top_products(sales, get_catalog(context).products(), limit),
        top_customers=top_customers(sales, list_customers(context), limit),
        revenue=revenue,
    )
    log.info("Built sales report %s..%s (%d sales, total=%s)", start, end, report.sale_count, report.total_sales)
    return report


def export_report_workbook(report: SalesReport, destination: Path, *, overwrite: bool = False) -> Path:
    """Write ``report`` to an ``.xlsx`` workbook with one sheet per section.

    Raises:
        FileExistsError: If ``destination`` exists and ``overwrite`` is false.
    """

    destination = Path(destination).expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing report: {destination}")

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in SHEET_COLUMNS.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    summary = workbook["Resumen"]
    summary.append(["Negocio", report.business_name])
    summary.append(["Desde", report.start.isoformat()])
    summary.append(["Hasta", report.end.isoformat()])
    summary.append(["Ventas", report.sale_count])
    summary.append(["Total vendido", report.total_sales])
    summary.append(["Impuestos", report.total_tax])
    summary.append(["Descuentos", report.total_discounts])

    products_sheet = workbook["Productos"]
    for row in report.top_products:
        products_sheet.append([row.product_id, row.name, row.category, row.quantity, row.revenue])

    customers_sheet = workbook["Clientes"]
    for row in report.top_customers:
        customers_sheet.append([row.customer_id, row.name, row.total, row.purchases, row.average])

    revenue_sheet = workbook["Ingresos"]
    for bucket in report.revenue:
        revenue_sheet.append([bucket.key, bucket.total])

    workbook.save(destination)
    log.info("Exported sales report to '%s'", destination)
    return destination


def report_lines(report: SalesReport, *, currency: Optional[str] = "$") -> List[str]:
    """Plain-text rendering used by the command-line front end."""

    symbol = currency or ""
    lines = [
        f"{report.business_name}: ventas {report.start.isoformat()} .. {report.end.isoformat()}",
        f"  Ventas: {report.sale_count}",
        f"  Total vendido: {symbol}{report.total_sales}",
        f"  Impuestos: {symbol}{report.total_tax}",
        f"  Descuentos: {symbol}{report.total_discounts}",
    ]
    if report.top_products:
        lines.append("  Productos más vendidos:")
        lines.extend(
            f"    {row.name} ({row.category}): {row.quantity} uds, {symbol}{row.revenue}" for row in report.top_products
        )
    if report.top_customers:
        lines.append("  Mejores clientes:")
        lines.extend(f"    {row.name}: {symbol}{row.total} en {row.purchases} compras" for row in report.top_customers)
    lines.append(f"  Ingresos por {report.granularity}:")
    lines.extend(f"    {bucket.key}: {symbol}{bucket.total}" for bucket in report.revenue)
    return lines
