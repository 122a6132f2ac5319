"""Tests for sales aggregation and workbook export."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal

import openpyxl
import pytest

from joyeria_pos import core_logic, reporting, sales


def _sale(context, product_id, quantity, price, moment, *, customer_id=None, discount="0", tax="0"):
    return sales.create_sale(
        context,
        sales.SaleCommand(
            items=[sales.SaleItemCommand(quantity=quantity, unit_price=price, product_id=product_id)],
            customer_id=customer_id,
            discount=discount,
            tax=tax,
            timestamp=moment,
        ),
    )


@pytest.fixture
def store_with_sales(context_factory, product_factory):
    context = context_factory(
        [
            product_factory(1, stock=20, name="Anillo Oro", category="anillos"),
            product_factory(2, stock=20, name="Collar Perla", category="collares"),
        ],
        customers=[
            {"id": 1, "name": "Ana", "discountLevel": "Gold"},
            {"id": 2, "name": "Luis", "discountLevel": "Silver"},
        ],
    )
    _sale(context, 1, 2, "100", datetime(2025, 1, 30, 18, 0, tzinfo=UTC), customer_id=1, discount="20", tax="28.80")
    _sale(context, 2, 1, "500", datetime(2025, 2, 2, 11, 0, tzinfo=UTC), customer_id=2, tax="80")
    _sale(context, 1, 1, "100", datetime(2025, 2, 3, 9, 0, tzinfo=UTC), customer_id=1)
    _sale(context, 2, 1, "50", datetime(2025, 4, 1, 9, 0, tzinfo=UTC))
    return context


def test_totals_are_summed_and_rounded(store_with_sales):
    rows = sales.list_sales(store_with_sales)

    assert reporting.total_sales(rows) == Decimal("938.80")
    assert reporting.total_tax(rows) == Decimal("108.80")
    assert reporting.total_discounts(rows) == Decimal("20.00")


def test_top_products_ranks_by_revenue(store_with_sales):
    rows = sales.list_sales(store_with_sales)
    products = core_logic.get_catalog(store_with_sales).products()

    ranking = reporting.top_products(rows, products)

    assert [(r.product_id, r.quantity, r.revenue) for r in ranking] == [
        (2, 2, Decimal("550.00")),
        (1, 3, Decimal("300.00")),
    ]
    assert ranking[0].category == "Collares"
    assert len(reporting.top_products(rows, products, 1)) == 1


def test_top_customers_skips_walk_in_sales(store_with_sales):
    rows = sales.list_sales(store_with_sales)
    ranking = reporting.top_customers(rows, core_logic.list_customers(store_with_sales))

    assert [(r.name, r.total, r.purchases, r.average) for r in ranking] == [
        ("Luis", Decimal("580.00"), 1, Decimal("580.00")),
        ("Ana", Decimal("308.80"), 2, Decimal("154.40")),
    ]


def test_revenue_by_month_is_zero_filled(store_with_sales):
    buckets = reporting.revenue_by_period(
        sales.list_sales(store_with_sales), date(2025, 1, 1), date(2025, 4, 30), "month"
    )

    assert [(b.key, b.total) for b in buckets] == [
        ("2025-01", Decimal("208.80")),
        ("2025-02", Decimal("680.00")),
        ("2025-03", Decimal("0.00")),
        ("2025-04", Decimal("50.00")),
    ]


def test_revenue_by_day_respects_window(store_with_sales):
    buckets = reporting.revenue_by_period(
        sales.list_sales(store_with_sales), date(2025, 2, 2), date(2025, 2, 3), "day"
    )

    assert [(b.key, b.total) for b in buckets] == [("2025-02-02", Decimal("580.00")), ("2025-02-03", Decimal("100.00"))]


def test_revenue_by_year_crosses_december():
    buckets = reporting.revenue_by_period([], date(2024, 12, 1), date(2025, 1, 31), "year")

    assert [b.key for b in buckets] == ["2024", "2025"]


@pytest.mark.parametrize(
    "start, end, granularity",
    [
        (date(2025, 1, 1), date(2025, 1, 2), "week"),
        (date(2025, 2, 1), date(2025, 1, 1), "day"),
    ],
)
def test_revenue_by_period_rejects_bad_arguments(start, end, granularity):
    with pytest.raises(ValueError):
        reporting.revenue_by_period([], start, end, granularity)


def test_build_sales_report_filters_by_dates(store_with_sales):
    report = reporting.build_sales_report(store_with_sales, date(2025, 2, 1), date(2025, 2, 28), granularity="month")

    assert report.business_name == "Joyería de Prueba"
    assert report.sale_count == 2
    assert report.total_sales == Decimal("680.00")
    assert [c.name for c in report.top_customers] == ["Luis", "Ana"]
    assert [(b.key, b.total) for b in report.revenue] == [("2025-02", Decimal("680.00"))]


def test_report_lines_render_totals(store_with_sales):
    report = reporting.build_sales_report(store_with_sales, date(2025, 1, 1), date(2025, 1, 31))

    lines = reporting.report_lines(report)

    assert lines[0] == "Joyería de Prueba: ventas 2025-01-01 .. 2025-01-31"
    assert "  Total vendido: $208.80" in lines
    assert "    Anillo Oro (Anillos): 2 uds, $200.00" in lines
    assert "    2025-01-30: $208.80" in lines


def test_export_report_workbook(store_with_sales, tmp_path):
    report = reporting.build_sales_report(store_with_sales, date(2025, 1, 1), date(2025, 4, 30), granularity="month")
    destination = tmp_path / "reports" / "ventas.xlsx"

    written = reporting.export_report_workbook(report, destination)

    workbook = openpyxl.load_workbook(written)
    try:
        assert workbook.sheetnames == list(reporting.SHEET_COLUMNS)
        for sheet_name, columns in reporting.SHEET_COLUMNS.items():
            header = workbook[sheet_name][1]
            assert [cell.value for cell in header] == list(columns)
            assert all(cell.font.bold for cell in header)
        summary = {row[0]: row[1] for row in workbook["Resumen"].iter_rows(min_row=2, values_only=True)}
        assert summary["Ventas"] == 4
        assert summary["Total vendido"] == pytest.approx(938.80)
        revenue = list(workbook["Ingresos"].iter_rows(min_row=2, values_only=True))
        assert [row[0] for row in revenue] == ["2025-01", "2025-02", "2025-03", "2025-04"]
    finally:
        workbook.close()


def test_export_refuses_to_overwrite(store_with_sales, tmp_path):
    report = reporting.build_sales_report(store_with_sales, date(2025, 1, 1), date(2025, 1, 31))
    destination = tmp_path / "ventas.xlsx"
    reporting.export_report_workbook(report, destination)

    with pytest.raises(FileExistsError):
        reporting.export_report_workbook(report, destination)

    assert reporting.export_report_workbook(report, destination, overwrite=True) == destination.resolve()
