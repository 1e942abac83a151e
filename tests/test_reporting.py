"""Unit tests for the aggregation engine."""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import pytest

from cattle_ledger import core_logic, reporting
from cattle_ledger.periods import DateRange

from conftest import make_allocation, make_cost, make_purchase, make_sale


@pytest.fixture
def january_rows():
    transactions = [
        make_purchase("B1", quantity=10, price_per_head="500", occurred_on=date(2025, 1, 2)),
        make_sale("S1", quantity=4, total_amount="2800", deduction="100", occurred_on=date(2025, 1, 5)),
        make_sale("S2", quantity=2, total_amount="1500", occurred_on=date(2025, 1, 20)),
        make_purchase("B2", quantity=3, price_per_head="450", occurred_on=date(2025, 2, 1)),
    ]
    costs = [
        make_cost("C1", amount="250", occurred_on=date(2025, 1, 5)),
        make_cost("C2", amount="75.50", category="Veterinary", occurred_on=date(2025, 1, 31)),
        make_cost("C3", amount="40", occurred_on=date(2025, 2, 2)),
    ]
    return transactions, costs


def test_compute_metrics_within_range(january_rows):
    transactions, costs = january_rows

    metrics = reporting.compute_metrics(transactions, costs, DateRange(date(2025, 1, 1), date(2025, 1, 31)))

    assert metrics.net_headcount == 4
    assert metrics.sales_revenue == Decimal("4300")
    assert metrics.input_cost_total == Decimal("325.50")
    assert metrics.input_cost_deductions == Decimal("100")
    assert metrics.pnl == Decimal("4300") - Decimal("325.50") - Decimal("100")


def test_compute_metrics_excludes_purchase_cost_from_pnl():
    transactions = [
        make_purchase("B1", quantity=10, price_per_head="500", occurred_on=date(2025, 5, 1)),
        make_sale("S1", quantity=10, total_amount="7000", occurred_on=date(2025, 5, 20)),
    ]
    costs = [make_cost("C1", amount="200", occurred_on=date(2025, 5, 10))]

    metrics = reporting.compute_metrics(transactions, costs, DateRange(date(2025, 5, 1), date(2025, 5, 31)))

    assert metrics.net_headcount == 0
    assert metrics.sales_revenue == Decimal("7000")
    assert metrics.input_cost_total == Decimal("200")
    assert metrics.input_cost_deductions == Decimal("0")
    assert metrics.pnl == Decimal("6800")


def test_compute_metrics_is_additive_over_disjoint_ranges(january_rows):
    transactions, costs = january_rows
    first = DateRange(date(2025, 1, 1), date(2025, 1, 15))
    second = DateRange(date(2025, 1, 16), date(2025, 2, 28))
    union = DateRange(date(2025, 1, 1), date(2025, 2, 28))

    combined = reporting.compute_metrics(transactions, costs, first) + reporting.compute_metrics(
        transactions, costs, second
    )

    assert combined == reporting.compute_metrics(transactions, costs, union)


def test_compute_metrics_empty_range_is_zero(january_rows):
    transactions, costs = january_rows

    metrics = reporting.compute_metrics(transactions, costs, DateRange(date(2024, 1, 1), date(2024, 1, 31)))

    assert metrics == reporting.LedgerMetrics(0, Decimal("0"), Decimal("0"), Decimal("0"), Decimal("0"))


def test_daily_series_covers_every_day_in_order(january_rows):
    transactions, costs = january_rows
    date_range = DateRange(date(2025, 1, 1), date(2025, 1, 31))

    series = reporting.compute_daily_series(transactions, costs, date_range)
    points = list(series)

    assert len(series) == 31
    assert len(points) == 31
    assert [point.day for point in points] == [date(2025, 1, 1) + timedelta(days=offset) for offset in range(31)]


def test_daily_series_cumulative_pnl(january_rows):
    transactions, costs = january_rows
    series = reporting.compute_daily_series(transactions, costs, DateRange(date(2025, 1, 4), date(2025, 1, 6)))

    points = list(series)

    assert [point.cumulative_pnl for point in points] == [
        Decimal("0"),
        Decimal("2800") - Decimal("250") - Decimal("100"),
        Decimal("2450"),
    ]
    assert points[1].sales == Decimal("2800")
    assert points[1].inputs == Decimal("250")
    assert points[1].deductions == Decimal("100")


def test_daily_series_final_point_matches_metrics(january_rows):
    transactions, costs = january_rows
    date_range = DateRange(date(2025, 1, 1), date(2025, 2, 28))

    *_, last = reporting.compute_daily_series(transactions, costs, date_range)

    assert last.cumulative_pnl == reporting.compute_metrics(transactions, costs, date_range).pnl


def test_daily_series_is_restartable(january_rows):
    transactions, costs = january_rows
    series = reporting.compute_daily_series(transactions, costs, DateRange(date(2025, 1, 1), date(2025, 1, 10)))

    assert list(series) == list(series)


def test_daily_series_single_day_range():
    series = reporting.compute_daily_series([], [], DateRange(date(2025, 6, 1), date(2025, 6, 1)))

    assert len(series) == 1
    assert [point.cumulative_pnl for point in series] == [Decimal("0")]


def test_compute_monthly_summary(january_rows):
    transactions, costs = january_rows

    rows = reporting.compute_monthly_summary(transactions, costs)

    assert [row.month for row in rows] == ["2025-01", "2025-02"]
    january, february = rows
    assert january.purchases == Decimal("5000")
    assert january.sales == Decimal("4300")
    assert january.costs == Decimal("325.50")
    assert january.pnl == Decimal("4300") - Decimal("5000") - Decimal("325.50")
    assert february.purchases == Decimal("1350")
    assert february.sales == Decimal("0")
    assert february.costs == Decimal("40")


def test_summarize_costs_by_category(january_rows):
    _, costs = january_rows

    breakdown = reporting.summarize_costs_by_category(costs)

    assert breakdown.totals == {"Feed": Decimal("290"), "Veterinary": Decimal("75.50")}
    assert breakdown.feed_total == Decimal("290")
    assert breakdown.total == Decimal("365.50")


def test_summarize_sale_uses_snapshotted_cost():
    sale = make_sale("S1", quantity=5, total_amount="4100", deduction="150")
    allocations = [
        make_allocation("A1", sale_id="S1", batch_id="B1", quantity=3, cost_per_head="400"),
        make_allocation("A2", sale_id="S1", batch_id="B2", quantity=2, cost_per_head="600"),
        make_allocation("A3", sale_id="S-other", batch_id="B2", quantity=1, cost_per_head="600"),
    ]

    summary = reporting.summarize_sale(sale, allocations)

    assert summary.cost_basis == Decimal("2400")
    assert summary.gross_margin == Decimal("4100") - Decimal("2400") - Decimal("150")


def test_summarize_sale_rejects_purchases():
    with pytest.raises(ValueError):
        reporting.summarize_sale(make_purchase("B1", quantity=1), [])


def test_calculate_dashboard_reads_owned_rows(ledger_rows, context):
    ledger_rows(
        transactions=[
            make_sale("S1", quantity=1, total_amount="500", occurred_on=date(2025, 1, 5)),
            make_sale("S2", quantity=1, total_amount="900", occurred_on=date(2025, 1, 5), user_id="someone-else"),
        ],
        costs=[make_cost("C1", amount="50", occurred_on=date(2025, 1, 6))],
    )

    metrics = reporting.calculate_dashboard(context, DateRange(date(2025, 1, 1), date(2025, 1, 31)))

    assert metrics.sales_revenue == Decimal("500")
    assert metrics.pnl == Decimal("450")


def test_calculate_sale_summary_rejects_purchase(ledger_rows, context):
    ledger_rows(transactions=[make_purchase("B1", quantity=2)])

    with pytest.raises(core_logic.BusinessRuleViolation):
        reporting.calculate_sale_summary(context, "B1")
