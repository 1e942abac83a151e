"""Aggregation engine for dashboard metrics, series and period reports.

Every ``compute_*`` function is pure and works on rows already loaded from the
ledger. The ``calculate_*`` wrappers load the signed-in user's rows through a
:class:`~cattle_ledger.core_logic.RuntimeContext` and delegate.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, Iterator, List, Sequence, Tuple

from . import core_logic, data_manager, log
from .constants import CostCategory, TransactionType
from .periods import DateRange, month_key


ZERO = Decimal("0")


@dataclass(frozen=True)
class LedgerMetrics:
    """Headline dashboard figures for one date range."""

    net_headcount: int
    sales_revenue: Decimal
    input_cost_total: Decimal
    input_cost_deductions: Decimal
    pnl: Decimal

    def __add__(self, other: "LedgerMetrics") -> "LedgerMetrics":
        if not isinstance(other, LedgerMetrics):
            return NotImplemented
        return LedgerMetrics(
            net_headcount=self.net_headcount + other.net_headcount,
            sales_revenue=self.sales_revenue + other.sales_revenue,
            input_cost_total=self.input_cost_total + other.input_cost_total,
            input_cost_deductions=self.input_cost_deductions + other.input_cost_deductions,
            pnl=self.pnl + other.pnl,
        )


@dataclass(frozen=True)
class DailyPoint:
    day: date
    sales: Decimal
    inputs: Decimal
    deductions: Decimal
    cumulative_pnl: Decimal


@dataclass(frozen=True)
class MonthlySummaryRow:
    """Cash-basis totals for one calendar month (``YYYY-MM``)."""

    month: str
    purchases: Decimal
    sales: Decimal
    costs: Decimal
    pnl: Decimal


@dataclass(frozen=True)
class CostBreakdown:
    totals: Dict[str, Decimal]
    total: Decimal

    @property
    def feed_total(self) -> Decimal:
        return self.totals.get(CostCategory.FEED.value, ZERO)


@dataclass(frozen=True)
class SaleSummary:
    """Margin of one sale against the batch costs it was allocated from."""

    sale_transaction_id: str
    quantity: int
    total_amount: Decimal
    cost_basis: Decimal
    input_cost_deduction: Decimal
    gross_margin: Decimal


def _is_sale(row: data_manager.TransactionRow) -> bool:
    return row.transaction_type == TransactionType.SELL.value


def _is_purchase(row: data_manager.TransactionRow) -> bool:
    return row.transaction_type == TransactionType.BUY.value


def compute_metrics(
    transactions: Iterable[data_manager.TransactionRow],
    costs: Iterable[data_manager.InputCostRow],
    date_range: DateRange,
) -> LedgerMetrics:
    """Summarize herd movement, revenue and costs within ``date_range``.

    Only rows whose ``occurred_on`` falls inside the inclusive range count.
    ``pnl`` is ``sales_revenue - input_cost_total - input_cost_deductions``;
    the cost of purchasing cattle is deliberately not part of it. Over two
    disjoint ranges the results add up to the result over their union.

    Args:
        transactions (Iterable[TransactionRow]): Purchases and sales.
        costs (Iterable[InputCostRow]): Operating expenses.
        date_range (DateRange): Inclusive day span to aggregate.

    Returns:
        LedgerMetrics: Aggregated figures; all zero when nothing matches.
    """
    net_headcount = 0
    sales_revenue = ZERO
    deductions = ZERO
    for row in transactions:
        if row.occurred_on not in date_range:
            continue
        if _is_purchase(row):
            net_headcount += row.quantity
        elif _is_sale(row):
            net_headcount -= row.quantity
            sales_revenue += row.total_amount
            deductions += row.input_cost_deduction

    input_cost_total = sum((cost.amount for cost in costs if cost.occurred_on in date_range), ZERO)

    return LedgerMetrics(
        net_headcount=net_headcount,
        sales_revenue=sales_revenue,
        input_cost_total=input_cost_total,
        input_cost_deductions=deductions,
        pnl=sales_revenue - input_cost_total - deductions,
    )


class DailySeries:
    """Lazy, restartable per-day view of sales, costs and cumulative PnL.

    Each iteration buckets the inputs afresh and walks every day of the range
    in ascending order, so iterating twice yields equal sequences and no
    state leaks between passes. ``len()`` is the number of days in the range.
    """

    def __init__(
        self,
        transactions: Iterable[data_manager.TransactionRow],
        costs: Iterable[data_manager.InputCostRow],
        date_range: DateRange,
    ) -> None:
        self._transactions: Tuple[data_manager.TransactionRow, ...] = tuple(transactions)
        self._costs: Tuple[data_manager.InputCostRow, ...] = tuple(costs)
        self.date_range = date_range

    def __len__(self) -> int:
        return len(self.date_range)

    def __iter__(self) -> Iterator[DailyPoint]:
        sales: Dict[date, Decimal] = {}
        deductions: Dict[date, Decimal] = {}
        inputs: Dict[date, Decimal] = {}

        for row in self._transactions:
            if _is_sale(row) and row.occurred_on in self.date_range:
                sales[row.occurred_on] = sales.get(row.occurred_on, ZERO) + row.total_amount
                deductions[row.occurred_on] = deductions.get(row.occurred_on, ZERO) + row.input_cost_deduction
        for cost in self._costs:
            if cost.occurred_on in self.date_range:
                inputs[cost.occurred_on] = inputs.get(cost.occurred_on, ZERO) + cost.amount

        running = ZERO
        for day in self.date_range.days():
            day_sales = sales.get(day, ZERO)
            day_inputs = inputs.get(day, ZERO)
            day_deductions = deductions.get(day, ZERO)
            running += day_sales - day_inputs - day_deductions
            yield DailyPoint(
                day=day,
                sales=day_sales,
                inputs=day_inputs,
                deductions=day_deductions,
                cumulative_pnl=running,
            )

    def __repr__(self) -> str:
        return f"DailySeries({self.date_range.start}..{self.date_range.end}, {len(self)} days)"


def compute_daily_series(
    transactions: Iterable[data_manager.TransactionRow],
    costs: Iterable[data_manager.InputCostRow],
    date_range: DateRange,
) -> DailySeries:
    """Return the per-day series for ``date_range``; see :class:`DailySeries`."""
    return DailySeries(transactions, costs, date_range)


def compute_monthly_summary(
    transactions: Iterable[data_manager.TransactionRow],
    costs: Iterable[data_manager.InputCostRow],
) -> List[MonthlySummaryRow]:
    """Group purchases, sales and costs by calendar month.

    Only months with at least one row appear, oldest first. The monthly
    ``pnl`` is cash basis: ``sales - purchases - costs``.
    """
    buckets: Dict[str, List[Decimal]] = {}

    def bucket(day: date) -> List[Decimal]:
        return buckets.setdefault(month_key(day), [ZERO, ZERO, ZERO])

    for row in transactions:
        if _is_purchase(row):
            bucket(row.occurred_on)[0] += row.total_amount
        elif _is_sale(row):
            bucket(row.occurred_on)[1] += row.total_amount
    for cost in costs:
        bucket(cost.occurred_on)[2] += cost.amount

    return [
        MonthlySummaryRow(
            month=month,
            purchases=purchases,
            sales=sales,
            costs=spent,
            pnl=sales - purchases - spent,
        )
        for month, (purchases, sales, spent) in sorted(buckets.items())
    ]


def summarize_costs_by_category(costs: Iterable[data_manager.InputCostRow]) -> CostBreakdown:
    totals: Dict[str, Decimal] = {}
    for cost in costs:
        totals[cost.category] = totals.get(cost.category, ZERO) + cost.amount
    return CostBreakdown(totals=totals, total=sum(totals.values(), ZERO))


def summarize_sale(
    sale: data_manager.TransactionRow,
    allocations: Sequence[data_manager.AllocationRow],
) -> SaleSummary:
    """Compute the cost basis and gross margin of ``sale``.

    Cost basis uses the ``cost_per_head`` snapshotted on each allocation, so
    it does not move if batch records change later.

    Raises:
        ValueError: If ``sale`` is not a sell transaction.
    """
    if not _is_sale(sale):
        raise ValueError(f"Transaction {sale.transaction_id} is not a sale")

    own = [row for row in allocations if row.sale_transaction_id == sale.transaction_id]
    cost_basis = sum((row.cost_per_head * row.quantity for row in own), ZERO)
    return SaleSummary(
        sale_transaction_id=sale.transaction_id,
        quantity=sale.quantity,
        total_amount=sale.total_amount,
        cost_basis=cost_basis,
        input_cost_deduction=sale.input_cost_deduction,
        gross_margin=sale.total_amount - cost_basis - sale.input_cost_deduction,
    )


def calculate_dashboard(context: core_logic.RuntimeContext, date_range: DateRange) -> LedgerMetrics:
    """Compute dashboard metrics over the signed-in user's ledger."""
    metrics = compute_metrics(
        core_logic.list_transactions(context),
        core_logic.list_input_costs(context),
        date_range,
    )
    log.debug("Dashboard metrics for %s..%s: %s", date_range.start, date_range.end, metrics)
    return metrics


def calculate_daily_series(context: core_logic.RuntimeContext, date_range: DateRange) -> DailySeries:
    return compute_daily_series(
        core_logic.list_transactions(context),
        core_logic.list_input_costs(context),
        date_range,
    )


def calculate_monthly_summary(context: core_logic.RuntimeContext) -> List[MonthlySummaryRow]:
    return compute_monthly_summary(
        core_logic.list_transactions(context),
        core_logic.list_input_costs(context),
    )


def calculate_cost_breakdown(context: core_logic.RuntimeContext) -> CostBreakdown:
    return summarize_costs_by_category(core_logic.list_input_costs(context))


def calculate_sale_summary(context: core_logic.RuntimeContext, sale_transaction_id: str) -> SaleSummary:
    """Summarize one of the signed-in user's sales.

    Raises:
        MissingReferenceError: If the user owns no such transaction.
        BusinessRuleViolation: If the transaction is a purchase.
    """
    sale = core_logic.get_transaction(context, sale_transaction_id)
    if not _is_sale(sale):
        log.warning("Sale summary requested for purchase '%s'", sale_transaction_id)
        raise core_logic.BusinessRuleViolation(f"Transaction {sale_transaction_id} is not a sale")
    return summarize_sale(
        sale,
        core_logic.list_allocations(context, sale_transaction_id=sale_transaction_id),
    )
