"""Pure computations behind the dashboard cards.

Nothing here touches the database. Callers fetch rows through the services
and hand them in, so each function depends only on its arguments.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, Mapping, Optional, Sequence

from config import AnalyticsThresholds
from models import Budget, Transaction, TransactionType
from periods import Period, period_length_days
from schemas import (
    AlertSeverity,
    BudgetAlertsSummary,
    BudgetOverviewCard,
    BudgetProgressItem,
    BudgetTier,
    CategoryInsightItem,
    EnhancedStatsCard,
    ForecastData,
    MonthlySummaryCard,
    ShareLevel,
)

PERCENT = 100.0
SECONDS_PER_DAY = 24 * 60 * 60

TIER_SEVERITY = {
    BudgetTier.exceeded: AlertSeverity.danger,
    BudgetTier.critical: AlertSeverity.danger,
    BudgetTier.warning: AlertSeverity.warning,
    BudgetTier.healthy: AlertSeverity.info,
}


@dataclass
class CategoryTotals:
    income_cents: int = 0
    expense_cents: int = 0
    income_count: int = 0
    expense_count: int = 0

    def amount_for(self, txn_type: TransactionType) -> int:
        if txn_type == TransactionType.income:
            return self.income_cents
        return self.expense_cents

    def count_for(self, txn_type: TransactionType) -> int:
        if txn_type == TransactionType.income:
            return self.income_count
        return self.expense_count


@dataclass
class PeriodTotals:
    income_cents: int = 0
    expense_cents: int = 0
    count: int = 0
    income_count: int = 0
    expense_count: int = 0
    # insertion order is the order categories were first seen
    by_category: dict[int, CategoryTotals] = field(default_factory=dict)

    @property
    def net_cents(self) -> int:
        return self.income_cents - self.expense_cents


@dataclass(frozen=True)
class PeriodChange:
    income_change_pct: float = 0.0
    expense_change_pct: float = 0.0


@dataclass(frozen=True)
class CategoryLabel:
    name: str
    color: Optional[str] = None
    icon: Optional[str] = None


def percentage_of(part: float, total: float) -> float:
    if total <= 0:
        return 0.0
    return part / total * PERCENT


def aggregate_transactions(transactions: Iterable[Transaction]) -> PeriodTotals:
    totals = PeriodTotals()
    for txn in transactions:
        totals.count += 1
        bucket = totals.by_category.setdefault(txn.category_id, CategoryTotals())
        if txn.type == TransactionType.income:
            totals.income_cents += txn.amount_cents
            totals.income_count += 1
            bucket.income_cents += txn.amount_cents
            bucket.income_count += 1
        elif txn.type == TransactionType.expense:
            totals.expense_cents += txn.amount_cents
            totals.expense_count += 1
            bucket.expense_cents += txn.amount_cents
            bucket.expense_count += 1
    return totals


def percent_change(current: int, previous: int) -> float:
    if previous <= 0:
        return 0.0
    return (current - previous) / previous * PERCENT


def compare_periods(
    current: PeriodTotals, previous: PeriodTotals, has_previous: bool
) -> PeriodChange:
    """Percentage change per field.

    Without previous data both changes are 0. With previous data each field
    is still guarded on its own: a zero previous income gives a 0 income
    change even when previous expenses exist.
    """
    if not has_previous:
        return PeriodChange()
    return PeriodChange(
        income_change_pct=percent_change(current.income_cents, previous.income_cents),
        expense_change_pct=percent_change(
            current.expense_cents, previous.expense_cents
        ),
    )


def budget_tier(percentage: float, thresholds: AnalyticsThresholds) -> BudgetTier:
    # highest boundary first, first match wins
    if percentage >= thresholds.budget_exceeded_pct:
        return BudgetTier.exceeded
    if percentage >= thresholds.budget_critical_pct:
        return BudgetTier.critical
    if percentage >= thresholds.budget_warning_pct:
        return BudgetTier.warning
    return BudgetTier.healthy


def classify_budget(
    budget: Budget,
    now: datetime,
    *,
    category_name: str,
    thresholds: AnalyticsThresholds,
) -> BudgetProgressItem:
    # a zero-amount budget reads as 0% and therefore healthy, whatever was spent
    percentage = percentage_of(budget.spent_cents, budget.amount_cents)
    seconds_left = (budget.end_date - now).total_seconds()
    days_remaining = max(0, math.ceil(seconds_left / SECONDS_PER_DAY))
    tier = budget_tier(percentage, thresholds)
    return BudgetProgressItem(
        id=budget.id,
        name=budget.name,
        category_name=category_name,
        amount_cents=budget.amount_cents,
        spent_cents=budget.spent_cents,
        remaining_cents=budget.amount_cents - budget.spent_cents,
        percentage=percentage,
        period=budget.period,
        start_date=budget.start_date,
        end_date=budget.end_date,
        days_remaining=days_remaining,
        tier=tier,
        severity=TIER_SEVERITY[tier],
        is_over_budget=tier == BudgetTier.exceeded,
        is_near_limit=tier == BudgetTier.warning,
    )


def summarize_budgets(
    budgets: Sequence[Budget],
    now: datetime,
    *,
    label_for: Callable[[Budget], str],
    thresholds: AnalyticsThresholds,
) -> BudgetOverviewCard:
    items = [
        classify_budget(
            budget, now, category_name=label_for(budget), thresholds=thresholds
        )
        for budget in budgets
    ]
    tier_counts = {tier: 0 for tier in BudgetTier}
    for item in items:
        tier_counts[item.tier] += 1

    danger = tier_counts[BudgetTier.exceeded] + tier_counts[BudgetTier.critical]
    warning = tier_counts[BudgetTier.warning]
    top = sorted(items, key=lambda item: item.percentage, reverse=True)
    return BudgetOverviewCard(
        total_budgets=len(budgets),
        active_budgets=sum(1 for budget in budgets if budget.is_active),
        over_budget=tier_counts[BudgetTier.exceeded],
        critical=tier_counts[BudgetTier.critical],
        near_limit=warning,
        top_budgets=top[: thresholds.max_top_budgets],
        alerts_summary=BudgetAlertsSummary(
            critical_alerts=danger,
            warning_alerts=warning,
            total_alerts=danger + warning,
        ),
    )


def share_level(percentage: float, thresholds: AnalyticsThresholds) -> ShareLevel:
    if percentage >= thresholds.category_high_pct:
        return ShareLevel.high
    if percentage >= thresholds.category_medium_pct:
        return ShareLevel.medium
    return ShareLevel.low


def rank_categories(
    by_category: Mapping[int, CategoryTotals],
    total_cents: int,
    txn_type: TransactionType,
    *,
    labels: Mapping[int, CategoryLabel],
    thresholds: AnalyticsThresholds,
    fallback: CategoryLabel = CategoryLabel("Uncategorized"),
) -> list[CategoryInsightItem]:
    items: list[CategoryInsightItem] = []
    for category_id, totals in by_category.items():
        amount = totals.amount_for(txn_type)
        if amount <= 0:
            continue
        percentage = percentage_of(amount, total_cents)
        label = labels.get(category_id, fallback)
        items.append(
            CategoryInsightItem(
                category_id=category_id,
                category_name=label.name,
                category_color=label.color,
                category_icon=label.icon,
                amount_cents=amount,
                transaction_count=totals.count_for(txn_type),
                percentage=percentage,
                share_level=share_level(percentage, thresholds),
            )
        )
    items.sort(key=lambda item: item.amount_cents, reverse=True)
    return items[: thresholds.max_top_categories]


def project_forecast(
    period: Period,
    now: datetime,
    avg_income_per_day: float,
    avg_expense_per_day: float,
) -> Optional[ForecastData]:
    if now <= period.start or now >= period.end:
        return None
    days_remaining = int((period.end - now).total_seconds() // SECONDS_PER_DAY)
    if days_remaining <= 0:
        return None
    expected_income = avg_income_per_day * days_remaining
    expected_expenses = avg_expense_per_day * days_remaining
    return ForecastData(
        expected_income_cents=expected_income,
        expected_expense_cents=expected_expenses,
        projected_end_balance_cents=expected_income - expected_expenses,
        days_remaining=days_remaining,
    )


def build_enhanced_stats(
    summary: MonthlySummaryCard, period: Period, now: datetime
) -> EnhancedStatsCard:
    """Daily averages, savings rate and forecast for an already built summary.

    Averages divide by the full length of the period, not the days elapsed
    so far, to match the window the totals were aggregated over.
    """
    days = period_length_days(period)
    income = summary.total_income_cents
    expenses = summary.total_expense_cents
    avg_income = income / days
    avg_expense = expenses / days
    avg_transaction = 0.0
    if summary.transaction_count > 0:
        avg_transaction = (income + expenses) / summary.transaction_count
    return EnhancedStatsCard(
        avg_income_per_day_cents=avg_income,
        avg_expense_per_day_cents=avg_expense,
        income_transactions_count=summary.income_count,
        expense_transactions_count=summary.expense_count,
        avg_transaction_amount_cents=avg_transaction,
        savings_rate_pct=percentage_of(income - expenses, income),
        period_days=days,
        forecast=project_forecast(period, now, avg_income, avg_expense),
    )


def _plural(count: int, unit: str) -> str:
    if count == 1:
        return f"1 {unit} ago"
    return f"{count} {unit}s ago"


def format_relative_time(
    created_at: datetime,
    now: datetime,
    thresholds: Optional[AnalyticsThresholds] = None,
) -> str:
    thresholds = thresholds or AnalyticsThresholds()
    diff = now - created_at
    if diff < timedelta(minutes=1):
        return "just now"
    if diff < timedelta(hours=1):
        return _plural(int(diff.total_seconds() // 60), "minute")
    if diff < timedelta(days=1):
        return _plural(int(diff.total_seconds() // 3600), "hour")
    if diff < timedelta(days=thresholds.days_in_week):
        # only an exact 24 hour gap reads as "yesterday"
        if diff == timedelta(days=1):
            return "yesterday"
        return _plural(diff.days, "day")
    if diff < timedelta(days=thresholds.days_in_month):
        return _plural(diff.days // thresholds.days_in_week, "week")
    return created_at.strftime("%d.%m.%Y")
