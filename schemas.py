from __future__ import annotations

import datetime as dt
from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import BudgetPeriod, TransactionType
from periods import Period, PeriodToken


class BudgetTier(str, Enum):
    healthy = "healthy"
    warning = "warning"
    critical = "critical"
    exceeded = "exceeded"


class AlertSeverity(str, Enum):
    info = "info"
    warning = "warning"
    danger = "danger"


class ShareLevel(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class InsightKind(str, Enum):
    all = "all"
    income = "income"
    expense = "expense"


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    color: Optional[str] = Field(default=None, max_length=7)
    icon: Optional[str] = Field(default=None, max_length=16)
    parent_id: Optional[int] = None


class TransactionIn(BaseModel):
    date: dt.date
    type: TransactionType
    amount_cents: int = Field(..., ge=0)
    category_id: int
    note: Optional[str] = Field(default=None, max_length=200)
    tags: list[str] = Field(default_factory=list)


class BudgetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    amount_cents: int = Field(..., ge=0)
    period: BudgetPeriod = BudgetPeriod.monthly
    category_id: Optional[int] = None
    start_date: datetime
    end_date: datetime
    is_active: bool = True


class DashboardFilters(BaseModel):
    period: PeriodToken = PeriodToken.current_month
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class _Card(BaseModel):
    model_config = ConfigDict(frozen=True)


class MonthlySummaryCard(_Card):
    period_start: datetime
    period_end: datetime
    current_label: str
    previous_label: str
    total_income_cents: int = 0
    total_expense_cents: int = 0
    net_income_cents: int = 0
    transaction_count: int = 0
    income_count: int = 0
    expense_count: int = 0
    previous_income_cents: int = 0
    previous_expense_cents: int = 0
    income_change_pct: float = 0.0
    expense_change_pct: float = 0.0
    has_previous_data: bool = False


class BudgetProgressItem(_Card):
    id: int
    name: str
    category_name: str
    amount_cents: int
    spent_cents: int
    remaining_cents: int
    percentage: float
    period: BudgetPeriod
    start_date: datetime
    end_date: datetime
    days_remaining: int
    tier: BudgetTier
    severity: AlertSeverity
    is_over_budget: bool
    is_near_limit: bool


class BudgetAlertsSummary(_Card):
    critical_alerts: int = 0
    warning_alerts: int = 0
    total_alerts: int = 0


class BudgetOverviewCard(_Card):
    total_budgets: int = 0
    active_budgets: int = 0
    over_budget: int = 0
    critical: int = 0
    near_limit: int = 0
    top_budgets: list[BudgetProgressItem] = Field(default_factory=list)
    alerts_summary: BudgetAlertsSummary = Field(default_factory=BudgetAlertsSummary)

    @classmethod
    def empty(cls) -> BudgetOverviewCard:
        """Overview shown when the budgets could not be loaded."""
        return cls()


class CategoryInsightItem(_Card):
    category_id: int
    category_name: str
    category_color: Optional[str] = None
    category_icon: Optional[str] = None
    amount_cents: int
    transaction_count: int
    percentage: float
    share_level: ShareLevel


class CategoryInsightsCard(_Card):
    period_start: datetime
    period_end: datetime
    top_expense_categories: list[CategoryInsightItem] = Field(default_factory=list)
    top_income_categories: list[CategoryInsightItem] = Field(default_factory=list)
    total_expense_cents: int = 0
    total_income_cents: int = 0

    @classmethod
    def empty(cls, period: Period) -> CategoryInsightsCard:
        """Insights with no categories for the requested period."""
        return cls(period_start=period.start, period_end=period.end)


class ForecastData(_Card):
    expected_income_cents: float
    expected_expense_cents: float
    projected_end_balance_cents: float
    days_remaining: int


class EnhancedStatsCard(_Card):
    avg_income_per_day_cents: float = 0.0
    avg_expense_per_day_cents: float = 0.0
    income_transactions_count: int = 0
    expense_transactions_count: int = 0
    avg_transaction_amount_cents: float = 0.0
    savings_rate_pct: float = 0.0
    period_days: int = 1
    forecast: Optional[ForecastData] = None


class RecentTransactionItem(_Card):
    id: int
    description: Optional[str] = None
    amount_cents: int
    type: TransactionType
    category_name: str
    date: dt.date
    created_at: datetime
    relative_time: str


class RecentActivityCard(_Card):
    transactions: list[RecentTransactionItem] = Field(default_factory=list)
    total_count: int = 0
    showing_count: int = 0
    has_more_data: bool = False
    last_updated: datetime

    @classmethod
    def empty(cls, now: datetime) -> RecentActivityCard:
        return cls(last_updated=now)


class DashboardViewModel(_Card):
    monthly_summary: MonthlySummaryCard
    enhanced_stats: EnhancedStatsCard
    budget_overview: BudgetOverviewCard
    recent_activity: RecentActivityCard
    category_insights: CategoryInsightsCard
