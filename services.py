from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone, tzinfo
from typing import Callable, Iterator, Optional, Protocol, Sequence, TypeVar
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from analytics import (
    CategoryLabel,
    PeriodTotals,
    aggregate_transactions,
    build_enhanced_stats,
    compare_periods,
    format_relative_time,
    rank_categories,
    summarize_budgets,
)
from config import AnalyticsThresholds, get_settings
from models import Budget, Category, Transaction, TransactionType
from periods import Period, previous_period, resolve_period
from schemas import (
    BudgetIn,
    BudgetOverviewCard,
    CategoryIn,
    CategoryInsightsCard,
    DashboardFilters,
    DashboardViewModel,
    EnhancedStatsCard,
    InsightKind,
    MonthlySummaryCard,
    RecentActivityCard,
    RecentTransactionItem,
    TransactionIn,
)

logger = logging.getLogger(__name__)

GENERAL_BUDGET_LABEL = "General budget"
UNCATEGORIZED_LABEL = "Uncategorized"

T = TypeVar("T")


class StoreQueryError(RuntimeError):
    pass


class CategoryNotFound(ValueError):
    pass


def get_current_family_id() -> int:
    return 1


@contextmanager
def _query_guard(session: Session, action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        session.rollback()
        raise StoreQueryError(f"Failed to {action}") from exc


class TransactionStore(Protocol):
    def in_range(
        self, start: datetime, end: datetime, *, limit: int
    ) -> Sequence[Transaction]: ...

    def recent(self, limit: int) -> Sequence[Transaction]: ...

    def count(self) -> int: ...


class CategoryStore(Protocol):
    def get(self, category_id: int) -> Category: ...


class BudgetStore(Protocol):
    def active(self, as_of: datetime) -> Sequence[Budget]: ...


class CategoryService:
    def __init__(self, session: Session, family_id: Optional[int] = None) -> None:
        self.session = session
        self.family_id = (
            family_id if family_id is not None else get_current_family_id()
        )

    def get(self, category_id: int) -> Category:
        with _query_guard(self.session, "load category"):
            category = self.session.get(Category, category_id)
        if not category or category.family_id != self.family_id:
            raise CategoryNotFound("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        existing = self.session.scalar(
            select(Category).where(
                Category.family_id == self.family_id,
                Category.type == data.type,
                func.lower(Category.name) == data.name.strip().lower(),
            )
        )
        if existing:
            raise ValueError("Category with this name already exists")
        if data.parent_id is not None:
            self.get(data.parent_id)
        category = Category(
            family_id=self.family_id,
            name=data.name.strip(),
            type=data.type,
            color=data.color,
            icon=data.icon,
            parent_id=data.parent_id,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category


class TransactionService:
    def __init__(self, session: Session, family_id: Optional[int] = None) -> None:
        self.session = session
        self.family_id = (
            family_id if family_id is not None else get_current_family_id()
        )

    def create(self, data: TransactionIn) -> Transaction:
        category = self.session.get(Category, data.category_id)
        if not category or category.family_id != self.family_id:
            raise ValueError("Category not found")
        if category.type != data.type:
            raise ValueError("Category type mismatch")

        tags: list[str] = []
        seen: set[str] = set()
        for name in data.tags:
            clean = name.strip()
            if clean and clean.lower() not in seen:
                seen.add(clean.lower())
                tags.append(clean)

        txn = Transaction(
            family_id=self.family_id,
            date=data.date,
            type=data.type,
            amount_cents=data.amount_cents,
            category_id=data.category_id,
            note=data.note,
        )
        txn.tags = tags
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def in_range(
        self, start: datetime, end: datetime, *, limit: int
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.family_id == self.family_id,
                Transaction.date.between(start.date(), end.date()),
            )
            .order_by(Transaction.date.asc(), Transaction.id.asc())
            .limit(limit)
        )
        with _query_guard(self.session, "load transactions for period"):
            return list(self.session.scalars(stmt).all())

    def recent(self, limit: int = 10) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.family_id == self.family_id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
        )
        with _query_guard(self.session, "load recent transactions"):
            return list(self.session.scalars(stmt).all())

    def count(self) -> int:
        stmt = select(func.count(Transaction.id)).where(
            Transaction.family_id == self.family_id
        )
        with _query_guard(self.session, "count transactions"):
            return int(self.session.execute(stmt).scalar_one() or 0)


class BudgetService:
    def __init__(self, session: Session, family_id: Optional[int] = None) -> None:
        self.session = session
        self.family_id = (
            family_id if family_id is not None else get_current_family_id()
        )

    def create(self, data: BudgetIn) -> Budget:
        if data.end_date < data.start_date:
            raise ValueError("Budget end date must not be before its start date")
        if data.category_id is not None:
            category = self.session.get(Category, data.category_id)
            if not category or category.family_id != self.family_id:
                raise ValueError("Category not found")
            if category.type != TransactionType.expense:
                raise ValueError("Budgets can only be set for expense categories")

        budget = Budget(
            family_id=self.family_id,
            name=data.name.strip(),
            amount_cents=data.amount_cents,
            period=data.period,
            category_id=data.category_id,
            start_date=data.start_date,
            end_date=data.end_date,
            is_active=data.is_active,
        )
        budget.spent_cents = self._spent_in_window(budget)
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def _spent_in_window(self, budget: Budget) -> int:
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.family_id == self.family_id,
            Transaction.type == TransactionType.expense,
            Transaction.date.between(budget.start_date.date(), budget.end_date.date()),
        )
        if budget.category_id is not None:
            stmt = stmt.where(Transaction.category_id == budget.category_id)
        return int(self.session.execute(stmt).scalar_one() or 0)

    def active(self, as_of: datetime) -> list[Budget]:
        """Budgets running on ``as_of`` with their spent amount brought up to date."""
        stmt = (
            select(Budget)
            .where(
                Budget.family_id == self.family_id,
                Budget.is_active.is_(True),
                Budget.start_date <= as_of,
                Budget.end_date >= as_of,
            )
            .order_by(Budget.id.asc())
        )
        with _query_guard(self.session, "load active budgets"):
            budgets = list(self.session.scalars(stmt).all())

        # all sums are read before assigning, a rollback expires pending changes
        recalculated: dict[int, int] = {}
        for budget in budgets:
            budget_id = budget.id
            try:
                recalculated[budget_id] = self._spent_in_window(budget)
            except SQLAlchemyError as exc:
                self.session.rollback()
                logger.warning(
                    f"budget_recalculation_failed: budget_id={budget_id} error={exc}"
                )

        changed = False
        for budget in budgets:
            spent = recalculated.get(budget.id)
            if spent is not None and spent != budget.spent_cents:
                budget.spent_cents = spent
                changed = True
        if changed:
            try:
                self.session.commit()
            except SQLAlchemyError as exc:
                self.session.rollback()
                logger.warning(
                    f"budget_recalculation_not_saved: family_id={self.family_id} "
                    f"error={exc}"
                )
        return budgets


class DashboardService:
    """Builds the dashboard cards for one family.

    Each ``build_*`` call reads fresh data from the stores and returns an
    immutable view model. Nothing computed here is stored or cached.
    """

    def __init__(
        self,
        session: Optional[Session],
        family_id: Optional[int] = None,
        *,
        thresholds: Optional[AnalyticsThresholds] = None,
        transactions: Optional[TransactionStore] = None,
        categories: Optional[CategoryStore] = None,
        budgets: Optional[BudgetStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
        tz: Optional[tzinfo] = None,
    ) -> None:
        settings = get_settings()
        self.session = session
        self.family_id = (
            family_id if family_id is not None else get_current_family_id()
        )
        self.thresholds = thresholds or settings.thresholds
        self.tz = tz or ZoneInfo(settings.timezone)
        self.transactions = transactions or TransactionService(session, self.family_id)
        self.categories = categories or CategoryService(session, self.family_id)
        self.budgets = budgets or BudgetService(session, self.family_id)
        self.clock = clock or self._local_now

    def _local_now(self) -> datetime:
        return datetime.now(self.tz).replace(tzinfo=None)

    def _to_local(self, utc_moment: datetime) -> datetime:
        # creation timestamps are stored as naive UTC
        return (
            utc_moment.replace(tzinfo=timezone.utc)
            .astimezone(self.tz)
            .replace(tzinfo=None)
        )

    def _resolve(self, filters: DashboardFilters, now: datetime) -> Period:
        return resolve_period(
            filters.period,
            filters.start_date,
            filters.end_date,
            now=now,
            max_range_days=self.thresholds.max_custom_range_days,
        )

    def _period_totals(self, period: Period) -> PeriodTotals:
        transactions = self.transactions.in_range(
            period.start, period.end, limit=self.thresholds.period_query_limit
        )
        return aggregate_transactions(transactions)

    def _previous_totals(self, period: Period) -> tuple[PeriodTotals, bool]:
        try:
            transactions = self.transactions.in_range(
                period.start, period.end, limit=self.thresholds.period_query_limit
            )
        except StoreQueryError as exc:
            logger.warning(
                f"previous_period_unavailable: family_id={self.family_id} "
                f"start={period.start.isoformat()} error={exc}"
            )
            return PeriodTotals(), False
        if not transactions:
            return PeriodTotals(), False
        return aggregate_transactions(transactions), True

    def _category_label(self, category_id: int, fallback: str) -> CategoryLabel:
        try:
            category = self.categories.get(category_id)
        except (CategoryNotFound, StoreQueryError) as exc:
            logger.warning(
                f"category_lookup_failed: category_id={category_id} error={exc}"
            )
            return CategoryLabel(fallback)
        return CategoryLabel(category.name, category.color, category.icon)

    def _budget_label(self, budget: Budget) -> str:
        if budget.category_id is None:
            return GENERAL_BUDGET_LABEL
        return self._category_label(budget.category_id, GENERAL_BUDGET_LABEL).name

    def build_monthly_summary(self, filters: DashboardFilters) -> MonthlySummaryCard:
        now = self.clock()
        period = self._resolve(filters, now)
        current = self._period_totals(period)

        prev_window = previous_period(period)
        previous, has_previous = self._previous_totals(prev_window)
        change = compare_periods(current, previous, has_previous)

        return MonthlySummaryCard(
            period_start=period.start,
            period_end=period.end,
            current_label=period.start.strftime("%B %Y"),
            previous_label=prev_window.start.strftime("%B %Y"),
            total_income_cents=current.income_cents,
            total_expense_cents=current.expense_cents,
            net_income_cents=current.net_cents,
            transaction_count=current.count,
            income_count=current.income_count,
            expense_count=current.expense_count,
            previous_income_cents=previous.income_cents,
            previous_expense_cents=previous.expense_cents,
            income_change_pct=change.income_change_pct,
            expense_change_pct=change.expense_change_pct,
            has_previous_data=has_previous,
        )

    def build_enhanced_stats(
        self,
        filters: DashboardFilters,
        summary: Optional[MonthlySummaryCard] = None,
    ) -> EnhancedStatsCard:
        if summary is None:
            summary = self.build_monthly_summary(filters)
        period = Period("summary", summary.period_start, summary.period_end)
        return build_enhanced_stats(summary, period, self.clock())

    def build_budget_overview(self) -> BudgetOverviewCard:
        now = self.clock()
        budgets = self.budgets.active(now)
        return summarize_budgets(
            budgets, now, label_for=self._budget_label, thresholds=self.thresholds
        )

    def build_category_insights(
        self, filters: DashboardFilters, kind: InsightKind = InsightKind.all
    ) -> CategoryInsightsCard:
        period = self._resolve(filters, self.clock())
        totals = self._period_totals(period)
        labels = {
            category_id: self._category_label(category_id, UNCATEGORIZED_LABEL)
            for category_id in totals.by_category
        }

        expense_items = []
        income_items = []
        if kind != InsightKind.income:
            expense_items = rank_categories(
                totals.by_category,
                totals.expense_cents,
                TransactionType.expense,
                labels=labels,
                thresholds=self.thresholds,
            )
        if kind != InsightKind.expense:
            income_items = rank_categories(
                totals.by_category,
                totals.income_cents,
                TransactionType.income,
                labels=labels,
                thresholds=self.thresholds,
            )
        return CategoryInsightsCard(
            period_start=period.start,
            period_end=period.end,
            top_expense_categories=expense_items,
            top_income_categories=income_items,
            total_expense_cents=(
                totals.expense_cents if kind != InsightKind.income else 0
            ),
            total_income_cents=(
                totals.income_cents if kind != InsightKind.expense else 0
            ),
        )

    def build_recent_activity(self, limit: Optional[int] = None) -> RecentActivityCard:
        now = self.clock()
        limit = limit or self.thresholds.max_recent_transactions
        transactions = self.transactions.recent(limit)

        labels: dict[int, CategoryLabel] = {}
        items: list[RecentTransactionItem] = []
        for txn in transactions:
            if txn.category_id not in labels:
                labels[txn.category_id] = self._category_label(
                    txn.category_id, UNCATEGORIZED_LABEL
                )
            items.append(
                RecentTransactionItem(
                    id=txn.id,
                    description=txn.note,
                    amount_cents=txn.amount_cents,
                    type=txn.type,
                    category_name=labels[txn.category_id].name,
                    date=txn.date,
                    created_at=txn.created_at,
                    relative_time=format_relative_time(
                        self._to_local(txn.created_at), now, self.thresholds
                    ),
                )
            )

        try:
            total = self.transactions.count()
        except StoreQueryError as exc:
            logger.warning(
                f"transaction_count_unavailable: family_id={self.family_id} "
                f"error={exc}"
            )
            total = len(items)

        return RecentActivityCard(
            transactions=items,
            total_count=total,
            showing_count=len(items),
            has_more_data=total > len(items),
            last_updated=now,
        )

    def _independent_card(
        self, name: str, build: Callable[[], T], default: Callable[[], T]
    ) -> T:
        try:
            return build()
        except StoreQueryError:
            logger.exception(
                f"dashboard_card_failed: card={name} family_id={self.family_id}"
            )
            return default()

    def build_dashboard(self, filters: DashboardFilters) -> DashboardViewModel:
        summary = self.build_monthly_summary(filters)
        period = Period("summary", summary.period_start, summary.period_end)
        return DashboardViewModel(
            monthly_summary=summary,
            enhanced_stats=self.build_enhanced_stats(filters, summary),
            budget_overview=self._independent_card(
                "budget_overview", self.build_budget_overview, BudgetOverviewCard.empty
            ),
            recent_activity=self._independent_card(
                "recent_activity",
                self.build_recent_activity,
                lambda: RecentActivityCard.empty(self.clock()),
            ),
            category_insights=self._independent_card(
                "category_insights",
                lambda: self.build_category_insights(filters),
                lambda: CategoryInsightsCard.empty(period),
            ),
        )
