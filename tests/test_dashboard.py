from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from database import Base
from models import Budget, TransactionType
from periods import InvalidDateRange
from schemas import (
    BudgetIn,
    BudgetOverviewCard,
    BudgetTier,
    CategoryIn,
    DashboardFilters,
    InsightKind,
    RecentActivityCard,
    TransactionIn,
)
from services import (
    BudgetService,
    CategoryNotFound,
    CategoryService,
    DashboardService,
    StoreQueryError,
    TransactionService,
)

NOW = datetime(2025, 3, 15, 12, 0)


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def make_dashboard(session: Session, **kwargs) -> DashboardService:
    return DashboardService(session, clock=lambda: NOW, tz=timezone.utc, **kwargs)


def seed_categories(session: Session):
    salary = CategoryService(session).create(
        CategoryIn(name="Salary", type=TransactionType.income, color="#00aa00")
    )
    food = CategoryService(session).create(
        CategoryIn(name="Food", type=TransactionType.expense, color="#ff8800")
    )
    rent = CategoryService(session).create(
        CategoryIn(name="Rent", type=TransactionType.expense)
    )
    return salary, food, rent


def add_txn(session, category, amount_cents, day, note=None):
    return TransactionService(session).create(
        TransactionIn(
            date=day,
            type=category.type,
            amount_cents=amount_cents,
            category_id=category.id,
            note=note,
        )
    )


class FailingPreviousStore:
    """Delegates to the real store but fails for windows before March."""

    def __init__(self, inner: TransactionService) -> None:
        self.inner = inner

    def in_range(self, start, end, *, limit):
        if start < datetime(2025, 3, 1):
            raise StoreQueryError("Failed to load transactions for period")
        return self.inner.in_range(start, end, limit=limit)

    def recent(self, limit):
        return self.inner.recent(limit)

    def count(self):
        return self.inner.count()


class RecordingBrokenStore:
    def __init__(self) -> None:
        self.calls = 0

    def in_range(self, start, end, *, limit):
        self.calls += 1
        raise StoreQueryError("Failed to load transactions for period")

    def recent(self, limit):
        self.calls += 1
        raise StoreQueryError("Failed to load recent transactions")

    def count(self):
        self.calls += 1
        raise StoreQueryError("Failed to count transactions")


class UncountableStore(FailingPreviousStore):
    def count(self):
        raise StoreQueryError("Failed to count transactions")


class BrokenCategories:
    def __init__(self, error: Exception) -> None:
        self.error = error

    def get(self, category_id):
        raise self.error


class BrokenBudgets:
    def active(self, as_of):
        raise StoreQueryError("Failed to load active budgets")


def test_summary_without_previous_data_reports_zero_change() -> None:
    with make_session() as session:
        salary, food, _ = seed_categories(session)
        add_txn(session, salary, 50_000, date(2025, 3, 1))
        add_txn(session, food, 30_000, date(2025, 3, 10))

        summary = make_dashboard(session).build_monthly_summary(DashboardFilters())

        assert summary.total_income_cents == 50_000
        assert summary.total_expense_cents == 30_000
        assert summary.net_income_cents == 20_000
        assert summary.transaction_count == 2
        assert summary.income_count == 1
        assert summary.expense_count == 1
        assert summary.has_previous_data is False
        assert summary.income_change_pct == 0
        assert summary.expense_change_pct == 0
        assert summary.current_label == "March 2025"
        assert summary.period_end == datetime(2025, 3, 31, 23, 59, 59)


def test_summary_compares_each_field_against_previous_window() -> None:
    with make_session() as session:
        salary, food, _ = seed_categories(session)
        add_txn(session, salary, 40_000, date(2025, 2, 10))
        add_txn(session, salary, 50_000, date(2025, 3, 1))
        add_txn(session, food, 30_000, date(2025, 3, 10))
        # outside the previous window that ends on Feb 28 and spans 31 days
        add_txn(session, food, 99_999, date(2025, 1, 5))

        summary = make_dashboard(session).build_monthly_summary(DashboardFilters())

        assert summary.has_previous_data is True
        assert summary.previous_income_cents == 40_000
        assert summary.previous_expense_cents == 0
        assert summary.income_change_pct == pytest.approx(25.0)
        assert summary.expense_change_pct == 0
        assert summary.previous_label == "January 2025"


def test_previous_period_failure_degrades_to_no_previous_data() -> None:
    with make_session() as session:
        salary, _, _ = seed_categories(session)
        add_txn(session, salary, 40_000, date(2025, 2, 10))
        add_txn(session, salary, 50_000, date(2025, 3, 1))
        store = FailingPreviousStore(TransactionService(session))

        summary = make_dashboard(session, transactions=store).build_monthly_summary(
            DashboardFilters()
        )

        assert summary.total_income_cents == 50_000
        assert summary.has_previous_data is False
        assert summary.income_change_pct == 0


def test_current_period_failure_propagates() -> None:
    with make_session() as session:
        service = make_dashboard(session, transactions=RecordingBrokenStore())
        with pytest.raises(StoreQueryError):
            service.build_monthly_summary(DashboardFilters())


def test_invalid_range_is_rejected_before_any_query() -> None:
    with make_session() as session:
        store = RecordingBrokenStore()
        service = make_dashboard(session, transactions=store)
        filters = DashboardFilters(
            start_date=date(2025, 3, 14), end_date=date(2025, 3, 5)
        )

        with pytest.raises(InvalidDateRange):
            service.build_monthly_summary(filters)
        with pytest.raises(InvalidDateRange):
            service.build_category_insights(filters)
        assert store.calls == 0


def test_budget_overview_recalculates_spent_amounts() -> None:
    with make_session() as session:
        _, food, rent = seed_categories(session)
        budgets = BudgetService(session)
        food_budget = budgets.create(
            BudgetIn(
                name="Groceries",
                amount_cents=100_000,
                category_id=food.id,
                start_date=datetime(2025, 3, 1),
                end_date=datetime(2025, 3, 31, 23, 59, 59),
            )
        )
        budgets.create(
            BudgetIn(
                name="Household",
                amount_cents=200_000,
                start_date=datetime(2025, 3, 1),
                end_date=datetime(2025, 3, 31, 23, 59, 59),
            )
        )
        budgets.create(
            BudgetIn(
                name="Paused",
                amount_cents=10_000,
                start_date=datetime(2025, 3, 1),
                end_date=datetime(2025, 3, 31, 23, 59, 59),
                is_active=False,
            )
        )
        budgets.create(
            BudgetIn(
                name="January",
                amount_cents=10_000,
                start_date=datetime(2025, 1, 1),
                end_date=datetime(2025, 1, 31, 23, 59, 59),
            )
        )
        assert food_budget.spent_cents == 0

        add_txn(session, food, 95_000, date(2025, 3, 5))
        add_txn(session, rent, 50_000, date(2025, 3, 2))
        add_txn(session, food, 7_000, date(2025, 2, 27))

        overview = make_dashboard(session).build_budget_overview()

        assert overview.total_budgets == 2
        assert overview.critical == 1
        assert overview.over_budget == 0
        assert overview.near_limit == 0
        assert overview.alerts_summary.critical_alerts == 1
        top = overview.top_budgets
        assert [item.name for item in top] == ["Groceries", "Household"]
        assert top[0].category_name == "Food"
        assert top[0].spent_cents == 95_000
        assert top[0].remaining_cents == 5_000
        assert top[0].tier == BudgetTier.critical
        assert top[0].days_remaining == 17
        assert top[1].category_name == "General budget"
        assert top[1].spent_cents == 145_000
        assert top[1].tier == BudgetTier.healthy
        assert session.get(Budget, food_budget.id).spent_cents == 95_000


def test_budget_label_falls_back_when_category_lookup_fails() -> None:
    with make_session() as session:
        _, food, _ = seed_categories(session)
        BudgetService(session).create(
            BudgetIn(
                name="Groceries",
                amount_cents=100_000,
                category_id=food.id,
                start_date=datetime(2025, 3, 1),
                end_date=datetime(2025, 3, 31, 23, 59, 59),
            )
        )
        service = make_dashboard(
            session, categories=BrokenCategories(StoreQueryError("boom"))
        )

        overview = service.build_budget_overview()

        assert overview.top_budgets[0].category_name == "General budget"


def test_category_insights_rank_both_kinds() -> None:
    with make_session() as session:
        salary, food, rent = seed_categories(session)
        add_txn(session, salary, 300_000, date(2025, 3, 1))
        add_txn(session, food, 10_000, date(2025, 3, 3))
        add_txn(session, rent, 30_000, date(2025, 3, 2))
        add_txn(session, food, 0, date(2025, 3, 4))

        card = make_dashboard(session).build_category_insights(DashboardFilters())

        expenses = card.top_expense_categories
        assert [item.category_name for item in expenses] == ["Rent", "Food"]
        assert [item.percentage for item in expenses] == [75.0, 25.0]
        assert expenses[1].transaction_count == 2
        assert expenses[1].category_color == "#ff8800"
        assert card.total_expense_cents == 40_000
        assert [item.category_name for item in card.top_income_categories] == [
            "Salary"
        ]
        assert card.top_income_categories[0].percentage == 100.0


def test_category_insights_can_be_limited_to_one_kind() -> None:
    with make_session() as session:
        salary, food, _ = seed_categories(session)
        add_txn(session, salary, 300_000, date(2025, 3, 1))
        add_txn(session, food, 10_000, date(2025, 3, 3))

        card = make_dashboard(session).build_category_insights(
            DashboardFilters(), InsightKind.expense
        )

        assert card.top_income_categories == []
        assert card.total_income_cents == 0
        assert card.total_expense_cents == 10_000


def test_category_insights_use_fallback_label_for_missing_category() -> None:
    with make_session() as session:
        _, food, _ = seed_categories(session)
        add_txn(session, food, 10_000, date(2025, 3, 3))
        service = make_dashboard(
            session, categories=BrokenCategories(CategoryNotFound("gone"))
        )

        card = service.build_category_insights(DashboardFilters())

        item = card.top_expense_categories[0]
        assert item.category_name == "Uncategorized"
        assert item.category_color is None


def _seed_recent(session, food, count):
    created = []
    for i in range(count):
        txn = add_txn(session, food, 100 + i, date(2025, 3, 1), note=f"Item {i}")
        txn.created_at = NOW - timedelta(hours=i)
        created.append(txn)
    session.commit()
    return created


def test_recent_activity_is_newest_first_and_capped() -> None:
    with make_session() as session:
        _, food, _ = seed_categories(session)
        _seed_recent(session, food, 12)

        card = make_dashboard(session).build_recent_activity()

        assert card.showing_count == 10
        assert card.total_count == 12
        assert card.has_more_data is True
        assert card.last_updated == NOW
        assert [item.description for item in card.transactions[:3]] == [
            "Item 0",
            "Item 1",
            "Item 2",
        ]
        assert card.transactions[0].relative_time == "just now"
        assert card.transactions[1].relative_time == "1 hour ago"
        assert card.transactions[0].category_name == "Food"
        created = [item.created_at for item in card.transactions]
        assert created == sorted(created, reverse=True)


def test_recent_activity_falls_back_on_count_and_label_failures() -> None:
    with make_session() as session:
        _, food, _ = seed_categories(session)
        _seed_recent(session, food, 3)
        service = make_dashboard(
            session,
            transactions=UncountableStore(TransactionService(session)),
            categories=BrokenCategories(CategoryNotFound("gone")),
        )

        card = service.build_recent_activity(limit=2)

        assert card.showing_count == 2
        assert card.total_count == 2
        assert card.has_more_data is False
        assert {item.category_name for item in card.transactions} == {"Uncategorized"}


def test_dashboard_replaces_failed_cards_with_defaults() -> None:
    with make_session() as session:
        salary, food, _ = seed_categories(session)
        add_txn(session, salary, 50_000, date(2025, 3, 1))
        add_txn(session, food, 30_000, date(2025, 3, 10))
        service = make_dashboard(session, budgets=BrokenBudgets())

        dashboard = service.build_dashboard(DashboardFilters())

        assert dashboard.budget_overview == BudgetOverviewCard.empty()
        assert dashboard.monthly_summary.net_income_cents == 20_000
        assert dashboard.enhanced_stats.period_days == 31
        assert dashboard.enhanced_stats.savings_rate_pct == pytest.approx(40.0)
        assert dashboard.recent_activity.showing_count == 2
        assert len(dashboard.category_insights.top_expense_categories) == 1


def test_dashboard_survives_failing_recent_activity() -> None:
    with make_session() as session:
        salary, _, _ = seed_categories(session)
        add_txn(session, salary, 50_000, date(2025, 3, 1))

        class NoRecent(FailingPreviousStore):
            def recent(self, limit):
                raise StoreQueryError("Failed to load recent transactions")

        service = make_dashboard(
            session, transactions=NoRecent(TransactionService(session))
        )
        dashboard = service.build_dashboard(DashboardFilters())

        assert dashboard.recent_activity == RecentActivityCard.empty(NOW)
        assert dashboard.monthly_summary.total_income_cents == 50_000


def test_dashboard_fails_when_summary_cannot_be_built() -> None:
    with make_session() as session:
        service = make_dashboard(session, transactions=RecordingBrokenStore())
        with pytest.raises(StoreQueryError):
            service.build_dashboard(DashboardFilters())


def test_failed_recalculation_keeps_stored_spent_amount(monkeypatch) -> None:
    with make_session() as session:
        _, food, _ = seed_categories(session)
        add_txn(session, food, 10_000, date(2025, 3, 2))
        budgets = BudgetService(session)
        groceries = budgets.create(
            BudgetIn(
                name="Groceries",
                amount_cents=100_000,
                category_id=food.id,
                start_date=datetime(2025, 3, 1),
                end_date=datetime(2025, 3, 31, 23, 59, 59),
            )
        )
        household = budgets.create(
            BudgetIn(
                name="Household",
                amount_cents=200_000,
                start_date=datetime(2025, 3, 1),
                end_date=datetime(2025, 3, 31, 23, 59, 59),
            )
        )
        add_txn(session, food, 85_000, date(2025, 3, 6))

        groceries_id = groceries.id
        household_id = household.id
        original = budgets._spent_in_window

        def flaky_spent(budget):
            if budget.id == groceries_id:
                raise SQLAlchemyError("database is locked")
            return original(budget)

        monkeypatch.setattr(budgets, "_spent_in_window", flaky_spent)
        overview = make_dashboard(session, budgets=budgets).build_budget_overview()

        by_name = {item.name: item for item in overview.top_budgets}
        assert by_name["Groceries"].spent_cents == 10_000
        assert by_name["Household"].spent_cents == 95_000
        assert session.get(Budget, groceries_id).spent_cents == 10_000
        assert session.get(Budget, household_id).spent_cents == 95_000


def test_negative_spent_amount_is_rejected_by_schema() -> None:
    with make_session() as session:
        session.add(
            Budget(
                name="Broken",
                amount_cents=100,
                spent_cents=-50,
                start_date=datetime(2025, 3, 1),
                end_date=datetime(2025, 3, 31),
            )
        )
        with pytest.raises(IntegrityError):
            session.commit()


def test_family_zero_is_not_replaced_by_default_family() -> None:
    with make_session() as session:
        category = CategoryService(session, family_id=0).create(
            CategoryIn(name="Pocket money", type=TransactionType.expense)
        )

        assert CategoryService(session, family_id=0).get(category.id).family_id == 0
        with pytest.raises(CategoryNotFound):
            CategoryService(session).get(category.id)
