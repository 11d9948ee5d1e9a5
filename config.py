import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


@dataclass(frozen=True)
class AnalyticsThresholds:
    """Numeric knobs of the dashboard analytics.

    Budget tiers are checked from the highest boundary down, so the
    boundaries must stay strictly descending.
    """

    budget_exceeded_pct: float = 100.0
    budget_critical_pct: float = 90.0
    budget_warning_pct: float = 80.0
    max_top_budgets: int = 5
    max_top_categories: int = 5
    max_recent_transactions: int = 10
    period_query_limit: int = 1000
    category_high_pct: float = 30.0
    category_medium_pct: float = 15.0
    max_custom_range_days: int = 730
    days_in_week: int = 7
    days_in_month: int = 30

    def __post_init__(self) -> None:
        if not (
            self.budget_exceeded_pct
            > self.budget_critical_pct
            > self.budget_warning_pct
            > 0
        ):
            raise ValueError(
                "Budget thresholds must satisfy exceeded > critical > warning > 0"
            )
        if self.category_high_pct < self.category_medium_pct:
            raise ValueError("Category high share must not be below medium share")
        for name in (
            "max_top_budgets",
            "max_top_categories",
            "max_recent_transactions",
            "period_query_limit",
            "max_custom_range_days",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        log_level: str,
        thresholds: AnalyticsThresholds,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.log_level = log_level
        self.thresholds = thresholds


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FAMILY_BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _thresholds_from_env() -> AnalyticsThresholds:
    defaults = AnalyticsThresholds()
    return AnalyticsThresholds(
        budget_exceeded_pct=float(
            os.getenv("FAMILY_BUDGET_EXCEEDED_PCT", defaults.budget_exceeded_pct)
        ),
        budget_critical_pct=float(
            os.getenv("FAMILY_BUDGET_CRITICAL_PCT", defaults.budget_critical_pct)
        ),
        budget_warning_pct=float(
            os.getenv("FAMILY_BUDGET_WARNING_PCT", defaults.budget_warning_pct)
        ),
        max_top_budgets=int(
            os.getenv("FAMILY_BUDGET_TOP_BUDGETS", defaults.max_top_budgets)
        ),
        max_top_categories=int(
            os.getenv("FAMILY_BUDGET_TOP_CATEGORIES", defaults.max_top_categories)
        ),
        max_recent_transactions=int(
            os.getenv("FAMILY_BUDGET_RECENT_LIMIT", defaults.max_recent_transactions)
        ),
        period_query_limit=int(
            os.getenv("FAMILY_BUDGET_QUERY_LIMIT", defaults.period_query_limit)
        ),
        max_custom_range_days=int(
            os.getenv("FAMILY_BUDGET_MAX_RANGE_DAYS", defaults.max_custom_range_days)
        ),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "family_budget.db"
    database_url = os.getenv("FAMILY_BUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FAMILY_BUDGET_TIMEZONE", "Europe/Berlin")
    log_level = os.getenv("FAMILY_BUDGET_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        log_level=log_level,
        thresholds=_thresholds_from_env(),
    )
