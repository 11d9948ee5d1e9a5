import logging
from typing import Callable, TypeVar

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal, init_db
from periods import InvalidDateRange, PeriodToken
from schemas import (
    BudgetOverviewCard,
    CategoryInsightsCard,
    DashboardFilters,
    DashboardViewModel,
    EnhancedStatsCard,
    InsightKind,
    MonthlySummaryCard,
    RecentActivityCard,
)
from services import DashboardService, StoreQueryError

logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)

T = TypeVar("T")

app = FastAPI(title="Family Budget")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@app.on_event("startup")
def startup_event():
    init_db()
    logger.info("Database schema ready")


def filters_from_request(request: Request) -> DashboardFilters:
    params = request.query_params
    try:
        return DashboardFilters(
            period=params.get("period") or PeriodToken.current_month,
            start_date=params.get("start_date") or None,
            end_date=params.get("end_date") or None,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail="Invalid dashboard filters") from exc


def _build_card(build: Callable[[], T], failure: str) -> T:
    try:
        return build()
    except InvalidDateRange as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StoreQueryError as exc:
        logger.error(f"dashboard_request_failed: detail={failure} error={exc}")
        raise HTTPException(status_code=500, detail=failure) from exc


@app.get("/api/dashboard", response_model=DashboardViewModel)
def dashboard(
    filters: DashboardFilters = Depends(filters_from_request),
    db: Session = Depends(get_db),
):
    service = DashboardService(db)
    return _build_card(
        lambda: service.build_dashboard(filters), "Failed to load monthly summary"
    )


@app.get("/api/dashboard/stats", response_model=MonthlySummaryCard)
def dashboard_stats(
    filters: DashboardFilters = Depends(filters_from_request),
    db: Session = Depends(get_db),
):
    service = DashboardService(db)
    return _build_card(
        lambda: service.build_monthly_summary(filters),
        "Failed to load monthly summary",
    )


@app.get("/api/dashboard/enhanced", response_model=EnhancedStatsCard)
def dashboard_enhanced_stats(
    filters: DashboardFilters = Depends(filters_from_request),
    db: Session = Depends(get_db),
):
    service = DashboardService(db)
    return _build_card(
        lambda: service.build_enhanced_stats(filters), "Failed to load enhanced stats"
    )


@app.get("/api/dashboard/budgets", response_model=BudgetOverviewCard)
def budget_overview(db: Session = Depends(get_db)):
    service = DashboardService(db)
    return _build_card(service.build_budget_overview, "Failed to load budget overview")


@app.get("/api/dashboard/recent", response_model=RecentActivityCard)
def recent_transactions(db: Session = Depends(get_db)):
    service = DashboardService(db)
    return _build_card(
        service.build_recent_activity, "Failed to load recent transactions"
    )


@app.get("/api/dashboard/categories", response_model=CategoryInsightsCard)
def category_insights(
    request: Request,
    filters: DashboardFilters = Depends(filters_from_request),
    db: Session = Depends(get_db),
):
    try:
        kind = InsightKind(request.query_params.get("type") or InsightKind.all)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid insight type") from exc
    service = DashboardService(db)
    return _build_card(
        lambda: service.build_category_insights(filters, kind),
        "Failed to load category insights",
    )


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
