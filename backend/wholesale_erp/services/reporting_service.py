# backend/wholesale_erp/services/reporting_service.py
"""
Sales summaries, trends and revenue forecasting.

Summaries are DERIVED rows (daily / monthly / yearly) rebuilt from the sales
table. Sale writes refresh the three periods containing the sale date inside
the same transaction, so readers never see a summary that disagrees with
committed sales.

Aggregation rules:
- revenue / cogs / profit sum every non-cancelled sale
- counts are split by status (completed, cancelled, returned)
- avg_profit_margin = profit / revenue * 100 (0 when revenue is 0)
"""
from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from sqlalchemy import case, func

from wholesale_erp.extensions import db
from wholesale_erp.models import Sale, SalesSummary
from wholesale_erp.services.concurrency import run_with_retry
from wholesale_erp.time_utils import utcnow
from wholesale_erp.validation import ValidationError

logger = logging.getLogger(__name__)

PERIOD_DAILY = "daily"
PERIOD_MONTHLY = "monthly"
PERIOD_YEARLY = "yearly"
PERIOD_TYPES = (PERIOD_DAILY, PERIOD_MONTHLY, PERIOD_YEARLY)

SALE_STATUS_COMPLETED = "completed"
SALE_STATUS_CANCELLED = "cancelled"
SALE_STATUS_RETURNED = "returned"

MIN_FORECAST_HISTORY = 3
MAX_FORECAST_HISTORY = 12


def add_months(day: date, months: int) -> date:
    """First-of-month arithmetic; day is always normalized to 1."""
    index = day.year * 12 + (day.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def period_bounds(period_type: str, day: date) -> tuple[date, datetime, datetime]:
    """Return (period_date, start, end) for the period containing day; end is exclusive."""
    if period_type == PERIOD_DAILY:
        period_date = day
        end_date = day + timedelta(days=1)
    elif period_type == PERIOD_MONTHLY:
        period_date = day.replace(day=1)
        end_date = add_months(period_date, 1)
    elif period_type == PERIOD_YEARLY:
        period_date = date(day.year, 1, 1)
        end_date = date(day.year + 1, 1, 1)
    else:
        raise ValidationError({"period_type": [f"must be one of {', '.join(PERIOD_TYPES)}"]})
    start = datetime.combine(period_date, datetime.min.time())
    end = datetime.combine(end_date, datetime.min.time())
    return period_date, start, end


def _breakdown(column, start: datetime, end: datetime) -> dict:
    rows = (
        db.session.query(column, func.count(Sale.id), func.coalesce(func.sum(Sale.total_cents), 0))
        .filter(Sale.order_date >= start, Sale.order_date < end, Sale.status != SALE_STATUS_CANCELLED)
        .group_by(column)
        .all()
    )
    return {
        (key or "unspecified"): {"count": int(count), "total_cents": int(total)}
        for key, count, total in rows
    }


def _refresh_period(period_type: str, day: date) -> SalesSummary:
    period_date, start, end = period_bounds(period_type, day)
    not_cancelled = Sale.status != SALE_STATUS_CANCELLED

    agg = (
        db.session.query(
            func.count(Sale.id).label("total_count"),
            func.sum(case((Sale.status == SALE_STATUS_COMPLETED, 1), else_=0)).label("completed"),
            func.sum(case((Sale.status == SALE_STATUS_CANCELLED, 1), else_=0)).label("cancelled"),
            func.sum(case((Sale.status == SALE_STATUS_RETURNED, 1), else_=0)).label("returned"),
            func.sum(case((not_cancelled, Sale.total_cents), else_=0)).label("revenue"),
            func.sum(case((not_cancelled, Sale.cogs_cents), else_=0)).label("cogs"),
            func.sum(case((not_cancelled, Sale.profit_cents), else_=0)).label("profit"),
        )
        .filter(Sale.order_date >= start, Sale.order_date < end)
        .one()
    )
    revenue = int(agg.revenue or 0)
    profit = int(agg.profit or 0)
    billable = int(agg.total_count or 0) - int(agg.cancelled or 0)

    summary = (
        db.session.query(SalesSummary)
        .filter_by(period_type=period_type, period_date=period_date)
        .first()
    )
    if summary is None:
        summary = SalesSummary(period_type=period_type, period_date=period_date)
        db.session.add(summary)

    summary.year = period_date.year
    summary.month = period_date.month if period_type != PERIOD_YEARLY else None
    summary.day = period_date.day if period_type == PERIOD_DAILY else None
    summary.total_revenue_cents = revenue
    summary.total_cogs_cents = int(agg.cogs or 0)
    summary.total_profit_cents = profit
    summary.total_sales_count = int(agg.total_count or 0)
    summary.completed_sales_count = int(agg.completed or 0)
    summary.cancelled_sales_count = int(agg.cancelled or 0)
    summary.returned_sales_count = int(agg.returned or 0)
    summary.avg_sale_value_cents = (revenue + billable // 2) // billable if billable > 0 else 0
    summary.avg_profit_margin = round(profit / revenue * 100, 2) if revenue > 0 else 0.0
    summary.payment_methods_breakdown = _breakdown(Sale.payment_method, start, end)
    summary.customer_types_breakdown = _breakdown(Sale.customer_type, start, end)
    summary.last_updated_at = utcnow()
    return summary


def refresh_summaries_for_sale(sale: Sale) -> None:
    """Refresh the periods containing a sale. Runs inside the caller's transaction."""
    db.session.flush()
    day = sale.order_date.date()
    for period_type in PERIOD_TYPES:
        _refresh_period(period_type, day)
    db.session.flush()


def rebuild_summaries_for_date(day: date) -> list[SalesSummary]:
    def _op():
        rows = [_refresh_period(period_type, day) for period_type in PERIOD_TYPES]
        db.session.flush()
        return rows

    return run_with_retry(_op)


def rebuild_all_summaries() -> int:
    """Rebuild every period between the first and last sale. Returns the number of rows written."""
    def _op():
        first, last = db.session.query(func.min(Sale.order_date), func.max(Sale.order_date)).one()
        if first is None:
            logger.info("No sales found, skipping summary rebuild")
            return 0

        start, end = first.date(), last.date()
        written = 0
        for year in range(start.year, end.year + 1):
            _refresh_period(PERIOD_YEARLY, date(year, 1, 1))
            written += 1
        month = start.replace(day=1)
        while month <= end:
            _refresh_period(PERIOD_MONTHLY, month)
            month = add_months(month, 1)
            written += 1
        day = start
        while day <= end:
            _refresh_period(PERIOD_DAILY, day)
            day += timedelta(days=1)
            written += 1
        db.session.flush()
        logger.info("Sales summaries rebuilt from %s to %s (%s rows)", start, end, written)
        return written

    return run_with_retry(_op)


def get_summaries(*, period_type: str, start: date | None = None, end: date | None = None) -> list[SalesSummary]:
    if period_type not in PERIOD_TYPES:
        raise ValidationError({"period_type": [f"must be one of {', '.join(PERIOD_TYPES)}"]})
    query = db.session.query(SalesSummary).filter(SalesSummary.period_type == period_type)
    if start is not None:
        query = query.filter(SalesSummary.period_date >= start)
    if end is not None:
        query = query.filter(SalesSummary.period_date <= end)
    return query.order_by(SalesSummary.period_date).all()


def _growth(previous: int, current: int) -> float:
    if previous <= 0:
        return 0.0
    return round((current - previous) / previous * 100, 2)


def get_trends(*, months: int = 12, until: date | None = None) -> list[dict]:
    """Month-over-month revenue and profit growth for the trailing window."""
    if months < 1:
        raise ValidationError({"months": ["must be at least 1"]})
    last = (until or utcnow().date()).replace(day=1)
    first = add_months(last, -(months - 1))

    trends = []
    previous = None
    for summary in get_summaries(period_type=PERIOD_MONTHLY, start=first, end=last):
        trend = {
            "period": summary.period_date.strftime("%Y-%m"),
            "revenue_cents": summary.total_revenue_cents,
            "profit_cents": summary.total_profit_cents,
            "cogs_cents": summary.total_cogs_cents,
            "sales_count": summary.total_sales_count,
        }
        if previous is not None:
            trend["revenue_growth"] = _growth(previous.total_revenue_cents, summary.total_revenue_cents)
            trend["profit_growth"] = _growth(previous.total_profit_cents, summary.total_profit_cents)
        trends.append(trend)
        previous = summary
    return trends


def linear_trend(values: list[float]) -> tuple[float, float]:
    """Ordinary least squares over x = 1..n. Returns (slope, intercept)."""
    n = len(values)
    if n < 2:
        return 0.0, float(values[0]) if values else 0.0
    xs = range(1, n + 1)
    sum_x = sum(xs)
    sum_y = sum(values)
    sum_xy = sum(x * y for x, y in zip(xs, values))
    sum_xx = sum(x * x for x in xs)
    slope = (n * sum_xy - sum_x * sum_y) / (n * sum_xx - sum_x * sum_x)
    intercept = (sum_y - slope * sum_x) / n
    return slope, intercept


def forecast_revenue(
    *,
    periods: int = 3,
    period_type: str = PERIOD_MONTHLY,
    history: int = MAX_FORECAST_HISTORY,
    as_of: date | None = None,
) -> dict:
    """
    Project revenue, profit and sales count forward with a linear trend.

    Uses up to `history` most recent summaries on or before as_of; at least
    three are required.
    """
    if period_type not in (PERIOD_MONTHLY, PERIOD_YEARLY):
        raise ValidationError({"period_type": ["must be monthly or yearly"]})
    if not 1 <= periods <= 12:
        raise ValidationError({"periods": ["must be between 1 and 12"]})
    history = max(MIN_FORECAST_HISTORY, min(history, MAX_FORECAST_HISTORY))

    rows = (
        db.session.query(SalesSummary)
        .filter(SalesSummary.period_type == period_type, SalesSummary.period_date <= (as_of or utcnow().date()))
        .order_by(SalesSummary.period_date.desc())
        .limit(history)
        .all()
    )
    rows.reverse()
    if len(rows) < MIN_FORECAST_HISTORY:
        raise ValidationError(
            {"history": [f"insufficient historical data (minimum {MIN_FORECAST_HISTORY} periods required)"]}
        )

    n = len(rows)
    revenue_trend = linear_trend([r.total_revenue_cents for r in rows])
    profit_trend = linear_trend([r.total_profit_cents for r in rows])
    count_trend = linear_trend([r.total_sales_count for r in rows])

    last_date = rows[-1].period_date
    forecast = []
    for i in range(1, periods + 1):
        x = n + i
        if period_type == PERIOD_MONTHLY:
            period_date = add_months(last_date, i)
            identifier = period_date.strftime("%Y-%m")
        else:
            period_date = date(last_date.year + i, 1, 1)
            identifier = str(period_date.year)
        revenue = max(0.0, revenue_trend[1] + revenue_trend[0] * x)
        profit = max(0.0, profit_trend[1] + profit_trend[0] * x)
        sales = max(0.0, count_trend[1] + count_trend[0] * x)
        forecast.append({
            "period_date": period_date.isoformat(),
            "period_identifier": identifier,
            "forecasted_revenue_cents": int(round(revenue)),
            "forecasted_profit_cents": int(round(profit)),
            "forecasted_sales_count": int(round(sales)),
            "forecasted_profit_margin": round(profit / revenue * 100, 2) if revenue > 0 else 0.0,
            "confidence_level": round(max(0.5, 1 - 0.1 * i), 2),
        })

    return {
        "historical": [r.to_dict() for r in rows],
        "forecast": forecast,
        "meta": {
            "periods_used_for_trend": n,
            "periods_forecasted": periods,
            "forecast_method": "linear_trend",
        },
    }
