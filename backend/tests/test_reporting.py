from datetime import date

import pytest

from wholesale_erp.extensions import db
from wholesale_erp.models import SalesSummary
from wholesale_erp.services import reporting_service, sales_service
from wholesale_erp.services.concurrency import commit_session
from wholesale_erp.validation import ValidationError


@pytest.fixture
def priced(db_session, product, customer, set_price, add_stock):
    set_price(product.id, 1000)
    add_stock(product.id, 100)
    return product


def _summary(period_type, period_date):
    return db.session.query(SalesSummary).filter_by(period_type=period_type, period_date=period_date).one()


def test_sale_refreshes_its_periods(db_session, priced, customer, make_sale):
    make_sale((priced.id, 2), customer_id=customer.id, order_date="2024-03-05T10:00:00", payment_method="cash")
    cancelled = make_sale((priced.id, 1), customer_id=customer.id, order_date="2024-03-05T12:00:00")
    make_sale((priced.id, 1), order_date="2024-03-20T09:00:00")

    sales_service.cancel_sale(sale_id=cancelled.id)
    commit_session()

    daily = _summary("daily", date(2024, 3, 5))
    assert daily.total_sales_count == 2
    assert daily.cancelled_sales_count == 1
    assert daily.total_revenue_cents == 2000
    assert daily.avg_sale_value_cents == 2000
    assert daily.payment_methods_breakdown == {"cash": {"count": 1, "total_cents": 2000}}

    monthly = _summary("monthly", date(2024, 3, 1))
    assert monthly.total_sales_count == 3
    assert monthly.completed_sales_count == 2
    # Opening stock carries no cost, so the whole total is profit
    assert monthly.total_revenue_cents == monthly.total_profit_cents == 3000
    assert monthly.avg_profit_margin == 100.0
    assert monthly.customer_types_breakdown == {
        "regular": {"count": 1, "total_cents": 2000},
        "walk_in": {"count": 1, "total_cents": 1000},
    }
    assert _summary("yearly", date(2024, 1, 1)).month is None


def test_rebuild_for_date_and_all(db_session, priced, make_sale):
    make_sale((priced.id, 1), order_date="2024-01-31T18:00:00")
    make_sale((priced.id, 3), order_date="2024-02-02T08:00:00")
    db_session.query(SalesSummary).delete()
    db_session.commit()

    rows = reporting_service.rebuild_summaries_for_date(date(2024, 2, 2))
    commit_session()
    assert [r.period_type for r in rows] == ["daily", "monthly", "yearly"]
    assert rows[0].total_revenue_cents == 3000
    assert rows[2].total_revenue_cents == 4000

    # 1 year, 2 months and the 3 days from Jan 31 to Feb 2
    assert reporting_service.rebuild_all_summaries() == 6
    commit_session()
    empty_day = _summary("daily", date(2024, 2, 1))
    assert (empty_day.total_sales_count, empty_day.avg_sale_value_cents) == (0, 0)


def test_rebuild_without_sales(db_session):
    assert reporting_service.rebuild_all_summaries() == 0


def test_trends_report_month_over_month_growth(db_session, priced, make_sale):
    make_sale((priced.id, 1), order_date="2024-01-10T10:00:00")
    make_sale((priced.id, 2), order_date="2024-02-10T10:00:00")
    make_sale((priced.id, 3), order_date="2024-03-10T10:00:00")

    trends = reporting_service.get_trends(months=3, until=date(2024, 3, 15))

    assert [t["period"] for t in trends] == ["2024-01", "2024-02", "2024-03"]
    assert "revenue_growth" not in trends[0]
    assert [t["revenue_growth"] for t in trends[1:]] == [100.0, 50.0]
    assert trends[2]["profit_growth"] == 50.0

    assert len(reporting_service.get_trends(months=1, until=date(2024, 3, 15))) == 1
    with pytest.raises(ValidationError):
        reporting_service.get_trends(months=0)


def test_forecast_extends_linear_trend(db_session, priced, make_sale):
    for month, quantity in ((1, 1), (2, 2), (3, 3), (4, 4)):
        make_sale((priced.id, quantity), order_date=f"2024-0{month}-15T10:00:00")

    result = reporting_service.forecast_revenue(periods=2, as_of=date(2024, 4, 30))

    assert result["meta"] == {
        "periods_used_for_trend": 4,
        "periods_forecasted": 2,
        "forecast_method": "linear_trend",
    }
    assert len(result["historical"]) == 4
    first, second = result["forecast"]
    assert first["period_identifier"] == "2024-05"
    assert first["forecasted_revenue_cents"] == 5000
    assert second["forecasted_revenue_cents"] == 6000
    assert first["forecasted_sales_count"] == 1
    assert (first["confidence_level"], second["confidence_level"]) == (0.9, 0.8)


def test_forecast_needs_history(db_session, priced, make_sale):
    make_sale((priced.id, 1), order_date="2024-01-15T10:00:00")
    make_sale((priced.id, 1), order_date="2024-02-15T10:00:00")

    with pytest.raises(ValidationError) as excinfo:
        reporting_service.forecast_revenue(as_of=date(2024, 2, 28))
    assert "history" in excinfo.value.errors

    with pytest.raises(ValidationError):
        reporting_service.forecast_revenue(periods=13)
    with pytest.raises(ValidationError):
        reporting_service.forecast_revenue(period_type="daily")
    with pytest.raises(ValidationError):
        reporting_service.get_summaries(period_type="weekly")


def test_cli_rebuild_commands(app, db_session, priced, make_sale):
    make_sale((priced.id, 1), order_date="2024-05-05T10:00:00")
    runner = app.test_cli_runner()

    result = runner.invoke(args=["summaries", "rebuild", "--date", "2024-05-05"])
    assert result.exit_code == 0
    assert "Rebuilt 3 summaries for 2024-05-05" in result.output

    result = runner.invoke(args=["summaries", "rebuild"])
    assert result.exit_code == 0
    assert "Rebuilt 3 summaries" in result.output

    result = runner.invoke(args=["summaries", "rebuild", "--date", "05/05/2024"])
    assert result.exit_code != 0
