# backend/wholesale_erp/routes/reports.py
"""
Sales reporting API: stored summaries, month-over-month trends and revenue forecast.
"""
from datetime import date

from flask import Blueprint, jsonify, request

from ..decorators import json_errors
from ..services import reporting_service
from ..services.concurrency import commit_session
from ..validation import ValidationError

reports_bp = Blueprint("reports", __name__, url_prefix="/api/reports")


def _date_arg(name: str) -> date | None:
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise ValidationError({name: ["must be a YYYY-MM-DD date"]}) from exc


@reports_bp.get("/summaries")
@json_errors("load sales summaries")
def list_summaries():
    rows = reporting_service.get_summaries(
        period_type=request.args.get("period_type", reporting_service.PERIOD_DAILY),
        start=_date_arg("start"),
        end=_date_arg("end"),
    )
    return jsonify({"summaries": [r.to_dict() for r in rows]}), 200


@reports_bp.post("/summaries/rebuild")
@json_errors("rebuild sales summaries")
def rebuild_summaries():
    """Rebuild every summary, or only the periods containing ?date=YYYY-MM-DD."""
    day = _date_arg("date")
    if day is not None:
        written = len(reporting_service.rebuild_summaries_for_date(day))
    else:
        written = reporting_service.rebuild_all_summaries()
    commit_session()
    return jsonify({"rows_written": written}), 200


@reports_bp.get("/trends")
@json_errors("load sales trends")
def trends():
    result = reporting_service.get_trends(
        months=request.args.get("months", 12, type=int),
        until=_date_arg("until"),
    )
    return jsonify({"trends": result}), 200


@reports_bp.get("/forecast")
@json_errors("forecast revenue")
def forecast():
    result = reporting_service.forecast_revenue(
        periods=request.args.get("periods", 3, type=int),
        period_type=request.args.get("period_type", reporting_service.PERIOD_MONTHLY),
        history=request.args.get("history", reporting_service.MAX_FORECAST_HISTORY, type=int),
        as_of=_date_arg("as_of"),
    )
    return jsonify(result), 200
