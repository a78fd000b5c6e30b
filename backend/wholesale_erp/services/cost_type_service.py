# Overview: Additional cost types (freight, handling, rebates) used by receiving reports.

from __future__ import annotations

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import AdditionalCost, AdditionalCostType
from ..validation import ConflictError, ModelValidationPolicy, NotFoundError, validate_payload
from .concurrency import run_with_retry


COST_TYPE_POLICY = ModelValidationPolicy(
    writable_fields={"name", "description", "is_active"},
    required_on_create={"name"},
)


def get_cost_type(cost_type_id: int) -> AdditionalCostType:
    row = db.session.query(AdditionalCostType).filter_by(id=cost_type_id).first()
    if row is None:
        raise NotFoundError(f"Cost type {cost_type_id} not found")
    return row


def list_cost_types(*, active_only: bool = False) -> list[AdditionalCostType]:
    query = db.session.query(AdditionalCostType)
    if active_only:
        query = query.filter_by(is_active=True)
    return query.order_by(AdditionalCostType.name).all()


def _ensure_unique_name(name: str, exclude_id: int | None = None) -> None:
    query = db.session.query(AdditionalCostType.id).filter(AdditionalCostType.name == name)
    if exclude_id is not None:
        query = query.filter(AdditionalCostType.id != exclude_id)
    if query.first() is not None:
        raise ConflictError(f"Cost type '{name}' already exists")


def create_cost_type(*, data: dict) -> AdditionalCostType:
    def _op():
        patch = validate_payload(model=AdditionalCostType, payload=data, policy=COST_TYPE_POLICY, partial=False)
        _ensure_unique_name(patch["name"])
        row = AdditionalCostType(**patch)
        db.session.add(row)
        try:
            db.session.flush()
        except IntegrityError as exc:
            raise ConflictError(f"Cost type '{patch['name']}' already exists") from exc
        return row

    return run_with_retry(_op)


def update_cost_type(*, cost_type_id: int, data: dict) -> AdditionalCostType:
    def _op():
        row = get_cost_type(cost_type_id)
        patch = validate_payload(model=AdditionalCostType, payload=data, policy=COST_TYPE_POLICY, partial=True)
        if "name" in patch:
            _ensure_unique_name(patch["name"], exclude_id=row.id)
        for key, value in patch.items():
            setattr(row, key, value)
        db.session.flush()
        return row

    return run_with_retry(_op)


def delete_cost_type(*, cost_type_id: int) -> None:
    """Hard delete, blocked while any receiving report references the type."""
    def _op():
        row = get_cost_type(cost_type_id)
        in_use = db.session.query(AdditionalCost.id).filter_by(cost_type_id=row.id).first()
        if in_use is not None:
            raise ConflictError(f"Cost type '{row.name}' is in use and cannot be deleted; deactivate it instead")
        db.session.delete(row)
        db.session.flush()

    return run_with_retry(_op)
