from datetime import datetime

import pytest

from wholesale_erp.models import PriceBracket
from wholesale_erp.services import bracket_service
from wholesale_erp.services.concurrency import commit_session
from wholesale_erp.validation import ConflictError, NotFoundError, ValidationError


TIERS = [
    {"min_quantity": 1, "max_quantity": 9, "price_cents": 1000, "price_type": "regular"},
    {"min_quantity": 10, "price_cents": 800, "price_type": "regular"},
]


def _create(product_id, **data):
    data.setdefault("items", TIERS)
    bracket = bracket_service.create_bracket_with_items(product_id=product_id, data=data)
    commit_session()
    return bracket


def test_create_rejects_overlapping_items(db_session, product):
    with pytest.raises(ConflictError):
        bracket_service.create_bracket_with_items(
            product_id=product.id,
            data={"items": [
                {"min_quantity": 1, "max_quantity": 10, "price_cents": 500, "price_type": "regular"},
                {"min_quantity": 10, "max_quantity": 20, "price_cents": 450, "price_type": "regular"},
            ]},
        )
    assert db_session.query(PriceBracket).count() == 0


def test_same_range_different_price_type_is_allowed(db_session, product):
    bracket = _create(product.id, items=[
        {"min_quantity": 1, "price_cents": 500, "price_type": "regular"},
        {"min_quantity": 1, "price_cents": 450, "price_type": "wholesale"},
    ])
    assert len(bracket.items) == 2


def test_create_validates_item_fields(db_session, product):
    with pytest.raises(ValidationError) as excinfo:
        bracket_service.create_bracket_with_items(
            product_id=product.id,
            data={"items": [{"min_quantity": 5, "max_quantity": 5, "price_cents": 100, "price_type": "retail"}]},
        )
    errors = excinfo.value.errors
    assert "items[0].max_quantity" in errors
    assert "items[0].price_type" in errors


def test_activation_supersedes_previous_bracket(db_session, product):
    first = _create(product.id, effective_from="2021-01-01T00:00:00", is_selected=True)
    draft = _create(product.id, items=[{"min_quantity": 1, "price_cents": 900, "price_type": "regular"}])
    assert draft.status == "draft"
    assert draft.is_selected is False

    bracket_service.activate_bracket(bracket_id=draft.id, effective_from="2023-03-01T00:00:00")
    commit_session()

    db_session.refresh(first)
    db_session.refresh(draft)
    assert first.status == "superseded"
    assert first.is_selected is False
    assert first.effective_to == datetime(2023, 3, 1)
    assert draft.status == "active"
    assert draft.effective_from == datetime(2023, 3, 1)

    selected = db_session.query(PriceBracket).filter_by(product_id=product.id, is_selected=True).all()
    assert [b.id for b in selected] == [draft.id]


def test_superseded_bracket_is_read_only(db_session, product):
    first = _create(product.id, effective_from="2021-01-01T00:00:00", is_selected=True)
    _create(product.id, effective_from="2022-01-01T00:00:00", is_selected=True)

    with pytest.raises(ConflictError):
        bracket_service.update_bracket_with_items(bracket_id=first.id, data={"name": "edited"})
    with pytest.raises(ConflictError):
        bracket_service.activate_bracket(bracket_id=first.id)


def test_active_bracket_start_cannot_move(db_session, product):
    bracket = _create(product.id, effective_from="2021-01-01T00:00:00", is_selected=True)
    with pytest.raises(ConflictError):
        bracket_service.update_bracket_with_items(
            bracket_id=bracket.id, data={"effective_from": "2021-06-01T00:00:00"}
        )


def test_update_reconciles_items_by_id(db_session, product):
    bracket = _create(product.id)
    small, large = sorted(bracket.items, key=lambda i: i.min_quantity)

    bracket_service.update_bracket_with_items(
        bracket_id=bracket.id,
        data={"items": [
            {"id": small.id, "min_quantity": 1, "max_quantity": 4, "price_cents": 1100, "price_type": "regular"},
            {"min_quantity": 5, "max_quantity": 9, "price_cents": 950, "price_type": "regular"},
        ]},
    )
    commit_session()

    db_session.refresh(bracket)
    items = sorted(bracket.items, key=lambda i: i.min_quantity)
    assert [(i.min_quantity, i.max_quantity, i.price_cents) for i in items] == [(1, 4, 1100), (5, 9, 950)]
    assert items[0].id == small.id
    assert large.id not in {i.id for i in items}


def test_update_rejects_foreign_item_ids(db_session, product):
    bracket = _create(product.id)
    with pytest.raises(ValidationError):
        bracket_service.update_bracket_with_items(
            bracket_id=bracket.id,
            data={"items": [{"id": 99999, "min_quantity": 1, "price_cents": 100, "price_type": "regular"}]},
        )


def test_deactivate_returns_product_to_flat_pricing(db_session, product):
    bracket = _create(product.id, effective_from="2021-01-01T00:00:00", is_selected=True)
    assert product.use_bracket_pricing is True

    bracket_service.deactivate_bracket_pricing(product_id=product.id)
    commit_session()

    db_session.refresh(product)
    db_session.refresh(bracket)
    assert product.use_bracket_pricing is False
    assert bracket.status == "superseded"
    assert bracket.effective_to is not None


def test_delete_selected_bracket_clears_flag(db_session, product):
    bracket = _create(product.id, effective_from="2021-01-01T00:00:00", is_selected=True)
    bracket_service.delete_bracket(bracket_id=bracket.id)
    commit_session()

    db_session.refresh(product)
    assert product.use_bracket_pricing is False
    with pytest.raises(NotFoundError):
        bracket_service.get_bracket(bracket.id)


def test_clone_copies_items_as_draft(db_session, product):
    source = _create(product.id, name="Spring", is_selected=True)
    clone = bracket_service.clone_bracket(bracket_id=source.id)
    commit_session()

    assert clone.id != source.id
    assert clone.status == "draft"
    assert clone.name == "Spring (copy)"
    assert sorted((i.min_quantity, i.price_cents) for i in clone.items) == [(1, 1000), (10, 800)]


def test_breakdown_reports_savings(db_session, product, set_price):
    set_price(product.id, 1200)
    _create(product.id, effective_from="2021-01-01T00:00:00", is_selected=True)

    breakdown = bracket_service.get_pricing_breakdown(product_id=product.id, quantities=[10, 1])
    assert breakdown["pricing_mode"] == "bracket"
    rows = breakdown["rows"]
    assert [r["quantity"] for r in rows] == [1, 10]
    assert rows[0]["unit_savings_cents"] == 0
    assert rows[1]["unit_price_cents"] == 800
    assert rows[1]["unit_savings_cents"] == 200
    assert rows[1]["total_savings_cents"] == 2000


def test_breakdown_for_flat_priced_product(db_session, product, set_price):
    set_price(product.id, 1200)
    breakdown = bracket_service.get_pricing_breakdown(product_id=product.id, quantities=[3])
    assert breakdown["pricing_mode"] == "traditional"
    assert breakdown["rows"][0]["total_cents"] == 3600


def test_suggestions_step_margin_down_per_tier(db_session, product, make_po, receive):
    po = make_po((product.id, 10, 1000))
    receive(po, (product.id, 10, 1000))

    result = bracket_service.get_optimal_pricing_suggestions(
        product_id=product.id, target_margin=0.30, quantities=[1, 10]
    )
    assert result["cost_price_cents"] == 1000
    first, second = result["suggestions"]
    assert (first["min_quantity"], first["max_quantity"], first["price_cents"]) == (1, 9, 1429)
    assert first["margin_percentage"] == 30.0
    assert (second["min_quantity"], second["max_quantity"], second["price_cents"]) == (10, None, 1389)
    assert second["margin_percentage"] == 28.0


def test_suggestions_need_a_received_cost(db_session, product):
    with pytest.raises(NotFoundError):
        bracket_service.get_optimal_pricing_suggestions(product_id=product.id)
    with pytest.raises(ValidationError):
        bracket_service.get_optimal_pricing_suggestions(product_id=product.id, target_margin=1.5)


CSV_TEXT = """Min_Quantity,Max_Quantity,Price,Price_Type
1,9,12.50,regular
10,49,11.00,regular
50,,10.00,regular
5,20,9.00,regular
1,,abc,wholesale
"""


def test_csv_import_keeps_valid_rows(db_session, product):
    rows = bracket_service.parse_bracket_csv(CSV_TEXT)
    assert [r["_line"] for r in rows] == [2, 3, 4, 5, 6]

    result = bracket_service.import_brackets_from_csv(product_id=product.id, rows=rows)
    commit_session()

    assert result["imported"] == 3
    assert result["failed"] == 2
    failures = {r["row"]: r["errors"] for r in result["results"] if not r["success"]}
    assert set(failures) == {5, 6}
    assert "range" in failures[5]
    assert "price" in failures[6]

    bracket = bracket_service.get_bracket(result["bracket_id"])
    assert bracket.status == "draft"
    prices = sorted((i.min_quantity, i.max_quantity, i.price_cents) for i in bracket.items)
    assert prices == [(1, 9, 1250), (10, 49, 1100), (50, None, 1000)]


def test_csv_import_into_existing_bracket_checks_live_items(db_session, product):
    bracket = _create(product.id, items=[
        {"min_quantity": 1, "max_quantity": 9, "price_cents": 1000, "price_type": "regular"},
        {"min_quantity": 10, "max_quantity": 49, "price_cents": 800, "price_type": "regular"},
    ])
    rows = bracket_service.parse_bracket_csv(
        "min_quantity,max_quantity,price,price_type\n"
        "5,8,9.00,regular\n"
        "50,,7.00,regular\n"
        "1,,9.50,wholesale\n"
    )

    result = bracket_service.import_brackets_from_csv(product_id=product.id, rows=rows, bracket_id=bracket.id)
    commit_session()

    assert result["bracket_id"] == bracket.id
    assert (result["imported"], result["failed"]) == (2, 1)
    (failure,) = [r for r in result["results"] if not r["success"]]
    assert failure["row"] == 2
    assert "(1-9)" in failure["errors"]["range"][0]

    items = sorted(
        (i.price_type, i.min_quantity, i.max_quantity, i.price_cents)
        for i in bracket_service.get_bracket(bracket.id).items
    )
    assert items == [
        ("regular", 1, 9, 1000),
        ("regular", 10, 49, 800),
        ("regular", 50, None, 700),
        ("wholesale", 1, None, 950),
    ]


def test_csv_import_with_nothing_valid_drops_bracket(db_session, product):
    rows = bracket_service.parse_bracket_csv("min_quantity,price,price_type\n0,1.00,regular\n")
    result = bracket_service.import_brackets_from_csv(product_id=product.id, rows=rows)
    commit_session()

    assert (result["bracket_id"], result["imported"], result["failed"]) == (None, 0, 1)
    assert "min_quantity" in result["results"][0]["errors"]
    assert db_session.query(PriceBracket).count() == 0


def test_csv_header_must_have_required_columns(db_session):
    with pytest.raises(ValidationError) as excinfo:
        bracket_service.parse_bracket_csv("min_quantity,price\n1,2.00\n")
    assert "price_type" in excinfo.value.errors["file"][0]
