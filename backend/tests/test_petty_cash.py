import pytest

from wholesale_erp.services import petty_cash_service
from wholesale_erp.services.concurrency import commit_session
from wholesale_erp.validation import ConflictError, ValidationError


@pytest.fixture
def fund(db_session):
    fund = petty_cash_service.create_fund(amount_cents=10000, description="Front office float", created_by=1)
    commit_session()
    return fund


@pytest.fixture
def approved_fund(fund):
    petty_cash_service.approve_fund(fund_id=fund.id, approved_by=2)
    commit_session()
    return fund


def _issue(fund, amount, purpose="courier"):
    txn = petty_cash_service.issue_cash(fund_id=fund.id, amount_cents=amount, purpose=purpose, employee_id=11)
    commit_session()
    return txn


def test_pending_fund_has_no_balance(db_session, fund):
    assert fund.status == "pending"
    assert fund.reference_number.startswith("PCF")
    assert petty_cash_service.get_available_balance(fund.id) == 0

    with pytest.raises(ConflictError):
        petty_cash_service.issue_cash(fund_id=fund.id, amount_cents=100, purpose="stamps")


def test_fund_approval_is_one_way(db_session, approved_fund):
    assert approved_fund.status == "approved"
    assert approved_fund.approved_by == 2
    assert petty_cash_service.get_available_balance(approved_fund.id) == 10000

    with pytest.raises(ConflictError):
        petty_cash_service.approve_fund(fund_id=approved_fund.id)


def test_issue_cannot_overdraw(db_session, approved_fund):
    _issue(approved_fund, 3000)
    assert petty_cash_service.get_available_balance(approved_fund.id) == 7000

    with pytest.raises(ConflictError):
        petty_cash_service.issue_cash(fund_id=approved_fund.id, amount_cents=7001, purpose="fuel")
    with pytest.raises(ValidationError) as excinfo:
        petty_cash_service.issue_cash(fund_id=approved_fund.id, amount_cents=0, purpose="  ")
    assert set(excinfo.value.errors) == {"amount_cents", "purpose"}


def test_settle_returns_unspent_cash(db_session, approved_fund):
    txn = _issue(approved_fund, 3000)

    with pytest.raises(ValidationError):
        petty_cash_service.settle_transaction(
            transaction_id=txn.id, amount_spent_cents=2500, amount_returned_cents=400
        )

    petty_cash_service.settle_transaction(
        transaction_id=txn.id, amount_spent_cents=2500, amount_returned_cents=500, receipt_path="receipts/42.pdf"
    )
    commit_session()
    assert txn.status == "settled"
    assert petty_cash_service.get_available_balance(approved_fund.id) == 10000 - 2500

    petty_cash_service.approve_transaction(transaction_id=txn.id, approved_by=2)
    commit_session()
    assert txn.status == "approved"

    with pytest.raises(ConflictError):
        petty_cash_service.cancel_transaction(transaction_id=txn.id)
    with pytest.raises(ConflictError):
        petty_cash_service.settle_transaction(
            transaction_id=txn.id, amount_spent_cents=3000, amount_returned_cents=0
        )


def test_cancel_releases_issued_amount(db_session, approved_fund):
    txn = _issue(approved_fund, 4000)
    with pytest.raises(ConflictError):
        petty_cash_service.approve_transaction(transaction_id=txn.id)

    petty_cash_service.cancel_transaction(transaction_id=txn.id)
    commit_session()

    assert txn.status == "cancelled"
    assert petty_cash_service.get_available_balance(approved_fund.id) == 10000
    assert [t.id for t in petty_cash_service.list_transactions(fund_id=approved_fund.id, status="cancelled")] == [txn.id]
