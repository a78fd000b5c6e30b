# Overview: Allocation of human-readable document numbers (PO, receiving batch, transfer, invoice, ...).

from __future__ import annotations

from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from ..time_utils import utcnow
from ..validation import ConflictError
from .concurrency import run_with_retry


# Number formats: prefix + period + zero-padded daily/monthly sequence
PERIOD_DAILY = "%Y%m%d"
PERIOD_MONTHLY = "%Y%m"

DOCUMENT_FORMATS = {
    "PURCHASE_ORDER": ("PO", PERIOD_MONTHLY),
    "RECEIVING_BATCH": ("", PERIOD_DAILY),
    "TRANSFER": ("TR", PERIOD_DAILY),
    "INVOICE": ("INV", PERIOD_DAILY),
    "CREDIT_MEMO": ("CM", PERIOD_DAILY),
    "INVENTORY_COUNT": ("CNT", PERIOD_DAILY),
    "PETTY_CASH_FUND": ("PCF", PERIOD_MONTHLY),
}


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def _allocate(document_type: str, period_key: str) -> int:
    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.document_type == document_type,
            DocumentSequence.period_key == period_key,
        )
        .values(next_number=DocumentSequence.next_number + 1)
    )

    result = db.session.execute(stmt)
    if result.rowcount:
        current = (
            db.session.query(DocumentSequence.next_number)
            .filter_by(document_type=document_type, period_key=period_key)
            .scalar()
        )
        return current - 1

    seq = DocumentSequence(document_type=document_type, period_key=period_key, next_number=2)
    db.session.add(seq)
    try:
        db.session.flush()
    except IntegrityError as exc:
        # Another writer opened the same period first
        raise ConflictError("Document number allocation collided, please retry", retryable=True) from exc
    return 1


def next_document_number(
    *,
    document_type: str,
    at: datetime | None = None,
    pad: int = 4,
) -> str:
    """
    Atomically allocate the next document number for a type and period.

    Formats: PO{YYYY}{MM}{seq4}, {YYYYMMDD}{seq4} for receiving batches,
    TR/INV/CM{YYYYMMDD}{seq4}, PCF{YYYY}{MM}{seq4}.

    The UPDATE ... SET next_number = next_number + 1 takes a row lock, so two
    concurrent allocations for the same period never receive the same number.
    """
    def _op() -> str:
        if document_type not in DOCUMENT_FORMATS:
            raise DocumentSequenceError(f"Unknown document type: {document_type}")

        prefix, period_format = DOCUMENT_FORMATS[document_type]
        period_key = (at or utcnow()).strftime(period_format)
        number = _allocate(document_type, period_key)
        return f"{prefix}{period_key}{number:0{pad}d}"

    return run_with_retry(_op)
