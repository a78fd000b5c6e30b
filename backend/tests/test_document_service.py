import unittest
from datetime import datetime

from flask import Flask

from wholesale_erp.extensions import db
from wholesale_erp.models import DocumentSequence
from wholesale_erp.services import document_service
from wholesale_erp.services.document_service import DocumentSequenceError


class DocumentNumberTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.app = Flask(__name__)
        cls.app.config.update(
            SQLALCHEMY_DATABASE_URI="sqlite:///:memory:",
            SQLALCHEMY_TRACK_MODIFICATIONS=False,
            LOCK_RETRY_BACKOFF=0,
            TESTING=True,
        )
        db.init_app(cls.app)
        cls.ctx = cls.app.app_context()
        cls.ctx.push()
        from wholesale_erp import models  # noqa: F401
        db.create_all()

    @classmethod
    def tearDownClass(cls):
        db.session.remove()
        db.drop_all()
        cls.ctx.pop()

    def setUp(self):
        db.session.query(DocumentSequence).delete()
        db.session.commit()

    def _next(self, document_type, at):
        number = document_service.next_document_number(document_type=document_type, at=at)
        db.session.commit()
        return number

    def test_purchase_orders_number_per_month(self):
        march = datetime(2024, 3, 5, 10, 0)
        self.assertEqual(self._next("PURCHASE_ORDER", march), "PO2024030001")
        self.assertEqual(self._next("PURCHASE_ORDER", datetime(2024, 3, 28)), "PO2024030002")
        self.assertEqual(self._next("PURCHASE_ORDER", datetime(2024, 4, 1)), "PO2024040001")

    def test_daily_documents_restart_each_day(self):
        self.assertEqual(self._next("INVOICE", datetime(2024, 3, 5, 9)), "INV202403050001")
        self.assertEqual(self._next("INVOICE", datetime(2024, 3, 5, 17)), "INV202403050002")
        self.assertEqual(self._next("INVOICE", datetime(2024, 3, 6)), "INV202403060001")
        self.assertEqual(self._next("CREDIT_MEMO", datetime(2024, 3, 6)), "CM202403060001")

    def test_receiving_batches_have_no_prefix(self):
        self.assertEqual(self._next("RECEIVING_BATCH", datetime(2024, 3, 5)), "202403050001")

    def test_sequences_are_independent_per_type(self):
        day = datetime(2024, 3, 5)
        self._next("TRANSFER", day)
        self._next("TRANSFER", day)
        self.assertEqual(self._next("INVENTORY_COUNT", day), "CNT202403050001")
        self.assertEqual(db.session.query(DocumentSequence).count(), 2)

    def test_unknown_type_is_rejected(self):
        with self.assertRaises(DocumentSequenceError):
            document_service.next_document_number(document_type="QUOTE")


if __name__ == "__main__":
    unittest.main()
