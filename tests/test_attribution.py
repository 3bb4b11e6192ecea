# tests/test_attribution.py
from datetime import datetime, timedelta

from carecenter import models
from carecenter.schemas import Invoice
from carecenter.services import attribution
from carecenter.services.attribution import AttributionContext, resolve_creator

INVOICE_DATE = datetime(2026, 3, 1, 10, 0)


def make_invoice(**overrides):
    fields = {
        "source": "consultation",
        "bill_type": "Consultation",
        "invoice_number": "INV-1",
        "patient_id": 3,
        "date": INVOICE_DATE,
    }
    fields.update(overrides)
    return Invoice(**fields)


def make_log(**overrides):
    fields = {"patient_id": 3, "amount": 100, "created_at": INVOICE_DATE}
    fields.update(overrides)
    return models.PaymentLog(**fields)


def test_explicit_creator_beats_everything_else():
    invoice = make_invoice(generated_by=1, payment_history=[{"processed_by": 2}])
    ctx = AttributionContext(invoice_creators={"INV-1": 3})
    assert resolve_creator(invoice, ctx) == 1


def test_payment_history_beats_logs():
    invoice = make_invoice(payment_history=[{"amount": 50}, {"created_by": "2"}])
    ctx = AttributionContext(invoice_creators={"INV-1": 3})
    assert resolve_creator(invoice, ctx) == 2


def test_invoice_logs_match_on_bill_number_too():
    invoice = make_invoice(invoice_number="INV-NEW", bill_no="BILL-9")
    ctx = AttributionContext(invoice_creators={"BILL-9": 4})
    assert resolve_creator(invoice, ctx) == 4


def test_transaction_logs():
    invoice = make_invoice(invoice_number="SLIT-2", custom_data={"transaction_id": "TX-9"})
    ctx = AttributionContext(transaction_creators={"TX-9": 5})
    assert resolve_creator(invoice, ctx) == 5


def test_index_prefers_created_by_and_keeps_first_log():
    logs = [
        make_log(invoice_number="INV-1", created_by=None, processed_by=8),
        make_log(invoice_number="INV-1", created_by=9),
        make_log(invoice_number=None, created_by=10),
    ]
    assert attribution.index_creators_by_invoice(logs) == {"INV-1": 8}


class TestPatientProximity:
    def test_payment_within_a_day_is_attributed(self):
        ctx = AttributionContext(patient_logs={3: [make_log(created_at=INVOICE_DATE + timedelta(hours=10), created_by=6)]})
        assert resolve_creator(make_invoice(), ctx) == 6

    def test_payment_more_than_a_day_away_is_ignored(self):
        ctx = AttributionContext(patient_logs={3: [make_log(created_at=INVOICE_DATE - timedelta(hours=30), created_by=6)]})
        assert resolve_creator(make_invoice(), ctx) is None

    def test_same_invoice_number_matches_regardless_of_distance(self):
        log = make_log(created_at=INVOICE_DATE + timedelta(days=20), invoice_number="INV-1", processed_by=11)
        ctx = AttributionContext(patient_logs={3: [log]})
        assert resolve_creator(make_invoice(), ctx) == 11

    def test_other_patients_logs_are_not_considered(self):
        ctx = AttributionContext(patient_logs={4: [make_log(patient_id=4, created_by=6)]})
        assert resolve_creator(make_invoice(), ctx) is None
