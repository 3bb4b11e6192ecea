# carecenter/services/attribution.py
"""
Best-effort "who generated this charge" resolution.

Each resolver is a pure function ``(invoice, context) -> Optional[user_id]``.
They are tried in order and the first hit wins; an invoice nobody can be
found for is displayed as "N/A" rather than treated as an error.
"""
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, Iterable, List, Optional

from .. import models
from ..schemas import Invoice
from .invoice_builder import coerce_user_id

PROXIMITY_WINDOW = timedelta(hours=24)


@dataclass
class AttributionContext:
    # invoice number -> creator id (created_by, else processed_by; first log wins)
    invoice_creators: Dict[str, int] = field(default_factory=dict)
    # transaction id -> creator id
    transaction_creators: Dict[str, int] = field(default_factory=dict)
    # patient id -> that patient's payment logs, newest first
    patient_logs: Dict[int, List[models.PaymentLog]] = field(default_factory=dict)


Resolver = Callable[[Invoice, AttributionContext], Optional[int]]


def log_creator(log: models.PaymentLog) -> Optional[int]:
    return coerce_user_id(log.created_by) or coerce_user_id(log.processed_by)


def index_creators_by_invoice(logs: Iterable[models.PaymentLog], into: Optional[Dict[str, int]] = None) -> Dict[str, int]:
    index = into if into is not None else {}
    for log in logs:
        if not log.invoice_number or log.invoice_number in index:
            continue
        creator = log_creator(log)
        if creator is not None:
            index[log.invoice_number] = creator
    return index


def index_creators_by_transaction(logs: Iterable[models.PaymentLog]) -> Dict[str, int]:
    index: Dict[str, int] = {}
    for log in logs:
        if not log.transaction_id or log.transaction_id in index:
            continue
        creator = log_creator(log)
        if creator is not None:
            index[log.transaction_id] = creator
    return index


def invoice_transaction_id(invoice: Invoice) -> Optional[str]:
    return invoice.custom_data.get("transaction_id") or None


# --- resolvers, highest priority first ---

def from_explicit_fields(invoice: Invoice, ctx: AttributionContext) -> Optional[int]:
    return invoice.generated_by


def from_payment_history(invoice: Invoice, ctx: AttributionContext) -> Optional[int]:
    for payment in invoice.payment_history:
        user_id = coerce_user_id(payment.get("processed_by")) or coerce_user_id(payment.get("created_by"))
        if user_id is not None:
            return user_id
    return None


def from_invoice_logs(invoice: Invoice, ctx: AttributionContext) -> Optional[int]:
    for number in (invoice.invoice_number, invoice.bill_no):
        if number and number in ctx.invoice_creators:
            return ctx.invoice_creators[number]
    return None


def from_transaction_logs(invoice: Invoice, ctx: AttributionContext) -> Optional[int]:
    transaction_id = invoice_transaction_id(invoice)
    if transaction_id:
        return ctx.transaction_creators.get(transaction_id)
    return None


def from_patient_logs(invoice: Invoice, ctx: AttributionContext) -> Optional[int]:
    """
    Last resort: any payment by the same patient with the same invoice number,
    or made within 24 hours of the invoice date. May pick an unrelated same-day payment.
    """
    if invoice.patient_id is None:
        return None
    invoice_date = invoice.date or invoice.created_at
    for log in ctx.patient_logs.get(invoice.patient_id, []):
        same_invoice = log.invoice_number is not None and log.invoice_number in (invoice.invoice_number, invoice.bill_no)
        near = (
            invoice_date is not None and log.created_at is not None
            and abs(invoice_date - log.created_at) < PROXIMITY_WINDOW
        )
        if same_invoice or near:
            creator = log_creator(log)
            if creator is not None:
                return creator
    return None


DEFAULT_RESOLVERS: List[Resolver] = [
    from_explicit_fields,
    from_payment_history,
    from_invoice_logs,
    from_transaction_logs,
    from_patient_logs,
]


def resolve_creator(invoice: Invoice, ctx: AttributionContext,
                    resolvers: Iterable[Resolver] = DEFAULT_RESOLVERS) -> Optional[int]:
    for resolver in resolvers:
        user_id = resolver(invoice, ctx)
        if user_id is not None:
            return user_id
    return None
