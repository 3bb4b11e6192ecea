# carecenter/services/billing_service.py
"""
Billing reconciliation: unify consultation, reassignment, lab and SLIT billing
plus the payment-log ledger into one paginated invoice feed.
"""
import math
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import crud, models
from ..crud import CRUDError
from ..exceptions import SourceFetchError, ValidationError
from ..schemas import BillFilters, BillsResponse, FinancialSummary, Invoice, Pagination
from ..timeutils import DateWindow, parse_dt
from . import attribution
from .invoice_builder import (
    BillFilter,
    build_lab_invoices,
    build_slit_invoices,
    coerce_user_id,
    fold_consultations,
    fold_reassignments,
    merge_first_wins,
    num,
)

logger = structlog.get_logger(__name__)


def fetch_required(source: str, message: str, fetch: Callable, *args):
    """Run a source query whose failure aborts the whole request."""
    try:
        return fetch(*args)
    except (CRUDError, SQLAlchemyError) as e:
        logger.error("billing_source_fetch_failed", source=source, error=str(e))
        raise SourceFetchError(message, str(e)) from e


def fetch_optional(source: str, fetch: Callable, *args, default=None):
    """Run a query whose failure only degrades the response."""
    try:
        return fetch(*args)
    except (CRUDError, SQLAlchemyError) as e:
        logger.warning("billing_optional_fetch_failed", source=source, error=str(e))
        return [] if default is None else default


def parse_window(start_date: Optional[str], end_date: Optional[str]) -> DateWindow:
    try:
        return DateWindow.from_query(start_date, end_date)
    except ValueError as e:
        raise ValidationError(str(e), "INVALID_DATE_FORMAT")


# --- Refunds ---

def is_refund_log(log: models.PaymentLog) -> bool:
    refund = log.refund or {}
    return (log.status or "").lower() == "refunded" or num(refund.get("refunded_amount")) > 0


def build_refund_index(logs: Iterable[models.PaymentLog]) -> Dict[str, List[dict]]:
    """Refund entries keyed by invoice number, in ledger order (newest first)."""
    index: Dict[str, List[dict]] = {}
    for log in logs:
        if not log.invoice_number or not is_refund_log(log):
            continue
        refund = log.refund or {}
        method = refund.get("refund_method") or log.payment_method or "cash"
        index.setdefault(log.invoice_number, []).append({
            "amount": num(refund.get("refunded_amount")) or num(log.amount),
            "refunded_at": parse_dt(refund.get("refunded_at")) or log.updated_at or log.created_at,
            "refunded_by": coerce_user_id(refund.get("refunded_by")) or coerce_user_id(log.processed_by),
            "refund_method": method,
            "payment_method": method,
            "transaction_id": refund.get("external_refund_id") or log.transaction_id or "",
            "receipt_number": log.invoice_number,
            "source": "payment_log",
        })
    return index


def apply_refunds(invoice: Invoice, refunds: List[dict]) -> None:
    """Append ledger refunds; top-level refund fields are only filled when still unset."""
    if not refunds:
        return
    invoice.refunds.extend(dict(r) for r in refunds)
    first = refunds[0]
    if not invoice.refunded_amount:
        invoice.refunded_amount = first["amount"]
    if invoice.refunded_at is None:
        invoice.refunded_at = first["refunded_at"]
    if invoice.refunded_by is None:
        invoice.refunded_by = first["refunded_by"]
    if not invoice.refund_method:
        invoice.refund_method = first["refund_method"]


# --- Transactions ---

def transaction_row(log: models.PaymentLog) -> Dict[str, Any]:
    refund = None
    if log.refund:
        refund = {
            "refunded_amount": num(log.refund.get("refunded_amount")),
            "refunded_at": parse_dt(log.refund.get("refunded_at")),
            "refunded_by": coerce_user_id(log.refund.get("refunded_by")),
            "refunded_by_name": None,
            "refund_method": log.refund.get("refund_method") or log.payment_method,
            "external_refund_id": log.refund.get("external_refund_id"),
            "refund_reason": log.refund.get("refund_reason"),
        }
    patient = log.patient
    return {
        "id": log.id,
        "patient_id": log.patient_id,
        "patient_name": patient.name if patient else "N/A",
        "uh_id": (patient.uh_id if patient else None) or "N/A",
        "transaction_type": log.payment_type or "payment",
        "description": log.description or "Payment",
        "amount": num(log.amount),
        "payment_method": log.payment_method,
        "date": log.created_at,
        "invoice_number": log.invoice_number,
        "transaction_id": log.transaction_id,
        "status": log.status or "completed",
        "refund": refund,
        "refunded_by": refund["refunded_by"] if refund else None,
        "processed_by": log.processed_by,
        "processed_by_name": "N/A",
        "doctor": "N/A",
    }


# --- Name resolution ---

def collect_user_ids(invoices: Iterable[Invoice], transactions: Iterable[dict]) -> set:
    ids = set()

    def add(value):
        user_id = coerce_user_id(value)
        if user_id is not None:
            ids.add(user_id)

    for inv in invoices:
        add(inv.generated_by)
        add(inv.cancelled_by)
        add(inv.refunded_by)
        for refund in inv.refunds:
            add(refund.get("refunded_by"))
            add(refund.get("approved_by"))
        for payment in inv.payment_history:
            add(payment.get("processed_by"))
            add(payment.get("created_by"))
    for tx in transactions:
        add(tx["processed_by"])
        add(tx["refunded_by"])
    return ids


def apply_names(invoices: Iterable[Invoice], transactions: Iterable[dict], names: Dict[int, str]) -> None:
    def name_of(value) -> str:
        user_id = coerce_user_id(value)
        return names.get(user_id, "N/A") if user_id is not None else "N/A"

    for inv in invoices:
        inv.generated_by_name = name_of(inv.generated_by)
        inv.created_by_name = inv.generated_by_name
        if inv.cancelled_by is not None:
            inv.cancelled_by_name = name_of(inv.cancelled_by)
        if inv.refunded_by is not None:
            inv.refunded_by_name = name_of(inv.refunded_by)
        for refund in inv.refunds:
            if refund.get("refunded_by") is not None:
                refund["refunded_by_name"] = name_of(refund["refunded_by"])
                refund["processed_by_name"] = refund["refunded_by_name"]
            if refund.get("approved_by") is not None:
                refund["approved_by_name"] = name_of(refund["approved_by"])
        for payment in inv.payment_history:
            if payment.get("processed_by") is not None:
                payment["processed_by_name"] = name_of(payment["processed_by"])
            if payment.get("created_by") is not None:
                payment["created_by_name"] = name_of(payment["created_by"])
    for tx in transactions:
        if tx["processed_by"] is not None:
            tx["processed_by_name"] = name_of(tx["processed_by"])
            tx["doctor"] = tx["processed_by_name"]
        if tx["refund"] is not None and tx["refund"]["refunded_by"] is not None:
            tx["refund"]["refunded_by_name"] = name_of(tx["refund"]["refunded_by"])


# --- Summary ---

def summarize(invoices: List[Invoice], total_transactions: int) -> FinancialSummary:
    active = [inv for inv in invoices if inv.is_active]
    cancelled = [inv for inv in invoices if inv.status == "cancelled"]
    refunded = [inv for inv in invoices if inv.status == "refunded"]
    return FinancialSummary(
        total_amount=sum(inv.amount for inv in active),
        total_paid=sum(inv.paid_amount for inv in active),
        total_balance=sum(inv.balance for inv in active),
        total_transactions=total_transactions,
        cancelled_count=len(cancelled),
        cancelled_amount=sum(inv.amount for inv in cancelled),
        refunded_count=len(refunded),
        refunded_amount=sum(inv.paid_amount for inv in refunded),
        active_invoices_count=len(active),
    )


def _sort_key(invoice: Invoice) -> datetime:
    return invoice.date or invoice.created_at or datetime.min


# --- Attribution ---

def attribute_creators(db: Session, center_id: Optional[int], invoices: List[Invoice],
                       window_logs: List[models.PaymentLog]) -> None:
    ctx = attribution.AttributionContext()
    attribution.index_creators_by_invoice(window_logs, into=ctx.invoice_creators)

    numbers = set()
    for inv in invoices:
        numbers.add(inv.invoice_number)
        if inv.bill_no:
            numbers.add(inv.bill_no)
    # invoices may have been paid outside the date window
    extra_logs = fetch_optional("payment_logs_by_invoice", crud.get_payment_logs_by_invoice_numbers,
                                db, center_id, numbers)
    attribution.index_creators_by_invoice(extra_logs, into=ctx.invoice_creators)

    transaction_ids = {attribution.invoice_transaction_id(inv) for inv in invoices} - {None}
    if transaction_ids:
        tx_logs = fetch_optional("payment_logs_by_transaction", crud.get_payment_logs_by_transaction_ids,
                                 db, center_id, transaction_ids)
        ctx.transaction_creators = attribution.index_creators_by_transaction(tx_logs)

    unresolved = []
    for inv in invoices:
        inv.generated_by = attribution.resolve_creator(inv, ctx)
        if inv.generated_by is None:
            unresolved.append(inv)

    patient_ids = {inv.patient_id for inv in unresolved if inv.patient_id is not None}
    if not patient_ids:
        return
    fallback_logs = fetch_optional("payment_logs_by_patient", crud.get_payment_logs_by_patient_ids,
                                   db, center_id, patient_ids)
    for log in fallback_logs:
        ctx.patient_logs.setdefault(log.patient_id, []).append(log)
    for inv in unresolved:
        inv.generated_by = attribution.from_patient_logs(inv, ctx)


# --- Entry point ---

def get_all_bills_and_transactions(db: Session, center_id: Optional[int], filters: BillFilters) -> BillsResponse:
    """
    Build the unified invoice feed for one center (or every center when ``center_id`` is None).

    Patient, test-request and payment-log fetch failures abort the request.
    A SLIT fetch failure is logged and the feed is returned without SLIT bills.
    """
    window = parse_window(filters.start_date, filters.end_date)
    bill_filter = BillFilter(filters.bill_type, filters.status, filters.consultation_type)
    log = logger.bind(center_id=center_id, page=filters.page, limit=filters.limit)

    patients = fetch_required("patients", "Error fetching patient data",
                              crud.get_patients_for_billing, db, center_id)
    consultations = fold_consultations(patients, window, bill_filter)
    reassignments = fold_reassignments(
        patients, window, bill_filter,
        taken={inv.invoice_number for inv in consultations.values()},
    )

    test_requests = fetch_required("test_requests", "Error fetching test request data",
                                   crud.get_test_requests_for_billing, db, center_id, window)
    lab = build_lab_invoices(test_requests, bill_filter)

    window_logs = fetch_required("payment_logs", "Error fetching payment log data",
                                 crud.get_payment_logs, db, center_id, window)
    transactions = [transaction_row(entry) for entry in window_logs]

    slit_requests = fetch_optional("slit_therapy_requests", crud.get_slit_requests_for_billing,
                                   db, center_id, window)
    slit = build_slit_invoices(slit_requests, bill_filter)

    invoices = list(merge_first_wins(consultations, reassignments, lab, slit).values())

    refund_index = build_refund_index(window_logs)
    for inv in invoices:
        apply_refunds(inv, refund_index.get(inv.invoice_number) or refund_index.get(inv.bill_no or "", []))

    attribute_creators(db, center_id, invoices, window_logs)

    user_ids = collect_user_ids(invoices, transactions)
    names = fetch_optional("users", crud.get_user_names, db, user_ids, default={})
    apply_names(invoices, transactions, names)

    invoices.sort(key=_sort_key, reverse=True)
    limit = filters.limit
    offset = (filters.page - 1) * limit
    total = len(invoices)

    log.info("bills_assembled", invoices=total, transactions=len(transactions),
             consultation=len(consultations), reassignment=len(reassignments),
             lab=len(lab), slit=len(slit))

    return BillsResponse(
        bills=invoices[offset:offset + limit],
        transactions=transactions[:limit],
        pagination=Pagination(
            current_page=filters.page,
            total_pages=math.ceil(total / limit),
            total_records=total,
            limit=limit,
        ),
        summary=summarize(invoices, len(transactions)),
    )
