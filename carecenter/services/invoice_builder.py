# carecenter/services/invoice_builder.py
"""
Per-source adapters that turn raw billing records into Invoice objects.

Three record shapes carry billing data:

* ``Patient.billing`` / ``Patient.reassigned_billing`` - lists of loosely shaped entries
* ``TestRequest.billing`` - one lab billing document per order
* ``SlitTherapyRequest.billing`` - one SLIT billing document per order

Each fold below returns its own ``{key: Invoice}`` map; ``merge_first_wins``
combines them so the precedence between passes is explicit.
"""
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .. import models
from ..schemas import Invoice
from ..timeutils import DateWindow, parse_dt, day_key

SUPERCONSULTANT_PREFIX = "superconsultant_"

# Higher rank wins when merging the statuses of bills folded into one invoice
STATUS_RANK = {
    "paid": 0,
    "partially_paid": 1,
    "pending": 2,
    "cancelled": 3,
    "refunded": 4,
}

SLIT_BILL_TYPES = ("slit_therapy", "Slit Therapy")


@dataclass(frozen=True)
class BillFilter:
    bill_type: Optional[str] = None
    status: Optional[str] = None
    consultation_type: Optional[str] = None

    def allows_status(self, status: Optional[str]) -> bool:
        return not self.status or status == self.status


def num(value: Any) -> float:
    """Lenient numeric read; missing/garbage values count as 0."""
    if value is None or value == "":
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def coerce_user_id(value: Any) -> Optional[int]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, dict):
        value = value.get("id")
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def merge_status(current: str, incoming: Optional[str]) -> str:
    """Worst-case merge; statuses outside the ranking leave the current one in place."""
    if incoming not in STATUS_RANK:
        return current
    return incoming if STATUS_RANK[incoming] > STATUS_RANK[current] else current


def merge_first_wins(*maps: Dict[Any, Invoice]) -> "OrderedDict[Any, Invoice]":
    merged: "OrderedDict[Any, Invoice]" = OrderedDict()
    for invoice_map in maps:
        for key, invoice in invoice_map.items():
            if key not in merged:
                merged[key] = invoice
    return merged


def _refund_total(refunds: Iterable[dict]) -> float:
    return sum(num(r.get("amount")) for r in refunds)


def _copy_entries(entries: Optional[Iterable[dict]]) -> List[dict]:
    # JSON columns are tracked as mutable; never hand the originals to callers
    return [dict(e) for e in (entries or []) if isinstance(e, dict)]


def _patient_fields(patient: models.Patient) -> dict:
    return {
        "patient_id": patient.id,
        "patient_name": patient.name,
        "patient_age": patient.age,
        "patient_gender": patient.gender,
        "patient_contact": patient.contact,
        "uh_id": patient.uh_id,
    }


def _doctor_name(user: Optional[models.User]) -> str:
    if user is None:
        return "N/A"
    return user.display_name or "N/A"


def _entry_date(entry: dict, fallback: Optional[datetime]) -> Optional[datetime]:
    return parse_dt(entry.get("created_at")) or fallback


def _in_window(entry: dict, window: DateWindow, fallback: Optional[datetime]) -> bool:
    return window.matches(_entry_date(entry, fallback), parse_dt(entry.get("refunded_at")))


def _explicit_creator(entry: dict) -> Optional[int]:
    for key in ("generated_by", "created_by", "user_id"):
        user_id = coerce_user_id(entry.get(key))
        if user_id is not None:
            return user_id
    return None


def is_superconsultant(consultation_type: Optional[str]) -> bool:
    return bool(consultation_type) and consultation_type.startswith(SUPERCONSULTANT_PREFIX)


# ---------------------------------------------------------------------------
# Consultation
# ---------------------------------------------------------------------------

def consultation_invoice(patient: models.Patient, date_key: str, bills: List[dict]) -> Invoice:
    """Fold every consultation entry a patient was billed on one calendar day into one invoice."""
    primary = bills[0]
    invoice_number = primary.get("invoice_number") or f"INV-{patient.uh_id}-{date_key}"
    consultation_type = primary.get("consultation_type") or "OP"
    superconsultant = is_superconsultant(primary.get("consultation_type"))
    primary_custom = primary.get("custom_data") or {}

    invoice = Invoice(
        id=primary.get("id"),
        source="consultation",
        bill_type="Superconsultant" if superconsultant else "Consultation",
        bill_no=primary.get("bill_no") or invoice_number,
        invoice_number=invoice_number,
        date=_entry_date(primary, patient.created_at),
        doctor=_doctor_name(patient.assigned_doctor),
        status="paid",
        consultation_type=consultation_type,
        tax=num(primary.get("tax")),
        payment_method=primary.get("payment_method"),
        custom_data=dict(primary_custom),
        notes=primary.get("notes"),
        generated_at=parse_dt(primary.get("created_at")),
        created_at=parse_dt(primary.get("created_at")),
        **_patient_fields(patient),
    )

    creator = None
    discount_percentage = 0.0
    discount_reason = ""
    for bill in bills:
        amount = num(bill.get("amount"))
        paid = num(bill.get("paid_amount"))
        invoice.services.append({
            "name": bill.get("description") or bill.get("type"),
            "quantity": 1,
            "charges": amount,
            "amount": amount,
            "paid_amount": paid,
            "balance": amount - paid,
            "status": bill.get("status"),
        })
        invoice.amount += amount
        invoice.paid_amount += paid

        custom = bill.get("custom_data") or {}
        invoice.discount_amount += num(bill.get("discount_amount") or bill.get("discount"))
        invoice.discount_amount += num(custom.get("discount_amount") or custom.get("discount"))
        if not discount_percentage:
            discount_percentage = num(bill.get("discount_percentage") or custom.get("discount_percentage"))
        if not discount_reason:
            discount_reason = (bill.get("discount_reason") or custom.get("discount_reason")
                               or custom.get("discount_notes") or "")

        previous = invoice.status
        invoice.status = merge_status(invoice.status, bill.get("status"))
        if bill.get("status") == "cancelled" and previous != "refunded":
            invoice.cancelled_at = parse_dt(bill.get("cancelled_at")) or invoice.cancelled_at
            invoice.cancelled_by = coerce_user_id(bill.get("cancelled_by")) or invoice.cancelled_by
            invoice.cancellation_reason = bill.get("cancellation_reason") or invoice.cancellation_reason

        invoice.payment_history.extend(_copy_entries(bill.get("payment_history")))
        refunds = _copy_entries(bill.get("refunds"))
        invoice.refunds.extend(refunds)
        invoice.refunded_amount += _refund_total(refunds)
        if invoice.refunded_at is None and bill.get("refunded_at"):
            invoice.refunded_at = parse_dt(bill.get("refunded_at"))

        if creator is None:
            creator = _explicit_creator(bill)

    invoice.balance = invoice.amount - invoice.paid_amount
    invoice.generated_by = creator
    invoice.discount_percentage = discount_percentage or None
    invoice.discount = discount_percentage
    invoice.discount_reason = discount_reason
    invoice.custom_data.update({
        "discount_amount": invoice.discount_amount,
        "discount_percentage": invoice.discount_percentage,
        "discount_reason": discount_reason,
    })
    return invoice


def _consultation_matches(invoice: Invoice, filters: BillFilter) -> bool:
    superconsultant = invoice.bill_type == "Superconsultant"
    type_ok = (
        not filters.bill_type
        or (filters.bill_type == "consultation" and not superconsultant)
        or (filters.bill_type == "superconsultant" and superconsultant)
    )
    consultation_type_ok = (
        not filters.consultation_type
        or invoice.consultation_type == filters.consultation_type
    )
    return type_ok and consultation_type_ok and filters.allows_status(invoice.status)


def fold_consultations(patients: Iterable[models.Patient], window: DateWindow,
                       filters: BillFilter) -> "OrderedDict[Tuple[int, str], Invoice]":
    """
    One invoice per (patient, UTC calendar day).

    Entries are kept when their creation OR refund date is inside the window,
    and grouped on the creation day. Filtered-out invoices never enter the map.
    """
    folded: "OrderedDict[Tuple[int, str], Invoice]" = OrderedDict()
    for patient in patients:
        by_day: "OrderedDict[str, List[dict]]" = OrderedDict()
        for entry in patient.billing or []:
            if not isinstance(entry, dict) or not _in_window(entry, window, patient.created_at):
                continue
            entry_date = _entry_date(entry, patient.created_at)
            if entry_date is None:
                continue
            by_day.setdefault(day_key(entry_date), []).append(entry)

        for date_key, bills in by_day.items():
            invoice = consultation_invoice(patient, date_key, bills)
            if _consultation_matches(invoice, filters):
                folded[(patient.id, date_key)] = invoice
    return folded


# ---------------------------------------------------------------------------
# Reassignment
# ---------------------------------------------------------------------------

def reassignment_invoice(patient: models.Patient, bill: dict) -> Invoice:
    custom = dict(bill.get("custom_data") or {})
    invoice_number = bill.get("invoice_number") or f"REASSIGN-{bill.get('id')}"
    discount_amount = num(bill.get("discount_amount") or custom.get("discount_amount") or custom.get("discount"))
    discount_percentage = num(bill.get("discount_percentage") or custom.get("discount_percentage"))
    discount_reason = (bill.get("discount_reason") or custom.get("discount_reason")
                       or custom.get("discount_notes") or "")
    amount = num(bill.get("amount"))
    paid = num(bill.get("paid_amount"))
    refunds = _copy_entries(bill.get("refunds"))
    custom.update({
        "discount_amount": discount_amount,
        "discount_percentage": discount_percentage or None,
        "discount_reason": discount_reason,
    })
    return Invoice(
        id=bill.get("id"),
        source="reassignment",
        bill_type="Reassignment",
        bill_no=bill.get("bill_no") or bill.get("invoice_number"),
        invoice_number=invoice_number,
        date=_entry_date(bill, patient.created_at),
        doctor=_doctor_name(patient.current_doctor),
        status=bill.get("status") or "pending",
        services=_copy_entries(custom.get("services")),
        amount=amount,
        paid_amount=paid,
        balance=amount - paid,
        discount=discount_percentage,
        discount_amount=discount_amount,
        discount_percentage=discount_percentage or None,
        discount_reason=discount_reason,
        tax=num(custom.get("tax_percentage")),
        payment_method=bill.get("payment_method"),
        payment_history=_copy_entries(bill.get("payment_history")),
        refunds=refunds,
        refunded_amount=_refund_total(refunds),
        refunded_at=parse_dt(bill.get("refunded_at")),
        custom_data=custom,
        notes=bill.get("notes"),
        generated_by=_explicit_creator(bill),
        generated_at=parse_dt(bill.get("created_at")),
        created_at=parse_dt(bill.get("created_at")),
        cancelled_at=parse_dt(bill.get("cancelled_at")),
        cancelled_by=coerce_user_id(bill.get("cancelled_by")),
        cancellation_reason=bill.get("cancellation_reason"),
        **_patient_fields(patient),
    )


def fold_reassignments(patients: Iterable[models.Patient], window: DateWindow, filters: BillFilter,
                       taken: Iterable[str] = ()) -> "OrderedDict[str, Invoice]":
    """
    One invoice per reassignment entry, keyed by invoice number.

    A key already present (in ``taken`` or earlier in this pass) is dropped, not merged.
    Consultation folding merges instead; the two policies intentionally differ.
    """
    seen = set(taken)
    folded: "OrderedDict[str, Invoice]" = OrderedDict()
    if filters.bill_type and filters.bill_type != "reassignment":
        return folded
    for patient in patients:
        for entry in patient.reassigned_billing or []:
            if not isinstance(entry, dict) or not _in_window(entry, window, patient.created_at):
                continue
            invoice = reassignment_invoice(patient, entry)
            if invoice.invoice_number in seen:
                continue
            seen.add(invoice.invoice_number)
            if filters.allows_status(invoice.status):
                folded[invoice.invoice_number] = invoice
    return folded


# ---------------------------------------------------------------------------
# Lab
# ---------------------------------------------------------------------------

def _service_lines(items: Optional[Iterable[dict]], default_name: str) -> List[dict]:
    lines = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        quantity = num(item.get("quantity")) or 1
        unit_price = num(item.get("unit_price"))
        total = num(item.get("total"))
        lines.append({
            "name": item.get("name") or default_name,
            "quantity": quantity,
            "charges": unit_price or total,
            "amount": total or unit_price * quantity,
            "unit_price": unit_price,
        })
    return lines


def _services_total(lines: Iterable[dict]) -> float:
    return sum(line["amount"] or line["charges"] * line["quantity"] for line in lines)


def lab_discount(billing: dict, services_total: float) -> Tuple[float, Optional[float], float]:
    """
    Returns (discount_amount, discount_percentage, subtotal).

    Older lab records carry no discount fields; for those the discount is
    inferred as the gap between the item lines and the final billed amount,
    relative to the stored subtotal when there is one.
    """
    final_amount = num(billing.get("amount"))
    subtotal = num(billing.get("sub_total")) or services_total or final_amount
    discount_amount = num(billing.get("discounts"))
    if discount_amount > 0:
        percentage = discount_amount / subtotal * 100 if subtotal > 0 else 0
    elif services_total > final_amount > 0:
        discount_amount = services_total - final_amount
        percentage = discount_amount / (num(billing.get("sub_total")) or final_amount) * 100
    else:
        discount_amount, percentage = 0.0, 0
    return discount_amount, (round(percentage, 2) if percentage > 0 else None), subtotal


def lab_invoice(request: models.TestRequest) -> Invoice:
    billing = request.billing or {}
    services = _service_lines(billing.get("items"), "Test")
    services_total = _services_total(services)
    discount_amount, discount_percentage, subtotal = lab_discount(billing, services_total)
    amount = num(billing.get("amount"))
    paid = num(billing.get("paid_amount"))
    reason = billing.get("discount_reason") or billing.get("notes") or ""
    patient = request.patient
    return Invoice(
        id=request.id,
        source="lab",
        patient_id=request.patient_id,
        patient_name=(patient.name if patient else None) or request.patient_name or "Unknown Patient",
        uh_id=(patient.uh_id if patient else None) or "N/A",
        bill_type="Lab/Test",
        invoice_number=billing.get("invoice_number") or f"LAB-{request.id}",
        description=billing.get("description") or "Laboratory Test",
        date=request.created_at,
        doctor=(request.doctor.display_name if request.doctor else None) or request.doctor_name or "N/A",
        status=billing.get("status") or "pending",
        services=services,
        amount=amount,
        paid_amount=paid,
        balance=amount - paid,
        discount=discount_amount,
        discount_amount=discount_amount,
        discount_percentage=discount_percentage,
        discount_reason=reason,
        payment_method=billing.get("payment_method"),
        payment_history=_copy_entries(billing.get("payment_history")),
        refunds=_copy_entries(billing.get("refunds")),
        refunded_amount=num(billing.get("refund_amount")),
        refunded_at=parse_dt(billing.get("refunded_at")),
        refunded_by=coerce_user_id(billing.get("refunded_by")),
        refund_method=billing.get("refund_method"),
        refund_reason=billing.get("refund_reason"),
        refund_notes=billing.get("refund_notes"),
        custom_data={
            "sub_total": subtotal,
            "grand_total": amount,
            "discount_amount": discount_amount,
            "discount_percentage": discount_percentage,
            "discount_reason": reason,
            "services_total": services_total,
            "notes": billing.get("notes") or "",
        },
        generated_by=coerce_user_id(billing.get("generated_by")),
        created_at=request.created_at,
    )


def build_lab_invoices(requests: Iterable[models.TestRequest], filters: BillFilter) -> "OrderedDict[str, Invoice]":
    invoices: "OrderedDict[str, Invoice]" = OrderedDict()
    if filters.bill_type and filters.bill_type != "lab":
        return invoices
    for request in requests:
        if not request.billing:
            continue
        invoice = lab_invoice(request)
        if not filters.allows_status(invoice.status):
            continue
        invoices[f"lab:{request.id}"] = invoice
    return invoices


# ---------------------------------------------------------------------------
# SLIT therapy
# ---------------------------------------------------------------------------

def slit_invoice(request: models.SlitTherapyRequest) -> Invoice:
    billing = request.billing or {}
    amount = num(billing.get("amount"))
    paid = num(billing.get("paid_amount"))
    generated_at = parse_dt(billing.get("generated_at"))
    patient = request.patient
    return Invoice(
        id=request.id,
        source="slit_therapy",
        patient_id=request.patient_id,
        patient_name=(patient.name if patient else None) or request.patient_name or "Unknown Patient",
        uh_id=(patient.uh_id if patient else None) or "N/A",
        bill_type="Slit Therapy",
        invoice_number=billing.get("invoice_number") or f"SLIT-{request.id}",
        description=f"SLIT Therapy - {request.product_name or request.product_code or 'Product'}",
        date=generated_at or request.created_at,
        status=billing.get("status") or "generated",
        services=_service_lines(billing.get("items"), "SLIT Therapy"),
        amount=amount,
        paid_amount=paid,
        balance=amount - paid,
        payment_method=billing.get("payment_method"),
        refunds=_copy_entries(billing.get("refunds")),
        refunded_amount=num(billing.get("refund_amount")),
        refund_method=billing.get("refund_method"),
        refunded_at=parse_dt(billing.get("refunded_at")),
        cancelled_at=parse_dt(billing.get("cancelled_at")),
        cancellation_reason=billing.get("cancellation_reason"),
        paid_at=parse_dt(billing.get("paid_at")),
        paid_by=coerce_user_id(billing.get("paid_by")),
        custom_data={
            "product_code": request.product_code,
            "product_name": request.product_name,
            "quantity": request.quantity,
            "courier_required": request.courier_required,
            "courier_fee": request.courier_fee,
            "delivery_method": request.delivery_method,
            "transaction_id": billing.get("transaction_id"),
            "notes": billing.get("payment_notes") or request.notes or "",
        },
        generated_by=coerce_user_id(billing.get("generated_by")) or coerce_user_id(request.created_by),
        generated_at=generated_at,
        created_at=generated_at or request.created_at,
    )


def build_slit_invoices(requests: Iterable[models.SlitTherapyRequest], filters: BillFilter) -> "OrderedDict[str, Invoice]":
    invoices: "OrderedDict[str, Invoice]" = OrderedDict()
    if filters.bill_type and filters.bill_type not in SLIT_BILL_TYPES:
        return invoices
    for request in requests:
        if not request.billing:
            continue
        invoice = slit_invoice(request)
        if not filters.allows_status(invoice.status):
            continue
        invoices[f"slit:{request.id}"] = invoice
    return invoices
