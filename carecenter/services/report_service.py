# carecenter/services/report_service.py
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from .. import crud
from ..exceptions import ValidationError
from ..schemas import FinancialReport, RevenueBucket
from ..timeutils import DateWindow, parse_dt, start_of_day, utcnow
from .billing_service import fetch_required, parse_window
from .invoice_builder import is_superconsultant, num

logger = structlog.get_logger(__name__)

REPORT_TYPES = ("daily", "weekly", "monthly", "yearly", "custom")
BUCKETS = ("consultation", "superconsultant", "reassignment", "lab")
REVENUE_STATUSES = ("paid", "completed")


def report_window(report_type: str, start_date: Optional[str] = None, end_date: Optional[str] = None,
                  now: Optional[datetime] = None) -> DateWindow:
    """Resolve a report type to its date window (UTC). Custom without both dates means unbounded."""
    now = now or utcnow()
    if report_type == "daily":
        today = start_of_day(now)
        return DateWindow(today, today + timedelta(days=1))
    if report_type == "weekly":
        return DateWindow(now - timedelta(days=7), now)
    if report_type == "monthly":
        return DateWindow(now.replace(day=1, hour=0, minute=0, second=0, microsecond=0), now)
    if report_type == "yearly":
        return DateWindow(now.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0), now)
    if report_type == "custom":
        if start_date and end_date:
            return parse_window(start_date, end_date)
        return DateWindow()
    raise ValidationError(
        f"Invalid report type '{report_type}'. Expected one of: {', '.join(REPORT_TYPES)}",
        "INVALID_REPORT_TYPE",
    )


def _row(date, invoice_number, patient_name, uh_id, age, gender, bill_type, service, doctor, bill: dict) -> dict:
    amount = num(bill.get("amount"))
    paid = num(bill.get("paid_amount"))
    return {
        "date": date,
        "invoice_number": invoice_number or "N/A",
        "patient_name": patient_name,
        "uh_id": uh_id,
        "age": age,
        "gender": gender,
        "bill_type": bill_type,
        "service": service,
        "doctor": doctor,
        "amount": amount,
        "paid_amount": paid,
        "balance": amount - paid,
        "status": bill.get("status"),
        "payment_method": bill.get("payment_method") or "N/A",
    }


class _Tally:
    def __init__(self):
        self.revenue: Dict[str, float] = {b: 0.0 for b in BUCKETS}
        self.count: Dict[str, int] = {b: 0 for b in BUCKETS}
        self.rows: List[dict] = []

    def add(self, bucket: str, bill: dict, row: dict) -> None:
        self.rows.append(row)
        if bill.get("status") in REVENUE_STATUSES:
            self.revenue[bucket] += num(bill.get("paid_amount")) or num(bill.get("amount"))
            self.count[bucket] += 1


def get_financial_reports(db: Session, center_id: Optional[int], report_type: str = "daily",
                          start_date: Optional[str] = None, end_date: Optional[str] = None,
                          now: Optional[datetime] = None) -> FinancialReport:
    window = report_window(report_type, start_date, end_date, now=now)
    tally = _Tally()

    patients = fetch_required("patients", "Error fetching patient data",
                              crud.get_patients_for_billing, db, center_id)
    for patient in patients:
        doctor = patient.assigned_doctor.display_name if patient.assigned_doctor else "N/A"
        for bill in patient.billing or []:
            bill_date = parse_dt(bill.get("created_at")) or patient.created_at
            if not window.matches(bill_date):
                continue
            superconsultant = is_superconsultant(bill.get("consultation_type"))
            tally.add(
                "superconsultant" if superconsultant else "consultation",
                bill,
                _row(bill_date, bill.get("invoice_number"), patient.name, patient.uh_id, patient.age,
                     patient.gender, "Superconsultant" if superconsultant else "Consultation",
                     bill.get("description") or bill.get("type"), doctor, bill),
            )

        current = patient.current_doctor.display_name if patient.current_doctor else "N/A"
        for bill in patient.reassigned_billing or []:
            bill_date = parse_dt(bill.get("created_at")) or patient.created_at
            if not window.matches(bill_date):
                continue
            tally.add(
                "reassignment",
                bill,
                _row(bill_date, bill.get("invoice_number"), patient.name, patient.uh_id, patient.age,
                     patient.gender, "Reassignment", "Patient Reassignment", current, bill),
            )

    # lab requests are windowed on creation date only
    test_requests = fetch_required("test_requests", "Error fetching test request data",
                                   crud.get_test_requests_for_billing, db, center_id, window, False)
    for request in test_requests:
        billing = request.billing
        if not billing:
            continue
        patient = request.patient
        tally.add(
            "lab",
            billing,
            _row(request.created_at, billing.get("invoice_number"),
                 patient.name if patient else "N/A", (patient.uh_id if patient else None) or "N/A",
                 "N/A", "N/A", "Lab/Test", billing.get("description") or "Laboratory Test",
                 request.doctor.display_name if request.doctor else "N/A", billing),
        )

    tally.rows.sort(key=lambda r: r["date"] or datetime.min, reverse=True)
    total_revenue = sum(tally.revenue.values())
    total_count = sum(tally.count.values())

    breakdown = {
        bucket: RevenueBucket(
            revenue=tally.revenue[bucket],
            count=tally.count[bucket],
            percentage=round(tally.revenue[bucket] / total_revenue * 100, 2) if total_revenue > 0 else 0,
        )
        for bucket in BUCKETS
    }
    summary = {"total_revenue": total_revenue, "total_transactions": total_count}
    for bucket in BUCKETS:
        summary[f"{bucket}_revenue"] = tally.revenue[bucket]
        summary[f"{bucket}_count"] = tally.count[bucket]

    logger.info("financial_report_built", center_id=center_id, report_type=report_type,
                rows=len(tally.rows), total_revenue=total_revenue)

    return FinancialReport(
        report_type=report_type,
        date_range=window.as_dict(),
        summary=summary,
        breakdown=breakdown,
        transactions=tally.rows,
    )
