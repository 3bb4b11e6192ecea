# carecenter/schemas.py
from datetime import datetime, date
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field

from .models import SlotStatus


# --- Base Schemas ---
class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# --- Billing (derived, never persisted) ---
class Invoice(BaseModel):
    """One logical charge assembled from one or more raw billing records."""
    id: Optional[Any] = None
    source: str
    patient_id: Optional[int] = None
    patient_name: str = "Unknown Patient"
    patient_age: Optional[int] = None
    patient_gender: Optional[str] = None
    patient_contact: Optional[str] = None
    uh_id: Optional[str] = None
    bill_type: str
    bill_no: Optional[str] = None
    invoice_number: str
    description: Optional[str] = None
    date: Optional[datetime] = None
    doctor: str = "N/A"
    status: str = "pending"
    consultation_type: Optional[str] = None
    services: List[Dict[str, Any]] = Field(default_factory=list)
    amount: float = 0
    paid_amount: float = 0
    balance: float = 0
    discount: float = 0
    discount_amount: float = 0
    discount_percentage: Optional[float] = None
    discount_reason: str = ""
    tax: float = 0
    payment_method: Optional[str] = None
    payment_history: List[Dict[str, Any]] = Field(default_factory=list)
    refunds: List[Dict[str, Any]] = Field(default_factory=list)
    refunded_amount: float = 0
    refunded_at: Optional[datetime] = None
    refunded_by: Optional[int] = None
    refunded_by_name: Optional[str] = None
    refund_method: Optional[str] = None
    refund_reason: Optional[str] = None
    refund_notes: Optional[str] = None
    custom_data: Dict[str, Any] = Field(default_factory=dict)
    notes: Optional[str] = None
    generated_by: Optional[int] = None
    generated_by_name: str = "N/A"
    created_by_name: str = "N/A"
    generated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    paid_by: Optional[int] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[int] = None
    cancelled_by_name: Optional[str] = None
    cancellation_reason: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status not in ("cancelled", "refunded")


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_records: int
    limit: int


class FinancialSummary(BaseModel):
    total_amount: float = 0
    total_paid: float = 0
    total_balance: float = 0
    total_transactions: int = 0
    cancelled_count: int = 0
    cancelled_amount: float = 0
    refunded_count: int = 0
    refunded_amount: float = 0
    active_invoices_count: int = 0


class BillsResponse(BaseModel):
    bills: List[Invoice]
    transactions: List[Dict[str, Any]]
    pagination: Pagination
    summary: FinancialSummary


class BillFilters(BaseModel):
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    bill_type: Optional[str] = None
    status: Optional[str] = None
    consultation_type: Optional[str] = None
    page: int = Field(1, ge=1)
    limit: int = Field(50, ge=1)


class RevenueBucket(BaseModel):
    revenue: float = 0
    count: int = 0
    percentage: float = 0


class FinancialReport(BaseModel):
    report_type: str
    date_range: Dict[str, Optional[str]]
    summary: Dict[str, float]
    breakdown: Dict[str, RevenueBucket]
    transactions: List[Dict[str, Any]]


# --- Doctor calendar ---
class DoctorResponse(BaseSchema):
    id: int
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    qualification: Optional[str] = None
    designation: Optional[str] = None


class AvailabilityBase(BaseSchema):
    is_available: bool = True
    is_holiday: bool = False
    holiday_name: Optional[str] = ""
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    break_start_time: Optional[str] = None
    break_end_time: Optional[str] = None
    notes: Optional[str] = ""
    max_appointments: Optional[int] = None


class AvailabilitySet(AvailabilityBase):
    doctor_id: int
    date: date


class AvailabilityResponse(AvailabilityBase):
    id: int
    doctor_id: int
    center_id: int
    date: datetime
    doctor_name: Optional[str] = None


class SundayHolidaysRequest(BaseSchema):
    doctor_id: int
    year: int = Field(..., ge=2000, le=2100)


class BulkHolidaysRequest(BaseSchema):
    doctor_id: int
    dates: List[date] = Field(..., min_length=1)
    holiday_name: Optional[str] = None


class BulkAvailabilityRequest(BaseSchema):
    doctor_id: int
    dates: List[date] = Field(..., min_length=1)
    start_time: str
    end_time: str
    break_start_time: Optional[str] = None
    break_end_time: Optional[str] = None
    max_appointments: Optional[int] = None
    slot_duration: Optional[int] = Field(None, gt=0)


class DefaultWorkingHoursRequest(BulkAvailabilityRequest):
    dates: Optional[List[date]] = None
    year: int = Field(..., ge=2000, le=2100)
    override_existing: bool = False
    include_sundays: bool = False


class SlotCreateRequest(BaseSchema):
    """Hours default to the doctor's availability record for that day."""
    doctor_id: int
    date: date
    slot_duration: Optional[int] = Field(None, gt=0)
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    break_start_time: Optional[str] = None
    break_end_time: Optional[str] = None


class SlotResponse(BaseSchema):
    id: int
    doctor_id: int
    center_id: int
    date: datetime
    start_time: str
    end_time: str
    duration: int
    is_booked: bool
    status: SlotStatus
    patient_id: Optional[int] = None
    patient_appointment_id: Optional[int] = None
    booked_by: Optional[int] = None
    booked_at: Optional[datetime] = None
    notes: Optional[str] = ""


class SlotBookRequest(BaseSchema):
    slot_id: int
    patient_id: int
    patient_appointment_id: Optional[int] = None
    notes: Optional[str] = None


class SlotCancelRequest(BaseSchema):
    slot_id: int
    reason: Optional[str] = None


class SlotOutcomeRequest(BaseSchema):
    status: SlotStatus

