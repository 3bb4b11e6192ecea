# carecenter/routers/billing.py
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Optional
import logging

from .. import models, schemas
from ..config import get_settings
from ..database import get_db
from ..security import require_billing_staff, resolve_center_scope
from ..services import billing_service, report_service

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/accountant",
    tags=["billing"],
    responses={404: {"description": "Not found"}},
)


@router.get("/bills", response_model=schemas.BillsResponse)
def get_all_bills_and_transactions(
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    bill_type: Optional[str] = None,
    status: Optional[str] = None,
    consultation_type: Optional[str] = None,
    center_id: Optional[str] = Query(None, description="Superadmin only; omit for all centers"),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_billing_staff),
):
    """
    Unified invoice feed across consultation, reassignment, lab and SLIT billing,
    with the payment-log transactions and a financial summary.
    """
    scope = resolve_center_scope(current_user, center_id)
    filters = schemas.BillFilters(
        start_date=start_date,
        end_date=end_date,
        bill_type=bill_type,
        status=status,
        consultation_type=consultation_type,
        page=page,
        limit=limit or get_settings().default_page_limit,
    )
    logger.info(f"User {current_user.id} fetching bills for center scope {scope if scope is not None else 'ALL'}")
    return billing_service.get_all_bills_and_transactions(db, scope, filters)


@router.get("/financial-reports", response_model=schemas.FinancialReport)
def get_financial_reports(
    report_type: str = "daily",
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    center_id: Optional[str] = Query(None, description="Superadmin only; omit for all centers"),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(require_billing_staff),
):
    """Revenue by bucket (consultation, superconsultant, reassignment, lab) for a report window."""
    scope = resolve_center_scope(current_user, center_id)
    return report_service.get_financial_reports(db, scope, report_type, start_date, end_date)
