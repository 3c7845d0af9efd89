"""Billing run routes."""

from datetime import date

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.models.enums import UtilityType
from app.schemas.billing import BillingRunRequest, BillingRunResult, BillResponse
from app.services import billing as billing_service
from app.services.invoicing import InvoicingClient, get_invoicing

router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/run", response_model=BillingRunResult)
def run_billing(
    request: BillingRunRequest,
    db: Session = Depends(get_db),
    invoicing: InvoicingClient = Depends(get_invoicing),
):
    """
    Compute bills for a period from meter readings and tariffs.

    Re-running the same period updates the existing bills in place.
    Meters that cannot be billed are reported in ``warnings``.
    """
    return billing_service.run_billing(db, request, invoicing)


@router.get("/bills", response_model=list[BillResponse])
def list_bills(
    property_id: str | None = None,
    unit_id: str | None = None,
    utility_type: UtilityType | None = None,
    period_start: date | None = None,
    period_end: date | None = None,
    db: Session = Depends(get_db),
):
    """List bills produced by billing runs."""
    return billing_service.list_bills(
        db, property_id, unit_id, utility_type, period_start, period_end
    )
