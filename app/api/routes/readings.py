"""Reading ingestion routes."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.schemas.meter_reading import BulkReadingCreate, BulkReadingResult
from app.services import meter_reading as reading_service

router = APIRouter(prefix="/readings", tags=["meter-readings"])


@router.post("/bulk", response_model=BulkReadingResult)
def create_bulk_readings(
    bulk_data: BulkReadingCreate,
    db: Session = Depends(get_db),
):
    """Record readings for many meters of a property on one date.

    Invalid entries are skipped and listed in ``errors``; the rest are saved.
    """
    return reading_service.record_readings(db, bulk_data)
