"""Meter registry routes."""

from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import get_db
from app.models.enums import MeterStatus, UtilityType
from app.models.meter import Meter
from app.schemas.meter import (
    AssignedUnitResponse,
    ConflictResponse,
    MeterCreate,
    MeterPage,
    MeterResponse,
    MeterUpdate,
    ReadingSummary,
)
from app.schemas.meter_reading import MeterReadingHistory, MeterReadingResponse
from app.services import meter as meter_service
from app.services import meter_reading as reading_service

router = APIRouter(prefix="/meters", tags=["meters"])


def _to_response(db: Session, meter: Meter) -> MeterResponse:
    """Build the API view of a meter, with its units and latest reading."""
    latest = reading_service.latest_reading(db, meter.id)
    return MeterResponse(
        id=meter.id,
        organization_id=meter.organization_id,
        property_id=meter.property_id,
        utility_type=meter.utility_type,
        meter_number=meter.meter_number,
        name=meter.name,
        location=meter.location,
        is_shared=meter.is_shared,
        unit_id=meter.unit_id,
        assigned_units=(
            [AssignedUnitResponse.model_validate(a) for a in meter.assignments]
            if meter.is_shared
            else []
        ),
        status=meter.status,
        installed_on=meter.installed_on,
        created_at=meter.created_at,
        latest_reading=ReadingSummary.model_validate(latest) if latest else None,
    )


@router.post(
    "",
    response_model=MeterResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"model": ConflictResponse}},
)
def create_meter(
    meter_data: MeterCreate,
    db: Session = Depends(get_db),
):
    """Register a meter, optionally with its first reading."""
    meter = meter_service.register_meter(db, meter_data)
    if meter_data.initial_reading_value is not None:
        reading_service.record_reading(
            db,
            meter,
            meter_data.initial_reading_date or meter_data.installed_on or date.today(),
            meter_data.initial_reading_value,
            notes="Initial reading",
        )
    return _to_response(db, meter)


@router.get("", response_model=MeterPage)
def list_meters(
    property_id: str | None = None,
    utility_type: UtilityType | None = None,
    status_filter: MeterStatus | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    per_page: int = Query(settings.METERS_PAGE_SIZE, ge=1, le=500),
    db: Session = Depends(get_db),
):
    """List meters with optional filters."""
    meters, total = meter_service.list_meters(
        db, property_id, utility_type, status_filter, page, per_page
    )
    return MeterPage(
        data=[_to_response(db, m) for m in meters],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.get("/{meter_id}", response_model=MeterResponse)
def get_meter(
    meter_id: int,
    db: Session = Depends(get_db),
):
    """Get a meter by ID."""
    return _to_response(db, meter_service.get_meter(db, meter_id))


@router.put(
    "/{meter_id}",
    response_model=MeterResponse,
    responses={422: {"model": ConflictResponse}},
)
def update_meter(
    meter_id: int,
    meter_data: MeterUpdate,
    db: Session = Depends(get_db),
):
    """Update a meter's details, allocation or status."""
    return _to_response(db, meter_service.update_meter(db, meter_id, meter_data))


@router.delete("/{meter_id}", status_code=status.HTTP_204_NO_CONTENT)
def deactivate_meter(
    meter_id: int,
    db: Session = Depends(get_db),
):
    """Deactivate a meter and free its units. Readings are kept."""
    meter_service.deactivate_meter(db, meter_id)


@router.get("/{meter_id}/readings", response_model=MeterReadingHistory)
def get_meter_reading_history(
    meter_id: int,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """Get reading history for a specific meter with pagination."""
    meter_service.get_meter(db, meter_id)
    readings, total = reading_service.get_readings_history(db, meter_id, limit, offset)
    return MeterReadingHistory(
        meter_id=meter_id,
        readings=[MeterReadingResponse.model_validate(r) for r in readings],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{meter_id}/readings/latest", response_model=MeterReadingResponse | None)
def get_latest_reading(
    meter_id: int,
    on_or_before: date | None = Query(None, description="Latest reading on or before this date"),
    db: Session = Depends(get_db),
):
    """Get the most recent reading of a meter, optionally as of a date."""
    meter_service.get_meter(db, meter_id)
    if on_or_before is None:
        return reading_service.latest_reading(db, meter_id)
    return reading_service.latest_reading_on_or_before(db, meter_id, on_or_before)
