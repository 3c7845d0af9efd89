"""Tariff table routes."""

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.models.enums import UtilityType
from app.schemas.tariff import TariffCreate, TariffResponse, TariffUpdate
from app.services import tariff as tariff_service

router = APIRouter(prefix="/tariffs", tags=["tariffs"])


@router.post(
    "",
    response_model=TariffResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_tariff(
    tariff_data: TariffCreate,
    db: Session = Depends(get_db),
):
    """Add an effective-dated tariff row."""
    return tariff_service.add_tariff(db, tariff_data)


@router.get("", response_model=list[TariffResponse])
def list_tariffs(
    property_id: str | None = None,
    organization_id: str | None = None,
    utility_type: UtilityType | None = None,
    db: Session = Depends(get_db),
):
    """List tariff rows with optional filters."""
    return tariff_service.list_tariffs(db, property_id, organization_id, utility_type)


@router.get("/{tariff_id}", response_model=TariffResponse)
def get_tariff(
    tariff_id: int,
    db: Session = Depends(get_db),
):
    """Get a tariff by ID."""
    return tariff_service.get_tariff(db, tariff_id)


@router.put("/{tariff_id}", response_model=TariffResponse)
def update_tariff(
    tariff_id: int,
    tariff_data: TariffUpdate,
    db: Session = Depends(get_db),
):
    """Update a tariff row. Existing bills are not recomputed."""
    return tariff_service.update_tariff(db, tariff_id, tariff_data)


@router.delete("/{tariff_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_tariff(
    tariff_id: int,
    db: Session = Depends(get_db),
):
    """Delete a tariff row."""
    tariff_service.delete_tariff(db, tariff_id)
