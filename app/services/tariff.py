"""Tariff table: effective-dated rate rows per property and utility."""

import logging
from datetime import date

from fastapi import HTTPException, status
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from app.models.enums import UtilityType
from app.models.tariff import UtilityTariff
from app.schemas.tariff import TariffCreate, TariffUpdate

logger = logging.getLogger(__name__)


def _overlapping(db: Session, tariff: UtilityTariff) -> list[UtilityTariff]:
    """Other rows of the same scope whose window intersects ``tariff``'s."""
    stmt = select(UtilityTariff).where(
        UtilityTariff.id != tariff.id,
        UtilityTariff.utility_type == tariff.utility_type,
        UtilityTariff.property_id.is_(None)
        if tariff.property_id is None
        else UtilityTariff.property_id == tariff.property_id,
        or_(
            UtilityTariff.effective_to.is_(None),
            UtilityTariff.effective_to >= tariff.effective_from,
        ),
    )
    if tariff.property_id is None:
        stmt = stmt.where(UtilityTariff.organization_id == tariff.organization_id)
    if tariff.effective_to is not None:
        stmt = stmt.where(UtilityTariff.effective_from <= tariff.effective_to)
    return list(db.scalars(stmt).all())


def _warn_on_overlap(db: Session, tariff: UtilityTariff) -> None:
    overlaps = _overlapping(db, tariff)
    if overlaps:
        logger.warning(
            "Tariff window overlaps %d existing row(s): %s",
            len(overlaps),
            ", ".join(str(t.id) for t in overlaps),
            extra={"tariff_id": tariff.id, "property_id": tariff.property_id},
        )


def add_tariff(db: Session, data: TariffCreate) -> UtilityTariff:
    """Store a new tariff row.

    A previous open-ended row is left as is; overlapping windows are logged
    and later resolved by the tie-break in ``resolve_tariff``.
    """
    tariff = UtilityTariff(
        organization_id=data.organization_id,
        property_id=data.property_id,
        utility_type=data.utility_type,
        rate_per_unit=data.rate_per_unit,
        fixed_charge=data.fixed_charge,
        currency=data.currency,
        effective_from=data.effective_from,
        effective_to=data.effective_to,
    )
    db.add(tariff)
    db.commit()
    db.refresh(tariff)
    _warn_on_overlap(db, tariff)
    return tariff


def get_tariff(db: Session, tariff_id: int) -> UtilityTariff:
    """Get a tariff by ID."""
    tariff = db.get(UtilityTariff, tariff_id)
    if not tariff:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Tariff not found",
        )
    return tariff


def list_tariffs(
    db: Session,
    property_id: str | None = None,
    organization_id: str | None = None,
    utility_type: UtilityType | None = None,
) -> list[UtilityTariff]:
    """List tariff rows, most recent window first."""
    stmt = select(UtilityTariff)
    if property_id is not None:
        stmt = stmt.where(UtilityTariff.property_id == property_id)
    if organization_id is not None:
        stmt = stmt.where(UtilityTariff.organization_id == organization_id)
    if utility_type is not None:
        stmt = stmt.where(UtilityTariff.utility_type == utility_type)
    stmt = stmt.order_by(UtilityTariff.effective_from.desc(), UtilityTariff.id.desc())
    return list(db.scalars(stmt).all())


def update_tariff(db: Session, tariff_id: int, data: TariffUpdate) -> UtilityTariff:
    """Update a tariff row."""
    tariff = get_tariff(db, tariff_id)

    update_data = data.model_dump(exclude_unset=True)
    for field, value in update_data.items():
        if value is None and field != "effective_to":
            continue
        setattr(tariff, field, value)

    if tariff.effective_to is not None and tariff.effective_to < tariff.effective_from:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="effective_to must not be before effective_from",
        )

    db.commit()
    db.refresh(tariff)
    _warn_on_overlap(db, tariff)
    return tariff


def delete_tariff(db: Session, tariff_id: int) -> None:
    """Delete a tariff row. Bills keep the rate they were computed with."""
    tariff = get_tariff(db, tariff_id)
    db.delete(tariff)
    db.commit()


def _pick(rows: list[UtilityTariff]) -> UtilityTariff | None:
    """Tie-break: latest effective_from, then most recently created."""
    if not rows:
        return None
    return max(rows, key=lambda t: (t.effective_from, t.created_at, t.id))


def resolve_tariff(
    db: Session,
    property_id: str,
    utility_type: UtilityType,
    as_of: date,
    organization_id: str | None = None,
) -> UtilityTariff | None:
    """Select the tariff effective on ``as_of`` for a property's utility.

    A row matches when ``effective_from <= as_of`` and ``effective_to`` is
    open or ``>= as_of``. Property rows win over organization-wide defaults;
    among several matches the tie-break in ``_pick`` applies. Returns None
    when nothing matches.
    """
    window = (
        UtilityTariff.utility_type == utility_type,
        UtilityTariff.effective_from <= as_of,
        or_(UtilityTariff.effective_to.is_(None), UtilityTariff.effective_to >= as_of),
    )

    rows = db.scalars(
        select(UtilityTariff).where(UtilityTariff.property_id == property_id, *window)
    ).all()
    if rows:
        return _pick(list(rows))

    if organization_id is None:
        return None
    rows = db.scalars(
        select(UtilityTariff).where(
            UtilityTariff.property_id.is_(None),
            UtilityTariff.organization_id == organization_id,
            *window,
        )
    ).all()
    return _pick(list(rows))
