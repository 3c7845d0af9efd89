"""Meter registry: identity, utility type and unit allocation of meters.

The registry is the single source of truth for the rule that a unit has at
most one active meter per utility. Client-side filtering of "available
units" is advisory only; every create/update re-derives the covered set
inside the same transaction as the write, while holding the allocation lock
for that utility.
"""

import logging
from decimal import Decimal

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.core.exceptions import ConflictError
from app.models.enums import MeterStatus, UtilityType
from app.models.meter import Meter, MeterUnitAssignment
from app.schemas.meter import MeterCreate, MeterUpdate, UnitAllocation, check_allocation
from app.services.locks import allocation_key, locks

logger = logging.getLogger(__name__)

_INFO_FIELDS = ("meter_number", "name", "location", "installed_on")


def covered_units(
    db: Session,
    utility_type: UtilityType,
    exclude_meter_id: int | None = None,
) -> set[str]:
    """Units already covered by an active meter of ``utility_type``.

    Counts direct owners and shared assignees alike.
    """
    stmt = (
        select(MeterUnitAssignment.unit_id)
        .join(Meter, Meter.id == MeterUnitAssignment.meter_id)
        .where(
            MeterUnitAssignment.utility_type == utility_type,
            Meter.status == MeterStatus.ACTIVE,
        )
    )
    if exclude_meter_id is not None:
        stmt = stmt.where(Meter.id != exclude_meter_id)
    return set(db.scalars(stmt).all())


def _ensure_units_free(
    db: Session,
    utility_type: UtilityType,
    unit_ids: list[str],
    exclude_meter_id: int | None = None,
) -> None:
    """Raise ConflictError listing every requested unit that is already covered."""
    taken = covered_units(db, utility_type, exclude_meter_id)
    conflicts = [(unit_id, utility_type) for unit_id in unit_ids if unit_id in taken]
    if conflicts:
        logger.warning(
            "Meter allocation conflict on %d unit(s)",
            len(conflicts),
            extra={"utility_type": utility_type.value},
        )
        raise ConflictError(conflicts)


def _build_assignments(
    utility_type: UtilityType,
    is_shared: bool,
    unit_id: str | None,
    assigned_units: list[UnitAllocation],
    is_active: bool,
) -> list[MeterUnitAssignment]:
    if not is_shared:
        return [
            MeterUnitAssignment(
                unit_id=unit_id,
                utility_type=utility_type,
                allocation_ratio=Decimal("1"),
                is_active=is_active,
            )
        ]
    return [
        MeterUnitAssignment(
            unit_id=a.unit_id,
            utility_type=utility_type,
            allocation_ratio=a.allocation_ratio,
            is_active=is_active,
        )
        for a in assigned_units
    ]


def _commit_allocation(db: Session, meter: Meter, unit_ids: list[str]) -> None:
    """Commit, turning a unique-index violation into the same ConflictError."""
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        taken = covered_units(db, meter.utility_type, exclude_meter_id=meter.id)
        conflicts = [(u, meter.utility_type) for u in unit_ids if u in taken]
        if not conflicts:
            raise
        raise ConflictError(conflicts) from exc


def register_meter(db: Session, meter_data: MeterCreate) -> Meter:
    """Register a meter after checking unit exclusivity.

    Raises:
        ConflictError: a requested unit already has an active meter of the
            same utility. Nothing is written.
    """
    unit_ids = (
        [a.unit_id for a in meter_data.assigned_units]
        if meter_data.is_shared
        else [meter_data.unit_id]
    )
    is_active = meter_data.status == MeterStatus.ACTIVE

    with locks.hold(allocation_key(meter_data.utility_type.value)):
        if is_active:
            _ensure_units_free(db, meter_data.utility_type, unit_ids)

        meter = Meter(
            organization_id=meter_data.organization_id,
            property_id=meter_data.property_id,
            utility_type=meter_data.utility_type,
            meter_number=meter_data.meter_number,
            name=meter_data.name,
            location=meter_data.location,
            is_shared=meter_data.is_shared,
            unit_id=None if meter_data.is_shared else meter_data.unit_id,
            status=meter_data.status,
            installed_on=meter_data.installed_on,
        )
        meter.assignments = _build_assignments(
            meter_data.utility_type,
            meter_data.is_shared,
            meter_data.unit_id,
            meter_data.assigned_units,
            is_active,
        )
        db.add(meter)
        _commit_allocation(db, meter, unit_ids)

    db.refresh(meter)
    logger.info(
        "Registered %s meter %s",
        meter.utility_type.value,
        "shared" if meter.is_shared else "exclusive",
        extra={"meter_id": meter.id, "property_id": meter.property_id},
    )
    return meter


def get_meter(db: Session, meter_id: int) -> Meter:
    """Get a meter by ID."""
    meter = db.get(Meter, meter_id)
    if not meter:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Meter not found",
        )
    return meter


def list_meters(
    db: Session,
    property_id: str | None = None,
    utility_type: UtilityType | None = None,
    status_filter: MeterStatus | None = None,
    page: int = 1,
    per_page: int = 50,
) -> tuple[list[Meter], int]:
    """List meters with optional filters, newest first. Returns (page, total)."""
    stmt = select(Meter)
    if property_id is not None:
        stmt = stmt.where(Meter.property_id == property_id)
    if utility_type is not None:
        stmt = stmt.where(Meter.utility_type == utility_type)
    if status_filter is not None:
        stmt = stmt.where(Meter.status == status_filter)

    total = db.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    meters = db.scalars(
        stmt.options(selectinload(Meter.assignments))
        .order_by(Meter.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    ).all()
    return list(meters), total


def get_active_meters(
    db: Session,
    property_id: str | None = None,
    utility_type: UtilityType | None = None,
) -> list[Meter]:
    """Active meters in id order, with their assignments loaded."""
    stmt = (
        select(Meter)
        .options(selectinload(Meter.assignments))
        .where(Meter.status == MeterStatus.ACTIVE)
    )
    if property_id is not None:
        stmt = stmt.where(Meter.property_id == property_id)
    if utility_type is not None:
        stmt = stmt.where(Meter.utility_type == utility_type)
    return list(db.scalars(stmt.order_by(Meter.id)).all())


def update_meter(db: Session, meter_id: int, meter_data: MeterUpdate) -> Meter:
    """Update a meter, re-checking exclusivity against every other meter.

    Switching ``is_shared`` without sending the other side of the allocation
    clears it (a meter turning shared drops its owner and vice versa).
    """
    meter = get_meter(db, meter_id)
    patch = meter_data.model_dump(exclude_unset=True)

    target_status = meter_data.status if "status" in patch else meter.status
    if target_status is None:
        target_status = meter.status
    if not meter.status.can_transition_to(target_status):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Meter status cannot change from {meter.status.value} to {target_status.value}",
        )

    is_shared = meter.is_shared if meter_data.is_shared is None else meter_data.is_shared
    if "unit_id" in patch:
        unit_id = meter_data.unit_id
    else:
        unit_id = None if is_shared else meter.unit_id
    if meter_data.assigned_units is not None:
        assigned = meter_data.assigned_units
    elif is_shared and meter.is_shared:
        assigned = [
            UnitAllocation(unit_id=a.unit_id, allocation_ratio=a.allocation_ratio)
            for a in meter.assignments
        ]
    else:
        assigned = []

    try:
        check_allocation(is_shared, unit_id, assigned)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    unit_ids = [a.unit_id for a in assigned] if is_shared else [unit_id]
    becomes_active = target_status == MeterStatus.ACTIVE
    needs_check = becomes_active and (
        meter_data.touches_allocation() or meter.status != MeterStatus.ACTIVE
    )

    with locks.hold(allocation_key(meter.utility_type.value)):
        if needs_check:
            _ensure_units_free(db, meter.utility_type, unit_ids, exclude_meter_id=meter.id)

        for field in _INFO_FIELDS:
            if field in patch:
                setattr(meter, field, patch[field])

        if meter_data.touches_allocation():
            meter.is_shared = is_shared
            meter.unit_id = None if is_shared else unit_id
            # Flush removals first so re-adding a kept unit cannot trip the index
            meter.assignments.clear()
            db.flush()
            meter.assignments = _build_assignments(
                meter.utility_type, is_shared, unit_id, assigned, becomes_active
            )

        meter.status = target_status
        for assignment in meter.assignments:
            assignment.is_active = becomes_active

        _commit_allocation(db, meter, unit_ids)

    db.refresh(meter)
    logger.info(
        "Updated meter (status=%s)",
        meter.status.value,
        extra={"meter_id": meter.id, "property_id": meter.property_id},
    )
    return meter


def deactivate_meter(db: Session, meter_id: int) -> Meter:
    """Retire a meter and free its units. Readings are kept."""
    meter = get_meter(db, meter_id)
    if meter.status == MeterStatus.INACTIVE:
        return meter

    meter.status = MeterStatus.INACTIVE
    for assignment in meter.assignments:
        assignment.is_active = False
    db.commit()
    db.refresh(meter)
    logger.info(
        "Deactivated meter",
        extra={"meter_id": meter.id, "property_id": meter.property_id},
    )
    return meter
