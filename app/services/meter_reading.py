"""MeterReading service - the reading ledger.

Bulk ingestion is not all-or-nothing: each entry is validated on
its own, bad rows are skipped and reported, good rows are committed. A meter
sent twice in one batch gets two rows; the later one wins as a same-date
correction.
"""

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.meter import Meter
from app.models.meter_reading import MeterReading
from app.schemas.meter_reading import (
    BulkReadingCreate,
    BulkReadingResult,
    ReadingEntry,
    ReadingError,
)

logger = logging.getLogger(__name__)


def _entry_error(
    entry: ReadingEntry,
    meter: Meter | None,
    property_id: str,
) -> str | None:
    """Return why ``entry`` cannot be recorded, or None if it is valid."""
    if entry.reading_value < 0:
        return "Reading value must not be negative"
    if meter is None:
        return "Meter not found"
    if meter.property_id != property_id:
        return "Meter does not belong to this property"
    if not meter.get_is_active():
        return f"Meter is {meter.status.value}"
    return None


def record_readings(db: Session, bulk_data: BulkReadingCreate) -> BulkReadingResult:
    """Record a batch of readings for one property and date.

    Returns the number saved and one error per skipped entry, in input order.
    """
    meter_ids = {entry.meter_id for entry in bulk_data.readings}
    meters = {
        m.id: m for m in db.scalars(select(Meter).where(Meter.id.in_(meter_ids))).all()
    }

    errors: list[ReadingError] = []
    count = 0

    for entry in bulk_data.readings:
        message = _entry_error(entry, meters.get(entry.meter_id), bulk_data.property_id)
        if message:
            logger.debug(
                "Skipped reading: %s",
                message,
                extra={"meter_id": entry.meter_id, "property_id": bulk_data.property_id},
            )
            errors.append(
                ReadingError(
                    meter_id=entry.meter_id,
                    reading_date=bulk_data.reading_date,
                    message=message,
                )
            )
            continue

        db.add(
            MeterReading(
                meter_id=entry.meter_id,
                reading_date=bulk_data.reading_date,
                reading_value=entry.reading_value,
                is_estimated=entry.is_estimated,
                notes=entry.notes,
            )
        )
        count += 1

    db.commit()
    logger.info(
        "Recorded %d reading(s), skipped %d",
        count,
        len(errors),
        extra={"property_id": bulk_data.property_id},
    )
    return BulkReadingResult(count=count, errors=errors)


def record_reading(
    db: Session,
    meter: Meter,
    reading_date: date,
    reading_value: Decimal,
    is_estimated: bool = False,
    notes: str | None = None,
) -> MeterReading:
    """Record a single reading for a meter the caller already validated."""
    reading = MeterReading(
        meter_id=meter.id,
        reading_date=reading_date,
        reading_value=reading_value,
        is_estimated=is_estimated,
        notes=notes,
    )
    db.add(reading)
    db.commit()
    db.refresh(reading)
    return reading


def latest_reading_on_or_before(
    db: Session,
    meter_id: int,
    on_date: date,
) -> MeterReading | None:
    """Most recent reading with ``reading_date <= on_date``, or None.

    Same-date corrections resolve to the most recently recorded row.
    """
    return db.scalars(
        select(MeterReading)
        .where(
            MeterReading.meter_id == meter_id,
            MeterReading.reading_date <= on_date,
        )
        .order_by(MeterReading.reading_date.desc(), MeterReading.id.desc())
        .limit(1)
    ).first()


def latest_reading(db: Session, meter_id: int) -> MeterReading | None:
    """Most recent reading of a meter regardless of date."""
    return db.scalars(
        select(MeterReading)
        .where(MeterReading.meter_id == meter_id)
        .order_by(MeterReading.reading_date.desc(), MeterReading.id.desc())
        .limit(1)
    ).first()


def get_readings_history(
    db: Session,
    meter_id: int,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[MeterReading], int]:
    """Get reading history for a specific meter with pagination."""
    query = db.query(MeterReading).filter(MeterReading.meter_id == meter_id)
    total = query.count()
    readings = (
        query.order_by(MeterReading.reading_date.desc(), MeterReading.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return readings, total
