"""Tests for the reading store: bulk ingestion and point-in-time lookup."""

from datetime import date
from decimal import Decimal

from sqlalchemy import func, select

from app.models.enums import UtilityType
from app.models.meter_reading import MeterReading
from app.schemas.meter import MeterCreate
from app.schemas.meter_reading import BulkReadingCreate, ReadingEntry
from app.services.meter import deactivate_meter, register_meter
from app.services.meter_reading import (
    get_readings_history,
    latest_reading,
    latest_reading_on_or_before,
    record_reading,
    record_readings,
)


def _meter(db, unit_id, property_id="P1"):
    return register_meter(
        db,
        MeterCreate(
            organization_id="ORG1",
            property_id=property_id,
            utility_type=UtilityType.WATER,
            unit_id=unit_id,
        ),
    )


class TestRecordReadings:
    """Bulk ingestion skips bad entries and keeps the good ones."""

    def test_all_valid(self, test_db) -> None:
        """Every valid entry is saved."""
        m1 = _meter(test_db, "U1")
        m2 = _meter(test_db, "U2")

        result = record_readings(
            test_db,
            BulkReadingCreate(
                property_id="P1",
                reading_date=date(2024, 1, 31),
                readings=[
                    ReadingEntry(meter_id=m1.id, reading_value=Decimal("120.5")),
                    ReadingEntry(meter_id=m2.id, reading_value=Decimal("80"), is_estimated=True),
                ],
            ),
        )

        assert result.count == 2
        assert result.errors == []
        assert test_db.scalar(select(func.count()).select_from(MeterReading)) == 2

    def test_partial_failure_reports_errors_in_input_order(self, test_db) -> None:
        """Invalid entries are reported with reasons; valid ones are committed."""
        good = _meter(test_db, "U1")
        elsewhere = _meter(test_db, "U2", property_id="P2")
        retired = _meter(test_db, "U3")
        deactivate_meter(test_db, retired.id)

        result = record_readings(
            test_db,
            BulkReadingCreate(
                property_id="P1",
                reading_date=date(2024, 1, 31),
                readings=[
                    ReadingEntry(meter_id=99999, reading_value=Decimal("1")),
                    ReadingEntry(meter_id=good.id, reading_value=Decimal("10")),
                    ReadingEntry(meter_id=elsewhere.id, reading_value=Decimal("5")),
                    ReadingEntry(meter_id=retired.id, reading_value=Decimal("5")),
                    ReadingEntry(meter_id=good.id, reading_value=Decimal("11")),
                    ReadingEntry(meter_id=good.id, reading_value=Decimal("-3")),
                ],
            ),
        )

        assert result.count == 2
        assert [(e.meter_id, e.message) for e in result.errors] == [
            (99999, "Meter not found"),
            (elsewhere.id, "Meter does not belong to this property"),
            (retired.id, "Meter is inactive"),
            (good.id, "Reading value must not be negative"),
        ]
        assert all(e.reading_date == date(2024, 1, 31) for e in result.errors)

        saved = latest_reading(test_db, good.id)
        assert saved is not None
        assert saved.reading_value == Decimal("11")

    def test_repeated_meter_is_a_correction(self, test_db) -> None:
        """A meter sent twice in one batch keeps both rows; the later one wins."""
        meter = _meter(test_db, "U1")

        result = record_readings(
            test_db,
            BulkReadingCreate(
                property_id="P1",
                reading_date=date(2024, 1, 31),
                readings=[
                    ReadingEntry(meter_id=meter.id, reading_value=Decimal("150")),
                    ReadingEntry(meter_id=meter.id, reading_value=Decimal("149"), notes="Typo fix"),
                ],
            ),
        )

        assert result.count == 2
        assert result.errors == []
        _, total = get_readings_history(test_db, meter.id)
        assert total == 2
        found = latest_reading_on_or_before(test_db, meter.id, date(2024, 1, 31))
        assert found is not None
        assert found.reading_value == Decimal("149")
        assert found.notes == "Typo fix"


class TestLatestReading:
    """Point-in-time lookup used by billing runs."""

    def test_latest_on_or_before(self, test_db) -> None:
        """The most recent reading not after the date is returned."""
        meter = _meter(test_db, "U1")
        record_reading(test_db, meter, date(2024, 1, 1), Decimal("100"))
        record_reading(test_db, meter, date(2024, 1, 15), Decimal("150"))
        record_reading(test_db, meter, date(2024, 2, 1), Decimal("200"))

        found = latest_reading_on_or_before(test_db, meter.id, date(2024, 1, 31))
        assert found is not None
        assert found.reading_value == Decimal("150")

        exact = latest_reading_on_or_before(test_db, meter.id, date(2024, 2, 1))
        assert exact is not None
        assert exact.reading_value == Decimal("200")

    def test_none_before_first_reading(self, test_db) -> None:
        """No reading on or before the date yields None."""
        meter = _meter(test_db, "U1")
        record_reading(test_db, meter, date(2024, 1, 15), Decimal("100"))
        assert latest_reading_on_or_before(test_db, meter.id, date(2024, 1, 1)) is None

    def test_same_date_correction_wins(self, test_db) -> None:
        """A later row for the same date supersedes the earlier one."""
        meter = _meter(test_db, "U1")
        record_reading(test_db, meter, date(2024, 1, 31), Decimal("150"))
        record_reading(test_db, meter, date(2024, 1, 31), Decimal("149"), notes="Corrected")

        found = latest_reading_on_or_before(test_db, meter.id, date(2024, 1, 31))
        assert found is not None
        assert found.reading_value == Decimal("149")

    def test_history_is_paginated(self, test_db) -> None:
        """History is newest first with a total count."""
        meter = _meter(test_db, "U1")
        for day in range(1, 6):
            record_reading(test_db, meter, date(2024, 1, day), Decimal(day * 10))

        readings, total = get_readings_history(test_db, meter.id, limit=2, offset=1)
        assert total == 5
        assert [r.reading_date for r in readings] == [date(2024, 1, 4), date(2024, 1, 3)]
