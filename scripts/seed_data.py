"""Seed script to populate the database with sample data."""

from datetime import date
from decimal import Decimal

from sqlalchemy import select

from app.core.database import Base, SessionLocal, engine
from app.models.enums import UtilityType
from app.models.meter import Meter
from app.schemas.meter import MeterCreate, UnitAllocation
from app.schemas.meter_reading import BulkReadingCreate, ReadingEntry
from app.schemas.tariff import TariffCreate
from app.services.meter import register_meter
from app.services.meter_reading import record_readings
from app.services.tariff import add_tariff

ORGANIZATION_ID = "org-demo"
PROPERTY_ID = "prop-demo"


def seed_database() -> None:
    """Seed the database with sample data."""
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        # Check if data already exists
        if db.scalars(select(Meter)).first():
            print("Database already has data. Skipping seed.")
            return

        print("Seeding database...")

        water = register_meter(
            db,
            MeterCreate(
                organization_id=ORGANIZATION_ID,
                property_id=PROPERTY_ID,
                utility_type=UtilityType.WATER,
                meter_number="W-101",
                name="Unit 101 water",
                unit_id="unit-101",
            ),
        )
        hallway = register_meter(
            db,
            MeterCreate(
                organization_id=ORGANIZATION_ID,
                property_id=PROPERTY_ID,
                utility_type=UtilityType.ELECTRICITY,
                meter_number="E-COMMON",
                name="Common electricity",
                is_shared=True,
                assigned_units=[
                    UnitAllocation(unit_id="unit-101", allocation_ratio=Decimal("0.6")),
                    UnitAllocation(unit_id="unit-102", allocation_ratio=Decimal("0.4")),
                ],
            ),
        )
        print(f"Created meters: {water.id}, {hallway.id}")

        for utility_type, rate, fixed in (
            (UtilityType.WATER, Decimal("20"), Decimal("500")),
            (UtilityType.ELECTRICITY, Decimal("10"), Decimal("0")),
        ):
            add_tariff(
                db,
                TariffCreate(
                    organization_id=ORGANIZATION_ID,
                    property_id=PROPERTY_ID,
                    utility_type=utility_type,
                    rate_per_unit=rate,
                    fixed_charge=fixed,
                    effective_from=date(2024, 1, 1),
                ),
            )
        print("Created tariffs")

        for reading_date, water_value, power_value in (
            (date(2024, 1, 1), Decimal("1000"), Decimal("0")),
            (date(2024, 1, 31), Decimal("1050"), Decimal("100")),
        ):
            result = record_readings(
                db,
                BulkReadingCreate(
                    property_id=PROPERTY_ID,
                    reading_date=reading_date,
                    readings=[
                        ReadingEntry(meter_id=water.id, reading_value=water_value),
                        ReadingEntry(meter_id=hallway.id, reading_value=power_value),
                    ],
                ),
            )
            print(f"Recorded {result.count} reading(s) for {reading_date}")

        print("Seed complete.")
    finally:
        db.close()


if __name__ == "__main__":
    seed_database()
