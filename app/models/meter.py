"""Meter and unit-assignment database models."""

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Index, Numeric, String, true
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base, string_enum
from app.models.enums import MeterStatus, UtilityType

if TYPE_CHECKING:
    from app.models.meter_reading import MeterReading


class Meter(Base):
    """Physical water or electricity meter installed at a property.

    A non-shared meter belongs to exactly one unit (``unit_id``). A shared
    meter has ``unit_id = None`` and splits its consumption across the units
    in ``assignments``.
    """

    __tablename__ = "meters"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    organization_id: Mapped[str] = mapped_column(String(64), index=True)
    property_id: Mapped[str] = mapped_column(String(64), index=True)
    utility_type: Mapped[UtilityType] = mapped_column(string_enum(UtilityType), index=True)
    meter_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_shared: Mapped[bool] = mapped_column(default=False)
    unit_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    status: Mapped[MeterStatus] = mapped_column(
        string_enum(MeterStatus), default=MeterStatus.ACTIVE, index=True
    )
    installed_on: Mapped[date | None] = mapped_column(nullable=True)

    # Metadata
    created_at: Mapped[datetime] = mapped_column(default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    # Relationships
    assignments: Mapped[list["MeterUnitAssignment"]] = relationship(
        back_populates="meter",
        cascade="all, delete-orphan",
        order_by="MeterUnitAssignment.unit_id",
    )
    readings: Mapped[list["MeterReading"]] = relationship(back_populates="meter")

    def get_is_active(self) -> bool:
        """Check if this meter currently claims its units."""
        return self.status == MeterStatus.ACTIVE


class MeterUnitAssignment(Base):
    """Unit covered by a meter, with its share of a shared meter's usage.

    Every meter has at least one row; a non-shared meter has exactly one with
    ratio 1. ``is_active`` mirrors the meter's status so the partial unique
    index guarantees one active meter per (utility, unit).
    """

    __tablename__ = "meter_unit_assignments"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    meter_id: Mapped[int] = mapped_column(ForeignKey("meters.id"), index=True)
    unit_id: Mapped[str] = mapped_column(String(64), index=True)
    utility_type: Mapped[UtilityType] = mapped_column(string_enum(UtilityType))
    allocation_ratio: Mapped[Decimal | None] = mapped_column(
        Numeric(precision=9, scale=6), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(default=True)

    # Relationships
    meter: Mapped["Meter"] = relationship(back_populates="assignments")


# At most one active meter per (utility, unit); storage-level backstop for the
# registry's exclusivity check.
Index(
    "uq_active_unit_per_utility",
    MeterUnitAssignment.utility_type,
    MeterUnitAssignment.unit_id,
    unique=True,
    sqlite_where=MeterUnitAssignment.is_active == true(),
    postgresql_where=MeterUnitAssignment.is_active == true(),
)
