"""MeterReading database model - the central ledger."""

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base

if TYPE_CHECKING:
    from app.models.meter import Meter


class MeterReading(Base):
    """Meter reading ledger entry (cumulative register value).

    Append-only: a correction is a newer row for the same date, never an
    in-place edit.
    """

    __tablename__ = "meter_readings"
    __table_args__ = (
        # Serves "latest reading on or before D" as an index range scan
        Index("ix_meter_readings_meter_date", "meter_id", "reading_date", "id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        default=lambda: datetime.now(UTC),
    )  # When added to database
    reading_date: Mapped[date] = mapped_column()  # When reading was taken

    # The actual reading value (using Decimal for precision)
    reading_value: Mapped[Decimal] = mapped_column(Numeric(precision=14, scale=3))
    is_estimated: Mapped[bool] = mapped_column(default=False)
    notes: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Foreign keys
    meter_id: Mapped[int] = mapped_column(ForeignKey("meters.id"), index=True)

    # Relationships
    meter: Mapped["Meter"] = relationship(back_populates="readings")
