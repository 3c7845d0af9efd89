"""Bill database model - one unit's utility charge for a billing period."""

from datetime import UTC, date, datetime
from decimal import Decimal

from sqlalchemy import ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base, string_enum
from app.models.enums import UtilityType


class Bill(Base):
    """Utility charge allocated to a unit for ``[period_start, period_end]``.

    The unique key makes billing runs idempotent: re-running a period updates
    the row in place instead of adding a duplicate.
    """

    __tablename__ = "utility_bills"
    __table_args__ = (
        UniqueConstraint(
            "unit_id",
            "utility_type",
            "period_start",
            "period_end",
            name="uq_utility_bill_unit_period",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    unit_id: Mapped[str] = mapped_column(String(64), index=True)
    property_id: Mapped[str] = mapped_column(String(64), index=True)
    utility_type: Mapped[UtilityType] = mapped_column(string_enum(UtilityType))
    period_start: Mapped[date] = mapped_column()
    period_end: Mapped[date] = mapped_column()

    consumption: Mapped[Decimal] = mapped_column(Numeric(precision=14, scale=3))
    rate_applied: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=4))
    fixed_charge_applied: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2))
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=14, scale=2))
    currency: Mapped[str] = mapped_column(String(3))
    allocation_ratio: Mapped[Decimal] = mapped_column(Numeric(precision=9, scale=6))

    source_meter_id: Mapped[int] = mapped_column(ForeignKey("meters.id"), index=True)
    tariff_id: Mapped[int | None] = mapped_column(
        ForeignKey("utility_tariffs.id", ondelete="SET NULL"), nullable=True
    )
    invoice_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
