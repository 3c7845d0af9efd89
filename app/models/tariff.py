"""UtilityTariff database model - effective-dated rate rows."""

from datetime import UTC, date, datetime
from decimal import Decimal

from sqlalchemy import Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base, string_enum
from app.models.enums import UtilityType


class UtilityTariff(Base):
    """Rate rule for one utility, valid from ``effective_from`` to ``effective_to``.

    ``property_id = None`` marks an organization-wide default, used only when
    the property has no matching row of its own.
    """

    __tablename__ = "utility_tariffs"
    __table_args__ = (
        Index("ix_utility_tariffs_lookup", "property_id", "utility_type", "effective_from"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    organization_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    property_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    utility_type: Mapped[UtilityType] = mapped_column(string_enum(UtilityType))
    rate_per_unit: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=4))
    fixed_charge: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2), default=Decimal("0")
    )
    currency: Mapped[str] = mapped_column(String(3))
    effective_from: Mapped[date] = mapped_column()
    effective_to: Mapped[date | None] = mapped_column(nullable=True)  # None = open-ended

    created_at: Mapped[datetime] = mapped_column(default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
