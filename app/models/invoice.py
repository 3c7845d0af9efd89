"""UtilityInvoice database model used by the bundled invoicing adapter."""

import json
from datetime import UTC, date, datetime
from decimal import Decimal

from sqlalchemy import Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base, string_enum
from app.models.enums import InvoiceStatus


class UtilityInvoice(Base):
    """Per-unit utilities invoice for one billing period.

    Lines are stored as JSON: a list of objects with ``description``,
    ``type``, ``quantity``, ``unit_price``, ``fixed_charge`` and ``amount``.
    """

    __tablename__ = "utility_invoices"
    __table_args__ = (
        UniqueConstraint(
            "unit_id", "period_start", "period_end", name="uq_utility_invoice_unit_period"
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    unit_id: Mapped[str] = mapped_column(String(64), index=True)
    period_start: Mapped[date] = mapped_column()
    period_end: Mapped[date] = mapped_column()
    due_date: Mapped[date] = mapped_column()
    currency: Mapped[str] = mapped_column(String(3))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(precision=14, scale=2))
    lines_json: Mapped[str] = mapped_column(Text, default="[]")
    status: Mapped[InvoiceStatus] = mapped_column(
        string_enum(InvoiceStatus), default=InvoiceStatus.DRAFT
    )

    created_at: Mapped[datetime] = mapped_column(default=lambda: datetime.now(UTC))
    updated_at: Mapped[datetime] = mapped_column(
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    def set_lines(self, lines: list[dict]) -> None:
        """Serialize lines to JSON for storage."""
        self.lines_json = json.dumps(lines, default=str)
