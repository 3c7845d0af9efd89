"""Invoicing collaborator used by billing runs.

The billing engine only needs one call: create or update the utilities
invoice of a unit for a period. ``DatabaseInvoicing`` fulfils it with a local
table; deployments with an external invoicing service provide their own
``InvoicingClient`` through the ``get_invoicing`` dependency.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Protocol

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import get_db
from app.models.invoice import UtilityInvoice
from app.schemas.billing import InvoiceLine

logger = logging.getLogger(__name__)


class InvoicingError(Exception):
    """Raised by an invoicing client when one unit's invoice cannot be written.

    The billing run records it as a warning and carries on with other units.
    """


class InvoicingClient(Protocol):
    """Downstream invoicing entity the engine writes into."""

    def upsert_invoice_for_unit_period(
        self,
        unit_id: str,
        period_start: date,
        period_end: date,
        due_date: date,
        lines: list[InvoiceLine],
    ) -> str:
        """Create or replace the unit's invoice for the period; return its id."""
        ...


class DatabaseInvoicing:
    """Stores invoices in ``utility_invoices`` within the caller's session.

    Does not commit: the billing run commits bills and invoices together.
    """

    def __init__(self, db: Session):
        self.db = db

    def upsert_invoice_for_unit_period(
        self,
        unit_id: str,
        period_start: date,
        period_end: date,
        due_date: date,
        lines: list[InvoiceLine],
    ) -> str:
        invoice = self.db.scalars(
            select(UtilityInvoice).where(
                UtilityInvoice.unit_id == unit_id,
                UtilityInvoice.period_start == period_start,
                UtilityInvoice.period_end == period_end,
            )
        ).first()
        if invoice is None:
            invoice = UtilityInvoice(
                unit_id=unit_id,
                period_start=period_start,
                period_end=period_end,
            )
            self.db.add(invoice)
        elif not invoice.status.is_editable:
            raise InvoicingError(f"invoice {invoice.id} is {invoice.status.value}")

        invoice.due_date = due_date
        invoice.currency = lines[0].currency if lines else settings.DEFAULT_CURRENCY
        invoice.total_amount = sum((line.amount for line in lines), Decimal("0"))
        invoice.set_lines([line.model_dump(mode="json") for line in lines])
        self.db.flush()

        logger.debug(
            "Upserted utilities invoice",
            extra={"unit_id": unit_id, "invoice_id": invoice.id},
        )
        return str(invoice.id)


def get_invoicing(db: Session = Depends(get_db)) -> InvoicingClient:
    """Dependency returning the invoicing collaborator for this request."""
    return DatabaseInvoicing(db)
