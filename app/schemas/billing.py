"""Billing run schemas."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field, computed_field, model_validator

from app.models.enums import UtilityType


class BillingRunRequest(BaseModel):
    """Parameters of a billing run.

    Readings are taken as the latest on or before ``start_date`` (baseline)
    and ``end_date`` (ending); tariffs are resolved as of ``end_date``.
    """

    property_id: str | None = None
    utility_type: UtilityType | None = None
    start_date: date
    end_date: date
    due_date: date
    create_invoices: bool = False

    @model_validator(mode="after")
    def validate_period(self) -> "BillingRunRequest":
        """The period must move forward in time."""
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class BillingWarning(BaseModel):
    """Problem with one meter or unit that did not stop the run."""

    unit_id: str | None = None
    meter_id: int | None = None
    message: str


class BillingRunResult(BaseModel):
    """Summary returned by a billing run. Not persisted."""

    created_bills: int = 0
    updated_bills: int = 0
    created_invoices: int = 0
    updated_invoices: int = 0
    incomplete: bool = False
    warnings: list[BillingWarning] = Field(default_factory=list)

    @computed_field
    @property
    def processed_bills(self) -> int:
        return self.created_bills + self.updated_bills

    @computed_field
    @property
    def processed_invoices(self) -> int:
        return self.created_invoices + self.updated_invoices


class BillResponse(BaseModel):
    """Schema for bill response."""

    id: int
    unit_id: str
    property_id: str
    utility_type: UtilityType
    period_start: date
    period_end: date
    consumption: Decimal
    rate_applied: Decimal
    fixed_charge_applied: Decimal
    amount: Decimal
    currency: str
    allocation_ratio: Decimal
    source_meter_id: int
    tariff_id: int | None
    invoice_id: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class InvoiceLine(BaseModel):
    """Line handed to the invoicing collaborator, one per bill."""

    description: str
    type: UtilityType
    quantity: Decimal
    unit_price: Decimal
    fixed_charge: Decimal
    amount: Decimal
    currency: str
    bill_id: int
