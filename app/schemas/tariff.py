"""UtilityTariff Pydantic schemas for request/response validation."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator, model_validator

from app.core.config import settings
from app.models.enums import UtilityType


class TariffCreate(BaseModel):
    """Schema for adding an effective-dated tariff row.

    Leave ``property_id`` empty to define an organization-wide default.
    """

    organization_id: str | None = None
    property_id: str | None = None
    utility_type: UtilityType
    rate_per_unit: Decimal = Field(ge=0)
    fixed_charge: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = Field(default_factory=lambda: settings.DEFAULT_CURRENCY)
    effective_from: date
    effective_to: date | None = None

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Currencies are 3-letter codes, stored upper-case."""
        if len(v.strip()) != 3:
            raise ValueError("Currency must be a 3-letter code")
        return v.strip().upper()

    @model_validator(mode="after")
    def validate_scope_and_window(self) -> "TariffCreate":
        """Require an owner and a non-inverted window."""
        if not self.organization_id and not self.property_id:
            raise ValueError("Either organization_id or property_id is required")
        if self.effective_to is not None and self.effective_to < self.effective_from:
            raise ValueError("effective_to must not be before effective_from")
        return self


class TariffUpdate(BaseModel):
    """Schema for updating a tariff row."""

    rate_per_unit: Decimal | None = Field(default=None, ge=0)
    fixed_charge: Decimal | None = Field(default=None, ge=0)
    currency: str | None = None
    effective_from: date | None = None
    effective_to: date | None = None

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str | None) -> str | None:
        """Validate currency if provided."""
        if v is not None:
            if len(v.strip()) != 3:
                raise ValueError("Currency must be a 3-letter code")
            return v.strip().upper()
        return v


class TariffResponse(BaseModel):
    """Schema for tariff response."""

    id: int
    organization_id: str | None
    property_id: str | None
    utility_type: UtilityType
    rate_per_unit: Decimal
    fixed_charge: Decimal
    currency: str
    effective_from: date
    effective_to: date | None
    created_at: datetime

    model_config = {"from_attributes": True}
