"""MeterReading Pydantic schemas for request/response validation."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel


class ReadingEntry(BaseModel):
    """One meter's value inside a bulk submission.

    ``reading_value`` is unconstrained here: a negative value is
    a per-entry error reported back, not a reason to reject the whole batch.
    """

    meter_id: int
    reading_value: Decimal
    is_estimated: bool = False
    notes: str | None = None


class BulkReadingCreate(BaseModel):
    """Schema for submitting readings for many meters of a property at once."""

    property_id: str
    reading_date: date
    readings: list[ReadingEntry]


class ReadingError(BaseModel):
    """Why one bulk entry was skipped."""

    meter_id: int
    reading_date: date
    message: str


class BulkReadingResult(BaseModel):
    """Outcome of a bulk submission: saved count plus skipped entries in input order."""

    count: int
    errors: list[ReadingError]


class MeterReadingResponse(BaseModel):
    """Schema for meter reading response."""

    id: int
    meter_id: int
    reading_date: date
    reading_value: Decimal
    is_estimated: bool
    notes: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class MeterReadingHistory(BaseModel):
    """Schema for paginated meter reading history."""

    meter_id: int
    readings: list[MeterReadingResponse]
    total: int
    limit: int
    offset: int
