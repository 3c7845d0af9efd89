"""Meter Pydantic schemas for request/response validation."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator

from app.models.enums import MeterStatus, UtilityType


class UnitAllocation(BaseModel):
    """A unit's share of a shared meter. A missing ratio means "split equally"."""

    unit_id: str
    allocation_ratio: Decimal | None = Field(default=None, gt=0, le=1)


def check_allocation(
    is_shared: bool,
    unit_id: str | None,
    assigned_units: list[UnitAllocation],
) -> None:
    """Shared meters need assignees and no owner; others need exactly one owner."""
    if is_shared:
        if unit_id:
            raise ValueError("Shared meters are assigned through assigned_units, not unit_id")
        if not assigned_units:
            raise ValueError("Shared meters need at least one assigned unit")
        unit_ids = [a.unit_id for a in assigned_units]
        if len(set(unit_ids)) != len(unit_ids):
            raise ValueError("A unit can only be assigned once per meter")
    else:
        if not unit_id:
            raise ValueError("Non-shared meters need a unit_id")
        if assigned_units:
            raise ValueError("Non-shared meters cannot have assigned_units")


class MeterCreate(BaseModel):
    """Schema for registering a meter.

    The optional initial reading is recorded right after registration.
    """

    organization_id: str
    property_id: str
    utility_type: UtilityType
    meter_number: str | None = None
    name: str | None = None
    location: str | None = None
    is_shared: bool = False
    unit_id: str | None = None
    assigned_units: list[UnitAllocation] = []
    status: MeterStatus = MeterStatus.ACTIVE
    installed_on: date | None = None
    initial_reading_value: Decimal | None = Field(default=None, ge=0)
    initial_reading_date: date | None = None

    @model_validator(mode="after")
    def validate_allocation(self) -> "MeterCreate":
        """Validate shared/unit consistency."""
        check_allocation(self.is_shared, self.unit_id, self.assigned_units)
        if self.status == MeterStatus.INACTIVE:
            raise ValueError("Cannot register a meter as inactive")
        return self


class MeterUpdate(BaseModel):
    """Schema for updating a meter. Allocation is re-validated on the merged state."""

    meter_number: str | None = None
    name: str | None = None
    location: str | None = None
    installed_on: date | None = None
    status: MeterStatus | None = None
    is_shared: bool | None = None
    unit_id: str | None = None
    assigned_units: list[UnitAllocation] | None = None

    def touches_allocation(self) -> bool:
        """Check whether the patch changes which units the meter covers."""
        return bool({"is_shared", "unit_id", "assigned_units"} & self.model_fields_set)


class ReadingSummary(BaseModel):
    """Latest reading embedded in meter responses."""

    id: int
    reading_date: date
    reading_value: Decimal
    is_estimated: bool

    model_config = {"from_attributes": True}


class AssignedUnitResponse(BaseModel):
    """Unit covered by a meter."""

    unit_id: str
    allocation_ratio: Decimal | None

    model_config = {"from_attributes": True}


class MeterResponse(BaseModel):
    """Schema for meter response."""

    id: int
    organization_id: str
    property_id: str
    utility_type: UtilityType
    meter_number: str | None
    name: str | None
    location: str | None
    is_shared: bool
    unit_id: str | None
    assigned_units: list[AssignedUnitResponse]
    status: MeterStatus
    installed_on: date | None
    created_at: datetime
    latest_reading: ReadingSummary | None = None


class MeterPage(BaseModel):
    """Paginated meter listing."""

    data: list[MeterResponse]
    total: int
    page: int
    per_page: int


class UnitConflict(BaseModel):
    """Unit already covered by another active meter of the same utility."""

    unit_id: str
    utility_type: UtilityType


class ConflictResponse(BaseModel):
    """Body of a 422 allocation-conflict response."""

    message: str
    conflicts: list[UnitConflict]
