"""Enum definitions for utility meters."""

from enum import Enum
from typing import assert_never


class UtilityType(str, Enum):
    """Metered utility. Closed set; branch on it with ``match``."""

    WATER = "water"
    ELECTRICITY = "electricity"

    @property
    def unit_of_measure(self) -> str:
        """Unit the register counts in."""
        match self:
            case UtilityType.WATER:
                return "m3"
            case UtilityType.ELECTRICITY:
                return "kWh"
            case _:
                assert_never(self)

    @property
    def label(self) -> str:
        """Human-readable name used on invoice lines."""
        match self:
            case UtilityType.WATER:
                return "Water"
            case UtilityType.ELECTRICITY:
                return "Electricity"
            case _:
                assert_never(self)


class MeterStatus(str, Enum):
    """Lifecycle state of a meter."""

    ACTIVE = "active"
    INACTIVE = "inactive"  # Retired; terminal
    FAULTY = "faulty"

    def can_transition_to(self, target: "MeterStatus") -> bool:
        """Check whether ``self -> target`` is an allowed status change."""
        if self == target:
            return True
        match self:
            case MeterStatus.ACTIVE:
                return target in (MeterStatus.FAULTY, MeterStatus.INACTIVE)
            case MeterStatus.FAULTY:
                return target in (MeterStatus.ACTIVE, MeterStatus.INACTIVE)
            case MeterStatus.INACTIVE:
                return False
            case _:
                assert_never(self)


class InvoiceStatus(str, Enum):
    """Status of a utility invoice held by the bundled invoicing adapter."""

    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    CANCELLED = "cancelled"

    @property
    def is_editable(self) -> bool:
        """Only drafts may be rewritten by a billing re-run."""
        match self:
            case InvoiceStatus.DRAFT:
                return True
            case InvoiceStatus.SENT | InvoiceStatus.PAID | InvoiceStatus.CANCELLED:
                return False
            case _:
                assert_never(self)
