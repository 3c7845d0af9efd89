"""Billing run engine: meter readings -> per-unit utility bills (and invoices).

A run walks every matching active meter, prices its consumption for the
period with the tariff in force at the period end, splits the charge across
the units the meter covers and upserts one Bill per unit. Problems with a
single meter (missing readings, no tariff, negative consumption, bad
allocation ratios) become warnings in the result; they never abort the run.

Re-running the same period is idempotent: bills are keyed by
``(unit_id, utility_type, period_start, period_end)`` and updated in place.
"""

import logging
import time
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.bill import Bill
from app.models.enums import UtilityType
from app.models.meter import Meter
from app.models.tariff import UtilityTariff
from app.schemas.billing import (
    BillingRunRequest,
    BillingRunResult,
    BillingWarning,
    InvoiceLine,
)
from app.services.invoicing import InvoicingClient, InvoicingError
from app.services.locks import bill_key, locks
from app.services.meter import get_active_meters
from app.services.meter_reading import latest_reading_on_or_before
from app.services.tariff import resolve_tariff

logger = logging.getLogger(__name__)

CONSUMPTION_QUANTUM = Decimal("0.001")
MONEY_QUANTUM = Decimal("0.01")

MISSING_READING = "missing reading for period"
NEGATIVE_CONSUMPTION = "negative consumption: possible meter reset"
NO_TARIFF = "no tariff configured"


@dataclass(frozen=True)
class Allocation:
    """One unit's slice of a meter's consumption and charge."""

    unit_id: str
    ratio: Decimal
    consumption: Decimal
    fixed_charge: Decimal
    amount: Decimal


@dataclass(frozen=True)
class MeterCharge:
    """A priced meter, ready to be written as bills."""

    meter: Meter
    tariff: UtilityTariff
    consumption: Decimal
    allocations: list[Allocation]


def _quantize(value: Decimal, quantum: Decimal) -> Decimal:
    return value.quantize(quantum, rounding=ROUND_HALF_UP)


def compute_consumption(
    baseline: Decimal,
    ending: Decimal,
    rollover_modulus: Decimal | None = None,
) -> Decimal | None:
    """Usage between two cumulative register values.

    A negative delta is an anomaly and yields None, unless a rollover modulus
    is configured, in which case the register is assumed to have wrapped
    once at that value.
    """
    delta = ending - baseline
    if delta >= 0:
        return delta
    if rollover_modulus is None:
        return None
    wrapped = delta + rollover_modulus
    return wrapped if wrapped >= 0 else None


def allocate_charge(
    consumption: Decimal,
    rate_per_unit: Decimal,
    fixed_charge: Decimal,
    shares: list[tuple[str, Decimal | None]],
    tolerance: Decimal = Decimal("0.0001"),
) -> tuple[list[Allocation], bool]:
    """Split a meter's consumption and charge across units by ratio.

    Falls back to an equal split when any ratio is missing or the ratios do
    not sum to 1 within ``tolerance``; the second return value reports that
    fallback. Rounding remainders go to the last unit (by unit id) so the
    slices add up exactly to the meter totals.
    """
    ordered = sorted(shares, key=lambda share: share[0])
    ratios = [ratio for _, ratio in ordered]

    fell_back = any(r is None for r in ratios) or abs(sum(ratios) - 1) > tolerance
    if fell_back:
        ratios = [Decimal(1) / Decimal(len(ordered))] * len(ordered)

    total_consumption = _quantize(consumption, CONSUMPTION_QUANTUM)
    total_fixed = _quantize(fixed_charge, MONEY_QUANTUM)
    total_amount = _quantize(consumption * rate_per_unit + fixed_charge, MONEY_QUANTUM)

    allocations: list[Allocation] = []
    used_consumption = used_fixed = used_amount = Decimal("0")
    last = len(ordered) - 1
    for index, ((unit_id, _), ratio) in enumerate(zip(ordered, ratios)):
        if index == last:
            unit_consumption = total_consumption - used_consumption
            unit_fixed = total_fixed - used_fixed
            unit_amount = total_amount - used_amount
        else:
            unit_consumption = _quantize(total_consumption * ratio, CONSUMPTION_QUANTUM)
            unit_fixed = _quantize(total_fixed * ratio, MONEY_QUANTUM)
            unit_amount = _quantize(total_amount * ratio, MONEY_QUANTUM)
            used_consumption += unit_consumption
            used_fixed += unit_fixed
            used_amount += unit_amount
        allocations.append(
            Allocation(
                unit_id=unit_id,
                ratio=ratio,
                consumption=unit_consumption,
                fixed_charge=unit_fixed,
                amount=unit_amount,
            )
        )
    return allocations, fell_back


def _warn(
    warnings: list[BillingWarning],
    message: str,
    meter_id: int | None = None,
    unit_id: str | None = None,
) -> None:
    warnings.append(BillingWarning(meter_id=meter_id, unit_id=unit_id, message=message))
    logger.warning(message, extra={"meter_id": meter_id, "unit_id": unit_id})


def _price_meter(
    db: Session,
    meter: Meter,
    request: BillingRunRequest,
    warnings: list[BillingWarning],
) -> MeterCharge | None:
    """Price one meter for the period, or record why it was skipped."""
    baseline = latest_reading_on_or_before(db, meter.id, request.start_date)
    ending = latest_reading_on_or_before(db, meter.id, request.end_date)
    if baseline is None or ending is None or baseline.id == ending.id:
        _warn(warnings, MISSING_READING, meter_id=meter.id)
        return None

    modulus = settings.METER_ROLLOVER_MODULUS
    consumption = compute_consumption(baseline.reading_value, ending.reading_value, modulus)
    if consumption is None:
        _warn(warnings, NEGATIVE_CONSUMPTION, meter_id=meter.id)
        return None
    if ending.reading_value < baseline.reading_value:
        _warn(
            warnings,
            f"register rollover assumed at {modulus}; billed {consumption}",
            meter_id=meter.id,
        )

    tariff = resolve_tariff(
        db,
        meter.property_id,
        meter.utility_type,
        request.end_date,
        organization_id=meter.organization_id,
    )
    if tariff is None:
        _warn(warnings, NO_TARIFF, meter_id=meter.id)
        return None

    if meter.is_shared:
        shares = [(a.unit_id, a.allocation_ratio) for a in meter.assignments]
    else:
        shares = [(meter.unit_id, Decimal("1"))]

    allocations, fell_back = allocate_charge(
        consumption,
        tariff.rate_per_unit,
        tariff.fixed_charge,
        shares,
        tolerance=settings.ALLOCATION_RATIO_TOLERANCE,
    )
    if fell_back:
        _warn(
            warnings,
            "allocation ratios missing or not summing to 1; "
            f"split equally across {len(allocations)} unit(s)",
            meter_id=meter.id,
        )

    return MeterCharge(
        meter=meter,
        tariff=tariff,
        consumption=consumption,
        allocations=allocations,
    )


def _find_bill(
    db: Session,
    unit_id: str,
    utility_type: UtilityType,
    period_start: date,
    period_end: date,
) -> Bill | None:
    return db.scalars(
        select(Bill).where(
            Bill.unit_id == unit_id,
            Bill.utility_type == utility_type,
            Bill.period_start == period_start,
            Bill.period_end == period_end,
        )
    ).first()


def _upsert_bill(
    db: Session,
    charge: MeterCharge,
    allocation: Allocation,
    request: BillingRunRequest,
) -> tuple[Bill, bool]:
    """Create or update the bill for one allocation. Returns (bill, created)."""
    meter = charge.meter
    bill = _find_bill(
        db, allocation.unit_id, meter.utility_type, request.start_date, request.end_date
    )
    created = bill is None
    if bill is None:
        bill = Bill(
            unit_id=allocation.unit_id,
            utility_type=meter.utility_type,
            period_start=request.start_date,
            period_end=request.end_date,
        )
        db.add(bill)

    bill.property_id = meter.property_id
    bill.consumption = allocation.consumption
    bill.rate_applied = charge.tariff.rate_per_unit
    bill.fixed_charge_applied = allocation.fixed_charge
    bill.amount = allocation.amount
    bill.currency = charge.tariff.currency
    bill.allocation_ratio = allocation.ratio
    bill.source_meter_id = meter.id
    bill.tariff_id = charge.tariff.id
    return bill, created


def _invoice_lines(bills: list[Bill]) -> list[InvoiceLine]:
    return [
        InvoiceLine(
            description=(
                f"{bill.utility_type.label} {bill.period_start.isoformat()} to "
                f"{bill.period_end.isoformat()} ({bill.consumption} "
                f"{bill.utility_type.unit_of_measure})"
            ),
            type=bill.utility_type,
            quantity=bill.consumption,
            unit_price=bill.rate_applied,
            fixed_charge=bill.fixed_charge_applied,
            amount=bill.amount,
            currency=bill.currency,
            bill_id=bill.id,
        )
        for bill in bills
    ]


def _invoice_units(
    db: Session,
    invoicing: InvoicingClient,
    unit_ids: list[str],
    request: BillingRunRequest,
    result: BillingRunResult,
) -> None:
    """Upsert one invoice per billed unit, covering all its bills for the period."""
    db.flush()
    for unit_id in unit_ids:
        bills = list(
            db.scalars(
                select(Bill)
                .where(
                    Bill.unit_id == unit_id,
                    Bill.period_start == request.start_date,
                    Bill.period_end == request.end_date,
                )
                .order_by(Bill.utility_type, Bill.id)
            ).all()
        )
        already_invoiced = any(bill.invoice_id for bill in bills)
        try:
            invoice_id = invoicing.upsert_invoice_for_unit_period(
                unit_id,
                request.start_date,
                request.end_date,
                request.due_date,
                _invoice_lines(bills),
            )
        except InvoicingError as exc:
            _warn(result.warnings, f"invoice not written: {exc}", unit_id=unit_id)
            continue

        for bill in bills:
            bill.invoice_id = invoice_id
        if already_invoiced:
            result.updated_invoices += 1
        else:
            result.created_invoices += 1


def run_billing(
    db: Session,
    request: BillingRunRequest,
    invoicing: InvoicingClient,
    timeout_seconds: float | None = None,
) -> BillingRunResult:
    """Execute a billing run and return its summary.

    Meters are priced one by one until the time budget runs out; whatever was
    priced is still written, and the result is flagged ``incomplete``. Bill
    keys touched by the run stay locked from the first upsert until commit.
    """
    result = BillingRunResult()
    budget = settings.BILLING_RUN_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
    deadline = time.monotonic() + budget

    meters = get_active_meters(db, request.property_id, request.utility_type)
    logger.info(
        "Billing run %s..%s over %d meter(s)",
        request.start_date.isoformat(),
        request.end_date.isoformat(),
        len(meters),
        extra={"property_id": request.property_id},
    )

    charges: list[MeterCharge] = []
    for index, meter in enumerate(meters):
        if time.monotonic() >= deadline:
            result.incomplete = True
            _warn(
                result.warnings,
                f"run incomplete: time budget exhausted, {len(meters) - index} meter(s) not processed",
            )
            break
        charge = _price_meter(db, meter, request, result.warnings)
        if charge is not None:
            charges.append(charge)

    keys = [
        bill_key(a.unit_id, c.meter.utility_type.value, request.start_date, request.end_date)
        for c in charges
        for a in c.allocations
    ]
    with locks.hold(*keys):
        billed: dict[tuple[str, UtilityType], int] = {}
        for charge in charges:
            for allocation in charge.allocations:
                key = (allocation.unit_id, charge.meter.utility_type)
                if key in billed:
                    _warn(
                        result.warnings,
                        f"unit already billed by meter {billed[key]} in this run; skipped",
                        meter_id=charge.meter.id,
                        unit_id=allocation.unit_id,
                    )
                    continue
                billed[key] = charge.meter.id

                _, created = _upsert_bill(db, charge, allocation, request)
                if created:
                    result.created_bills += 1
                else:
                    result.updated_bills += 1

        if request.create_invoices:
            unit_ids = sorted({unit_id for unit_id, _ in billed})
            _invoice_units(db, invoicing, unit_ids, request, result)

        db.commit()

    logger.info(
        "Billing run done: %d created, %d updated, %d invoice(s), %d warning(s)",
        result.created_bills,
        result.updated_bills,
        result.processed_invoices,
        len(result.warnings),
        extra={"property_id": request.property_id},
    )
    return result


def list_bills(
    db: Session,
    property_id: str | None = None,
    unit_id: str | None = None,
    utility_type: UtilityType | None = None,
    period_start: date | None = None,
    period_end: date | None = None,
) -> list[Bill]:
    """List bills matching the given filters."""
    stmt = select(Bill)
    if property_id is not None:
        stmt = stmt.where(Bill.property_id == property_id)
    if unit_id is not None:
        stmt = stmt.where(Bill.unit_id == unit_id)
    if utility_type is not None:
        stmt = stmt.where(Bill.utility_type == utility_type)
    if period_start is not None:
        stmt = stmt.where(Bill.period_start == period_start)
    if period_end is not None:
        stmt = stmt.where(Bill.period_end == period_end)
    stmt = stmt.order_by(Bill.period_start.desc(), Bill.unit_id, Bill.utility_type)
    return list(db.scalars(stmt).all())
