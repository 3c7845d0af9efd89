"""Tests for the billing run engine."""

import json
import threading
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from app.core.config import settings
from app.core.database import Base
from app.models.bill import Bill
from app.models.enums import InvoiceStatus, UtilityType
from app.models.invoice import UtilityInvoice
from app.schemas.billing import BillingRunRequest
from app.schemas.meter import MeterCreate, UnitAllocation
from app.schemas.tariff import TariffCreate
from app.services.billing import allocate_charge, compute_consumption, list_bills, run_billing
from app.services.invoicing import DatabaseInvoicing, InvoicingError
from app.services.locks import locks
from app.services.meter import register_meter
from app.services.meter_reading import record_reading
from app.services.tariff import add_tariff

JAN_START = date(2024, 1, 1)
JAN_END = date(2024, 1, 31)


def _request(**kwargs) -> BillingRunRequest:
    return BillingRunRequest(
        start_date=kwargs.pop("start_date", JAN_START),
        end_date=kwargs.pop("end_date", JAN_END),
        due_date=kwargs.pop("due_date", date(2024, 2, 15)),
        **kwargs,
    )


def _water_meter(db, unit_id="U1", property_id="P1", readings=("1000", "1050")):
    """Helper: non-shared water meter with start/end readings for January."""
    meter = register_meter(
        db,
        MeterCreate(
            organization_id="ORG1",
            property_id=property_id,
            utility_type=UtilityType.WATER,
            unit_id=unit_id,
        ),
    )
    for day, value in zip((JAN_START, JAN_END), readings):
        record_reading(db, meter, day, Decimal(value))
    return meter


def _shared_electricity_meter(db, ratios, property_id="P1", readings=("0", "100")):
    """Helper: shared electricity meter from {unit_id: ratio} with January readings."""
    meter = register_meter(
        db,
        MeterCreate(
            organization_id="ORG1",
            property_id=property_id,
            utility_type=UtilityType.ELECTRICITY,
            is_shared=True,
            assigned_units=[
                UnitAllocation(unit_id=u, allocation_ratio=r) for u, r in ratios.items()
            ],
        ),
    )
    for day, value in zip((JAN_START, JAN_END), readings):
        record_reading(db, meter, day, Decimal(value))
    return meter


def _tariff(db, utility_type, rate, fixed="0", property_id="P1"):
    return add_tariff(
        db,
        TariffCreate(
            organization_id="ORG1",
            property_id=property_id,
            utility_type=utility_type,
            rate_per_unit=Decimal(rate),
            fixed_charge=Decimal(fixed),
            effective_from=date(2023, 1, 1),
        ),
    )


class FailingInvoicing:
    """Invoicing client that refuses every unit."""

    def upsert_invoice_for_unit_period(self, unit_id, period_start, period_end, due_date, lines):
        raise InvoicingError("downstream unavailable")


class TestComputeConsumption:
    """Unit tests for the consumption delta."""

    def test_forward_delta(self) -> None:
        """Consumption is ending minus baseline."""
        assert compute_consumption(Decimal("1000"), Decimal("1050")) == Decimal("50")

    def test_zero_delta(self) -> None:
        """An unchanged register consumed nothing."""
        assert compute_consumption(Decimal("10"), Decimal("10")) == Decimal("0")

    def test_negative_delta_is_anomaly(self) -> None:
        """A backwards register yields None without a rollover modulus."""
        assert compute_consumption(Decimal("1050"), Decimal("1000")) is None

    def test_rollover(self) -> None:
        """With a modulus the register is treated as wrapped."""
        result = compute_consumption(Decimal("9990"), Decimal("10"), Decimal("10000"))
        assert result == Decimal("20")


class TestAllocateCharge:
    """Unit tests for splitting a charge across units."""

    def test_single_unit_takes_everything(self) -> None:
        """A non-shared meter bills its whole charge to one unit."""
        allocations, fell_back = allocate_charge(
            Decimal("50"), Decimal("20"), Decimal("500"), [("U1", Decimal("1"))]
        )
        assert fell_back is False
        assert len(allocations) == 1
        assert allocations[0].amount == Decimal("1500.00")
        assert allocations[0].consumption == Decimal("50.000")

    def test_ratio_split(self) -> None:
        """Shared charges follow the allocation ratios."""
        allocations, fell_back = allocate_charge(
            Decimal("100"),
            Decimal("10"),
            Decimal("0"),
            [("U3", Decimal("0.4")), ("U2", Decimal("0.6"))],
        )
        assert fell_back is False
        assert [(a.unit_id, a.amount) for a in allocations] == [
            ("U2", Decimal("600.00")),
            ("U3", Decimal("400.00")),
        ]
        assert [a.consumption for a in allocations] == [Decimal("60.000"), Decimal("40.000")]

    def test_remainder_goes_to_last_unit(self) -> None:
        """Rounded slices always add up to the meter totals."""
        allocations, fell_back = allocate_charge(
            Decimal("100"),
            Decimal("1"),
            Decimal("0"),
            [("A", None), ("B", None), ("C", None)],
        )
        assert fell_back is True
        assert [a.amount for a in allocations] == [
            Decimal("33.33"),
            Decimal("33.33"),
            Decimal("33.34"),
        ]
        assert sum(a.consumption for a in allocations) == Decimal("100.000")

    def test_ratios_not_summing_to_one_fall_back(self) -> None:
        """Bad ratios are replaced by an equal split."""
        allocations, fell_back = allocate_charge(
            Decimal("10"),
            Decimal("10"),
            Decimal("0"),
            [("U1", Decimal("0.5")), ("U2", Decimal("0.3"))],
        )
        assert fell_back is True
        assert [a.amount for a in allocations] == [Decimal("50.00"), Decimal("50.00")]

    def test_ratio_sum_within_tolerance(self) -> None:
        """Tiny rounding in ratios is accepted as is."""
        _, fell_back = allocate_charge(
            Decimal("10"),
            Decimal("1"),
            Decimal("0"),
            [("U1", Decimal("0.33333")), ("U2", Decimal("0.33333")), ("U3", Decimal("0.33333"))],
        )
        assert fell_back is False


class TestRunBilling:
    """Billing runs against the database."""

    def test_single_unit_water_bill(self, test_db) -> None:
        """50 m3 at 20/m3 plus a 500 fixed charge bills 1500."""
        _water_meter(test_db, readings=("1000", "1050"))
        _tariff(test_db, UtilityType.WATER, "20", fixed="500")

        result = run_billing(test_db, _request(), DatabaseInvoicing(test_db))

        assert result.created_bills == 1
        assert result.updated_bills == 0
        assert result.warnings == []
        assert result.incomplete is False

        bills = list_bills(test_db, unit_id="U1")
        assert len(bills) == 1
        bill = bills[0]
        assert bill.consumption == Decimal("50")
        assert bill.rate_applied == Decimal("20")
        assert bill.amount == Decimal("1500")
        assert bill.currency == "USD"
        assert bill.period_start == JAN_START
        assert bill.period_end == JAN_END

    def test_shared_meter_split(self, test_db) -> None:
        """100 kWh at 10/kWh split 0.6/0.4 bills 600 and 400."""
        _shared_electricity_meter(test_db, {"U2": Decimal("0.6"), "U3": Decimal("0.4")})
        _tariff(test_db, UtilityType.ELECTRICITY, "10")

        result = run_billing(test_db, _request(), DatabaseInvoicing(test_db))

        assert result.created_bills == 2
        amounts = {b.unit_id: b.amount for b in list_bills(test_db, property_id="P1")}
        assert amounts == {"U2": Decimal("600"), "U3": Decimal("400")}

    def test_rerun_updates_in_place(self, test_db) -> None:
        """Running the same period twice does not duplicate bills."""
        _water_meter(test_db)
        _tariff(test_db, UtilityType.WATER, "20", fixed="500")

        first = run_billing(test_db, _request(), DatabaseInvoicing(test_db))
        second = run_billing(test_db, _request(), DatabaseInvoicing(test_db))

        assert first.created_bills == 1
        assert second.created_bills == 0
        assert second.updated_bills == 1
        assert second.processed_bills == 1
        assert len(list_bills(test_db)) == 1

    def test_rerun_picks_up_corrected_reading(self, test_db) -> None:
        """A later correction changes the bill on re-run."""
        meter = _water_meter(test_db)
        _tariff(test_db, UtilityType.WATER, "20", fixed="500")
        run_billing(test_db, _request(), DatabaseInvoicing(test_db))

        record_reading(test_db, meter, JAN_END, Decimal("1040"), notes="Corrected")
        run_billing(test_db, _request(), DatabaseInvoicing(test_db))

        bill = list_bills(test_db, unit_id="U1")[0]
        assert bill.amount == Decimal("1300")

    def test_missing_reading_warns(self, test_db) -> None:
        """A meter without an ending reading is skipped with a warning."""
        meter = _water_meter(test_db, readings=("1000",))
        _tariff(test_db, UtilityType.WATER, "20")

        result = run_billing(test_db, _request(), DatabaseInvoicing(test_db))

        assert result.created_bills == 0
        assert [(w.meter_id, w.message) for w in result.warnings] == [
            (meter.id, "missing reading for period")
        ]
        assert list_bills(test_db) == []

    def test_no_readings_at_all_warns(self, test_db) -> None:
        """A meter with no readings is skipped with a warning."""
        _water_meter(test_db, readings=())
        _tariff(test_db, UtilityType.WATER, "20")

        result = run_billing(test_db, _request(), DatabaseInvoicing(test_db))

        assert [w.message for w in result.warnings] == ["missing reading for period"]

    def test_negative_consumption_warns(self, test_db) -> None:
        """A register going backwards is reported as a possible reset."""
        _water_meter(test_db, readings=("1050", "1000"))
        _tariff(test_db, UtilityType.WATER, "20")

        result = run_billing(test_db, _request(), DatabaseInvoicing(test_db))

        assert result.created_bills == 0
        assert [w.message for w in result.warnings] == [
            "negative consumption: possible meter reset"
        ]

    def test_rollover_when_configured(self, test_db, monkeypatch) -> None:
        """With a rollover modulus the wrapped register is billed."""
        monkeypatch.setattr(settings, "METER_ROLLOVER_MODULUS", Decimal("10000"))
        _water_meter(test_db, readings=("9990", "10"))
        _tariff(test_db, UtilityType.WATER, "2")

        result = run_billing(test_db, _request(), DatabaseInvoicing(test_db))

        assert result.created_bills == 1
        assert len(result.warnings) == 1
        assert "rollover" in result.warnings[0].message
        bill = list_bills(test_db)[0]
        assert bill.consumption == Decimal("20")
        assert bill.amount == Decimal("40")

    def test_no_tariff_warns(self, test_db) -> None:
        """A meter without an applicable tariff is skipped."""
        _water_meter(test_db)

        result = run_billing(test_db, _request(), DatabaseInvoicing(test_db))

        assert result.created_bills == 0
        assert [w.message for w in result.warnings] == ["no tariff configured"]

    def test_one_bad_meter_does_not_stop_the_run(self, test_db) -> None:
        """Other meters are still billed when one is skipped."""
        _water_meter(test_db, unit_id="U1", readings=("1000",))
        _water_meter(test_db, unit_id="U2", readings=("10", "20"))
        _tariff(test_db, UtilityType.WATER, "1")

        result = run_billing(test_db, _request(), DatabaseInvoicing(test_db))

        assert result.created_bills == 1
        assert len(result.warnings) == 1
        assert [b.unit_id for b in list_bills(test_db)] == ["U2"]

    def test_equal_split_fallback_warns(self, test_db) -> None:
        """Missing ratios split equally and say so."""
        _shared_electricity_meter(test_db, {"U1": None, "U2": None})
        _tariff(test_db, UtilityType.ELECTRICITY, "10")

        result = run_billing(test_db, _request(), DatabaseInvoicing(test_db))

        assert result.created_bills == 2
        assert len(result.warnings) == 1
        assert "split equally" in result.warnings[0].message
        bills = list_bills(test_db)
        assert [b.amount for b in bills] == [Decimal("500"), Decimal("500")]
        assert all(b.allocation_ratio == Decimal("0.5") for b in bills)

    def test_filters_by_property_and_utility(self, test_db) -> None:
        """Only meters matching the request filters are billed."""
        _water_meter(test_db, unit_id="U1", property_id="P1")
        _water_meter(test_db, unit_id="U2", property_id="P2")
        _shared_electricity_meter(test_db, {"U1": Decimal("1")}, property_id="P1")
        _tariff(test_db, UtilityType.WATER, "1", property_id="P1")
        _tariff(test_db, UtilityType.WATER, "1", property_id="P2")
        _tariff(test_db, UtilityType.ELECTRICITY, "1", property_id="P1")

        result = run_billing(
            test_db,
            _request(property_id="P1", utility_type=UtilityType.WATER),
            DatabaseInvoicing(test_db),
        )

        assert result.created_bills == 1
        bills = list_bills(test_db)
        assert [(b.unit_id, b.utility_type) for b in bills] == [("U1", UtilityType.WATER)]

    def test_time_budget_exhausted(self, test_db) -> None:
        """An exhausted budget marks the run incomplete."""
        _water_meter(test_db)
        _tariff(test_db, UtilityType.WATER, "20")

        result = run_billing(test_db, _request(), DatabaseInvoicing(test_db), timeout_seconds=0)

        assert result.incomplete is True
        assert result.created_bills == 0
        assert result.warnings[-1].message.startswith("run incomplete")


class TestRunBillingInvoices:
    """Invoice creation at the end of a run."""

    def test_invoice_per_unit(self, test_db) -> None:
        """Each billed unit gets one invoice and its bills are stamped."""
        _water_meter(test_db, unit_id="U1")
        _tariff(test_db, UtilityType.WATER, "20", fixed="500")

        result = run_billing(
            test_db, _request(create_invoices=True), DatabaseInvoicing(test_db)
        )

        assert result.created_invoices == 1
        assert result.updated_invoices == 0
        invoice = test_db.scalars(select(UtilityInvoice)).one()
        assert invoice.unit_id == "U1"
        assert invoice.due_date == date(2024, 2, 15)
        assert invoice.total_amount == Decimal("1500")
        assert invoice.currency == "USD"
        lines = json.loads(invoice.lines_json)
        assert len(lines) == 1
        assert lines[0]["type"] == "water"

        bill = list_bills(test_db)[0]
        assert bill.invoice_id == str(invoice.id)

    def test_invoice_combines_utilities(self, test_db) -> None:
        """Water and electricity bills of a unit share one invoice."""
        _water_meter(test_db, unit_id="U1")
        _shared_electricity_meter(test_db, {"U1": Decimal("0.5"), "U2": Decimal("0.5")})
        _tariff(test_db, UtilityType.WATER, "20", fixed="500")
        _tariff(test_db, UtilityType.ELECTRICITY, "10")

        result = run_billing(
            test_db, _request(create_invoices=True), DatabaseInvoicing(test_db)
        )

        assert result.created_bills == 3
        assert result.created_invoices == 2
        invoices = {i.unit_id: i for i in test_db.scalars(select(UtilityInvoice)).all()}
        assert len(json.loads(invoices["U1"].lines_json)) == 2
        assert invoices["U1"].total_amount == Decimal("2000")
        assert invoices["U2"].total_amount == Decimal("500")

    def test_rerun_updates_invoice(self, test_db) -> None:
        """A re-run replaces the existing invoice instead of adding one."""
        _water_meter(test_db, unit_id="U1")
        _tariff(test_db, UtilityType.WATER, "20", fixed="500")

        run_billing(test_db, _request(create_invoices=True), DatabaseInvoicing(test_db))
        result = run_billing(
            test_db, _request(create_invoices=True), DatabaseInvoicing(test_db)
        )

        assert result.created_invoices == 0
        assert result.updated_invoices == 1
        assert result.processed_invoices == 1
        assert len(test_db.scalars(select(UtilityInvoice)).all()) == 1

    def test_units_with_only_warnings_get_no_invoice(self, test_db) -> None:
        """Nothing is invoiced for a unit that produced no bill."""
        _water_meter(test_db, unit_id="U1", readings=("1000",))
        _tariff(test_db, UtilityType.WATER, "20")

        result = run_billing(
            test_db, _request(create_invoices=True), DatabaseInvoicing(test_db)
        )

        assert result.created_invoices == 0
        assert test_db.scalars(select(UtilityInvoice)).all() == []

    def test_invoicing_failure_keeps_bills(self, test_db) -> None:
        """A refused invoice becomes a warning; bills are still written."""
        _water_meter(test_db, unit_id="U1")
        _tariff(test_db, UtilityType.WATER, "20")

        result = run_billing(test_db, _request(create_invoices=True), FailingInvoicing())

        assert result.created_bills == 1
        assert result.created_invoices == 0
        assert [(w.unit_id, w.message) for w in result.warnings] == [
            ("U1", "invoice not written: downstream unavailable")
        ]
        assert list_bills(test_db)[0].invoice_id is None

    def test_sent_invoice_is_not_rewritten(self, test_db) -> None:
        """Once an invoice leaves draft a re-run only updates the bills."""
        _water_meter(test_db, unit_id="U1")
        _tariff(test_db, UtilityType.WATER, "20")
        run_billing(test_db, _request(create_invoices=True), DatabaseInvoicing(test_db))
        invoice = test_db.scalars(select(UtilityInvoice)).one()
        invoice.status = InvoiceStatus.SENT
        test_db.commit()
        _tariff(test_db, UtilityType.WATER, "30")

        result = run_billing(
            test_db, _request(create_invoices=True), DatabaseInvoicing(test_db)
        )

        assert result.updated_bills == 1
        assert result.updated_invoices == 0
        assert [(w.unit_id, w.message) for w in result.warnings] == [
            ("U1", f"invoice not written: invoice {invoice.id} is sent")
        ]
        test_db.refresh(invoice)
        assert invoice.total_amount == Decimal("1000")
        assert list_bills(test_db)[0].amount == Decimal("1500")



class TestConcurrentBillingRuns:
    """Simultaneous runs over one period against a shared database file."""

    def test_each_bill_created_once(self, tmp_path) -> None:
        """Parallel runs create every bill exactly once; the rest update."""
        engine = create_engine(
            f"sqlite:///{tmp_path / 'billing.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        Base.metadata.create_all(bind=engine)
        session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

        with session_factory() as db:
            for unit_id in ("U1", "U2", "U3"):
                _water_meter(db, unit_id=unit_id)
            _shared_electricity_meter(db, {"U4": Decimal("0.5"), "U5": Decimal("0.5")})
            _tariff(db, UtilityType.WATER, "20")
            _tariff(db, UtilityType.ELECTRICITY, "10")

        workers = 4
        barrier = threading.Barrier(workers)
        results = []
        errors = []

        def worker() -> None:
            with session_factory() as db:
                try:
                    barrier.wait(timeout=10)
                    results.append(run_billing(db, _request(), DatabaseInvoicing(db)))
                except Exception as exc:
                    errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert errors == []
        assert len(results) == workers
        assert sum(r.created_bills for r in results) == 5
        assert sum(r.updated_bills for r in results) == 5 * (workers - 1)
        with session_factory() as db:
            assert db.scalar(select(func.count()).select_from(Bill)) == 5
        assert len(locks) == 0
        engine.dispose()

@pytest.mark.parametrize("end_date", [JAN_START, date(2023, 12, 31)])
def test_period_must_move_forward(end_date) -> None:
    """end_date must be after start_date."""
    with pytest.raises(ValueError):
        _request(end_date=end_date)
