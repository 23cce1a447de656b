import pytest
from datetime import date
from decimal import Decimal

from sqlalchemy import func, select

from housing_ledger.core.config import settings
from housing_ledger.exceptions import InvalidEntryError, MissingPricingError
from housing_ledger.models import Account, EntrySource, PaymentComponent, Student, TransactionEntry
from housing_ledger.schemas import LineItemCreate, ManualMetadata, TransactionEntryCreate
from housing_ledger.services.accruals import AccrualService, prorated_rent
from housing_ledger.services.ledger import TransactionEntryLedger


async def accrual_count(db):
    result = await db.execute(
        select(func.count()).select_from(TransactionEntry).where(
            TransactionEntry.source == EntrySource.RENTAL_ACCRUAL.value
        )
    )
    return result.scalar_one()


@pytest.mark.asyncio
async def test_accrue_posts_to_student_receivable(db_session):
    service = AccrualService(db_session)
    entry, created = await service.accrue("S1", "maple", Decimal("180.00"), Decimal("0"), 5, 2025, student_name="Sam")

    assert created
    assert entry.date == date(2025, 5, 1)
    assert entry.total_debit == Decimal("180.00")
    assert entry.metadata_json["accrualMonth"] == 5
    assert entry.metadata_json["accrualYear"] == 2025
    assert entry.metadata_json["studentId"] == "S1"
    assert entry.metadata_json["residenceId"] == "maple"

    debit, credit = entry.lines
    assert debit.account_code == "1100-S1"
    assert debit.component == PaymentComponent.RENT.value
    assert credit.account_code == "4000"
    assert await db_session.get(Account, "1100-S1") is not None


@pytest.mark.asyncio
async def test_accrue_is_idempotent(db_session):
    service = AccrualService(db_session)
    first, created_first = await service.accrue("S1", "maple", Decimal("180.00"), Decimal("0"), 5, 2025)
    second, created_second = await service.accrue("S1", "maple", Decimal("180.00"), Decimal("0"), 5, 2025)

    assert created_first and not created_second
    assert second.id == first.id
    assert await accrual_count(db_session) == 1


@pytest.mark.asyncio
async def test_concurrent_duplicate_caught_by_unique_index(db_session, monkeypatch):
    service = AccrualService(db_session)
    winner, _ = await service.accrue("S1", "maple", Decimal("180.00"), Decimal("0"), 5, 2025)

    # The loser checked before the winner committed, so its pre-check saw nothing.
    real_find = AccrualService.find_existing
    calls = []

    async def stale_then_real(self, student_id, month, year):
        calls.append(student_id)
        if len(calls) == 1:
            return None
        return await real_find(self, student_id, month, year)

    monkeypatch.setattr(AccrualService, "find_existing", stale_then_real)

    loser, created = await AccrualService(db_session).accrue("S1", "maple", Decimal("180.00"), Decimal("0"), 5, 2025)
    assert not created
    assert loser.id == winner.id
    assert await accrual_count(db_session) == 1


@pytest.mark.asyncio
async def test_soft_deleted_accrual_can_be_reposted(db_session):
    service = AccrualService(db_session)
    first, _ = await service.accrue("S1", "maple", Decimal("180.00"), Decimal("0"), 5, 2025)
    await TransactionEntryLedger(db_session).soft_delete(first.id)

    second, created = await service.accrue("S1", "maple", Decimal("175.00"), Decimal("0"), 5, 2025)
    assert created
    assert second.id != first.id


@pytest.mark.asyncio
async def test_create_accrual_lease_start_month(db_session, student):
    service = AccrualService(db_session)
    entry, created = await service.create_accrual("S1", "maple", 5, 2025)

    assert created
    assert entry.metadata_json["type"] == "lease_start"
    by_component = {line.component: line.debit for line in entry.lines if line.debit > 0}
    assert by_component == {
        "rent": Decimal("180.00"),
        "admin": Decimal("50.00"),
        "deposit": Decimal("180.00") * settings.DEPOSIT_MONTHS,
    }
    credits = {line.account_code for line in entry.lines if line.credit > 0}
    assert credits == {"4000", "4100", "2020"}


@pytest.mark.asyncio
async def test_create_accrual_regular_month_is_rent_only(db_session, student):
    entry, _ = await AccrualService(db_session).create_accrual("S1", "maple", 6, 2025)
    assert entry.metadata_json["type"] == "monthly"
    assert entry.total_debit == Decimal("180.00")
    assert len(entry.lines) == 2


@pytest.mark.asyncio
async def test_create_accrual_prorates_mid_month_start(db_session, residence):
    db_session.add(Student(
        id="S2", name="Mid Month", residence_id="maple", room_name="Double",
        lease_start=date(2025, 6, 16), lease_end=date(2026, 6, 15),
    ))
    await db_session.commit()

    entry, _ = await AccrualService(db_session).create_accrual("S2", "maple", 6, 2025)
    rent = next(line for line in entry.lines if line.component == "rent")
    # 15 of 30 days
    assert rent.debit == Decimal("60.00") == prorated_rent(Decimal("120.00"), date(2025, 6, 16))
    assert entry.date == date(2025, 6, 16)


@pytest.mark.asyncio
async def test_missing_room_price_raises(db_session, residence):
    db_session.add(Student(
        id="S3", name="Attic Dweller", residence_id="maple", room_name="Attic",
        lease_start=date(2025, 1, 1),
    ))
    db_session.add(Student(id="S4", name="No Room", residence_id="maple", lease_start=date(2025, 1, 1)))
    await db_session.commit()

    service = AccrualService(db_session)
    with pytest.raises(MissingPricingError) as exc:
        await service.create_accrual("S3", "maple", 6, 2025)
    assert exc.value.context["room"] == "Attic"
    assert "S3" in exc.value.detail and "maple" in exc.value.detail

    with pytest.raises(MissingPricingError):
        await service.create_accrual("S4", "maple", 6, 2025)
    assert await accrual_count(db_session) == 0


@pytest.mark.asyncio
async def test_month_outside_lease_rejected(db_session, student):
    with pytest.raises(InvalidEntryError):
        await AccrualService(db_session).create_accrual("S1", "maple", 4, 2025)


@pytest.mark.asyncio
async def test_accrue_residence_reports_failures_and_continues(db_session, student):
    db_session.add(Student(
        id="S3", name="Attic Dweller", residence_id="maple", room_name="Attic",
        lease_start=date(2025, 1, 1),
    ))
    db_session.add(Student(
        id="S5", name="Gone", residence_id="maple", room_name="Double",
        lease_start=date(2024, 1, 1), lease_end=date(2024, 12, 31),
    ))
    await db_session.commit()

    service = AccrualService(db_session)
    result = await service.accrue_residence("maple", 6, 2025)
    assert result.month == "2025-06"
    assert result.created == ["S1"]
    assert [f.student_id for f in result.failed] == ["S3"]

    rerun = await service.accrue_residence("maple", 6, 2025)
    assert rerun.created == []
    assert rerun.skipped == ["S1"]


@pytest.mark.asyncio
async def test_legacy_student_stays_on_general_receivable(db_session):
    # History on 1100 tagged with the student predates sub-accounts.
    await TransactionEntryLedger(db_session).record(TransactionEntryCreate(
        date=date(2024, 12, 1),
        source=EntrySource.MANUAL.value,
        entries=[
            LineItemCreate(account_code="1100", debit=Decimal("100.00"), description="Rent Dec"),
            LineItemCreate(account_code="4000", credit=Decimal("100.00")),
        ],
        metadata=ManualMetadata(student_id="LEG"),
    ))

    entry, _ = await AccrualService(db_session).accrue("LEG", "maple", Decimal("180.00"), Decimal("0"), 1, 2025)
    assert entry.lines[0].account_code == "1100"
    assert await db_session.get(Account, "1100-LEG") is None


@pytest.mark.asyncio
async def test_strict_receivable_rule_keeps_new_student_on_general(db_session, monkeypatch):
    monkeypatch.setattr(settings, "OPEN_STUDENT_RECEIVABLES", False)

    entry, _ = await AccrualService(db_session).accrue("NEW", "maple", Decimal("180.00"), Decimal("0"), 5, 2025)

    assert entry.lines[0].account_code == "1100"
    assert await db_session.get(Account, "1100-NEW") is None
