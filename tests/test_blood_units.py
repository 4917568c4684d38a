import pytest
from datetime import timedelta
from sqlalchemy import select, func

from blood_logistics.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from blood_logistics.models.database import BloodUnit, BloodRequest, NGO, Center, TransferRecord
from blood_logistics.models.enums import HolderKind, RequestStatus, UnitStatus
from blood_logistics.services.blood_requests import BloodRequestService
from blood_logistics.services.blood_units import BloodUnitService
from blood_logistics.services.inventory import InventoryAggregator
from blood_logistics.utils.timeutils import utcnow


async def register_available(service, principal, seed, blood_group="O-", collected_days_ago=0, center_key="center_id"):
    """Register a unit and release it to available stock."""
    unit = await service.register(
        principal,
        donor_id=seed["donor_id"],
        center_id=seed[center_key],
        blood_group=blood_group,
        collection_date=utcnow() - timedelta(days=collected_days_ago)
    )
    return await service.set_status(principal, unit.id, UnitStatus.AVAILABLE)


async def ledger_count(session, unit_id):
    return (await session.execute(
        select(func.count(TransferRecord.id)).where(TransferRecord.unit_id == unit_id)
    )).scalar()


@pytest.mark.asyncio
async def test_register_sets_expiry_and_holder(test_session, ngo_principal, seed):
    """A new unit is processing, held by its center and expires 42 days after collection."""
    service = BloodUnitService(test_session)
    collected = utcnow() - timedelta(days=1)

    unit = await service.register(
        ngo_principal,
        donor_id=seed["donor_id"],
        center_id=seed["center_id"],
        blood_group="A+",
        collection_date=collected,
        health_metrics={"hemoglobin": 13.5, "pulse": 72}
    )

    assert unit.status == UnitStatus.PROCESSING
    assert unit.expiry_date == collected + timedelta(days=42)
    assert unit.holder_id == seed["center_id"]
    assert unit.holder_kind == HolderKind.CENTER
    assert unit.volume_ml == 450
    assert unit.health_metrics["hemoglobin"] == 13.5
    assert await ledger_count(test_session, unit.id) == 0


@pytest.mark.asyncio
async def test_register_updates_center_and_ngo_statistics(session_factory, ngo_principal, seed):
    async with session_factory() as session:
        service = BloodUnitService(session)
        await service.register(ngo_principal, donor_id=seed["donor_id"], center_id=seed["center_id"], blood_group="B+")
        await service.register(ngo_principal, donor_id=seed["donor_id"], center_id=seed["center_id"], blood_group="B+")

    async with session_factory() as session:
        center = await session.get(Center, seed["center_id"])
        ngo = await session.get(NGO, seed["ngo_id"])
        assert center.total_donations == 2
        assert center.total_donors == 1
        assert center.last_donation_date is not None
        assert ngo.total_donations_collected == 2


@pytest.mark.asyncio
async def test_register_rejects_center_of_another_ngo(test_session, other_ngo_principal, seed):
    service = BloodUnitService(test_session)

    with pytest.raises(ValidationError):
        await service.register(
            other_ngo_principal,
            donor_id=seed["donor_id"],
            center_id=seed["center_id"],
            blood_group="O+"
        )


@pytest.mark.asyncio
async def test_register_rejects_unknown_donor_and_bad_group(test_session, ngo_principal, seed):
    service = BloodUnitService(test_session)

    with pytest.raises(ValidationError):
        await service.register(ngo_principal, donor_id="NOBODY", center_id=seed["center_id"], blood_group="O+")

    with pytest.raises(ValidationError, match="Blood group must be one of"):
        await service.register(ngo_principal, donor_id=seed["donor_id"], center_id=seed["center_id"], blood_group="C+")


@pytest.mark.asyncio
async def test_register_requires_ngo(test_session, hospital_principal, seed):
    with pytest.raises(ForbiddenError):
        await BloodUnitService(test_session).register(
            hospital_principal,
            donor_id=seed["donor_id"],
            center_id=seed["center_id"],
            blood_group="O+"
        )


@pytest.mark.asyncio
async def test_set_status_is_permissive_and_stamps_verification(test_session, ngo_principal, seed):
    service = BloodUnitService(test_session)
    unit = await register_available(service, ngo_principal, seed)

    unit = await service.set_status(ngo_principal, unit.id, "discarded", notes="Bag damaged")
    assert unit.status == UnitStatus.DISCARDED
    assert unit.notes == "Bag damaged"

    unit = await service.set_status(ngo_principal, unit.id, "available")
    assert unit.status == UnitStatus.AVAILABLE
    assert unit.last_verified_by == seed["ngo_id"]
    assert unit.last_verified_at is not None

    with pytest.raises(ValidationError):
        await service.set_status(ngo_principal, unit.id, "lost")


@pytest.mark.asyncio
async def test_set_status_on_foreign_unit_is_not_found(test_session, ngo_principal, other_ngo_principal, seed):
    service = BloodUnitService(test_session)
    unit = await register_available(service, ngo_principal, seed)

    with pytest.raises(NotFoundError):
        await service.set_status(other_ngo_principal, unit.id, "used")


@pytest.mark.asyncio
async def test_transfer_requires_available_unit(test_session, ngo_principal, seed):
    """A processing unit cannot move and the ledger stays empty."""
    service = BloodUnitService(test_session)
    unit = await service.register(
        ngo_principal,
        donor_id=seed["donor_id"],
        center_id=seed["center_id"],
        blood_group="O-"
    )

    with pytest.raises(InvalidStateError):
        await service.transfer(ngo_principal, unit.id, seed["hospital_id"], HolderKind.HOSPITAL)

    assert await ledger_count(test_session, unit.id) == 0
    assert unit.holder_id == seed["center_id"]


@pytest.mark.asyncio
async def test_transfer_to_hospital_assigns_and_records_ledger(test_session, ngo_principal, seed):
    service = BloodUnitService(test_session)
    unit = await register_available(service, ngo_principal, seed)

    unit = await service.transfer(
        ngo_principal,
        unit.id,
        seed["hospital_id"],
        "Hospital",
        reason="Surgery stock"
    )

    assert unit.status == UnitStatus.ASSIGNED
    assert unit.holder_id == seed["hospital_id"]
    assert unit.holder_kind == HolderKind.HOSPITAL

    _, history = await service.get_detail(ngo_principal, unit.id)
    assert len(history) == 1
    assert history[0].from_id == seed["center_id"]
    assert history[0].from_kind == HolderKind.CENTER
    assert history[0].to_id == seed["hospital_id"]
    assert history[0].reason == "Surgery stock"
    assert history[0].performed_by == seed["ngo_id"]

    # An assigned unit is no longer transferable
    with pytest.raises(InvalidStateError):
        await service.transfer(ngo_principal, unit.id, seed["center_id"], HolderKind.CENTER)


@pytest.mark.asyncio
async def test_transfer_chain_links_ledger_entries(test_session, ngo_principal, seed):
    """Each record starts where the previous one ended and the last one names the holder."""
    service = BloodUnitService(test_session)
    unit = await register_available(service, ngo_principal, seed)

    await service.transfer(ngo_principal, unit.id, seed["second_center_id"], HolderKind.CENTER)
    await service.transfer(ngo_principal, unit.id, seed["ngo_id"], HolderKind.NGO)
    unit = await service.transfer(ngo_principal, unit.id, seed["hospital_id"], HolderKind.HOSPITAL)

    history = await service.transfer_history(unit.id)
    assert [r.to_id for r in history] == [seed["second_center_id"], seed["ngo_id"], seed["hospital_id"]]
    assert history[0].from_id == seed["center_id"]
    for previous, current in zip(history, history[1:]):
        assert current.from_id == previous.to_id
        assert current.from_kind == previous.to_kind
    assert (history[-1].to_id, history[-1].to_kind) == (unit.holder_id, unit.holder_kind)
    assert unit.center_id == seed["center_id"]


@pytest.mark.asyncio
async def test_transfer_rejects_same_holder_and_unknown_destination(test_session, ngo_principal, seed):
    service = BloodUnitService(test_session)
    unit = await register_available(service, ngo_principal, seed)

    with pytest.raises(InvalidStateError):
        await service.transfer(ngo_principal, unit.id, seed["center_id"], HolderKind.CENTER)

    with pytest.raises(NotFoundError):
        await service.transfer(ngo_principal, unit.id, "HOSP_404", HolderKind.HOSPITAL)

    with pytest.raises(ValidationError):
        await service.transfer(ngo_principal, unit.id, seed["hospital_id"], "Clinic")

    assert await ledger_count(test_session, unit.id) == 0


@pytest.mark.asyncio
async def test_request_id_only_allowed_for_hospital_destination(test_session, ngo_principal, hospital_principal, seed):
    service = BloodUnitService(test_session)
    unit = await register_available(service, ngo_principal, seed)
    request = await BloodRequestService(test_session).create(
        hospital_principal, seed["ngo_id"], [{"blood_group": "O-", "units": 1}]
    )

    with pytest.raises(ValidationError):
        await service.transfer(
            ngo_principal, unit.id, seed["second_center_id"], HolderKind.CENTER, request_id=request.id
        )

    with pytest.raises(NotFoundError):
        await service.transfer(
            ngo_principal, unit.id, seed["other_hospital_id"], HolderKind.HOSPITAL, request_id=request.id
        )

    assert await ledger_count(test_session, unit.id) == 0


@pytest.mark.asyncio
async def test_transfer_fulfils_request_end_to_end(session_factory, ngo_principal, hospital_principal, seed):
    """Donor D1 gives O- at C1; hospital H1 asks for it; the NGO ships and completes."""
    async with session_factory() as session:
        units = BloodUnitService(session)
        requests = BloodRequestService(session)
        inventory = InventoryAggregator(session)

        unit = await register_available(units, ngo_principal, seed)
        counts = await inventory.cached_counts(seed["center_id"])
        assert (counts["O-"].total, counts["O-"].available) == (1, 1)

        request = await requests.create(
            hospital_principal, seed["ngo_id"], [{"blood_group": "O-", "units": 1}], urgency="Emergency"
        )
        assert request.status == RequestStatus.PENDING

        unit = await units.transfer(
            ngo_principal, unit.id, seed["hospital_id"], HolderKind.HOSPITAL, request_id=request.id
        )
        assert unit.status == UnitStatus.ASSIGNED

        request = await session.get(BloodRequest, request.id)
        assert request.status == RequestStatus.PROCESSING

        counts = await inventory.cached_counts(seed["center_id"])
        assert (counts["O-"].total, counts["O-"].available) == (0, 0)

        await requests.advance_status(ngo_principal, request.id, "En Route", delivered_by="Courier 7")
        request = await requests.confirm_delivery(hospital_principal, request.id, received_by="Dr. Rao")
        assert request.status == RequestStatus.DELIVERED
        assert len(request.confirmation_code) == 6

        request = await requests.advance_status(ngo_principal, request.id, "Completed")
        assert request.status == RequestStatus.COMPLETED

    async with session_factory() as session:
        ngo = await session.get(NGO, seed["ngo_id"])
        assert ngo.total_hospitals_served == 1
        assert ngo.total_donations_collected == 1
        assert await ledger_count(session, unit.id) == 1


@pytest.mark.asyncio
async def test_concurrent_transfers_of_one_unit_commit_once(session_factory, ngo_principal, seed):
    """Two callers holding the same unit version: the second commit conflicts."""
    async with session_factory() as session:
        unit = await register_available(BloodUnitService(session), ngo_principal, seed)

    async with session_factory() as first, session_factory() as second:
        stale = await second.get(BloodUnit, unit.id)
        assert stale.status == UnitStatus.AVAILABLE

        await BloodUnitService(first).transfer(
            ngo_principal, unit.id, seed["hospital_id"], HolderKind.HOSPITAL
        )

        with pytest.raises(ConflictError):
            await BloodUnitService(second).transfer(
                ngo_principal, unit.id, seed["second_center_id"], HolderKind.CENTER
            )

    async with session_factory() as session:
        stored = await session.get(BloodUnit, unit.id)
        assert stored.holder_id == seed["hospital_id"]
        assert stored.status == UnitStatus.ASSIGNED
        assert await ledger_count(session, unit.id) == 1


@pytest.mark.asyncio
async def test_list_expiring_soon_orders_by_expiry(test_session, ngo_principal, seed):
    service = BloodUnitService(test_session)
    later = await register_available(service, ngo_principal, seed, collected_days_ago=37)
    sooner = await register_available(service, ngo_principal, seed, collected_days_ago=40)
    await register_available(service, ngo_principal, seed, collected_days_ago=10)
    held = await register_available(service, ngo_principal, seed, collected_days_ago=39)
    await service.set_status(ngo_principal, held.id, "used")

    expiring = await service.list_expiring_soon(ngo_principal, 7)

    assert [u.id for u in expiring] == [sooner.id, later.id]

    with pytest.raises(ValidationError):
        await service.list_expiring_soon(ngo_principal, -1)


@pytest.mark.asyncio
async def test_lapsed_units_expire_on_read(test_session, ngo_principal, seed):
    service = BloodUnitService(test_session)
    unit = await register_available(service, ngo_principal, seed, collected_days_ago=43)

    units, total = await service.list_units(ngo_principal)

    assert total == 1
    assert units[0].id == unit.id
    assert units[0].status == UnitStatus.EXPIRED

    counts = await InventoryAggregator(test_session).cached_counts(seed["center_id"])
    assert (counts["O-"].total, counts["O-"].available) == (1, 0)

    with pytest.raises(InvalidStateError):
        await service.transfer(ngo_principal, unit.id, seed["hospital_id"], HolderKind.HOSPITAL)


@pytest.mark.asyncio
async def test_list_units_filters_and_paginates(test_session, ngo_principal, other_ngo_principal, seed):
    service = BloodUnitService(test_session)
    for group in ("A+", "A+", "B-"):
        await register_available(service, ngo_principal, seed, blood_group=group)

    units, total = await service.list_units(ngo_principal, blood_group="A+", limit=1)
    assert total == 2
    assert len(units) == 1

    units, total = await service.list_units(ngo_principal, center_id=seed["second_center_id"])
    assert (units, total) == ([], 0)

    units, total = await service.list_units(other_ngo_principal)
    assert total == 0

    with pytest.raises(ValidationError):
        await service.list_units(ngo_principal, page=0)


@pytest.mark.asyncio
async def test_releasing_lapsed_unit_marks_it_expired(test_session, ngo_principal, seed):
    """A unit past its expiry date cannot be put back into available stock."""
    service = BloodUnitService(test_session)
    unit = await service.register(
        ngo_principal,
        donor_id=seed["donor_id"],
        center_id=seed["center_id"],
        blood_group="O-",
        collection_date=utcnow() - timedelta(days=50)
    )

    unit = await service.set_status(ngo_principal, unit.id, "available")

    assert unit.status == UnitStatus.EXPIRED
    counts = await InventoryAggregator(test_session).cached_counts(seed["center_id"])
    assert (counts["O-"].total, counts["O-"].available) == (1, 0)

    with pytest.raises(InvalidStateError):
        await service.transfer(ngo_principal, unit.id, seed["hospital_id"], HolderKind.HOSPITAL)


@pytest.mark.asyncio
async def test_transfer_moves_accepted_request_to_processing(test_session, ngo_principal, hospital_principal, seed):
    units = BloodUnitService(test_session)
    requests = BloodRequestService(test_session)
    unit = await register_available(units, ngo_principal, seed)
    request = await requests.create(hospital_principal, seed["ngo_id"], [{"blood_group": "O-", "units": 1}])
    await requests.advance_status(ngo_principal, request.id, "Accepted")

    await units.transfer(ngo_principal, unit.id, seed["hospital_id"], HolderKind.HOSPITAL, request_id=request.id)

    request = await test_session.get(BloodRequest, request.id)
    assert request.status == RequestStatus.PROCESSING
    assert await ledger_count(test_session, unit.id) == 1


@pytest.mark.asyncio
async def test_transfer_leaves_processing_request_untouched(test_session, ngo_principal, hospital_principal, seed):
    """A second unit shipped for a request already in Processing does not move it."""
    units = BloodUnitService(test_session)
    requests = BloodRequestService(test_session)
    first = await register_available(units, ngo_principal, seed)
    second = await register_available(units, ngo_principal, seed)
    request = await requests.create(hospital_principal, seed["ngo_id"], [{"blood_group": "O-", "units": 2}])

    await units.transfer(ngo_principal, first.id, seed["hospital_id"], HolderKind.HOSPITAL, request_id=request.id)
    await units.transfer(ngo_principal, second.id, seed["hospital_id"], HolderKind.HOSPITAL, request_id=request.id)

    request = await test_session.get(BloodRequest, request.id)
    assert request.status == RequestStatus.PROCESSING
    assert await ledger_count(test_session, second.id) == 1


@pytest.mark.parametrize("status,advanced,expected", [
    (RequestStatus.PENDING, True, RequestStatus.PROCESSING),
    (RequestStatus.ACCEPTED, True, RequestStatus.PROCESSING),
    (RequestStatus.PROCESSING, False, RequestStatus.PROCESSING),
    (RequestStatus.EN_ROUTE, False, RequestStatus.EN_ROUTE),
    (RequestStatus.DELIVERED, False, RequestStatus.DELIVERED),
    (RequestStatus.REJECTED, False, RequestStatus.REJECTED),
    (RequestStatus.COMPLETED, False, RequestStatus.COMPLETED),
])
def test_bind_transfer_only_advances_pending_or_accepted(status, advanced, expected):
    request = BloodRequest(status=status)

    assert BloodRequestService.bind_transfer(request) is advanced
    assert request.status == expected


@pytest.mark.asyncio
async def test_transfer_for_rejected_request_keeps_it_rejected(test_session, ngo_principal, hospital_principal, seed):
    units = BloodUnitService(test_session)
    requests = BloodRequestService(test_session)
    unit = await register_available(units, ngo_principal, seed)
    request = await requests.create(hospital_principal, seed["ngo_id"], [{"blood_group": "O-", "units": 1}])
    await requests.advance_status(ngo_principal, request.id, "Rejected", notes="No stock")

    unit = await units.transfer(
        ngo_principal, unit.id, seed["hospital_id"], HolderKind.HOSPITAL, request_id=request.id
    )

    assert unit.status == UnitStatus.ASSIGNED
    request = await test_session.get(BloodRequest, request.id)
    assert request.status == RequestStatus.REJECTED
