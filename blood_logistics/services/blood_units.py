"""
Blood unit lifecycle manager.

Owns every change to a unit's status, current holder and transfer ledger.
Mutations are written as one unit of work guarded by the unit's version
column, so a unit can never be transferred twice from the same state. The
affected center inventories are rebuilt after each committed change.
"""

from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from sqlalchemy import select, func, distinct, update
import structlog

from ..core.config import settings
from ..core.exceptions import ConflictError, InvalidStateError, NotFoundError, ValidationError
from ..core.security import Principal, ROLE_NGO
from ..models.database import NGO, Center, Donor, Hospital, BloodUnit, TransferRecord
from ..models.enums import BloodGroup, HolderKind, UnitStatus
from ..models.schemas import InventorySummary
from ..utils.monitoring import (
    track_unit_registration,
    track_unit_status_change,
    track_unit_transfer,
    track_request_transition,
)
from ..utils.timeutils import utcnow, to_naive_utc
from .base import ServiceBase, coerce_enum, validate_paging
from .blood_requests import BloodRequestService
from .inventory import InventoryAggregator

logger = structlog.get_logger()

DEFAULT_TRANSFER_REASON = "Transfer requested"

DESTINATION_MODELS = {
    HolderKind.NGO: NGO,
    HolderKind.CENTER: Center,
    HolderKind.HOSPITAL: Hospital,
}


def held_center_ids(*units: BloodUnit) -> List[str]:
    return [u.holder_id for u in units if u.holder_kind == HolderKind.CENTER]


class BloodUnitService(ServiceBase):
    """Registers blood units and manages their status and transfers."""

    def __init__(self, session):
        super().__init__(session)
        self.inventory = InventoryAggregator(session)
        self.requests = BloodRequestService(session)

    async def register(
        self,
        principal: Principal,
        donor_id: str,
        center_id: str,
        blood_group,
        volume_ml: Optional[int] = None,
        collection_date: Optional[datetime] = None,
        health_metrics: Optional[dict] = None,
        notes: Optional[str] = None
    ) -> BloodUnit:
        """
        Register a donation collected at one of the caller's centers.

        The unit starts in ``processing``, held by the collecting center, and
        expires a fixed shelf life after collection.
        """
        self.require_role(principal, ROLE_NGO)

        if not donor_id or not center_id or not blood_group:
            raise ValidationError("Donor ID, Center ID, and Blood Group are required")

        blood_group = coerce_enum(BloodGroup, blood_group, "Blood group")

        volume_ml = settings.DEFAULT_DONATION_VOLUME_ML if volume_ml is None else volume_ml
        if volume_ml < settings.MIN_DONATION_VOLUME_ML:
            raise ValidationError(
                f"Donation volume must be at least {settings.MIN_DONATION_VOLUME_ML} mL"
            )

        result = await self.session.execute(
            select(Center)
            .where(Center.id == center_id)
            .where(Center.ngo_id == principal.entity_id)
        )
        center = result.scalar_one_or_none()
        if center is None:
            raise ValidationError(
                "Center not found or you don't have permission to register donations for this center"
            )

        donor = await self.session.get(Donor, donor_id)
        if donor is None:
            raise ValidationError("Donor not found")

        now = utcnow()
        collected_at = to_naive_utc(collection_date) if collection_date else now

        unit = BloodUnit(
            donor_id=donor_id,
            ngo_id=principal.entity_id,
            center_id=center.id,
            center_type=center.type,
            donation_center=center.name,
            blood_group=blood_group,
            volume_ml=volume_ml,
            collection_date=collected_at,
            expiry_date=collected_at + timedelta(days=settings.BLOOD_UNIT_SHELF_LIFE_DAYS),
            status=UnitStatus.PROCESSING,
            health_metrics=health_metrics or {},
            notes=notes,
            holder_id=center.id,
            holder_kind=HolderKind.CENTER,
            holder_updated_at=now
        )
        self.session.add(unit)
        await self.session.flush()

        donors_at_center = (
            select(func.count(distinct(BloodUnit.donor_id)))
            .where(BloodUnit.center_id == center.id)
            .scalar_subquery()
        )
        await self.session.execute(
            update(Center)
            .where(Center.id == center.id)
            .values(
                total_donations=Center.total_donations + 1,
                total_donors=donors_at_center,
                last_donation_date=now
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(
            update(NGO)
            .where(NGO.id == principal.entity_id)
            .values(total_donations_collected=NGO.total_donations_collected + 1)
            .execution_options(synchronize_session=False)
        )
        await self.commit("blood unit")

        await self._refresh_inventory([center.id])

        track_unit_registration(blood_group.value)
        logger.info(
            "Blood unit registered",
            unit_id=unit.id,
            ngo_id=principal.entity_id,
            center_id=center.id,
            blood_group=blood_group.value,
            expiry_date=unit.expiry_date.isoformat()
        )
        return unit

    async def set_status(
        self,
        principal: Principal,
        unit_id: str,
        status,
        notes: Optional[str] = None
    ) -> BloodUnit:
        """
        Set any status from the fixed set on one of the caller's units.

        Releasing a unit past its expiry date to ``available`` marks it
        ``expired`` instead.
        """
        self.require_role(principal, ROLE_NGO)
        status = coerce_enum(UnitStatus, status, "Status")

        unit = await self._get_owned(principal.entity_id, unit_id)
        previous = UnitStatus(unit.status)

        now = utcnow()
        if status == UnitStatus.AVAILABLE and unit.expiry_date <= now:
            status = UnitStatus.EXPIRED
        unit.status = status
        if notes:
            unit.notes = notes
        unit.last_verified_by = principal.entity_id
        unit.last_verified_at = now

        await self.commit("blood unit")
        await self._refresh_inventory([unit.center_id] + held_center_ids(unit))

        track_unit_status_change(status.value)
        logger.info(
            "Blood unit status updated",
            unit_id=unit.id,
            from_status=previous.value,
            to_status=status.value
        )
        return unit

    async def transfer(
        self,
        principal: Principal,
        unit_id: str,
        to_entity_id: str,
        to_entity_kind,
        reason: Optional[str] = None,
        request_id: Optional[str] = None
    ) -> BloodUnit:
        """
        Hand an available unit to a new holder.

        Appends a ledger record from the current holder to the destination and
        moves the holder in the same commit. A hospital destination assigns the
        unit and, when ``request_id`` names a Pending or Accepted request,
        advances that request to Processing.
        """
        self.require_role(principal, ROLE_NGO)

        if not to_entity_id or not to_entity_kind:
            raise ValidationError("Destination entity ID and type are required")
        to_entity_kind = coerce_enum(HolderKind, to_entity_kind, "Entity type")

        unit = await self._get_owned(principal.entity_id, unit_id)
        now = utcnow()

        if unit.status == UnitStatus.AVAILABLE and unit.expiry_date <= now:
            await self._expire([unit])
        if unit.status != UnitStatus.AVAILABLE:
            track_unit_transfer(to_entity_kind.value, "rejected")
            raise InvalidStateError(
                f"Cannot transfer a unit that is not available (current status: {UnitStatus(unit.status).value})"
            )

        if unit.holder_id == to_entity_id and unit.holder_kind == to_entity_kind:
            raise InvalidStateError("Blood unit is already held by the destination")

        destination = await self.session.get(DESTINATION_MODELS[to_entity_kind], to_entity_id)
        if destination is None:
            raise NotFoundError(f"Destination {to_entity_kind.value} not found")

        request = None
        if request_id:
            if to_entity_kind != HolderKind.HOSPITAL:
                raise ValidationError("Only transfers to a hospital can fulfil a blood request")
            request = await self.requests.load_for_transfer(principal.entity_id, request_id, to_entity_id)

        source_centers = held_center_ids(unit)

        self.session.add(TransferRecord(
            unit_id=unit.id,
            from_id=unit.holder_id,
            from_kind=unit.holder_kind,
            to_id=to_entity_id,
            to_kind=to_entity_kind,
            transferred_at=now,
            reason=reason or DEFAULT_TRANSFER_REASON,
            performed_by=principal.entity_id
        ))
        unit.holder_id = to_entity_id
        unit.holder_kind = to_entity_kind
        unit.holder_updated_at = now
        if to_entity_kind == HolderKind.HOSPITAL:
            unit.status = UnitStatus.ASSIGNED

        request_advanced = request is not None and self.requests.bind_transfer(request)

        try:
            await self.commit("blood unit")
        except ConflictError:
            track_unit_transfer(to_entity_kind.value, "conflict")
            raise

        await self._refresh_inventory(source_centers + held_center_ids(unit))

        track_unit_transfer(to_entity_kind.value, "success")
        if request_advanced:
            track_request_transition(request.status.value)
        logger.info(
            "Blood unit transferred",
            unit_id=unit.id,
            to_entity_id=to_entity_id,
            to_entity_kind=to_entity_kind.value,
            request_id=request_id,
            request_advanced=request_advanced
        )
        return unit

    async def list_expiring_soon(self, principal: Principal, within_days: int) -> List[BloodUnit]:
        """Available units of the caller expiring within ``within_days``, soonest first."""
        self.require_role(principal, ROLE_NGO)
        if within_days < 0:
            raise ValidationError("Days must be zero or greater")

        now = utcnow()
        result = await self.session.execute(
            select(BloodUnit)
            .where(BloodUnit.ngo_id == principal.entity_id)
            .where(BloodUnit.status == UnitStatus.AVAILABLE)
            .where(BloodUnit.expiry_date >= now)
            .where(BloodUnit.expiry_date <= now + timedelta(days=within_days))
            .order_by(BloodUnit.expiry_date.asc(), BloodUnit.id)
        )
        return list(result.scalars().all())

    async def list_units(
        self,
        principal: Principal,
        center_id: Optional[str] = None,
        status=None,
        blood_group=None,
        page: int = 1,
        limit: int = 10
    ) -> Tuple[List[BloodUnit], int]:
        """Page through the caller's units, newest first."""
        self.require_role(principal, ROLE_NGO)
        page, limit = validate_paging(page, limit)

        await self.expire_lapsed(principal.entity_id)

        filters = [BloodUnit.ngo_id == principal.entity_id]
        if center_id:
            filters.append(BloodUnit.center_id == center_id)
        if status:
            filters.append(BloodUnit.status == coerce_enum(UnitStatus, status, "Status"))
        if blood_group:
            filters.append(BloodUnit.blood_group == coerce_enum(BloodGroup, blood_group, "Blood group"))

        result = await self.session.execute(
            select(BloodUnit)
            .where(*filters)
            .order_by(BloodUnit.created_at.desc(), BloodUnit.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        units = list(result.scalars().all())

        total = (await self.session.execute(
            select(func.count(BloodUnit.id)).where(*filters)
        )).scalar() or 0
        return units, total

    async def get_detail(self, principal: Principal, unit_id: str) -> Tuple[BloodUnit, List[TransferRecord]]:
        """A unit together with its transfer ledger in append order."""
        self.require_role(principal, ROLE_NGO)
        unit = await self._get_owned(principal.entity_id, unit_id)

        if unit.status == UnitStatus.AVAILABLE and unit.expiry_date <= utcnow():
            await self._expire([unit])

        return unit, await self.transfer_history(unit.id)

    async def transfer_history(self, unit_id: str) -> List[TransferRecord]:
        result = await self.session.execute(
            select(TransferRecord)
            .where(TransferRecord.unit_id == unit_id)
            .order_by(TransferRecord.transferred_at.asc(), TransferRecord.id.asc())
        )
        return list(result.scalars().all())

    async def inventory_summary(self, principal: Principal) -> InventorySummary:
        """Cached inventory per center after applying any pending expiries."""
        self.require_role(principal, ROLE_NGO)
        await self.expire_lapsed(principal.entity_id)
        return await self.inventory.summarize(principal.entity_id)

    async def expire_lapsed(self, ngo_id: str) -> int:
        """Move the NGO's available units past their expiry date to ``expired``."""
        result = await self.session.execute(
            select(BloodUnit)
            .where(BloodUnit.ngo_id == ngo_id)
            .where(BloodUnit.status == UnitStatus.AVAILABLE)
            .where(BloodUnit.expiry_date <= utcnow())
        )
        units = list(result.scalars().all())
        if units:
            await self._expire(units)
        return len(units)

    async def _expire(self, units: List[BloodUnit]):
        for unit in units:
            unit.status = UnitStatus.EXPIRED
        await self.commit("blood unit")
        await self._refresh_inventory(held_center_ids(*units))

        for unit in units:
            track_unit_status_change(UnitStatus.EXPIRED.value)
        logger.info("Expired blood units", count=len(units), unit_ids=[u.id for u in units])

    async def _refresh_inventory(self, center_ids: List[str]):
        await self.inventory.recompute_many(center_ids)
        await self.commit("center inventory")

    async def _get_owned(self, ngo_id: str, unit_id: str) -> BloodUnit:
        result = await self.session.execute(
            select(BloodUnit)
            .where(BloodUnit.id == unit_id)
            .where(BloodUnit.ngo_id == ngo_id)
        )
        unit = result.scalar_one_or_none()
        if unit is None:
            raise NotFoundError("Blood unit not found or you don't have permission to access it")
        return unit
