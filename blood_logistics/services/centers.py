from typing import List, Optional, Tuple
from sqlalchemy import select, func, delete, or_, and_
import structlog

from ..core.exceptions import InvalidStateError, NotFoundError, ValidationError
from ..core.security import Principal, ROLE_NGO
from ..models.database import BloodUnit, Center, CenterInventory, TransferRecord
from ..models.enums import ACTIVE_UNIT_STATUSES, CenterStatus, CenterType, HolderKind
from ..utils.geo import haversine_km
from ..utils.timeutils import to_naive_utc
from .base import ServiceBase, coerce_enum, validate_paging
from .inventory import InventoryAggregator

logger = structlog.get_logger()

CAMP_REQUIRED_FIELDS = ("campaign_name", "target_donations", "registration_deadline")
BANK_REQUIRED_FIELDS = ("license_number", "license_expiry", "storage_capacity")
DATE_FIELDS = ("registration_deadline", "start_date", "end_date", "license_expiry")


class CenterService(ServiceBase):
    """Blood banks and donation camps operated by NGOs."""

    async def add(self, principal: Principal, **fields) -> Center:
        self.require_role(principal, ROLE_NGO)

        if not fields.get("name") or not fields.get("type") or not fields.get("city") or not fields.get("pin_code"):
            raise ValidationError("Name, type, and location details are required")

        center_type = coerce_enum(CenterType, fields["type"], "Center type")
        required = CAMP_REQUIRED_FIELDS if center_type == CenterType.DONATION_CAMP else BANK_REQUIRED_FIELDS
        missing = [name for name in required if not fields.get(name)]
        if missing:
            raise ValidationError(
                f"{', '.join(missing)} required for a {center_type.value} center"
            )

        if center_type == CenterType.BLOOD_BANK:
            result = await self.session.execute(
                select(Center.id).where(Center.license_number == fields["license_number"])
            )
            if result.first() is not None:
                raise ValidationError("License number is already registered")

        for name in DATE_FIELDS:
            if fields.get(name):
                fields[name] = to_naive_utc(fields[name])

        fields["type"] = center_type
        fields["status"] = coerce_enum(CenterStatus, fields.get("status") or CenterStatus.PLANNING, "Center status")

        center = Center(ngo_id=principal.entity_id, **fields)
        self.session.add(center)
        await self.session.flush()
        await InventoryAggregator(self.session).recompute(center.id)
        await self.commit("center")

        logger.info(
            "Center created",
            center_id=center.id,
            ngo_id=principal.entity_id,
            center_type=center_type.value
        )
        return center

    async def get(self, principal: Principal, center_id: str) -> Center:
        self.require_role(principal, ROLE_NGO)
        result = await self.session.execute(
            select(Center)
            .where(Center.id == center_id)
            .where(Center.ngo_id == principal.entity_id)
        )
        center = result.scalar_one_or_none()
        if center is None:
            raise NotFoundError("Center not found or you don't have permission to view it")
        return center

    async def list_for_ngo(self, principal: Principal, center_type=None, city: Optional[str] = None,
                           page: int = 1, limit: int = 10) -> Tuple[List[Center], int]:
        self.require_role(principal, ROLE_NGO)
        page, limit = validate_paging(page, limit)

        filters = [Center.ngo_id == principal.entity_id]
        if center_type:
            filters.append(Center.type == coerce_enum(CenterType, center_type, "Center type"))
        if city:
            filters.append(Center.city.ilike(f"%{city}%"))

        result = await self.session.execute(
            select(Center)
            .where(*filters)
            .order_by(Center.created_at.desc(), Center.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        centers = list(result.scalars().all())
        total = (await self.session.execute(
            select(func.count(Center.id)).where(*filters)
        )).scalar() or 0
        return centers, total

    async def delete(self, principal: Principal, center_id: str) -> bool:
        """
        Remove a center that neither collected nor holds active units.

        Centers referenced by historical units or by transfer records are
        deactivated instead so their ledger references stay valid. Returns True
        when the row was deleted.
        """
        center = await self.get(principal, center_id)

        collected_or_held = or_(
            BloodUnit.center_id == center.id,
            and_(BloodUnit.holder_kind == HolderKind.CENTER, BloodUnit.holder_id == center.id)
        )
        active = (await self.session.execute(
            select(func.count(BloodUnit.id))
            .where(collected_or_held)
            .where(BloodUnit.status.in_(ACTIVE_UNIT_STATUSES))
        )).scalar() or 0
        if active > 0:
            raise InvalidStateError("Cannot delete center with active blood units")

        referenced = (await self.session.execute(
            select(func.count(BloodUnit.id)).where(collected_or_held)
        )).scalar() or 0
        if not referenced:
            referenced = (await self.session.execute(
                select(func.count(TransferRecord.id)).where(or_(
                    and_(TransferRecord.from_kind == HolderKind.CENTER, TransferRecord.from_id == center.id),
                    and_(TransferRecord.to_kind == HolderKind.CENTER, TransferRecord.to_id == center.id)
                ))
            )).scalar() or 0

        if referenced:
            center.is_active = False
            center.status = CenterStatus.CANCELLED
            deleted = False
        else:
            await self.session.execute(
                delete(CenterInventory).where(CenterInventory.center_id == center.id)
            )
            await self.session.delete(center)
            deleted = True

        await self.commit("center")
        logger.info("Center removed", center_id=center_id, deleted=deleted)
        return deleted

    async def nearby(self, latitude: float, longitude: float, radius_km: float,
                     center_type=None) -> List[Tuple[Center, float]]:
        """Active centers within ``radius_km`` of a point, nearest first."""
        if not -90 <= latitude <= 90 or not -180 <= longitude <= 180:
            raise ValidationError("Latitude must be within [-90, 90] and longitude within [-180, 180]")
        if radius_km <= 0:
            raise ValidationError("Radius must be greater than zero")

        filters = [
            Center.is_active.is_(True),
            Center.latitude.isnot(None),
            Center.longitude.isnot(None),
        ]
        if center_type:
            filters.append(Center.type == coerce_enum(CenterType, center_type, "Center type"))

        result = await self.session.execute(select(Center).where(*filters))

        matches = []
        for center in result.scalars().all():
            distance = haversine_km(latitude, longitude, center.latitude, center.longitude)
            if distance <= radius_km:
                matches.append((center, distance))
        matches.sort(key=lambda match: match[1])
        return matches
