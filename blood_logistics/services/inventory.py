"""
Center inventory cache.

Each center keeps one ``CenterInventory`` row per blood group. The rows are a
denormalised view of the ``BloodUnit`` table and are always rebuilt in full
from it, so concurrent rebuilds converge on the same values. The cache may lag
behind the unit table until the next rebuild.
"""

from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional
from sqlalchemy import select
import structlog

from ..core.config import settings
from ..models.database import BloodUnit, Center, CenterInventory
from ..models.enums import BloodGroup, HolderKind, UnitStatus
from ..models.schemas import (
    CenterInventoryOut,
    ExpiringUnitOut,
    InventoryCounts,
    InventorySummary,
)
from ..utils.monitoring import track_inventory_recompute
from ..utils.timeutils import utcnow, days_until
from .base import ServiceBase

logger = structlog.get_logger()


def empty_counts() -> Dict[str, InventoryCounts]:
    return {group.value: InventoryCounts() for group in BloodGroup}


class InventoryAggregator(ServiceBase):
    """Rebuilds and reads the per-center blood inventory cache."""

    async def recompute(self, center_id: str, now: Optional[datetime] = None) -> Dict[str, InventoryCounts]:
        """
        Rebuild the cache rows for one center from the units it currently holds.

        ``units`` counts every unit held by the center; ``available_units``
        counts those in ``available`` status that have not reached expiry.
        Changes are flushed, not committed.
        """
        now = now or utcnow()

        result = await self.session.execute(
            select(BloodUnit.blood_group, BloodUnit.status, BloodUnit.expiry_date)
            .where(BloodUnit.holder_id == center_id)
            .where(BloodUnit.holder_kind == HolderKind.CENTER)
        )

        counts = empty_counts()
        for row in result:
            entry = counts[BloodGroup(row.blood_group).value]
            entry.total += 1
            if row.status == UnitStatus.AVAILABLE and row.expiry_date > now:
                entry.available += 1

        existing_result = await self.session.execute(
            select(CenterInventory).where(CenterInventory.center_id == center_id)
        )
        existing = {
            BloodGroup(row.blood_group).value: row
            for row in existing_result.scalars().all()
        }

        for group in BloodGroup:
            entry = counts[group.value]
            row = existing.get(group.value)
            if row is None:
                self.session.add(CenterInventory(
                    center_id=center_id,
                    blood_group=group,
                    units=entry.total,
                    available_units=entry.available,
                    last_updated=now
                ))
            else:
                row.units = entry.total
                row.available_units = entry.available
                row.last_updated = now

        await self.session.flush()
        track_inventory_recompute()
        logger.info(
            "Center inventory recomputed",
            center_id=center_id,
            units=sum(c.total for c in counts.values()),
            available=sum(c.available for c in counts.values())
        )
        return counts

    async def recompute_many(self, center_ids: Iterable[str], now: Optional[datetime] = None):
        for center_id in sorted({c for c in center_ids if c}):
            await self.recompute(center_id, now=now)

    async def cached_counts(self, center_id: str) -> Dict[str, InventoryCounts]:
        """Read the cached counts for a center without rebuilding them."""
        result = await self.session.execute(
            select(CenterInventory).where(CenterInventory.center_id == center_id)
        )
        counts = empty_counts()
        for row in result.scalars().all():
            counts[BloodGroup(row.blood_group).value] = InventoryCounts(
                total=row.units,
                available=row.available_units
            )
        return counts

    async def summarize(self, ngo_id: str, now: Optional[datetime] = None) -> InventorySummary:
        """NGO-wide view of the cache plus units at its centers close to expiry."""
        now = now or utcnow()

        centers_result = await self.session.execute(
            select(Center)
            .where(Center.ngo_id == ngo_id)
            .order_by(Center.created_at, Center.id)
        )
        centers: List[Center] = list(centers_result.scalars().all())
        centers_by_id = {center.id: center for center in centers}

        totals = empty_counts()
        by_center = []
        for center in centers:
            counts = await self.cached_counts(center.id)
            for group, entry in counts.items():
                totals[group].total += entry.total
                totals[group].available += entry.available
            by_center.append(CenterInventoryOut(
                center_id=center.id,
                center_name=center.name,
                center_type=center.type,
                inventory=counts
            ))

        expiring_soon = []
        if centers_by_id:
            horizon = now + timedelta(days=settings.EXPIRING_SOON_DAYS + 1)
            units_result = await self.session.execute(
                select(BloodUnit)
                .where(BloodUnit.ngo_id == ngo_id)
                .where(BloodUnit.status == UnitStatus.AVAILABLE)
                .where(BloodUnit.holder_kind == HolderKind.CENTER)
                .where(BloodUnit.holder_id.in_(list(centers_by_id)))
                .where(BloodUnit.expiry_date >= now)
                .where(BloodUnit.expiry_date < horizon)
            )
            for unit in units_result.scalars().all():
                days_remaining = days_until(unit.expiry_date, now)
                if 0 <= days_remaining <= settings.EXPIRING_SOON_DAYS:
                    expiring_soon.append(ExpiringUnitOut(
                        id=unit.id,
                        blood_group=unit.blood_group,
                        expiry_date=unit.expiry_date,
                        days_remaining=days_remaining,
                        center_id=unit.holder_id,
                        center_name=centers_by_id[unit.holder_id].name
                    ))
            expiring_soon.sort(key=lambda u: (u.days_remaining, u.expiry_date))

        return InventorySummary(total=totals, by_center=by_center, expiring_soon=expiring_soon)
