"""
Hospital blood request fulfillment.

Requests move along a fixed graph::

    Pending -> Accepted | Rejected
    Accepted -> Processing -> En Route -> Delivered -> Completed

The owning NGO advances the status; the owning hospital confirms delivery of
an En Route request. A hospital transfer that names a Pending or Accepted
request moves it straight to Processing.
"""

from datetime import datetime
from typing import List, Optional, Tuple
from sqlalchemy import select, func, update
import structlog

from ..core.exceptions import InvalidStateError, NotFoundError, ValidationError
from ..core.security import Principal, ROLE_HOSPITAL, ROLE_NGO, generate_confirmation_code
from ..models.database import NGO, BloodRequest, BloodRequestLine
from ..models.enums import (
    BloodGroup,
    RequestStatus,
    UrgencyLevel,
    REQUEST_TRANSITIONS,
    TRANSFER_BINDABLE_REQUEST_STATUSES,
)
from ..utils.monitoring import track_request_transition
from ..utils.timeutils import utcnow, to_naive_utc
from .base import ServiceBase, coerce_enum, validate_paging

logger = structlog.get_logger()

ESTIMATE_STATUSES = (RequestStatus.ACCEPTED, RequestStatus.PROCESSING)


def can_transition(current: RequestStatus, target: RequestStatus) -> bool:
    return target in REQUEST_TRANSITIONS.get(current, ())


def append_note(existing: Optional[str], note: str) -> str:
    return f"{existing}\n\n{note}" if existing else note


def _line_values(item):
    if isinstance(item, dict):
        return item.get("blood_group"), item.get("units")
    return getattr(item, "blood_group", None), getattr(item, "units", None)


class BloodRequestService(ServiceBase):
    """Creates blood requests and drives them through their status graph."""

    async def create(
        self,
        principal: Principal,
        ngo_id: str,
        blood_groups: list,
        urgency=None,
        notes: Optional[str] = None
    ) -> BloodRequest:
        self.require_role(principal, ROLE_HOSPITAL)

        if not ngo_id or not blood_groups:
            raise ValidationError("NGO ID and blood groups are required")

        lines = []
        for position, item in enumerate(blood_groups):
            group, units = _line_values(item)
            if not group or not units:
                raise ValidationError("Each blood group request must include blood_group and units")
            group = coerce_enum(BloodGroup, group, "Blood group")
            if int(units) < 1:
                raise ValidationError("Requested units must be at least 1")
            lines.append(BloodRequestLine(position=position, blood_group=group, units=int(units)))

        urgency = coerce_enum(UrgencyLevel, urgency, "Urgency level") if urgency else UrgencyLevel.REGULAR

        ngo = await self.session.get(NGO, ngo_id)
        if ngo is None:
            raise NotFoundError("NGO not found")

        request = BloodRequest(
            hospital_id=principal.entity_id,
            ngo_id=ngo_id,
            urgency=urgency,
            status=RequestStatus.PENDING,
            notes=notes,
            lines=lines
        )
        self.session.add(request)
        await self.commit("blood request")

        track_request_transition(RequestStatus.PENDING.value)
        logger.info(
            "Blood request created",
            request_id=request.id,
            hospital_id=request.hospital_id,
            ngo_id=ngo_id,
            urgency=urgency.value,
            lines=len(lines)
        )
        return request

    async def advance_status(
        self,
        principal: Principal,
        request_id: str,
        status,
        notes: Optional[str] = None,
        estimated_delivery_time: Optional[datetime] = None,
        delivered_by: Optional[str] = None
    ) -> BloodRequest:
        """Move an NGO's request along the status graph."""
        self.require_role(principal, ROLE_NGO)
        status = coerce_enum(RequestStatus, status, "Status")

        request = await self._get_for_ngo(principal.entity_id, request_id)
        if request is None:
            raise NotFoundError("Blood request not found or you don't have permission to update it")

        previous = RequestStatus(request.status)
        if not can_transition(previous, status):
            raise InvalidStateError(
                f"Cannot change blood request status from '{previous.value}' to '{status.value}'"
            )

        now = utcnow()
        request.status = status
        if notes:
            request.notes = append_note(request.notes, f"{now.isoformat()}: {notes}")
        if status in ESTIMATE_STATUSES and estimated_delivery_time:
            request.estimated_delivery_time = to_naive_utc(estimated_delivery_time)
        if status == RequestStatus.EN_ROUTE and delivered_by:
            request.delivered_by = delivered_by
        if status == RequestStatus.DELIVERED:
            request.actual_delivery_time = now

        if status == RequestStatus.COMPLETED:
            await self.session.execute(
                update(NGO)
                .where(NGO.id == request.ngo_id)
                .values(total_hospitals_served=NGO.total_hospitals_served + 1)
                .execution_options(synchronize_session=False)
            )

        await self.commit("blood request")

        track_request_transition(status.value)
        logger.info(
            "Blood request status updated",
            request_id=request.id,
            from_status=previous.value,
            to_status=status.value
        )
        return request

    async def confirm_delivery(
        self,
        principal: Principal,
        request_id: str,
        received_by: str,
        confirmation_code: Optional[str] = None,
        notes: Optional[str] = None
    ) -> BloodRequest:
        """Hospital acknowledges receipt of an En Route request."""
        self.require_role(principal, ROLE_HOSPITAL)

        if not received_by:
            raise ValidationError("Receiver name is required")

        result = await self.session.execute(
            select(BloodRequest)
            .where(BloodRequest.id == request_id)
            .where(BloodRequest.hospital_id == principal.entity_id)
            .where(BloodRequest.status == RequestStatus.EN_ROUTE)
        )
        request = result.scalar_one_or_none()
        if request is None:
            raise NotFoundError("Blood request not found or not in delivery status")

        request.status = RequestStatus.DELIVERED
        request.actual_delivery_time = utcnow()
        request.received_by = received_by
        request.confirmation_code = confirmation_code or generate_confirmation_code()
        if notes:
            request.notes = append_note(request.notes, f"Received: {notes}")

        await self.commit("blood request")

        track_request_transition(RequestStatus.DELIVERED.value)
        logger.info(
            "Blood delivery confirmed",
            request_id=request.id,
            hospital_id=principal.entity_id,
            received_by=received_by
        )
        return request

    async def load_for_transfer(self, ngo_id: str, request_id: str, hospital_id: str) -> BloodRequest:
        """Fetch the request a hospital transfer is fulfilling, checking it matches both parties."""
        request = await self._get_for_ngo(ngo_id, request_id)
        if request is None:
            raise NotFoundError("Blood request not found or you don't have permission to fulfil it")
        if request.hospital_id != hospital_id:
            raise NotFoundError("Blood request not found for the destination hospital")
        return request

    @staticmethod
    def bind_transfer(request: BloodRequest) -> bool:
        """
        Move a Pending or Accepted request to Processing after a unit was
        dispatched for it. Requests in any other state are left untouched.
        Returns True when the status changed; the caller commits.
        """
        if RequestStatus(request.status) not in TRANSFER_BINDABLE_REQUEST_STATUSES:
            return False
        request.status = RequestStatus.PROCESSING
        return True

    async def list_for_ngo(self, principal: Principal, status=None, urgency=None,
                           page: int = 1, limit: int = 10) -> Tuple[List[BloodRequest], int]:
        self.require_role(principal, ROLE_NGO)
        return await self._list(BloodRequest.ngo_id == principal.entity_id, status, urgency, page, limit)

    async def list_for_hospital(self, principal: Principal, status=None, urgency=None,
                                page: int = 1, limit: int = 10) -> Tuple[List[BloodRequest], int]:
        self.require_role(principal, ROLE_HOSPITAL)
        return await self._list(BloodRequest.hospital_id == principal.entity_id, status, urgency, page, limit)

    async def _list(self, owner_clause, status, urgency, page, limit):
        page, limit = validate_paging(page, limit)

        filters = [owner_clause]
        if status:
            filters.append(BloodRequest.status == coerce_enum(RequestStatus, status, "Status"))
        if urgency:
            filters.append(BloodRequest.urgency == coerce_enum(UrgencyLevel, urgency, "Urgency level"))

        result = await self.session.execute(
            select(BloodRequest)
            .where(*filters)
            .order_by(BloodRequest.updated_at.desc(), BloodRequest.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        requests = list(result.scalars().all())

        total = (await self.session.execute(
            select(func.count(BloodRequest.id)).where(*filters)
        )).scalar() or 0
        return requests, total

    async def _get_for_ngo(self, ngo_id: str, request_id: str) -> Optional[BloodRequest]:
        result = await self.session.execute(
            select(BloodRequest)
            .where(BloodRequest.id == request_id)
            .where(BloodRequest.ngo_id == ngo_id)
        )
        return result.scalar_one_or_none()
