from enum import Enum
from typing import Type, TypeVar, Tuple
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError
import structlog

from ..core.config import settings
from ..core.exceptions import ConflictError, ForbiddenError, InternalError, ValidationError
from ..core.security import Principal

logger = structlog.get_logger()

E = TypeVar("E", bound=Enum)


def coerce_enum(enum_cls: Type[E], value, label: str) -> E:
    """Convert raw input into ``enum_cls`` or raise a ValidationError listing the allowed values."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"{label} must be one of: {allowed}")


def validate_paging(page: int, limit: int) -> Tuple[int, int]:
    if page < 1:
        raise ValidationError("Page must be 1 or greater")
    if limit < 1 or limit > settings.MAX_PAGE_SIZE:
        raise ValidationError(f"Limit must be between 1 and {settings.MAX_PAGE_SIZE}")
    return page, limit


class ServiceBase:
    """Shared session handling for the domain services."""

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def require_role(principal: Principal, role: str):
        if principal is None or principal.role != role:
            raise ForbiddenError(f"Access denied: {role} authorization required")

    async def commit(self, entity: str = "record"):
        """Commit the unit of work, turning a failed version check into ConflictError."""
        try:
            await self.session.commit()
        except StaleDataError:
            await self.session.rollback()
            logger.warning("Optimistic concurrency check failed", entity=entity)
            raise ConflictError(f"The {entity} was modified by another request, please retry")
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Database commit failed", entity=entity, error=str(e))
            raise InternalError("Could not save changes")
