import structlog
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.models.business import Business
from app.scheduling.exceptions import (
    BusinessNotFoundError,
    SchedulerUnavailableError,
    SchedulingError,
)
from app.services.business import business_service

logger = structlog.get_logger(__name__)


class BusinessContext:
    """Business context for tenant-scoped scheduling operations."""

    def __init__(self, business: Business):
        self.business = business
        self.business_id = business.id
        self.timezone = business.tz
        self.lead_time_minutes = business.lead_time_minutes


async def get_business_context(
    business_id: int, db: AsyncSession = Depends(get_db)
) -> BusinessContext:
    """
    Get business context for tenant-scoped operations.

    This dependency ensures that:
    1. The business exists and is active
    2. All subsequent operations are scoped to this business
    """
    try:
        business = await business_service.get_business(db, business_id)

        if not business:
            logger.warning("Business not found for context", business_id=business_id)
            raise BusinessNotFoundError(f"Business {business_id} not found")

        logger.debug(
            "Business context established",
            business_id=business_id,
            business_name=business.name,
        )
        return BusinessContext(business)

    except SchedulingError:
        raise
    except Exception as e:
        logger.error(
            "Failed to establish business context",
            business_id=business_id,
            error=str(e),
        )
        raise SchedulerUnavailableError("Failed to establish business context") from e
