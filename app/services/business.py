from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import storage_errors
from app.models.business import Business

logger = structlog.get_logger(__name__)


class BusinessService:
    """Service layer for business lookups."""

    async def get_business(
        self, db: AsyncSession, business_id: int
    ) -> Optional[Business]:
        """Get an active business by ID."""
        async with storage_errors("get_business"):
            result = await db.execute(
                select(Business).where(
                    Business.id == business_id, Business.is_active.is_(True)
                )
            )
            business = result.scalar_one_or_none()

        if business is None:
            logger.info("Business not found", business_id=business_id)
        return business


business_service = BusinessService()
