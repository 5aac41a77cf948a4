"""Driver standing: strikes recorded when a dispute is resolved against a driver."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ridehold.infrastructure.models import StrikeModel
from ridehold.infrastructure.repositories import StrikeRepository

logger = logging.getLogger(__name__)


class StrikeIssuer:
    def __init__(self, session: AsyncSession):
        self.repo = StrikeRepository(session)

    async def issue(
        self,
        driver_id: int,
        trip_id: Optional[int],
        strike_type: str,
        description: str,
        severity: str = "high",
    ) -> StrikeModel:
        strike = await self.repo.create(
            StrikeModel(
                driver_id=driver_id,
                trip_id=trip_id,
                type=strike_type,
                description=description,
                severity=severity,
            )
        )
        logger.info("Strike %s (%s) issued to driver %s", strike.id, severity, driver_id)
        return strike
