"""In-app notifications and the operations review queue for disputes."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ridehold.domain.enums import DisputeDecision
from ridehold.infrastructure.models import (
    AdminAlertModel,
    DisputeModel,
    NotificationModel,
)
from ridehold.infrastructure.repositories import NotificationRepository

logger = logging.getLogger(__name__)


class DisputeNotifier:
    def __init__(self, session: AsyncSession):
        self.repo = NotificationRepository(session)

    async def dispute_filed(self, dispute: DisputeModel) -> None:
        await self.repo.add_alert(
            AdminAlertModel(
                type="payment_dispute",
                priority="high" if dispute.auto_hold else "medium",
                dispute_id=dispute.id,
                trip_id=dispute.trip_id,
                rider_id=dispute.rider_id,
                driver_id=dispute.driver_id,
                amount=dispute.amount,
                reason=dispute.reason.value,
                status="unread",
            )
        )
        data = {
            "dispute_id": dispute.id,
            "trip_id": dispute.trip_id,
            "amount": dispute.amount,
            "reason": dispute.reason.value,
        }
        if dispute.driver_id is not None:
            await self.repo.add(
                NotificationModel(
                    user_id=dispute.driver_id,
                    type="payment_dispute",
                    title="Payment Dispute Filed",
                    message=(
                        "A payment dispute has been filed for your recent trip. "
                        f"Amount: ${dispute.amount:.2f}"
                    ),
                    data=data,
                )
            )
        await self.repo.add(
            NotificationModel(
                user_id=dispute.rider_id,
                type="payment_dispute",
                title="Dispute Received",
                message="We received your dispute and will review it within 48 hours.",
                data=data,
            )
        )
        logger.info("Dispute %s queued for review", dispute.id)

    async def dispute_resolved(
        self, dispute: DisputeModel, decision: DisputeDecision, resolution: str
    ) -> None:
        approved = decision is DisputeDecision.APPROVED
        data = {
            "dispute_id": dispute.id,
            "trip_id": dispute.trip_id,
            "decision": decision.value,
        }
        await self.repo.add(
            NotificationModel(
                user_id=dispute.rider_id,
                type="dispute_resolved",
                title="Dispute Approved" if approved else "Dispute Denied",
                message=resolution,
                data=data,
            )
        )
        if dispute.driver_id is not None:
            await self.repo.add(
                NotificationModel(
                    user_id=dispute.driver_id,
                    type="dispute_resolved",
                    title="Dispute Ruled Against You" if approved else "Dispute Dismissed",
                    message=resolution,
                    data=data,
                )
            )
