"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.  ``*_for_update`` variants take a row lock so
that two mutations of the same trip (a release racing a capture, a dispute
resolution racing the reconciliation sweep) are serialized.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    AdminAlertModel,
    DisputeModel,
    EscrowModel,
    NotificationModel,
    PaymentAuthorizationModel,
    StrikeModel,
    TripModel,
    UserModel,
)
from ridehold.domain.enums import (
    OPEN_DISPUTE_STATUSES,
    AuthorizationState,
    DisputeStatus,
    EscrowStatus,
    PaymentStatus,
    TripStatus,
)


class TripRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, trip: TripModel) -> TripModel:
        self.session.add(trip)
        await self.session.flush()
        # Load server-side defaults (created_at) while we are still async
        await self.session.refresh(trip)
        return trip

    async def get_by_id(self, trip_id: int) -> Optional[TripModel]:
        return await self.session.get(TripModel, trip_id)

    async def get_for_update(self, trip_id: int) -> Optional[TripModel]:
        """SELECT ... FOR UPDATE on a single trip row."""
        result = await self.session.execute(
            select(TripModel)
            .where(TripModel.id == trip_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_idempotency_key(self, key: str) -> Optional[TripModel]:
        result = await self.session.execute(
            select(TripModel).where(TripModel.idempotency_key == key)
        )
        return result.scalar_one_or_none()

    async def get_held_before(self, cutoff: datetime) -> list[TripModel]:
        result = await self.session.execute(
            select(TripModel)
            .where(
                TripModel.payment_status == PaymentStatus.HELD,
                TripModel.payment_held_at < cutoff,
            )
            .order_by(TripModel.payment_held_at)
        )
        return list(result.scalars().all())

    async def get_cancelled_with_live_authorization(self) -> list[TripModel]:
        result = await self.session.execute(
            select(TripModel)
            .where(
                TripModel.status == TripStatus.CANCELLED,
                TripModel.id.in_(
                    select(PaymentAuthorizationModel.trip_id).where(
                        PaymentAuthorizationModel.state == AuthorizationState.AUTHORIZED
                    )
                ),
            )
            .order_by(TripModel.id)
        )
        return list(result.scalars().all())


class AuthorizationRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self, authorization: PaymentAuthorizationModel
    ) -> PaymentAuthorizationModel:
        self.session.add(authorization)
        await self.session.flush()
        await self.session.refresh(authorization)
        return authorization

    async def get_by_reference_for_update(
        self, reference: str
    ) -> Optional[PaymentAuthorizationModel]:
        result = await self.session.execute(
            select(PaymentAuthorizationModel)
            .where(PaymentAuthorizationModel.reference == reference)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_live_for_trip(
        self, trip_id: int
    ) -> Optional[PaymentAuthorizationModel]:
        """The trip's authorization that still holds or has taken funds."""
        result = await self.session.execute(
            select(PaymentAuthorizationModel)
            .where(
                PaymentAuthorizationModel.trip_id == trip_id,
                PaymentAuthorizationModel.state.in_(
                    [AuthorizationState.AUTHORIZED, AuthorizationState.CAPTURED]
                ),
            )
            .order_by(PaymentAuthorizationModel.id.desc())
        )
        return result.scalars().first()

    async def list_for_trip(self, trip_id: int) -> list[PaymentAuthorizationModel]:
        result = await self.session.execute(
            select(PaymentAuthorizationModel)
            .where(PaymentAuthorizationModel.trip_id == trip_id)
            .order_by(PaymentAuthorizationModel.id)
        )
        return list(result.scalars().all())


class DisputeRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, dispute: DisputeModel) -> DisputeModel:
        self.session.add(dispute)
        await self.session.flush()
        await self.session.refresh(dispute)
        return dispute

    async def get_by_id(self, dispute_id: str) -> Optional[DisputeModel]:
        return await self.session.get(DisputeModel, dispute_id)

    async def get_open_for_trip(self, trip_id: int) -> Optional[DisputeModel]:
        result = await self.session.execute(
            select(DisputeModel).where(
                DisputeModel.trip_id == trip_id,
                DisputeModel.status.in_(list(OPEN_DISPUTE_STATUSES)),
            )
        )
        return result.scalars().first()

    async def list_for_user(self, user_id: int, role: str) -> list[DisputeModel]:
        column = DisputeModel.rider_id if role == "rider" else DisputeModel.driver_id
        result = await self.session.execute(
            select(DisputeModel)
            .where(column == user_id)
            .order_by(DisputeModel.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_open(self) -> list[DisputeModel]:
        result = await self.session.execute(
            select(DisputeModel)
            .where(DisputeModel.status.in_(list(OPEN_DISPUTE_STATUSES)))
            .order_by(DisputeModel.created_at)
        )
        return list(result.scalars().all())

    async def count_by_status(self, status: DisputeStatus) -> int:
        result = await self.session.execute(
            select(DisputeModel.id).where(DisputeModel.status == status)
        )
        return len(result.all())


class EscrowRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, escrow: EscrowModel) -> EscrowModel:
        self.session.add(escrow)
        await self.session.flush()
        await self.session.refresh(escrow)
        return escrow

    async def get_by_id(self, escrow_id: str) -> Optional[EscrowModel]:
        return await self.session.get(EscrowModel, escrow_id)

    async def get_held_for_trip(self, trip_id: int) -> Optional[EscrowModel]:
        result = await self.session.execute(
            select(EscrowModel)
            .where(
                EscrowModel.trip_id == trip_id,
                EscrowModel.status == EscrowStatus.HELD,
            )
            .order_by(EscrowModel.created_at.desc())
        )
        return result.scalars().first()


class NotificationRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, notification: NotificationModel) -> NotificationModel:
        self.session.add(notification)
        await self.session.flush()
        return notification

    async def add_alert(self, alert: AdminAlertModel) -> AdminAlertModel:
        self.session.add(alert)
        await self.session.flush()
        return alert

    async def list_for_user(self, user_id: int) -> list[NotificationModel]:
        result = await self.session.execute(
            select(NotificationModel)
            .where(NotificationModel.user_id == user_id)
            .order_by(NotificationModel.id)
        )
        return list(result.scalars().all())

    async def list_unread_alerts(self) -> list[AdminAlertModel]:
        result = await self.session.execute(
            select(AdminAlertModel)
            .where(AdminAlertModel.status == "unread")
            .order_by(AdminAlertModel.id)
        )
        return list(result.scalars().all())


class StrikeRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, strike: StrikeModel) -> StrikeModel:
        self.session.add(strike)
        await self.session.flush()
        await self.session.refresh(strike)
        return strike

    async def list_for_driver(self, driver_id: int) -> list[StrikeModel]:
        result = await self.session.execute(
            select(StrikeModel).where(StrikeModel.driver_id == driver_id)
        )
        return list(result.scalars().all())


class UserRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, user_id: int) -> Optional[UserModel]:
        return await self.session.get(UserModel, user_id)
