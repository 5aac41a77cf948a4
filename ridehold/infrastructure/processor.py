"""
Payment processor gateway.

``PaymentProcessor`` is the abstract contract the ledger talks to:
authorize / capture / release / refund.  ``HttpPaymentProcessor`` speaks
to the processor's REST API with ``httpx``; every mutating call carries an
``Idempotency-Key`` so a retried request can never double-charge or
double-refund.  Transport failures and 5xx answers surface as
``TransientNetworkError``; 4xx answers are the caller's fault and surface
as ``ValidationError``.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from ridehold.config import settings
from ridehold.domain.errors import TransientNetworkError, ValidationError

logger = logging.getLogger(__name__)


class PaymentProcessor(ABC):
    provider: str = "stripe"

    @abstractmethod
    async def authorize(self, amount: float, currency: str) -> str:
        """Place a hold and return the processor reference."""

    @abstractmethod
    async def capture(self, ref: str, amount: float) -> None: ...

    @abstractmethod
    async def release(self, ref: str) -> None: ...

    @abstractmethod
    async def refund(self, ref: str, amount: float, key: Optional[str] = None) -> None:
        """Send *amount* back; *key* identifies this refund among others on *ref*."""


def _minor_units(amount: float) -> int:
    return int(round(amount * 100))


def refund_key(ref: str, refunded_before: float, amount: float) -> str:
    """Idempotency key for the refund that follows *refunded_before* on *ref*."""
    return f"refund:{ref}:{_minor_units(refunded_before)}:{_minor_units(amount)}"


class HttpPaymentProcessor(PaymentProcessor):
    def __init__(
        self,
        base_url: str = settings.processor_base_url,
        api_key: str = settings.processor_api_key,
        provider: str = settings.processor_provider,
        timeout: float = settings.processor_timeout_seconds,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.provider = provider
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"} if api_key else {},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def authorize(self, amount: float, currency: str) -> str:
        body = await self._post(
            "/v1/payment_intents",
            {
                "amount": _minor_units(amount),
                "currency": currency.lower(),
                "capture_method": "manual",
            },
            key=f"authorize:{uuid.uuid4()}",
        )
        return body["id"]

    async def capture(self, ref: str, amount: float) -> None:
        await self._post(
            f"/v1/payment_intents/{ref}/capture",
            {"amount_to_capture": _minor_units(amount)},
            key=f"capture:{ref}",
        )

    async def release(self, ref: str) -> None:
        await self._post(f"/v1/payment_intents/{ref}/cancel", {}, key=f"release:{ref}")

    async def refund(self, ref: str, amount: float, key: Optional[str] = None) -> None:
        await self._post(
            "/v1/refunds",
            {"payment_intent": ref, "amount": _minor_units(amount)},
            key=key or f"refund:{uuid.uuid4()}",
        )

    async def _post(
        self, path: str, payload: dict[str, Any], key: str
    ) -> dict[str, Any]:
        headers = {"Idempotency-Key": key}
        try:
            response = await self._client.post(path, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("Processor call %s failed: %s", path, exc)
            raise TransientNetworkError(f"Payment processor unreachable: {exc}") from exc

        if response.status_code >= 500:
            raise TransientNetworkError(
                f"Payment processor error {response.status_code} on {path}"
            )
        if response.status_code >= 400:
            raise ValidationError(
                f"Payment processor rejected {path}: {response.text}",
                code="PROCESSOR_REJECTED",
            )
        return response.json() if response.content else {}
