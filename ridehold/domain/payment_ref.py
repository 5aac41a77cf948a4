"""
Payment reference normalisation.

Trips carry the processor reference either in the canonical ``payment_ref``
column or, for records written by older clients, inside the composite
``payment_method`` string (``"stripe:pi_123"``).  Everything past the ledger
boundary only ever sees a ``PaymentReference``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .errors import MalformedTripRecord


@dataclass(frozen=True)
class PaymentReference:
    provider: str
    id: str

    def __str__(self) -> str:
        return self.id


def parse_legacy_payment_method(value: str) -> PaymentReference:
    provider, sep, ref_id = value.partition(":")
    if not sep or not provider or not ref_id:
        raise MalformedTripRecord(
            f"Legacy payment field {value!r} is not of the form 'provider:id'"
        )
    return PaymentReference(provider=provider.strip().lower(), id=ref_id.strip())


def resolve_payment_reference(
    payment_ref: Optional[str],
    payment_method: Optional[str],
    default_provider: str,
) -> Optional[PaymentReference]:
    """Canonical field first, legacy composite field as fallback.

    Returns ``None`` when the trip has no payment reference at all (e.g. a
    cash trip).  A legacy value that is present but unparseable raises.
    """
    if payment_ref:
        return PaymentReference(provider=default_provider, id=payment_ref)
    if payment_method and ":" in payment_method:
        return parse_legacy_payment_method(payment_method)
    return None
