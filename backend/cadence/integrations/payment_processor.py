"""Payment processor interface.

Charges never raise for a declined or failed payment: every outcome is a
ChargeResult the ledger turns into a billing record status.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional, Protocol


@dataclass(frozen=True)
class ChargeResult:
    """Outcome of one charge attempt."""

    success: bool
    external_id: Optional[str] = None
    reason: Optional[str] = None
    retryable: bool = True
    details: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def succeeded(cls, external_id: Optional[str]) -> "ChargeResult":
        """Successful charge with the processor's reference."""
        return cls(success=True, external_id=external_id, retryable=False)

    @classmethod
    def failed(cls, reason: str, retryable: bool = True, **details: str) -> "ChargeResult":
        """Failed charge; `retryable=False` marks a permanent decline."""
        return cls(success=False, reason=reason, retryable=retryable, details=dict(details))


class PaymentProcessor(Protocol):
    """Collaborator that moves money."""

    async def charge(
        self,
        amount: Decimal,
        payment_method_ref: str,
        idempotency_key: str,
        *,
        customer_ref: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ChargeResult:
        """Charge `amount` to the instrument.

        The same idempotency key must never settle money twice. A call with the
        key of an already settled charge returns that charge; a call after a
        failed one makes a fresh attempt.
        """
        ...


def build_idempotency_key(subscription_id: object, billing_record_id: object) -> str:
    """Idempotency key of one billing record.

    The same for the first charge and every dunning retry, so a charge that
    settled after its call timed out is found again instead of repeated.
    """
    return f"cadence:{subscription_id}:{billing_record_id}"
