"""Stripe payment processor.

Charges saved payment methods off-session with PaymentIntents. Stripe errors
are classified into retryable and permanent failures; nothing is raised for a
decline.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

import stripe

from cadence.core.config import settings
from cadence.core.exceptions import ExternalServiceError
from cadence.core.logging import logger
from cadence.integrations.payment_processor import ChargeResult

# Card decline codes that will not succeed on retry with the same instrument
PERMANENT_DECLINE_CODES = frozenset(
    {
        "expired_card",
        "incorrect_number",
        "invalid_number",
        "invalid_account",
        "lost_card",
        "stolen_card",
        "pickup_card",
        "restricted_card",
        "do_not_honor",
        "card_not_supported",
    }
)

# ISO currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset({"jpy", "krw", "vnd", "clp", "isk", "ugx", "xaf", "xof"})

# PaymentIntent metadata field that ties every intent to its billing record key
IDEMPOTENCY_METADATA_KEY = "cadence_idempotency_key"


class StripePaymentProcessor:
    """PaymentProcessor backed by Stripe PaymentIntents."""

    def __init__(self, api_key: Optional[str] = None, currency: Optional[str] = None):
        """Initialize the Stripe client."""
        if api_key is None:
            if not settings.STRIPE_ENABLED:
                raise ExternalServiceError("Stripe", "Stripe is not enabled in settings")
            api_key = settings.STRIPE_SECRET_KEY

        stripe.api_key = api_key
        self.currency = (currency or settings.BILLING_CURRENCY).lower()

    def to_minor_units(self, amount: Decimal) -> int:
        """Convert a decimal amount into the integer Stripe expects."""
        if self.currency in ZERO_DECIMAL_CURRENCIES:
            return int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    @staticmethod
    def _clean_metadata(metadata: Optional[Dict[str, str]]) -> Dict[str, str]:
        """Stripe metadata must be ASCII strings."""
        if not metadata:
            return {}
        return {
            str(key).encode("ascii", "replace").decode("ascii"): str(value)
            .encode("ascii", "replace")
            .decode("ascii")
            for key, value in metadata.items()
        }

    @staticmethod
    def classify_error(error: stripe.StripeError) -> ChargeResult:
        """Map a Stripe exception to a failed ChargeResult."""
        message = getattr(error, "user_message", None) or str(error) or type(error).__name__

        if isinstance(error, stripe.CardError):
            decline_code = getattr(error, "decline_code", None) or getattr(error, "code", None)
            return ChargeResult.failed(
                message,
                retryable=decline_code not in PERMANENT_DECLINE_CODES,
                decline_code=str(decline_code),
            )
        if isinstance(error, (stripe.APIConnectionError, stripe.RateLimitError)):
            return ChargeResult.failed(message, retryable=True)
        if isinstance(error, (stripe.AuthenticationError, stripe.PermissionError)):
            # Our configuration, not the customer's card; retry once it is fixed
            return ChargeResult.failed(message, retryable=True)
        if isinstance(error, stripe.InvalidRequestError):
            return ChargeResult.failed(message, retryable=False)
        return ChargeResult.failed(message, retryable=True)

    async def find_intents(self, idempotency_key: str) -> List[Any]:
        """PaymentIntents already created under `idempotency_key`.

        Raises:
            stripe.StripeError: If the search call fails.
        """
        result = await stripe.PaymentIntent.search_async(
            query=f"metadata['{IDEMPOTENCY_METADATA_KEY}']:'{idempotency_key}'"
        )
        return list(result.data)

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
        """Create and confirm a PaymentIntent for a saved payment method.

        Earlier PaymentIntents created under the same key are checked first: a
        settled one is returned as the charge, a processing one is not charged
        again. Only when all earlier intents failed is a new one created, under
        a request key of its own so Stripe does not replay the cached decline.
        """
        try:
            previous = await self.find_intents(idempotency_key)
        except stripe.StripeError as e:
            logger.warning(f"Stripe lookup of {idempotency_key} failed: {e}")
            return ChargeResult.failed(
                "Could not check earlier payment attempts", retryable=True
            )

        for intent in previous:
            if intent.status == "succeeded":
                logger.info(f"Charge {idempotency_key} already settled as {intent.id}")
                return ChargeResult.succeeded(intent.id)
            if intent.status == "processing":
                return ChargeResult.failed("Payment is still processing", retryable=True)

        params: Dict[str, Any] = {
            "amount": self.to_minor_units(amount),
            "currency": self.currency,
            "payment_method": payment_method_ref,
            "confirm": True,
            "off_session": True,
            "metadata": self._clean_metadata(
                {**(metadata or {}), IDEMPOTENCY_METADATA_KEY: idempotency_key}
            ),
        }
        if customer_ref:
            params["customer"] = customer_ref
        if description:
            params["description"] = description

        request_key = f"{idempotency_key}:{len(previous)}" if previous else idempotency_key
        try:
            intent = await stripe.PaymentIntent.create_async(
                idempotency_key=request_key, **params
            )
        except stripe.StripeError as e:
            result = self.classify_error(e)
            logger.warning(
                f"Stripe charge failed ({'retryable' if result.retryable else 'permanent'}): "
                f"{result.reason}"
            )
            return result

        if intent.status == "succeeded":
            return ChargeResult.succeeded(intent.id)
        if intent.status == "processing":
            # Settles asynchronously; the next attempt finds it by key
            return ChargeResult.failed("Payment is still processing", retryable=True)
        return ChargeResult.failed(
            f"PaymentIntent ended in status {intent.status}",
            retryable=intent.status != "canceled",
        )
