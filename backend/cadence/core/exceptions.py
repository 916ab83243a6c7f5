"""Shared exceptions module."""

from typing import Optional
from uuid import UUID


class CadenceException(Exception):
    """Base exception for Cadence services."""

    pass


class NotFoundException(CadenceException):
    """Exception raised when an object is not found."""

    def __init__(self, message: Optional[str] = "Object not found"):
        """Create a new NotFoundException instance.

        Args:
        ----
            message (str, optional): The error message. Has default message.

        """
        self.message = message
        super().__init__(self.message)


class SubscriptionNotFoundException(NotFoundException):
    """Raised when a subscription is not found."""

    pass


class PlanNotFoundException(NotFoundException):
    """Raised when a pricing plan is not found."""

    pass


class BillingRecordNotFoundException(NotFoundException):
    """Raised when a billing record is not found."""

    pass


class SubscriptionValidationError(CadenceException):
    """Exception raised when a subscription request is invalid.

    Covers inactive or unknown plans for new subscriptions and a second
    active subscription for the same user. Never retried.
    """

    def __init__(self, message: Optional[str] = "Invalid subscription request"):
        """Create a new SubscriptionValidationError instance.

        Args:
        ----
            message (str, optional): The error message. Has default message.

        """
        self.message = message
        super().__init__(self.message)


class InvalidStateError(CadenceException):
    """Exception raised when an object is in an invalid state.

    Used when an operation is not allowed from the subscription's current status.
    """

    def __init__(self, message: Optional[str] = "Object is in an invalid state"):
        """Create a new InvalidStateError instance.

        Args:
        ----
            message (str, optional): The error message. Has default message.

        """
        self.message = message
        super().__init__(self.message)


class ConcurrencyConflictError(CadenceException):
    """Exception raised when an optimistic precondition on a guarded update fails.

    The row changed between read and write (another sweep, or a user action).
    Callers skip the item; the next cycle re-reads and retries.
    """

    def __init__(
        self,
        object_type: str,
        object_id: UUID,
        expected: Optional[dict] = None,
        message: Optional[str] = None,
    ):
        """Create a new ConcurrencyConflictError instance.

        Args:
        ----
            object_type (str): Model name, e.g. "Subscription".
            object_id (UUID): The row whose update was rejected.
            expected (dict, optional): The precondition the writer required.
            message (str, optional): Custom error message. If not provided, generates one.

        """
        if message is None:
            message = f"{object_type} {object_id} changed concurrently"
            if expected:
                message += f" (expected {expected})"

        self.object_type = object_type
        self.object_id = object_id
        self.expected = expected or {}
        self.message = message
        super().__init__(self.message)


class ExternalServiceError(CadenceException):
    """Exception raised when an external service fails or is misconfigured."""

    def __init__(self, service_name: str, message: Optional[str] = "External service failed"):
        """Create a new ExternalServiceError instance.

        Args:
        ----
            service_name (str): The name of the external service.
            message (str, optional): The error message. Has default message.

        """
        self.service_name = service_name
        self.message = message
        super().__init__(f"{service_name}: {message}")
