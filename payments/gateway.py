"""Payment gateway port and the Stripe adapter.

The core needs two things from the gateway: authenticated parsing of
inbound webhook events and idempotent refunds. Adapters implement
``PaymentGateway``; ``FakeGateway`` in ``payments.fake_gateway`` serves
tests and local runs.
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class RefundResult:
    """Result of a successful refund call."""
    refund_id: str
    amount: int
    status: str

class GatewayError(Exception):
    """Raised when a gateway call fails.

    Attributes:
        retryable: False when repeating the same call cannot succeed
    """

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)

class WebhookSignatureError(Exception):
    """Raised when an inbound event fails signature verification."""
    pass

class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    @abstractmethod
    def parse_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the signature of a webhook payload and return the event.

        Raises:
            WebhookSignatureError: If the payload is not authentic
        """

    @abstractmethod
    async def refund(
        self,
        payment_intent_id: str,
        amount: int,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> RefundResult:
        """Refund ``amount`` minor units of a captured payment.

        Repeating a call with the same ``idempotency_key`` must return the
        original refund rather than create a second one.

        Raises:
            GatewayError: If the gateway rejects or cannot process the refund
        """

class StripeGateway(PaymentGateway):
    """Stripe adapter built on stripe-python."""

    def __init__(self, api_key: str, webhook_secret: str):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def parse_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(f"Invalid signature: {e}") from e
        except ValueError as e:
            raise WebhookSignatureError(f"Invalid payload: {e}") from e
        return json.loads(payload)

    async def refund(
        self,
        payment_intent_id: str,
        amount: int,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> RefundResult:
        try:
            refund = await asyncio.to_thread(
                stripe.Refund.create,
                payment_intent=payment_intent_id,
                amount=amount,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
                api_key=self.api_key,
            )
        except stripe.InvalidRequestError as e:
            logger.error(f"Stripe rejected refund {idempotency_key}: {e}")
            raise GatewayError(str(e), retryable=False) from e
        except stripe.StripeError as e:
            logger.error(f"Stripe refund {idempotency_key} failed: {e}")
            raise GatewayError(str(e)) from e

        return RefundResult(refund_id=refund['id'], amount=refund['amount'], status=refund['status'])
