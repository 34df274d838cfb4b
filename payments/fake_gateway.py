"""Configurable in-process payment gateway for development and testing.

Refunds are keyed by idempotency key the way the real gateway does it:
repeating a key returns the original refund and records no new money
movement. ``hold()`` parks every refund call until ``release()`` so tests
can line up concurrent callers deterministically.
"""
import asyncio
import json
from typing import Any, Dict, List, Optional

from .gateway import GatewayError, PaymentGateway, RefundResult, WebhookSignatureError

TEST_SIGNATURE = 'test-signature'

class FakeGateway(PaymentGateway):
    """Configurable fake payment gateway."""

    def __init__(self) -> None:
        self.should_succeed: bool = True
        self.failure_reason: str = "Gateway unavailable"
        self.retryable: bool = True
        self.calls: List[Dict[str, Any]] = []
        self.refunds: Dict[str, RefundResult] = {}
        self._gate: Optional[asyncio.Event] = None

    def configure(
        self,
        should_succeed: bool,
        failure_reason: str = "Gateway unavailable",
        retryable: bool = True
    ) -> None:
        """Configure gateway behavior at runtime."""
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason
        self.retryable = retryable

    def hold(self) -> None:
        self._gate = asyncio.Event()

    def release(self) -> None:
        if self._gate is not None:
            self._gate.set()

    @property
    def refunded_total(self) -> int:
        return sum(result.amount for result in self.refunds.values())

    def parse_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if signature != TEST_SIGNATURE:
            raise WebhookSignatureError("Invalid signature")
        try:
            return json.loads(payload)
        except ValueError as e:
            raise WebhookSignatureError(f"Invalid payload: {e}") from e

    async def refund(
        self,
        payment_intent_id: str,
        amount: int,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> RefundResult:
        self.calls.append({
            'method': 'refund',
            'payment_intent_id': payment_intent_id,
            'amount': amount,
            'idempotency_key': idempotency_key,
            'metadata': metadata or {},
        })

        if self._gate is not None:
            await self._gate.wait()

        if not self.should_succeed:
            raise GatewayError(self.failure_reason, retryable=self.retryable)

        if idempotency_key in self.refunds:
            return self.refunds[idempotency_key]

        result = RefundResult(
            refund_id=f"re_fake_{len(self.refunds) + 1}",
            amount=amount,
            status='succeeded',
        )
        self.refunds[idempotency_key] = result
        return result
