"""Payment gateway integration: event admission, event dispatch and refunds."""
from .fake_gateway import FakeGateway
from .gateway import GatewayError, PaymentGateway, RefundResult, StripeGateway, WebhookSignatureError
from .idempotency import Admission, EventAdmissionError, IdempotencyGate
from .webhook import InvalidEventError, PaymentEventProcessor, event_metadata

__all__ = [
    'Admission',
    'EventAdmissionError',
    'FakeGateway',
    'GatewayError',
    'IdempotencyGate',
    'InvalidEventError',
    'PaymentEventProcessor',
    'PaymentGateway',
    'RefundResult',
    'StripeGateway',
    'WebhookSignatureError',
    'event_metadata',
]
