"""Payment provider abstraction -- re-exports the contract, adapters and factory."""

from memecraft.payments.base import (
    CreatePaymentRequest,
    CreatePaymentResult,
    PaymentIntent,
    PaymentProvider,
    PaymentWebhook,
    RefundRequest,
)
from memecraft.payments.factory import PaymentProviderFactory
from memecraft.payments.mock_gateway import MockGateway
from memecraft.payments.stripe_gateway import StripeGateway
from memecraft.payments.yookassa_gateway import YooKassaGateway

__all__ = [
    "CreatePaymentRequest",
    "CreatePaymentResult",
    "PaymentIntent",
    "PaymentProvider",
    "PaymentWebhook",
    "RefundRequest",
    "PaymentProviderFactory",
    "MockGateway",
    "StripeGateway",
    "YooKassaGateway",
]
