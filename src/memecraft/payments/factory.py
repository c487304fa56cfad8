"""Registry of configured payment providers.

Built once at application start-up from settings and shared for the life of
the process; the mock provider keeps its in-memory state across requests.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import structlog

from memecraft.config import Settings
from memecraft.errors import ProviderNotConfigured
from memecraft.payments.base import PaymentProvider
from memecraft.payments.mock_gateway import MockGateway
from memecraft.payments.stripe_gateway import StripeGateway
from memecraft.payments.yookassa_gateway import YooKassaGateway

log = structlog.get_logger()


class PaymentProviderFactory:
    def __init__(
        self,
        providers: Iterable[PaymentProvider] = (),
        default: str | None = None,
    ) -> None:
        self._providers: dict[str, PaymentProvider] = {}
        for provider in providers:
            self.register(provider)
        self._default = default

    @classmethod
    def from_settings(cls, settings: Settings) -> PaymentProviderFactory:
        """Register every provider whose credentials are present."""
        allow_unsigned = settings.allow_unsigned_webhooks
        providers: list[PaymentProvider] = []

        if settings.YOOKASSA_SHOP_ID and settings.YOOKASSA_API_KEY:
            providers.append(YooKassaGateway(
                shop_id=settings.YOOKASSA_SHOP_ID,
                api_key=settings.YOOKASSA_API_KEY,
                webhook_secret=settings.YOOKASSA_WEBHOOK_SECRET,
                return_url=settings.PAYMENT_RETURN_URL,
                timeout=settings.PROVIDER_TIMEOUT_SECONDS,
                allow_unsigned=allow_unsigned,
            ))
        if settings.STRIPE_SECRET_KEY:
            providers.append(StripeGateway(
                secret_key=settings.STRIPE_SECRET_KEY,
                webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
                timeout=settings.PROVIDER_TIMEOUT_SECONDS,
                allow_unsigned=allow_unsigned,
            ))
        if settings.APP_ENV != "production" or settings.PAYMENT_PROVIDER == "mock":
            providers.append(MockGateway(
                webhook_secret=settings.MOCK_WEBHOOK_SECRET,
                simulate_error=settings.MOCK_PAYMENT_ERROR,
                delay_ms=settings.MOCK_PAYMENT_DELAY_MS,
            ))

        factory = cls(providers, default=settings.PAYMENT_PROVIDER)
        log.info(
            "payment_providers_configured",
            providers=factory.available_providers(),
            default=settings.PAYMENT_PROVIDER,
        )
        return factory

    def register(self, provider: PaymentProvider) -> None:
        self._providers[provider.name] = provider

    def get_provider(self, name: str | None = None) -> PaymentProvider:
        """Return the named provider, or the default when *name* is None."""
        name = name or self._default
        if name is None:
            raise ProviderNotConfigured("No default payment provider configured")
        try:
            return self._providers[name]
        except KeyError:
            raise ProviderNotConfigured(
                f"Payment provider {name!r} is not configured", provider=name,
            ) from None

    def get_default_provider(self) -> PaymentProvider:
        return self.get_provider()

    def available_providers(self) -> list[str]:
        return sorted(self._providers)

    async def health_check(self) -> dict[str, bool]:
        """Probe every provider; one failing probe never hides the others."""
        results: dict[str, bool] = {}
        for name, provider in self._providers.items():
            try:
                results[name] = bool(await provider.health_check())
            except Exception as exc:
                log.warning("provider_health_check_failed", provider=name, error=str(exc))
                results[name] = False
        return results

    def resolve_webhook_provider(
        self,
        explicit: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> PaymentProvider:
        """Pick the provider for an inbound callback.

        An explicit name (from the route) always wins. Otherwise the payload
        shape is inspected; this guess is best-effort only.
        """
        if explicit:
            return self.get_provider(explicit)
        name = guess_webhook_provider(payload or {})
        log.info("webhook_provider_guessed", provider=name)
        return self.get_provider(name)


def guess_webhook_provider(payload: dict[str, Any]) -> str:
    declared = payload.get("provider")
    if isinstance(declared, str) and declared:
        return declared

    obj = payload.get("object")
    if not isinstance(obj, dict):
        data = payload.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        if isinstance(obj, dict):
            return "stripe"
        obj = {}

    event_id = str(payload.get("id") or "")
    object_id = str(obj.get("id") or payload.get("paymentId") or "")
    if event_id.startswith("evt_") or object_id.startswith("pi_"):
        return "stripe"
    if object_id.startswith("mock_payment_"):
        return "mock"
    return "yookassa"
