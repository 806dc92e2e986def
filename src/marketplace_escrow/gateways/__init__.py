"""Payment gateway adapters and factory.

Two providers:
    - GatewayA: instant EFT, SHA-512 over an ordered field list
    - GatewayB: card payments, MD5 over sorted URL-encoded params,
                IP allow-list and server-side validation

The GatewayRegistry creates the correct adapter for a PaymentProvider,
with configuration taken from Settings at construction time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from marketplace_escrow.domain.enums import PaymentProvider
from marketplace_escrow.gateways.base import (
    PaymentGateway,
    PaymentRedirect,
    PaymentRequest,
    WebhookEvent,
    WebhookVerification,
)
from marketplace_escrow.gateways.gateway_a import GatewayA, GatewayAConfig
from marketplace_escrow.gateways.gateway_b import GatewayB, GatewayBConfig

if TYPE_CHECKING:
    import httpx

    from marketplace_escrow.config import Settings


class GatewayRegistry:
    """Factory that creates the gateway adapter for a provider.

    Usage:
        gateway = GatewayRegistry.create(PaymentProvider.GATEWAY_A, settings)
        redirect = gateway.build_payment(request)
    """

    _registry: dict[str, tuple[type, type]] = {
        PaymentProvider.GATEWAY_A.value: (GatewayA, GatewayAConfig),
        PaymentProvider.GATEWAY_B.value: (GatewayB, GatewayBConfig),
    }

    @classmethod
    def create(
        cls,
        provider: PaymentProvider | str,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
    ) -> PaymentGateway:
        """Create a gateway instance for the given provider.

        Raises:
            ValueError: If the provider has no gateway adapter (e.g. "manual").
        """
        entry = cls._registry.get(str(provider))
        if entry is None:
            raise ValueError(
                f"No gateway adapter for provider '{provider}'. "
                f"Valid providers: {list(cls._registry.keys())}"
            )
        gateway_class, config_class = entry
        return gateway_class(config_class.from_settings(settings), http_client=http_client)

    @classmethod
    def get_supported_providers(cls) -> list[str]:
        """Return the list of providers with a gateway adapter."""
        return list(cls._registry.keys())


__all__ = [
    "GatewayA",
    "GatewayAConfig",
    "GatewayB",
    "GatewayBConfig",
    "GatewayRegistry",
    "PaymentGateway",
    "PaymentRedirect",
    "PaymentRequest",
    "WebhookEvent",
    "WebhookVerification",
]
