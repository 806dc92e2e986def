"""Gateway A: instant EFT provider signed with SHA-512.

Outbound: every request field is concatenated in a provider-mandated order,
the private key is appended, and the lowercase hex SHA-512 digest of that
string is sent as ``HashCheck``.

Inbound: the notification carries ``Hash``, computed the same way over a
different field list. We recompute and compare case-insensitively.

Field lists below are provider-mandated; changing their order breaks
every signature.
"""

from __future__ import annotations

import hashlib
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import urlencode

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from marketplace_escrow.domain.enums import PaymentOutcome, PaymentProvider
from marketplace_escrow.domain.exceptions import GatewayError, GatewayNotConfiguredError
from marketplace_escrow.gateways.base import (
    PaymentRedirect,
    PaymentRequest,
    WebhookEvent,
    WebhookVerification,
    digests_match,
    major_to_minor,
    minor_to_major,
)
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

    from marketplace_escrow.config import Settings

logger = get_logger(__name__)

REQUEST_HASH_FIELDS = (
    "SiteCode",
    "CountryCode",
    "CurrencyCode",
    "Amount",
    "TransactionReference",
    "BankReference",
    "Optional1",
    "Optional2",
    "Optional3",
    "Optional4",
    "Optional5",
    "Customer",
    "CancelUrl",
    "ErrorUrl",
    "SuccessUrl",
    "NotifyUrl",
    "IsTest",
)

NOTIFY_HASH_FIELDS = (
    "SiteCode",
    "TransactionId",
    "TransactionReference",
    "Amount",
    "Status",
    "Optional1",
    "Optional2",
    "Optional3",
    "Optional4",
    "Optional5",
    "CurrencyCode",
    "IsTest",
    "StatusMessage",
)

STATUS_MAP: dict[str, PaymentOutcome] = {
    "Complete": PaymentOutcome.SUCCESS,
    "Pending": PaymentOutcome.PENDING,
    "Cancelled": PaymentOutcome.CANCELLED,
    "Error": PaymentOutcome.FAILED,
    "Abandoned": PaymentOutcome.CANCELLED,
    "PendingInvestigation": PaymentOutcome.PENDING,
}

BANK_REFERENCE_MAX = 20


@dataclass(frozen=True)
class GatewayAConfig:
    """Credentials and endpoints for Gateway A."""

    site_code: str
    private_key: str
    api_key: str = ""
    payment_url: str = "https://pay.ozow.com"
    api_url: str = "https://api.ozow.com"
    is_test: bool = True
    public_base_url: str = "http://localhost:8000"
    country_code: str = "ZA"
    currency_code: str = "ZAR"
    timeout_seconds: float = 10.0

    @classmethod
    def from_settings(cls, settings: Settings) -> GatewayAConfig:
        return cls(
            site_code=settings.gateway_a_site_code,
            private_key=settings.gateway_a_private_key,
            api_key=settings.gateway_a_api_key,
            payment_url=settings.gateway_a_payment_url,
            api_url=settings.gateway_a_api_url,
            is_test=settings.gateway_a_test_mode,
            public_base_url=settings.public_base_url,
            currency_code=settings.currency,
            timeout_seconds=settings.gateway_http_timeout_seconds,
        )

    def callback_url(self, kind: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/api/v1/payments/gateway-a/{kind}"


def compute_hash(values: Mapping[str, str], fields: tuple[str, ...], private_key: str) -> str:
    """SHA-512 over the ordered field values followed by the private key."""
    payload = "".join(values.get(name) or "" for name in fields) + private_key
    return hashlib.sha512(payload.encode("utf-8")).hexdigest().lower()


class GatewayA:
    """SHA-512 signed instant EFT gateway."""

    provider = PaymentProvider.GATEWAY_A

    def __init__(
        self,
        config: GatewayAConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._http_client = http_client

    @property
    def is_configured(self) -> bool:
        return bool(self._config.site_code and self._config.private_key)

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------

    def build_payment(self, request: PaymentRequest) -> PaymentRedirect:
        if not self.is_configured:
            raise GatewayNotConfiguredError(self.provider.value)

        cfg = self._config
        fields: dict[str, str] = {
            "SiteCode": cfg.site_code,
            "CountryCode": cfg.country_code,
            "CurrencyCode": cfg.currency_code,
            "Amount": minor_to_major(request.amount),
            "TransactionReference": request.reference,
            "BankReference": request.description[:BANK_REFERENCE_MAX],
            "Optional1": request.order_id,
            "Optional2": request.milestone_id or "",
            "Optional3": "",
            "Optional4": "",
            "Optional5": "",
            "Customer": request.buyer_email,
            "CancelUrl": cfg.callback_url("cancel"),
            "ErrorUrl": cfg.callback_url("error"),
            "SuccessUrl": cfg.callback_url("success"),
            "NotifyUrl": cfg.callback_url("notify"),
            "IsTest": "true" if cfg.is_test else "false",
        }
        fields["HashCheck"] = compute_hash(fields, REQUEST_HASH_FIELDS, cfg.private_key)

        redirect_url = f"{cfg.payment_url.rstrip('/')}/?{urlencode(fields)}"
        logger.info(
            "gateway_a.payment_built",
            reference=request.reference,
            amount=fields["Amount"],
            test=cfg.is_test,
        )
        return PaymentRedirect(
            provider=self.provider,
            reference=request.reference,
            redirect_url=redirect_url,
            fields=fields,
        )

    # ------------------------------------------------------------------
    # Webhook verification
    # ------------------------------------------------------------------

    async def verify_webhook(
        self,
        params: Mapping[str, str],
        source_ip: str | None = None,
    ) -> WebhookVerification:
        if not self.is_configured:
            return WebhookVerification.rejected("gateway not configured")

        received = params.get("Hash") or ""
        if not received:
            return WebhookVerification.rejected("missing Hash")

        expected = compute_hash(params, NOTIFY_HASH_FIELDS, self._config.private_key)
        if not digests_match(expected, received):
            return WebhookVerification.rejected("hash mismatch")

        try:
            event = self.parse_notification(params)
        except ValueError as exc:
            return WebhookVerification.rejected(str(exc))
        return WebhookVerification(verified=True, event=event)

    def parse_notification(self, params: Mapping[str, str]) -> WebhookEvent:
        """Normalize a (verified) notification payload."""
        return WebhookEvent(
            provider=self.provider,
            reference=params.get("TransactionReference") or "",
            provider_transaction_id=params.get("TransactionId") or "",
            amount=major_to_minor(params.get("Amount") or "0"),
            outcome=STATUS_MAP.get(params.get("Status") or "", PaymentOutcome.FAILED),
            message=params.get("StatusMessage") or "",
            order_id=params.get("Optional1") or "",
            milestone_id=params.get("Optional2") or None,
            raw=dict(params),
        )

    # ------------------------------------------------------------------
    # Status query (reconciles timed-out or abandoned redirects)
    # ------------------------------------------------------------------

    async def query_status(self, reference: str) -> WebhookEvent:
        """Ask the provider for the current state of a transaction.

        Raises:
            GatewayNotConfiguredError: If no API key is configured.
            GatewayError: On transport failure or an unusable response.
        """
        if not self.is_configured or not self._config.api_key:
            raise GatewayNotConfiguredError(self.provider.value)

        try:
            payload = await self._fetch_status(reference)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("gateway_a.status_query_failed", reference=reference, error=str(exc))
            raise GatewayError(self.provider.value, f"status query failed: {exc}") from exc

        record = payload[0] if isinstance(payload, list) and payload else payload
        if not isinstance(record, dict) or "status" not in record:
            raise GatewayError(self.provider.value, "unexpected status response")

        try:
            amount = major_to_minor(str(record.get("amount", "0")))
        except ValueError as exc:
            raise GatewayError(self.provider.value, str(exc)) from exc

        return WebhookEvent(
            provider=self.provider,
            reference=record.get("transactionReference") or reference,
            provider_transaction_id=str(record.get("transactionId") or ""),
            amount=amount,
            outcome=STATUS_MAP.get(str(record["status"]), PaymentOutcome.FAILED),
            message=str(record.get("statusMessage") or ""),
            raw={k: str(v) for k, v in record.items()},
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _fetch_status(self, reference: str) -> dict | list:
        cfg = self._config
        async with self._client() as client:
            response = await client.get(
                f"{cfg.api_url.rstrip('/')}/GetTransactionByReference",
                params={"siteCode": cfg.site_code, "transactionReference": reference},
                headers={"Accept": "application/json", "ApiKey": cfg.api_key},
            )
            response.raise_for_status()
            return response.json()

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self._config.timeout_seconds) as client:
            yield client
