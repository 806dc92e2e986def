"""Gateway B: card provider signed with MD5.

Signature: parameters sorted by key, empty values dropped, each value
percent-encoded the way JavaScript's encodeURIComponent does it with
``%20`` turned into ``+``, joined as ``k=v&k=v``; if a passphrase is
configured ``&passphrase=<encoded>`` is appended; the MD5 hex digest of
that string is the signature.

Inbound ITN (instant transaction notification) verification runs three
independent checks, all of which must pass:
    1. Source IP is in the provider allow-list (skipped in sandbox).
    2. Signature recomputed over the payload (minus ``signature``) matches.
    3. The provider's validate endpoint answers ``VALID`` for the payload.
"""

from __future__ import annotations

import hashlib
import html
import ipaddress
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING
from urllib.parse import quote, urlencode

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
    split_name,
)
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

    from marketplace_escrow.config import Settings

logger = get_logger(__name__)

LIVE_BASE_URL = "https://www.payfast.co.za"
SANDBOX_BASE_URL = "https://sandbox.payfast.co.za"
PROCESS_PATH = "/eng/process"
VALIDATE_PATH = "/eng/query/validate"

# Characters encodeURIComponent leaves untouched besides alphanumerics
_URI_COMPONENT_SAFE = "-_.!~*'()"

STATUS_MAP: dict[str, PaymentOutcome] = {
    "COMPLETE": PaymentOutcome.SUCCESS,
    "PENDING": PaymentOutcome.PENDING,
    "CANCELLED": PaymentOutcome.CANCELLED,
    "FAILED": PaymentOutcome.FAILED,
}

ITEM_NAME_MAX = 100
ITEM_DESCRIPTION_MAX = 255


@dataclass(frozen=True)
class GatewayBConfig:
    """Credentials, endpoints and allow-list for Gateway B."""

    merchant_id: str
    merchant_key: str
    passphrase: str = ""
    sandbox: bool = True
    valid_hosts: tuple[str, ...] = field(default_factory=tuple)
    public_base_url: str = "http://localhost:8000"
    timeout_seconds: float = 10.0

    @classmethod
    def from_settings(cls, settings: Settings) -> GatewayBConfig:
        return cls(
            merchant_id=settings.gateway_b_merchant_id,
            merchant_key=settings.gateway_b_merchant_key,
            passphrase=settings.gateway_b_passphrase,
            sandbox=settings.gateway_b_sandbox,
            valid_hosts=tuple(settings.gateway_b_valid_host_list),
            public_base_url=settings.public_base_url,
            timeout_seconds=settings.gateway_http_timeout_seconds,
        )

    @property
    def base_url(self) -> str:
        return SANDBOX_BASE_URL if self.sandbox else LIVE_BASE_URL

    def callback_url(self, kind: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/api/v1/payments/gateway-b/{kind}"


def encode_uri_component(value: str) -> str:
    return quote(value, safe=_URI_COMPONENT_SAFE)


def generate_signature(params: Mapping[str, str], passphrase: str = "") -> str:
    """MD5 signature over sorted, encoded, non-empty parameters."""
    query = "&".join(
        f"{key}={encode_uri_component(params[key]).replace('%20', '+')}"
        for key in sorted(params)
        if params[key] not in ("", None)
    )
    if passphrase:
        query = f"{query}&passphrase={encode_uri_component(passphrase)}"
    return hashlib.md5(query.encode("utf-8")).hexdigest()


def ip_allowed(source_ip: str, valid_hosts: tuple[str, ...]) -> bool:
    """Check an address against exact IPs and CIDR ranges."""
    try:
        address = ipaddress.ip_address(source_ip.strip())
    except ValueError:
        return False
    for entry in valid_hosts:
        if "/" in entry:
            if address in ipaddress.ip_network(entry, strict=False):
                return True
        elif address == ipaddress.ip_address(entry):
            return True
    return False


class GatewayB:
    """MD5 signed card gateway with IP allow-list and server validation."""

    provider = PaymentProvider.GATEWAY_B

    def __init__(
        self,
        config: GatewayBConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._http_client = http_client

    @property
    def is_configured(self) -> bool:
        return bool(self._config.merchant_id and self._config.merchant_key)

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------

    def build_payment(self, request: PaymentRequest) -> PaymentRedirect:
        if not self.is_configured:
            raise GatewayNotConfiguredError(self.provider.value)

        cfg = self._config
        first_name, last_name = split_name(request.buyer_name)
        fields: dict[str, str] = {
            # Merchant details
            "merchant_id": cfg.merchant_id,
            "merchant_key": cfg.merchant_key,
            # URLs
            "return_url": f"{cfg.callback_url('return')}?ref={request.reference}",
            "cancel_url": f"{cfg.callback_url('cancel')}?ref={request.reference}",
            "notify_url": cfg.callback_url("notify"),
            # Buyer details
            "email_address": request.buyer_email,
            "name_first": first_name,
            "name_last": last_name,
            # Transaction details
            "m_payment_id": request.reference,
            "amount": minor_to_major(request.amount),
            "item_name": request.description[:ITEM_NAME_MAX],
            "item_description": f"Order: {request.order_id}"[:ITEM_DESCRIPTION_MAX],
            # Custom fields
            "custom_str1": request.order_id,
            "custom_str2": request.milestone_id or "",
            "custom_str3": "",
            "custom_str4": "",
            "custom_str5": "",
            "custom_int1": "",
            "custom_int2": "",
            "custom_int3": "",
            "custom_int4": "",
            "custom_int5": "",
            "payment_method": "",
        }
        fields["signature"] = generate_signature(fields, cfg.passphrase)

        process_url = f"{cfg.base_url}{PROCESS_PATH}"
        logger.info(
            "gateway_b.payment_built",
            reference=request.reference,
            amount=fields["amount"],
            sandbox=cfg.sandbox,
        )
        return PaymentRedirect(
            provider=self.provider,
            reference=request.reference,
            redirect_url=f"{process_url}?{urlencode(fields)}",
            fields=fields,
            form_html=render_autosubmit_form(process_url, fields),
        )

    # ------------------------------------------------------------------
    # ITN verification
    # ------------------------------------------------------------------

    async def verify_webhook(
        self,
        params: Mapping[str, str],
        source_ip: str | None = None,
    ) -> WebhookVerification:
        """Run the IP, signature and server-validation checks.

        Raises:
            GatewayError: If the validation callback cannot reach the provider.
                The notification is neither accepted nor rejected; the
                provider retries it later.
        """
        cfg = self._config
        if not self.is_configured:
            return WebhookVerification.rejected("gateway not configured")

        if not cfg.sandbox and not ip_allowed(source_ip or "", cfg.valid_hosts):
            return WebhookVerification.rejected(f"invalid source IP: {source_ip}")

        received = params.get("signature") or ""
        if not received:
            return WebhookVerification.rejected("missing signature")

        unsigned = {k: v for k, v in params.items() if k != "signature"}
        expected = generate_signature(unsigned, cfg.passphrase)
        if not digests_match(expected, received):
            return WebhookVerification.rejected("invalid signature")

        try:
            answer = await self._validate_with_provider(params)
        except httpx.HTTPError as exc:
            logger.warning("gateway_b.validation_unreachable", error=str(exc))
            raise GatewayError(self.provider.value, f"validation callback failed: {exc}") from exc
        if answer != "VALID":
            return WebhookVerification.rejected(f"provider validation failed: {answer}")

        try:
            event = self.parse_notification(params)
        except ValueError as exc:
            return WebhookVerification.rejected(str(exc))
        return WebhookVerification(verified=True, event=event)

    def parse_notification(self, params: Mapping[str, str]) -> WebhookEvent:
        """Normalize a (verified) ITN payload."""
        return WebhookEvent(
            provider=self.provider,
            reference=params.get("m_payment_id") or "",
            provider_transaction_id=params.get("pf_payment_id") or "",
            amount=major_to_minor(params.get("amount_gross") or "0"),
            outcome=STATUS_MAP.get(params.get("payment_status") or "", PaymentOutcome.FAILED),
            message=params.get("payment_status") or "",
            order_id=params.get("custom_str1") or "",
            milestone_id=params.get("custom_str2") or None,
            raw=dict(params),
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _validate_with_provider(self, params: Mapping[str, str]) -> str:
        async with self._client() as client:
            response = await client.post(
                f"{self._config.base_url}{VALIDATE_PATH}",
                content=urlencode(list(params.items())),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            response.raise_for_status()
            return response.text.strip()

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self._config.timeout_seconds) as client:
            yield client


def render_autosubmit_form(action: str, fields: Mapping[str, str]) -> str:
    """HTML page that POSTs the signed fields to the provider on load."""
    inputs = "\n    ".join(
        f'<input type="hidden" name="{html.escape(k)}" value="{html.escape(v)}" />'
        for k, v in fields.items()
    )
    return (
        "<!DOCTYPE html>\n"
        "<html>\n"
        "<head>\n  <title>Redirecting to payment...</title>\n</head>\n"
        "<body>\n"
        f'  <form id="payment-form" action="{html.escape(action)}" method="POST">\n'
        f"    {inputs}\n"
        "  </form>\n"
        "  <script>document.getElementById('payment-form').submit();</script>\n"
        "</body>\n"
        "</html>"
    )
