"""Tests for the SHA-512 signed Gateway A adapter."""

from __future__ import annotations

import hashlib
import json

import httpx
import pytest

from marketplace_escrow.domain.enums import PaymentOutcome, PaymentProvider
from marketplace_escrow.domain.exceptions import GatewayError, GatewayNotConfiguredError
from marketplace_escrow.gateways.base import PaymentRequest
from marketplace_escrow.gateways.gateway_a import (
    NOTIFY_HASH_FIELDS,
    REQUEST_HASH_FIELDS,
    GatewayA,
    GatewayAConfig,
    compute_hash,
)

PRIVATE_KEY = "test-private-key"


def _config(**overrides) -> GatewayAConfig:
    values = {
        "site_code": "TSTSTE0001",
        "private_key": PRIVATE_KEY,
        "api_key": "test-api-key",
        "api_url": "https://api.gateway-a.test",
        "public_base_url": "https://market.example.com",
    }
    values.update(overrides)
    return GatewayAConfig(**values)


def _request(**overrides) -> PaymentRequest:
    values = {
        "order_id": "0b6c1c2e-4f3a-4e0e-9d55-4a4f3f2b1a10",
        "amount": 51500,
        "description": "Logo design for a coffee shop",
        "reference": "PAY-LZ3K9Q1A-7F2C9XQ1",
        "buyer_email": "buyer@example.com",
    }
    values.update(overrides)
    return PaymentRequest(**values)


def _notification(**overrides) -> dict[str, str]:
    params = {
        "SiteCode": "TSTSTE0001",
        "TransactionId": "f2c1a3b4-0000-4000-8000-000000000001",
        "TransactionReference": "PAY-LZ3K9Q1A-7F2C9XQ1",
        "Amount": "515.00",
        "Status": "Complete",
        "Optional1": "0b6c1c2e-4f3a-4e0e-9d55-4a4f3f2b1a10",
        "Optional2": "",
        "Optional3": "",
        "Optional4": "",
        "Optional5": "",
        "CurrencyCode": "ZAR",
        "IsTest": "true",
        "StatusMessage": "Payment complete",
    }
    params.update(overrides)
    params["Hash"] = compute_hash(params, NOTIFY_HASH_FIELDS, PRIVATE_KEY)
    return params


class TestComputeHash:
    def test_concatenates_in_field_order(self) -> None:
        values = {"B": "2", "A": "1"}
        expected = hashlib.sha512(b"12secret").hexdigest()
        assert compute_hash(values, ("A", "B"), "secret") == expected

    def test_missing_fields_are_empty(self) -> None:
        expected = hashlib.sha512(b"1secret").hexdigest()
        assert compute_hash({"A": "1"}, ("A", "B"), "secret") == expected


class TestBuildPayment:
    def test_fields_and_hash(self) -> None:
        redirect = GatewayA(_config()).build_payment(_request())
        fields = redirect.fields

        assert redirect.provider == PaymentProvider.GATEWAY_A
        assert fields["Amount"] == "515.00"
        assert fields["TransactionReference"] == "PAY-LZ3K9Q1A-7F2C9XQ1"
        assert fields["Optional1"] == "0b6c1c2e-4f3a-4e0e-9d55-4a4f3f2b1a10"
        assert fields["Optional2"] == ""
        assert fields["Customer"] == "buyer@example.com"
        assert fields["IsTest"] == "true"
        assert fields["NotifyUrl"] == (
            "https://market.example.com/api/v1/payments/gateway-a/notify"
        )
        assert fields["HashCheck"] == compute_hash(fields, REQUEST_HASH_FIELDS, PRIVATE_KEY)
        assert redirect.redirect_url.startswith("https://pay.ozow.com/?")

    def test_bank_reference_truncated(self) -> None:
        redirect = GatewayA(_config()).build_payment(_request())
        assert redirect.fields["BankReference"] == "Logo design for a co"
        assert len(redirect.fields["BankReference"]) == 20

    def test_milestone_in_optional2(self) -> None:
        redirect = GatewayA(_config()).build_payment(_request(milestone_id="m-1"))
        assert redirect.fields["Optional2"] == "m-1"

    def test_not_configured(self) -> None:
        gateway = GatewayA(_config(private_key=""))
        assert not gateway.is_configured
        with pytest.raises(GatewayNotConfiguredError):
            gateway.build_payment(_request())


class TestVerifyWebhook:
    @pytest.mark.asyncio
    async def test_valid_notification(self) -> None:
        result = await GatewayA(_config()).verify_webhook(_notification())
        assert result.verified
        event = result.event
        assert event is not None
        assert event.reference == "PAY-LZ3K9Q1A-7F2C9XQ1"
        assert event.amount == 51500
        assert event.outcome == PaymentOutcome.SUCCESS
        assert event.milestone_id is None

    @pytest.mark.asyncio
    async def test_hash_is_case_insensitive(self) -> None:
        params = _notification()
        params["Hash"] = params["Hash"].upper()
        result = await GatewayA(_config()).verify_webhook(params)
        assert result.verified

    @pytest.mark.asyncio
    async def test_tampered_amount_rejected(self) -> None:
        params = _notification()
        params["Amount"] = "1.00"
        result = await GatewayA(_config()).verify_webhook(params)
        assert not result.verified
        assert result.reason == "hash mismatch"

    @pytest.mark.asyncio
    async def test_missing_hash_rejected(self) -> None:
        params = _notification()
        del params["Hash"]
        result = await GatewayA(_config()).verify_webhook(params)
        assert not result.verified

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "outcome"),
        [
            ("Pending", PaymentOutcome.PENDING),
            ("PendingInvestigation", PaymentOutcome.PENDING),
            ("Cancelled", PaymentOutcome.CANCELLED),
            ("Abandoned", PaymentOutcome.CANCELLED),
            ("Error", PaymentOutcome.FAILED),
            ("Something new", PaymentOutcome.FAILED),
        ],
    )
    async def test_status_map(self, status: str, outcome: PaymentOutcome) -> None:
        result = await GatewayA(_config()).verify_webhook(_notification(Status=status))
        assert result.event is not None
        assert result.event.outcome == outcome


class TestQueryStatus:
    @pytest.mark.asyncio
    async def test_parses_provider_record(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            body = [
                {
                    "transactionId": "tx-99",
                    "transactionReference": "PAY-LZ3K9Q1A-7F2C9XQ1",
                    "amount": 515.0,
                    "status": "Complete",
                    "statusMessage": "ok",
                }
            ]
            return httpx.Response(200, content=json.dumps(body))

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            event = await GatewayA(_config(), http_client=client).query_status(
                "PAY-LZ3K9Q1A-7F2C9XQ1"
            )

        assert event.outcome == PaymentOutcome.SUCCESS
        assert event.amount == 51500
        assert event.provider_transaction_id == "tx-99"
        assert seen[0].headers["ApiKey"] == "test-api-key"
        assert seen[0].url.params["transactionReference"] == "PAY-LZ3K9Q1A-7F2C9XQ1"

    @pytest.mark.asyncio
    async def test_http_error_becomes_gateway_error(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        async with httpx.AsyncClient(transport=transport) as client:
            gateway = GatewayA(_config(), http_client=client)
            with pytest.raises(GatewayError):
                await gateway.query_status("PAY-1")

    @pytest.mark.asyncio
    async def test_unexpected_body(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"nope": 1}))
        async with httpx.AsyncClient(transport=transport) as client:
            gateway = GatewayA(_config(), http_client=client)
            with pytest.raises(GatewayError):
                await gateway.query_status("PAY-1")

    @pytest.mark.asyncio
    async def test_requires_api_key(self) -> None:
        with pytest.raises(GatewayNotConfiguredError):
            await GatewayA(_config(api_key="")).query_status("PAY-1")
