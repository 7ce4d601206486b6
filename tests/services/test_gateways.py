"""
Tests for the payment gateway integrations (YooKassa, Platega, YooMoney).

HTTP is served by httpx.MockTransport.
"""
import json
import pytest
from decimal import Decimal
from urllib.parse import parse_qs, urlparse

import httpx

import config
from payments import common, platega, yookassa, yoomoney
from payments.common import GatewayAuthError, GatewayInvalidResponseError, GatewayNotConfiguredError

PAYMENT = {"id": 42, "amount": Decimal("149.5"), "currency": "RUB"}


@pytest.fixture
def gateway_http(monkeypatch):
    state = {"handler": None, "requests": []}
    real_client = httpx.AsyncClient

    def _handle(request):
        state["requests"].append(request)
        return state["handler"](request)

    def _client(**kwargs):
        return real_client(transport=httpx.MockTransport(_handle), **kwargs)

    monkeypatch.setattr(common.httpx, "AsyncClient", _client)
    return state


@pytest.fixture
def yookassa_configured(monkeypatch):
    monkeypatch.setattr(config, "YOOKASSA_SHOP_ID", "shop")
    monkeypatch.setattr(config, "YOOKASSA_SECRET_KEY", "secret")
    monkeypatch.setattr(config, "YOOKASSA_API_URL", "https://api.yookassa.test/v3")


@pytest.fixture
def platega_configured(monkeypatch):
    monkeypatch.setattr(config, "PLATEGA_MERCHANT_ID", "merchant")
    monkeypatch.setattr(config, "PLATEGA_SECRET", "s3cret")
    monkeypatch.setattr(config, "PLATEGA_API_URL", "https://platega.test")


class TestYooKassa:
    """Tests for the YooKassa integration"""

    @pytest.mark.asyncio
    async def test_create_transaction(self, gateway_http, yookassa_configured):
        gateway_http["handler"] = lambda request: httpx.Response(200, json={
            "id": "yk-1",
            "confirmation": {"confirmation_url": "https://yoomoney.test/checkout"},
        })

        transaction = await yookassa.create_transaction(
            PAYMENT, description="Tariff", return_url="https://app.test/ok", customer_email="a@example.com"
        )

        assert transaction.external_id == "yk-1"
        assert transaction.payment_url == "https://yoomoney.test/checkout"
        request = gateway_http["requests"][0]
        assert request.headers["Idempotence-Key"] == "payment-42"
        body = json.loads(request.content)
        assert body["amount"] == {"value": "149.50", "currency": "RUB"}
        assert body["metadata"] == {"payment_id": "42"}
        assert body["receipt"]["customer"]["email"] == "a@example.com"

    @pytest.mark.asyncio
    async def test_missing_confirmation_url(self, gateway_http, yookassa_configured):
        gateway_http["handler"] = lambda request: httpx.Response(200, json={"id": "yk-1"})
        with pytest.raises(GatewayInvalidResponseError):
            await yookassa.create_transaction(PAYMENT, description="x", return_url="")

    @pytest.mark.asyncio
    async def test_auth_error(self, gateway_http, yookassa_configured):
        gateway_http["handler"] = lambda request: httpx.Response(401, text="unauthorized")
        with pytest.raises(GatewayAuthError):
            await yookassa.get_transaction("yk-1")
        assert len(gateway_http["requests"]) == 1

    @pytest.mark.asyncio
    async def test_not_configured(self, monkeypatch):
        monkeypatch.setattr(config, "YOOKASSA_SHOP_ID", "")
        with pytest.raises(GatewayNotConfiguredError):
            await yookassa.create_transaction(PAYMENT, description="x", return_url="")

    def test_local_payment_id(self):
        assert yookassa.local_payment_id({"metadata": {"payment_id": "42"}}) == 42
        assert yookassa.local_payment_id({"metadata": {}}) is None


class TestPlatega:
    """Tests for the Platega integration"""

    def test_normalize_status(self):
        assert platega.normalize_status("confirmed") == "paid"
        assert platega.normalize_status("CANCELED") == "failed"
        assert platega.normalize_status("PENDING") == "pending"
        assert platega.normalize_status(None) == "pending"

    def test_verify_webhook_headers(self, platega_configured):
        assert platega.verify_webhook_headers("merchant", "s3cret") is True
        assert platega.verify_webhook_headers("merchant", "wrong") is False
        assert platega.verify_webhook_headers(None, "s3cret") is False

    @pytest.mark.asyncio
    async def test_create_transaction(self, gateway_http, platega_configured):
        gateway_http["handler"] = lambda request: httpx.Response(200, json={
            "transactionId": "pl-7",
            "redirect": "https://platega.test/pay/pl-7",
        })

        transaction = await platega.create_transaction(PAYMENT, description="Top-up", return_url="")

        assert transaction.external_id == "pl-7"
        request = gateway_http["requests"][0]
        assert request.url.path == "/transaction/process"
        assert request.headers["X-MerchantId"] == "merchant"
        assert json.loads(request.content)["payload"] == "42"

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, gateway_http, platega_configured):
        gateway_http["handler"] = lambda request: httpx.Response(422, text="bad amount")
        with pytest.raises(GatewayInvalidResponseError):
            await platega.create_transaction(PAYMENT, description="x", return_url="")
        assert len(gateway_http["requests"]) == 1


class TestYooMoney:
    """Tests for YooMoney quickpay links"""

    @pytest.mark.asyncio
    async def test_quickpay_url(self, monkeypatch):
        monkeypatch.setattr(config, "YOOMONEY_RECEIVER_WALLET", "4100100")

        transaction = await yoomoney.create_transaction(
            PAYMENT, description="Tariff", return_url="https://app.test/ok"
        )

        params = parse_qs(urlparse(transaction.payment_url).query)
        assert transaction.external_id is None
        assert params["receiver"] == ["4100100"]
        assert params["sum"] == ["149.50"]
        assert params["label"] == ["42"]
        assert params["successURL"] == ["https://app.test/ok"]
