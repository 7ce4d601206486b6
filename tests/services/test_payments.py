"""
Tests for the payment settlement coordinator.

Covers:
- Catalog pricing
- PENDING → PAID / FAILED transitions and their idempotence
- Balance purchases (atomic debit, InsufficientFunds before remote calls)
- Gateway checkout
- Operator retries
"""
import json
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import database
from app.core.exceptions import InsufficientFunds, RemoteServiceUnavailable
from app.services.payments.exceptions import (
    InvalidPurchaseError,
    PaymentGatewayError,
    PaymentNotFoundError,
    PaymentStateError,
)
from app.services.payments.service import (
    Purchase,
    create_checkout,
    mark_failed,
    mark_paid,
    mark_paid_by_external_id,
    pay_from_balance,
    price_purchase,
    retry_entitlement,
    retry_unapplied_entitlements,
)
from payments.common import GatewayInvalidResponseError, GatewayTransaction


def _gateway(external_id="ext-1", error=None):
    gateway = MagicMock()
    gateway.is_enabled.return_value = True
    if error is not None:
        gateway.create_transaction = AsyncMock(side_effect=error)
    else:
        gateway.create_transaction = AsyncMock(
            return_value=GatewayTransaction(payment_url="https://pay.example.com/1", external_id=external_id)
        )
    return gateway


class TestPricePurchase:
    """Tests for price_purchase function"""

    @pytest.mark.asyncio
    async def test_tariff(self, ledger):
        tariff = ledger.add_tariff(price=Decimal("199.90"))

        priced = await price_purchase(Purchase(tariff_id=tariff["id"]))

        assert priced.amount == Decimal("199.90")
        assert priced.tariff_id == tariff["id"]

    @pytest.mark.asyncio
    async def test_disabled_tariff(self, ledger):
        tariff = ledger.add_tariff(enabled=False)
        with pytest.raises(InvalidPurchaseError):
            await price_purchase(Purchase(tariff_id=tariff["id"]))

    @pytest.mark.asyncio
    async def test_exactly_one_purpose(self, ledger):
        with pytest.raises(InvalidPurchaseError):
            await price_purchase(Purchase(tariff_id=1, top_up_amount=Decimal("10")))
        with pytest.raises(InvalidPurchaseError):
            await price_purchase(Purchase())

    @pytest.mark.asyncio
    async def test_top_up_must_be_positive(self, ledger):
        with pytest.raises(InvalidPurchaseError):
            await price_purchase(Purchase(top_up_amount=Decimal("0")))

    @pytest.mark.asyncio
    async def test_extra_option_from_catalog(self, ledger):
        ledger.settings["extra_option_products"] = json.dumps([
            {"id": "gb50", "kind": "traffic", "price": 99, "traffic_gb": 50},
        ])

        priced = await price_purchase(Purchase(extra_option_id="gb50"))

        assert priced.amount == Decimal("99.00")
        assert priced.extra_option == {"kind": "traffic", "traffic_bytes": 50 * 1024 ** 3}


class TestMarkPaid:
    """Tests for mark_paid function"""

    @pytest.mark.asyncio
    async def test_tariff_payment_applied(self, ledger, panel):
        client = ledger.add_client(telegram_id=31)
        tariff = ledger.add_tariff()
        payment = ledger.add_payment(client_id=client["id"], tariff_id=tariff["id"])

        result = await mark_paid(payment["id"], external_id="ext-9")

        stored = ledger.payments[payment["id"]]
        assert result.transitioned is True
        assert stored["status"] == database.PAYMENT_PAID
        assert stored["external_id"] == "ext-9"
        assert stored["entitlement_applied_at"] is not None
        assert len(panel.updates) == 1

    @pytest.mark.asyncio
    async def test_repeat_is_noop(self, ledger, panel):
        client = ledger.add_client(telegram_id=31)
        tariff = ledger.add_tariff()
        payment = ledger.add_payment(client_id=client["id"], tariff_id=tariff["id"])

        await mark_paid(payment["id"])
        again = await mark_paid(payment["id"])

        assert again.transitioned is False
        assert again.entitlement.already_applied is True
        assert len(panel.updates) == 1

    @pytest.mark.asyncio
    async def test_top_up_credited_once(self, ledger, panel):
        client = ledger.add_client(balance=Decimal("5.00"))
        payment = ledger.add_payment(client_id=client["id"], amount=Decimal("100.00"))

        first = await mark_paid(payment["id"])
        await mark_paid(payment["id"])

        assert first.top_up is True
        assert first.new_balance == Decimal("105.00")
        assert ledger.balance(client["id"]) == Decimal("105.00")
        assert panel.updates == []

    @pytest.mark.asyncio
    async def test_unknown_payment(self, ledger):
        with pytest.raises(PaymentNotFoundError):
            await mark_paid(404)

    @pytest.mark.asyncio
    async def test_failed_payment_cannot_be_paid(self, ledger):
        payment = ledger.add_payment(client_id=1, status=database.PAYMENT_FAILED)
        with pytest.raises(PaymentStateError):
            await mark_paid(payment["id"])

    @pytest.mark.asyncio
    async def test_apply_failure_keeps_payment_paid(self, ledger, panel):
        client = ledger.add_client(telegram_id=31)
        tariff = ledger.add_tariff()
        payment = ledger.add_payment(client_id=client["id"], tariff_id=tariff["id"])
        panel.available = False

        with pytest.raises(RemoteServiceUnavailable):
            await mark_paid(payment["id"])

        stored = ledger.payments[payment["id"]]
        assert stored["status"] == database.PAYMENT_PAID
        assert stored["entitlement_applied_at"] is None

    @pytest.mark.asyncio
    async def test_by_external_id(self, ledger, panel):
        client = ledger.add_client()
        payment = ledger.add_payment(client_id=client["id"], provider="platega", external_id="tx-1")

        result = await mark_paid_by_external_id("platega", "tx-1")

        assert result.payment_id == payment["id"]
        with pytest.raises(PaymentNotFoundError):
            await mark_paid_by_external_id("yookassa", "tx-1")


class TestMarkFailed:
    """Tests for mark_failed function"""

    @pytest.mark.asyncio
    async def test_pending_to_failed_is_idempotent(self, ledger):
        payment = ledger.add_payment(client_id=1)

        first = await mark_failed(payment["id"])
        second = await mark_failed(payment["id"])

        assert first["status"] == database.PAYMENT_FAILED
        assert second["status"] == database.PAYMENT_FAILED

    @pytest.mark.asyncio
    async def test_paid_cannot_fail(self, ledger):
        payment = ledger.add_payment(client_id=1, status=database.PAYMENT_PAID)
        with pytest.raises(PaymentStateError):
            await mark_failed(payment["id"])

    @pytest.mark.asyncio
    async def test_unknown_payment(self, ledger):
        with pytest.raises(PaymentNotFoundError):
            await mark_failed(404)


class TestPayFromBalance:
    """Tests for pay_from_balance function"""

    @pytest.mark.asyncio
    async def test_debits_and_applies(self, ledger, panel):
        client = ledger.add_client(telegram_id=41, balance=Decimal("150.00"))
        tariff = ledger.add_tariff(price=Decimal("100.00"))

        result = await pay_from_balance(client["id"], Purchase(tariff_id=tariff["id"]))

        assert result.new_balance == Decimal("50.00")
        assert ledger.balance(client["id"]) == Decimal("50.00")
        assert ledger.payments[result.payment_id]["provider"] == "balance"
        assert len(panel.updates) == 1

    @pytest.mark.asyncio
    async def test_insufficient_funds_before_remote_call(self, ledger, panel):
        client = ledger.add_client(telegram_id=41, balance=Decimal("10.00"))
        tariff = ledger.add_tariff(price=Decimal("100.00"))

        with pytest.raises(InsufficientFunds):
            await pay_from_balance(client["id"], Purchase(tariff_id=tariff["id"]))

        assert ledger.balance(client["id"]) == Decimal("10.00")
        assert ledger.payments == {}
        assert panel.updates == []
        assert panel.created == 0

    @pytest.mark.asyncio
    async def test_top_up_from_balance_rejected(self, ledger):
        with pytest.raises(InvalidPurchaseError):
            await pay_from_balance(1, Purchase(top_up_amount=Decimal("10")))

    @pytest.mark.asyncio
    async def test_discount_code_recorded_with_payment(self, ledger, panel):
        client = ledger.add_client(telegram_id=41, balance=Decimal("100.00"))
        tariff = ledger.add_tariff(price=Decimal("100.00"))
        promo = ledger.add_promo_code("SALE", type="DISCOUNT", discount_percent=Decimal("25"), duration_days=None)

        result = await pay_from_balance(client["id"], Purchase(tariff_id=tariff["id"]), promo_code="SALE")

        assert ledger.balance(client["id"]) == Decimal("25.00")
        usage = ledger.promo_code_usages[0]
        assert usage["promo_code_id"] == promo["id"]
        assert usage["payment_id"] == result.payment_id


class TestCreateCheckout:
    """Tests for create_checkout function"""

    @pytest.mark.asyncio
    async def test_creates_pending_payment_with_external_id(self, ledger):
        client = ledger.add_client(email="a@example.com")
        tariff = ledger.add_tariff(price=Decimal("100.00"))
        gateway = _gateway()

        with patch.dict('app.services.payments.service.GATEWAYS', {"yookassa": gateway}):
            result = await create_checkout(client["id"], Purchase(tariff_id=tariff["id"]), "yookassa")

        stored = ledger.payments[result.payment_id]
        assert stored["status"] == database.PAYMENT_PENDING
        assert stored["external_id"] == "ext-1"
        assert result.payment_url == "https://pay.example.com/1"
        assert gateway.create_transaction.await_args.kwargs["customer_email"] == "a@example.com"

    @pytest.mark.asyncio
    async def test_gateway_failure_marks_failed(self, ledger):
        client = ledger.add_client()
        gateway = _gateway(error=GatewayInvalidResponseError("bad request"))

        with patch.dict('app.services.payments.service.GATEWAYS', {"platega": gateway}):
            with pytest.raises(PaymentGatewayError):
                await create_checkout(client["id"], Purchase(top_up_amount=Decimal("50")), "platega")

        (payment,) = ledger.payments.values()
        assert payment["status"] == database.PAYMENT_FAILED

    @pytest.mark.asyncio
    async def test_disabled_gateway(self, ledger):
        gateway = _gateway()
        gateway.is_enabled.return_value = False

        with patch.dict('app.services.payments.service.GATEWAYS', {"yoomoney": gateway}):
            with pytest.raises(PaymentGatewayError):
                await create_checkout(1, Purchase(top_up_amount=Decimal("50")), "yoomoney")

    @pytest.mark.asyncio
    async def test_unknown_provider(self, ledger):
        with pytest.raises(InvalidPurchaseError):
            await create_checkout(1, Purchase(top_up_amount=Decimal("50")), "paypal")

    @pytest.mark.asyncio
    async def test_promo_not_allowed_on_top_up(self, ledger):
        client = ledger.add_client()
        with patch.dict('app.services.payments.service.GATEWAYS', {"platega": _gateway()}):
            with pytest.raises(InvalidPurchaseError):
                await create_checkout(client["id"], Purchase(top_up_amount=Decimal("50")), "platega", "SALE")


class TestRetries:
    """Tests for retry_entitlement and retry_unapplied_entitlements"""

    @pytest.mark.asyncio
    async def test_retry_after_panel_recovers(self, ledger, panel):
        client = ledger.add_client(telegram_id=51)
        tariff = ledger.add_tariff()
        payment = ledger.add_payment(client_id=client["id"], tariff_id=tariff["id"])
        panel.available = False
        with pytest.raises(RemoteServiceUnavailable):
            await mark_paid(payment["id"])

        panel.available = True
        result = await retry_entitlement(payment["id"])

        assert result.already_applied is False
        assert ledger.payments[payment["id"]]["entitlement_applied_at"] is not None

    @pytest.mark.asyncio
    async def test_retry_rejects_pending_and_top_up(self, ledger):
        pending = ledger.add_payment(client_id=1, tariff_id=1)
        top_up = ledger.add_payment(client_id=1, status=database.PAYMENT_PAID)

        with pytest.raises(PaymentStateError):
            await retry_entitlement(pending["id"])
        with pytest.raises(InvalidPurchaseError):
            await retry_entitlement(top_up["id"])

    @pytest.mark.asyncio
    async def test_batch_counts_failures(self, ledger, panel):
        tariff = ledger.add_tariff()
        ok_client = ledger.add_client(telegram_id=61)
        ledger.add_payment(client_id=ok_client["id"], tariff_id=tariff["id"], status=database.PAYMENT_PAID)
        ledger.add_payment(client_id=ok_client["id"], tariff_id=999, status=database.PAYMENT_PAID)

        summary = await retry_unapplied_entitlements()

        assert summary == {"total": 2, "applied": 1, "failed": 1}
