"""
Tests for referral reward distribution.

Covers:
- Credit arithmetic and rounding
- Chain building (three levels, loops, missing referrers)
- Idempotence per payment
- Skipped payments (not paid, balance-funded top-up)
"""
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import database
from app.services.referrals.service import (
    build_referral_chain,
    calculate_credit,
    distribute,
    get_referral_percents,
)


class TestCalculateCredit:
    """Tests for calculate_credit function"""

    def test_rounds_half_up_to_cents(self):
        assert calculate_credit(Decimal("99.99"), Decimal("30")) == Decimal("30.00")
        assert calculate_credit(Decimal("0.05"), Decimal("10")) == Decimal("0.01")

    def test_zero_percent(self):
        assert calculate_credit(Decimal("100"), Decimal("0")) == Decimal("0.00")


class TestReferralPercents:
    """Tests for get_referral_percents function"""

    @pytest.mark.asyncio
    async def test_defaults_when_missing_or_invalid(self):
        with patch('app.services.referrals.service.database') as mock_db:
            mock_db.get_system_config = AsyncMock(return_value={"referral_percent_level_2": "abc"})

            percents = await get_referral_percents()

        assert percents["default_referral_percent"] == Decimal("30")
        assert percents["referral_percent_level_2"] == Decimal("10")
        assert percents["referral_percent_level_3"] == Decimal("10")


class TestBuildReferralChain:
    """Tests for build_referral_chain function"""

    @pytest.mark.asyncio
    async def test_stops_at_three_levels(self, ledger):
        ledger.add_client(1)
        for client_id in range(2, 6):
            ledger.add_client(client_id, referrer_id=client_id - 1)

        chain = await build_referral_chain(await database.get_client(5))

        assert [c["id"] for c in chain] == [4, 3, 2]

    @pytest.mark.asyncio
    async def test_loop_is_cut(self, ledger):
        ledger.add_client(1, referrer_id=2)
        ledger.add_client(2, referrer_id=1)

        chain = await build_referral_chain(await database.get_client(1))

        assert [c["id"] for c in chain] == [2]


class TestDistribute:
    """Tests for distribute function"""

    @pytest.mark.asyncio
    async def test_three_level_credits(self, ledger):
        ledger.add_client(1)
        ledger.add_client(2, referrer_id=1)
        ledger.add_client(3, referrer_id=2)
        ledger.add_client(4, referrer_id=3)
        payment = ledger.add_payment(client_id=4, amount=Decimal("100.00"), status=database.PAYMENT_PAID)

        result = await distribute(payment["id"])

        assert result.created is True
        assert [(c.referrer_id, c.level, c.amount) for c in result.credits] == [
            (3, 1, Decimal("30.00")),
            (2, 2, Decimal("10.00")),
            (1, 3, Decimal("10.00")),
        ]
        assert ledger.balance(3) == Decimal("30.00")

    @pytest.mark.asyncio
    async def test_payer_percent_overrides_level_one(self, ledger):
        ledger.add_client(1)
        ledger.add_client(2, referrer_id=1, referral_percent=Decimal("50"))
        payment = ledger.add_payment(client_id=2, amount=Decimal("10.00"), status=database.PAYMENT_PAID)

        result = await distribute(payment["id"])

        assert result.credits[0].amount == Decimal("5.00")

    @pytest.mark.asyncio
    async def test_zero_payer_percent_uses_default(self, ledger):
        ledger.add_client(1)
        ledger.add_client(2, referrer_id=1, referral_percent=Decimal("0"))
        payment = ledger.add_payment(client_id=2, amount=Decimal("10.00"), status=database.PAYMENT_PAID)

        result = await distribute(payment["id"])

        assert result.credits[0].amount == Decimal("3.00")

    @pytest.mark.asyncio
    async def test_second_run_credits_nothing(self, ledger):
        ledger.add_client(1)
        ledger.add_client(2, referrer_id=1)
        payment = ledger.add_payment(client_id=2, amount=Decimal("100.00"), status=database.PAYMENT_PAID)

        first = await distribute(payment["id"])
        ledger.payments[payment["id"]]["amount"] = Decimal("1000.00")
        second = await distribute(payment["id"])

        assert first.created is True
        assert second.created is False
        assert [c.amount for c in second.credits] == [Decimal("30.00")]
        assert ledger.balance(1) == Decimal("30.00")

    @pytest.mark.asyncio
    async def test_pending_payment_skipped(self, ledger):
        ledger.add_client(1)
        ledger.add_client(2, referrer_id=1)
        payment = ledger.add_payment(client_id=2)

        result = await distribute(payment["id"])

        assert result.skipped_reason == "payment_not_paid"
        assert ledger.referral_credits == []

    @pytest.mark.asyncio
    async def test_balance_funded_top_up_skipped(self, ledger):
        ledger.add_client(1)
        ledger.add_client(2, referrer_id=1)
        payment = ledger.add_payment(client_id=2, provider="balance", status=database.PAYMENT_PAID)

        result = await distribute(payment["id"])

        assert result.skipped_reason == "balance_funded_top_up"

    @pytest.mark.asyncio
    async def test_no_referrer(self, ledger):
        ledger.add_client(1)
        payment = ledger.add_payment(client_id=1, status=database.PAYMENT_PAID)

        result = await distribute(payment["id"])

        assert result.skipped_reason == "no_referrer"

    @pytest.mark.asyncio
    async def test_zero_credits_skipped(self, ledger):
        ledger.settings["default_referral_percent"] = "0"
        ledger.add_client(1)
        ledger.add_client(2, referrer_id=1)
        payment = ledger.add_payment(client_id=2, status=database.PAYMENT_PAID)

        result = await distribute(payment["id"])

        assert result.skipped_reason == "zero_credit"
