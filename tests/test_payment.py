"""Tests for purchase planning."""

import time
from decimal import Decimal

import pytest

from crosspay.errors import ErrorKind, SwapError
from crosspay.models import Balance
from crosspay.services.payment import check_sufficient_balance, plan_payment, scan_wallet

SLIPPAGE = Decimal("0.01")


def wallet(rates, **amounts) -> dict[str, Balance]:
    balances = {}
    for symbol, amount in amounts.items():
        amount = Decimal(amount)
        balances[symbol] = Balance(
            symbol=symbol,
            raw_amount=format(amount, "f"),
            formatted_amount=f"{amount:,.4f}",
            fiat_equivalent=rates.convert(amount, symbol, "FIAT"),
            last_fetched=time.time(),
        )
    return balances


class TestScan:
    def test_total_fiat_counts_held_assets(self, rates):
        scan = scan_wallet(wallet(rates, cUSD="10", cEUR="10", cREAL="0"))

        assert [a.symbol for a in scan.held] == ["cUSD", "cEUR"]
        assert scan.total_fiat == Decimal("18.5")
        assert scan.get("cEUR").formatted == "10.0000 cEUR"

    def test_check_sufficient_balance(self, rates):
        scan = scan_wallet(wallet(rates, cUSD="10", cEUR="50"))

        direct = check_sufficient_balance(scan, Decimal("5"), "cUSD")
        assert direct.sufficient
        assert direct.available == Decimal("10")

        short = check_sufficient_balance(scan, Decimal("15"), "cUSD")
        assert not short.sufficient
        assert not short.needs_conversion

        missing = check_sufficient_balance(scan, Decimal("1"), "cREAL")
        assert missing.needs_conversion
        assert missing.convert_from == "cEUR"


class TestPlanPayment:
    """Tests for plan_payment."""

    def test_pays_directly_when_covered(self, rates):
        scan = scan_wallet(wallet(rates, cUSD="100", cEUR="500"))

        plan = plan_payment(scan, rates, "cUSD", Decimal("20"), SLIPPAGE)

        assert plan.pay_with == "cUSD"
        assert plan.input_amount == Decimal("20")
        assert not plan.needs_conversion
        assert plan.sufficient
        assert plan.route == ["cUSD"]

    def test_converts_with_slippage_headroom(self, rates):
        scan = scan_wallet(wallet(rates, cEUR="100"))

        plan = plan_payment(scan, rates, "cUSD", Decimal("20"), SLIPPAGE)

        assert plan.pay_with == "cEUR"
        assert plan.needs_conversion
        assert plan.input_amount == Decimal("23.764706")
        assert plan.sufficient
        assert plan.route == ["cEUR", "cUSD"]
        assert plan.swap_kwargs(SLIPPAGE) == {
            "from_asset": "cEUR",
            "to_asset": "cUSD",
            "amount": Decimal("23.764706"),
            "slippage_tolerance": SLIPPAGE,
        }

    def test_prefers_richest_covering_asset(self, rates):
        # cKES is worth 0.7 fiat and cREAL 6; only cREAL and CELO cover 5
        scan = scan_wallet(wallet(rates, cUSD="1", cKES="100", cREAL="30", CELO="4"))

        plan = plan_payment(scan, rates, "cUSD", Decimal("5"), SLIPPAGE)

        assert plan.pay_with == "CELO"
        assert plan.sufficient

    def test_insufficient_holdings_still_plan(self, rates):
        scan = scan_wallet(wallet(rates, cEUR="1"))

        plan = plan_payment(scan, rates, "cUSD", Decimal("20"), SLIPPAGE)

        assert plan.pay_with == "cEUR"
        assert not plan.sufficient

    def test_partial_required_asset_only(self, rates):
        scan = scan_wallet(wallet(rates, cUSD="5"))

        plan = plan_payment(scan, rates, "cUSD", Decimal("20"), SLIPPAGE)

        assert plan.pay_with == "cUSD"
        assert not plan.needs_conversion
        assert not plan.sufficient

    def test_empty_wallet(self, rates):
        scan = scan_wallet(wallet(rates, cUSD="0"))

        with pytest.raises(SwapError) as exc_info:
            plan_payment(scan, rates, "cUSD", Decimal("20"), SLIPPAGE)

        assert exc_info.value.kind == ErrorKind.INSUFFICIENT_BALANCE
