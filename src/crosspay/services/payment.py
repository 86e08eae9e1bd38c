"""Purchase planning: which held asset pays for a price in the seller's asset."""

import logging
from dataclasses import dataclass, field
from decimal import ROUND_UP, Decimal
from typing import Mapping, Optional

from crosspay.assets import FIAT_UNIT
from crosspay.errors import ErrorKind, SwapError
from crosspay.models import Balance
from crosspay.services.exchange_rates import ExchangeRateService

logger = logging.getLogger(__name__)

INPUT_PRECISION = Decimal("0.000001")


@dataclass
class HeldAsset:
    symbol: str
    amount: Decimal
    fiat_value: Decimal
    formatted: str

    @property
    def has_balance(self) -> bool:
        return self.amount > 0


@dataclass
class WalletScan:
    """Balances of every tracked asset with their fiat values."""

    assets: list[HeldAsset] = field(default_factory=list)

    @property
    def held(self) -> list[HeldAsset]:
        return [a for a in self.assets if a.has_balance]

    @property
    def total_fiat(self) -> Decimal:
        return sum((a.fiat_value for a in self.held), Decimal(0))

    def get(self, symbol: str) -> Optional[HeldAsset]:
        for asset in self.assets:
            if asset.symbol == symbol:
                return asset
        return None


@dataclass
class BalanceCheck:
    sufficient: bool
    available: Decimal
    needs_conversion: bool
    convert_from: Optional[str] = None


@dataclass
class PaymentPlan:
    """How the wallet pays ``required_amount`` of ``required_asset``."""

    required_asset: str
    required_amount: Decimal
    pay_with: str
    input_amount: Decimal
    needs_conversion: bool
    sufficient: bool

    @property
    def route(self) -> list[str]:
        if not self.needs_conversion:
            return [self.required_asset]
        return [self.pay_with, self.required_asset]

    def swap_kwargs(self, slippage_tolerance: Optional[Decimal] = None) -> dict:
        """Arguments for ``Engine.initiate_swap``."""
        return {
            "from_asset": self.pay_with,
            "to_asset": self.required_asset,
            "amount": self.input_amount,
            "slippage_tolerance": slippage_tolerance,
        }


def scan_wallet(balances: Mapping[str, Balance]) -> WalletScan:
    """Snapshot of the synchronized balances."""
    return WalletScan(assets=[
        HeldAsset(
            symbol=symbol,
            amount=balance.amount,
            fiat_value=balance.fiat_equivalent,
            formatted=f"{balance.formatted_amount} {symbol}",
        )
        for symbol, balance in balances.items()
    ])


def check_sufficient_balance(
    scan: WalletScan, required_amount: Decimal, required_asset: str
) -> BalanceCheck:
    """Whether the purchase can be paid directly, or what to convert from."""
    target = scan.get(required_asset)
    if target is None or not target.has_balance:
        others = [a for a in scan.held if a.symbol != required_asset]
        if others:
            richest = max(others, key=lambda a: a.fiat_value)
            return BalanceCheck(
                sufficient=False,
                available=Decimal(0),
                needs_conversion=True,
                convert_from=richest.symbol,
            )
        return BalanceCheck(sufficient=False, available=Decimal(0), needs_conversion=False)

    return BalanceCheck(
        sufficient=target.amount >= required_amount,
        available=target.amount,
        needs_conversion=False,
    )


def best_asset_for_purchase(
    scan: WalletScan,
    required_asset: str,
    required_amount: Decimal,
    required_fiat: Decimal,
) -> HeldAsset:
    """Held asset to pay with.

    The required asset wins when it covers the price. Otherwise the asset
    with the highest fiat value is chosen, preferring those that cover
    ``required_fiat``.

    Raises:
        SwapError: InsufficientBalance when the wallet holds nothing
    """
    direct = scan.get(required_asset)
    if direct is not None and direct.amount >= required_amount:
        return direct

    candidates = [a for a in scan.held if a.symbol != required_asset]
    covering = [a for a in candidates if a.fiat_value >= required_fiat]
    if covering:
        return max(covering, key=lambda a: a.fiat_value)
    if candidates:
        return max(candidates, key=lambda a: a.fiat_value)
    if direct is not None and direct.has_balance:
        return direct
    raise SwapError(ErrorKind.INSUFFICIENT_BALANCE, details="No stable tokens found in wallet")


def plan_payment(
    scan: WalletScan,
    rates: ExchangeRateService,
    required_asset: str,
    required_amount: Decimal,
    slippage_tolerance: Decimal,
) -> PaymentPlan:
    """Pick the asset to pay with and estimate the input amount.

    The input estimate comes from the exchange rate table plus the slippage
    headroom; the swap itself is still priced by a chain-backed quote.
    """
    required_fiat = rates.convert(required_amount, required_asset, FIAT_UNIT)
    choice = best_asset_for_purchase(scan, required_asset, required_amount, required_fiat)

    if choice.symbol == required_asset:
        input_amount = required_amount
        needs_conversion = False
    else:
        estimate = rates.convert(required_amount, required_asset, choice.symbol)
        input_amount = (estimate * (Decimal(1) + slippage_tolerance)).quantize(
            INPUT_PRECISION, rounding=ROUND_UP
        )
        needs_conversion = True

    plan = PaymentPlan(
        required_asset=required_asset,
        required_amount=required_amount,
        pay_with=choice.symbol,
        input_amount=input_amount,
        needs_conversion=needs_conversion,
        sufficient=choice.amount >= input_amount,
    )
    logger.info(
        f"Payment plan for {required_amount} {required_asset}: pay {input_amount} "
        f"{choice.symbol} ({'sufficient' if plan.sufficient else 'insufficient'})"
    )
    return plan
