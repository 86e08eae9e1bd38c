"""Engine components built on the chain gateway and routing client."""

from crosspay.services.allowance import AllowanceManager
from crosspay.services.balance_sync import BalanceSynchronizer
from crosspay.services.exchange_rates import DEFAULT_RATES, ExchangeRateService, RateResolution
from crosspay.services.payment import (
    PaymentPlan,
    WalletScan,
    best_asset_for_purchase,
    check_sufficient_balance,
    plan_payment,
    scan_wallet,
)
from crosspay.services.quote_service import QuoteService
from crosspay.services.swap_executor import SwapExecutor

__all__ = [
    "AllowanceManager",
    "BalanceSynchronizer",
    "DEFAULT_RATES",
    "ExchangeRateService",
    "RateResolution",
    "PaymentPlan",
    "WalletScan",
    "best_asset_for_purchase",
    "check_sufficient_balance",
    "plan_payment",
    "scan_wallet",
    "QuoteService",
    "SwapExecutor",
]
