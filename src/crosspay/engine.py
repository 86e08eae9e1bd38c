"""Engine: owns every component for one wallet on one network.

Build it with injected collaborators (signer, routing client, RPC transport)
and drive its lifecycle with ``init()`` / ``dispose()`` or ``async with``.
"""

import logging
from decimal import Decimal
from typing import Optional

import httpx
from pydantic import ValidationError

from crosspay.assets import AssetRegistry, get_registry
from crosspay.chain.gateway import ChainGateway
from crosspay.chain.rpc import JsonRpcClient
from crosspay.chain.signer import LocalAccountSigner, Signer
from crosspay.config import Settings, get_settings
from crosspay.contracts import PaymentRequest, QuoteRequest, SwapRequest
from crosspay.errors import ErrorKind, QuoteSuperseded, SwapError, classify
from crosspay.models import Balance, Quote, SwapSession
from crosspay.routing.base import RoutingClient
from crosspay.routing.dry_run import SimulatedRoutingClient
from crosspay.services.allowance import AllowanceManager
from crosspay.services.balance_sync import BalanceSynchronizer
from crosspay.services.exchange_rates import ExchangeRateService
from crosspay.services.payment import PaymentPlan, plan_payment, scan_wallet
from crosspay.services.quote_service import QuoteService
from crosspay.services.swap_executor import SwapExecutor
from crosspay.utils.async_tools import RequestCancelled
from crosspay.utils.retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)


def _invalid_request(error: ValidationError) -> SwapError:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in error.errors()
    )
    return SwapError(ErrorKind.INVALID_PAIR, details=problems)


class Engine:
    """Upward interface of the payment conversion engine."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        signer: Optional[Signer] = None,
        router: Optional[RoutingClient] = None,
        rpc: Optional[JsonRpcClient] = None,
        gateway: Optional[ChainGateway] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        registry: Optional[AssetRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry or get_registry()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self._signer = signer
        self._router = router
        self._rpc = rpc
        self._owns_rpc = rpc is None and gateway is None
        self._gateway = gateway
        self._http_client = http_client
        self._background = False

        self.gateway: Optional[ChainGateway] = None
        self.router: Optional[RoutingClient] = None
        self.rates: Optional[ExchangeRateService] = None
        self.quotes: Optional[QuoteService] = None
        self.allowances: Optional[AllowanceManager] = None
        self.balances: Optional[BalanceSynchronizer] = None
        self.executor: Optional[SwapExecutor] = None
        self.initialized = False

    # ======================
    # Lifecycle
    # ======================

    async def init(self, verify_chain: bool = True, background: bool = True) -> "Engine":
        """Build the components and check the connected network.

        Raises:
            SwapError: InitializationFailed when the node is unreachable, on
                another network, or no routing client is available
        """
        if self.initialized:
            return self
        settings = self.settings

        try:
            self._build()
            if verify_chain:
                chain_id = await with_retry(
                    self.gateway.get_chain_id,
                    policy=self.retry_policy,
                    description="Chain id check",
                    default_kind=ErrorKind.NETWORK_ERROR,
                )
                if chain_id != settings.chain_id:
                    raise SwapError(
                        ErrorKind.INITIALIZATION_FAILED,
                        "Connected to the wrong network",
                        details=f"Node reports chain {chain_id}, expected {settings.chain_id}",
                    )
        except SwapError as e:
            await self._close_transport()
            if e.kind == ErrorKind.INITIALIZATION_FAILED:
                raise
            raise self._init_failed(e)
        except Exception as e:
            await self._close_transport()
            raise self._init_failed(e)

        if self.gateway.address:
            self.balances.set_owner(self.gateway.address, settings.chain_id)

        self.initialized = True
        logger.info(
            f"Engine ready on chain {settings.chain_id} "
            f"(router {self.router.name}, wallet {self.gateway.address or 'read-only'})"
        )
        if background:
            self.start_background()
        return self

    def _init_failed(self, error: Exception) -> SwapError:
        cause = classify(error)
        failed = SwapError(ErrorKind.INITIALIZATION_FAILED, details=cause.details or cause.message)
        failed.__cause__ = error
        logger.error(f"Engine initialization failed: {failed.details}")
        return failed

    def _build(self) -> None:
        settings = self.settings
        if self._gateway is not None:
            self.gateway = self._gateway
        else:
            if self._rpc is None:
                self._rpc = JsonRpcClient(settings.rpc_url, default_timeout=settings.rpc_read_timeout)
            signer = self._signer
            if signer is None and settings.private_key:
                signer = LocalAccountSigner(settings.private_key, self._rpc, settings.chain_id)
            self.gateway = ChainGateway.from_settings(settings, self._rpc, signer)

        if self._router is not None:
            self.router = self._router
        elif settings.dry_run:
            self.router = SimulatedRoutingClient(chain_id=settings.chain_id, registry=self.registry)
        else:
            raise SwapError(
                ErrorKind.INITIALIZATION_FAILED,
                details="No routing client configured and dry-run is disabled",
            )

        policy = self.retry_policy
        self.rates = ExchangeRateService(
            settings, self.registry, client=self._http_client, retry_policy=policy
        )
        self.quotes = QuoteService(settings, self.gateway, self.router, self.registry, policy)
        self.allowances = AllowanceManager(settings, self.gateway, self.router, self.registry, policy)
        self.balances = BalanceSynchronizer(settings, self.gateway, self.rates, self.registry, policy)
        self.executor = SwapExecutor(
            settings,
            self.gateway,
            self.router,
            self.quotes,
            self.allowances,
            self.balances,
            self.registry,
            policy,
        )

    def start_background(self, selected_symbol: Optional[str] = None) -> None:
        """Start the rate auto-refresh and balance polling."""
        self._require_ready()
        self._background = True
        self.rates.start_auto_refresh()
        if self.gateway.address:
            self.balances.start_polling(selected_symbol)

    async def dispose(self) -> None:
        """Cancel every timer and background task and close owned transports."""
        if self.executor is not None:
            self.executor.dispose()
        if self.quotes is not None:
            self.quotes.dispose()
        if self.balances is not None:
            self.balances.dispose()
        if self.rates is not None:
            await self.rates.stop()
        await self._close_transport()
        self._background = False
        self.initialized = False
        logger.info("Engine disposed")

    async def _close_transport(self) -> None:
        if self._owns_rpc and self._rpc is not None:
            await self._rpc.aclose()

    async def __aenter__(self) -> "Engine":
        return await self.init()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.dispose()

    def _require_ready(self) -> None:
        if not self.initialized:
            raise SwapError(ErrorKind.INITIALIZATION_FAILED, details="Engine is not initialized")

    def _require_wallet(self) -> str:
        self._require_ready()
        if not self.gateway.address:
            raise SwapError(ErrorKind.INITIALIZATION_FAILED, details="No wallet connected")
        return self.gateway.address

    # ======================
    # Quotes and swaps
    # ======================

    async def get_quote(
        self, from_asset: str, to_asset: str, amount, slippage_tolerance=None
    ) -> Quote:
        self._require_ready()
        try:
            request = QuoteRequest(
                from_asset=from_asset, to_asset=to_asset, amount=amount, slippage=slippage_tolerance
            )
        except ValidationError as e:
            raise _invalid_request(e)
        return await self.quotes.get_quote(
            request.from_asset,
            request.to_asset,
            request.amount,
            request.slippage,
            owner=self.gateway.address,
        )

    async def request_quote(
        self, from_asset: str, to_asset: str, amount, slippage_tolerance=None
    ) -> Quote:
        """Debounced ``get_quote`` for interactive input."""
        self._require_ready()
        try:
            return await self.quotes.request_quote(
                from_asset, to_asset, amount, slippage_tolerance, owner=self.gateway.address
            )
        except RequestCancelled as e:
            raise QuoteSuperseded(e.key)

    async def initiate_swap(
        self,
        from_asset: str,
        to_asset: str,
        amount,
        slippage_tolerance=None,
        recipient: Optional[str] = None,
    ) -> SwapSession:
        """Run a conversion; the session's ``status`` tells how it ended."""
        self._require_wallet()
        try:
            request = SwapRequest(
                from_asset=from_asset,
                to_asset=to_asset,
                amount=amount,
                slippage=slippage_tolerance,
                recipient=recipient,
            )
        except ValidationError as e:
            raise _invalid_request(e)
        return await self.executor.initiate(
            request.from_asset,
            request.to_asset,
            request.amount,
            request.slippage,
            recipient=request.recipient,
        )

    async def resume_swap(self, session_id: str) -> SwapSession:
        self._require_wallet()
        try:
            return await self.executor.resume(session_id)
        except KeyError:
            raise SwapError(ErrorKind.UNKNOWN, "Swap session not found", details=session_id)

    # ======================
    # Balances and rates
    # ======================

    def get_balance(self, symbol: str) -> Optional[Balance]:
        self._require_ready()
        return self.balances.get_balance(symbol)

    async def refresh_balance(self, symbol: Optional[str] = None, force: bool = False) -> Optional[Balance]:
        self._require_wallet()
        return await self.balances.refresh(symbol, force=force)

    def convert(self, amount, from_unit: str, to_unit: str) -> Decimal:
        self._require_ready()
        return self.rates.convert(amount, from_unit, to_unit)

    def format(self, amount, unit: str) -> str:
        self._require_ready()
        return self.rates.format(amount, unit)

    async def plan_payment(
        self, required_asset: str, required_amount, slippage_tolerance=None
    ) -> PaymentPlan:
        """Pick the held asset that pays ``required_amount`` of ``required_asset``."""
        self._require_wallet()
        try:
            request = PaymentRequest(required_asset=required_asset, required_amount=required_amount)
        except ValidationError as e:
            raise _invalid_request(e)
        if request.required_asset not in self.registry:
            raise SwapError(ErrorKind.INVALID_PAIR, details=f"Unknown asset {request.required_asset}")

        await self.balances.refresh()
        slippage = (
            Decimal(str(slippage_tolerance)) if slippage_tolerance is not None
            else self.settings.default_slippage
        )
        return plan_payment(
            scan_wallet(self.balances.balances),
            self.rates,
            request.required_asset,
            request.required_amount,
            slippage,
        )

    # ======================
    # Wallet events
    # ======================

    def on_network_changed(self, chain_id: int) -> None:
        """Tear down timers; resume polling only on the expected network."""
        self._require_ready()
        self.balances.stop_polling()
        self.quotes.clear_cache()
        self.balances.clear()
        self.balances.connected_chain_id = chain_id

        if chain_id != self.settings.chain_id:
            logger.warning(f"Wallet moved to chain {chain_id}, expected {self.settings.chain_id}")
            return
        logger.info(f"Wallet back on chain {chain_id}")
        if self._background and self.gateway.address:
            self.balances.start_polling()

    def on_disconnect(self) -> None:
        """Forget the wallet and stop everything tied to its address."""
        self._require_ready()
        self.balances.set_owner(None)
        self.balances.connected_chain_id = None
        self.quotes.clear_cache()
        logger.info("Wallet disconnected")
