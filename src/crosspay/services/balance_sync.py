"""Debounced, rate-limited per-asset balance view of the connected wallet.

Refresh triggers are batched by the shared debouncer so bursts collapse into
one gateway read per symbol. Reads are serialized per symbol and results for a
previous owner are dropped by comparing the owner generation at resolution
time.
"""

import asyncio
import dataclasses
import logging
import time
from typing import Iterable, Optional

from crosspay.assets import FIAT_UNIT, Asset, AssetRegistry, get_registry
from crosspay.chain.gateway import ChainGateway
from crosspay.config import Settings
from crosspay.errors import ErrorKind, SwapError
from crosspay.models import Balance, ExchangeRateTable
from crosspay.services.exchange_rates import ExchangeRateService
from crosspay.utils.async_tools import AsyncDebouncer, Generation, RequestCancelled, wait_batch
from crosspay.utils.locks import KeyedLocks
from crosspay.utils.retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)


class BalanceSynchronizer:
    """Owns the cached balances of one wallet."""

    def __init__(
        self,
        settings: Settings,
        gateway: ChainGateway,
        rates: ExchangeRateService,
        registry: Optional[AssetRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.settings = settings
        self.gateway = gateway
        self.rates = rates
        self.registry = registry or get_registry()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)

        self.owner: Optional[str] = None
        self.connected_chain_id: Optional[int] = None
        self._balances: dict[str, Balance] = {}
        self._errors: dict[str, SwapError] = {}
        self._in_flight: dict[str, asyncio.Future] = {}
        self._owner_generation = Generation()
        self._locks = KeyedLocks("balances")
        self._debouncer = AsyncDebouncer(
            settings.balance_debounce_seconds, self._fetch_batch, name="balances"
        )
        self._poll_task: Optional[asyncio.Task] = None
        self._unsubscribe = rates.subscribe(self._on_rates_changed)

    # ======================
    # Queries
    # ======================

    @property
    def balances(self) -> dict[str, Balance]:
        return dict(self._balances)

    def get_balance(self, symbol: str) -> Optional[Balance]:
        return self._balances.get(symbol)

    def is_fresh(self, symbol: str) -> bool:
        balance = self._balances.get(symbol)
        if balance is None:
            return False
        return time.time() - balance.last_fetched < self.settings.balance_min_interval

    def _asset(self, symbol: str) -> Asset:
        asset = self.registry.get(symbol)
        if asset is None or not asset.address_on(self.gateway.chain_id):
            raise SwapError(
                ErrorKind.INVALID_PAIR,
                f"{symbol} is not supported on this network",
                details=f"chain {self.gateway.chain_id}",
            )
        return asset

    # ======================
    # Refresh
    # ======================

    async def refresh(self, symbol: Optional[str] = None, force: bool = False) -> Optional[Balance]:
        """Refresh one balance, or every supported asset when ``symbol`` is None.

        Joins a refresh already in flight for the symbol. Skips the read when
        the last successful fetch is younger than ``balance_min_interval``
        unless ``force`` is set.

        Raises:
            SwapError: classified read failure for this symbol
        """
        if symbol is None:
            symbols = [a.symbol for a in self.registry.supported_on(self.gateway.chain_id)]
            await self.refresh_many(symbols, force=force)
            return None

        asset = self._asset(symbol)
        if self.owner is None:
            logger.debug(f"No wallet connected, not refreshing {symbol}")
            return None

        pending = self._in_flight.get(asset.symbol)
        if pending is None:
            if not force and self.is_fresh(asset.symbol):
                logger.debug(f"Balance for {asset.symbol} is fresh, skipping refresh")
                return self._balances[asset.symbol]

            self._errors.pop(asset.symbol, None)
            pending = self._debouncer.trigger(asset.symbol)
            self._in_flight[asset.symbol] = pending
            pending.add_done_callback(lambda f, s=asset.symbol: self._forget(s, f))
        else:
            logger.debug(f"Joining in-flight balance refresh for {asset.symbol}")

        try:
            await wait_batch(asset.symbol, pending)
        except RequestCancelled:
            logger.debug(f"Balance refresh for {asset.symbol} was cancelled")
            return self._balances.get(asset.symbol)

        error = self._errors.get(asset.symbol)
        if error is not None:
            raise error
        return self._balances.get(asset.symbol)

    async def refresh_many(self, symbols: Iterable[str], force: bool = False) -> dict[str, Balance]:
        """Refresh several symbols in one batch; failures are logged."""
        results = await asyncio.gather(
            *(self.refresh(s, force=force) for s in dict.fromkeys(symbols)),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
            if isinstance(result, Exception):
                logger.warning(f"Balance refresh failed: {result}")
        return self.balances

    def _forget(self, symbol: str, future: asyncio.Future) -> None:
        if self._in_flight.get(symbol) is future:
            del self._in_flight[symbol]

    async def _fetch_batch(self, symbols: frozenset) -> None:
        owner = self.owner
        generation = self._owner_generation.value
        if owner is None:
            return
        await asyncio.gather(*(self._fetch_one(s, owner, generation) for s in symbols))

    async def _fetch_one(self, symbol: str, owner: str, generation: int) -> None:
        asset = self.registry.require(symbol)
        async with self._locks.hold(symbol, operation="balance fetch"):
            try:
                raw = await with_retry(
                    lambda: self.gateway.read_balance(asset, owner),
                    policy=self.retry_policy,
                    description=f"Balance read {symbol}",
                    default_kind=ErrorKind.NETWORK_ERROR,
                )
            except SwapError as e:
                if self._owner_generation.is_current(generation):
                    self._errors[symbol] = e
                logger.error(f"Failed to refresh {symbol} balance for {owner}: {e.details}")
                return

            if not self._owner_generation.is_current(generation):
                logger.debug(f"Dropping {symbol} balance fetched for previous owner {owner}")
                return
            self._store(asset, raw)

    def _store(self, asset: Asset, raw: int) -> Balance:
        amount = asset.from_base_units(raw)
        balance = Balance(
            symbol=asset.symbol,
            raw_amount=format(amount, "f"),
            formatted_amount=f"{amount:,.4f}",
            fiat_equivalent=self.rates.convert(amount, asset.symbol, FIAT_UNIT),
            last_fetched=time.time(),
        )
        self._balances[asset.symbol] = balance
        logger.debug(f"Balance {asset.symbol}: {balance.formatted_amount}")
        return balance

    # ======================
    # Fiat equivalents
    # ======================

    def recompute_fiat(self) -> None:
        """Update every cached fiat equivalent from the current rate table."""
        for symbol, balance in list(self._balances.items()):
            self._balances[symbol] = dataclasses.replace(
                balance,
                fiat_equivalent=self.rates.convert(balance.amount, symbol, FIAT_UNIT),
            )

    def _on_rates_changed(self, table: ExchangeRateTable) -> None:
        logger.debug(f"Rates changed ({table.provenance.value}), recomputing fiat values")
        self.recompute_fiat()

    # ======================
    # Background polling
    # ======================

    def start_polling(self, selected_symbol: Optional[str] = None) -> None:
        """Periodically refresh the selected asset and the native gas asset."""
        self.stop_polling()
        symbols = [self.registry.native().symbol]
        if selected_symbol and selected_symbol not in symbols:
            symbols.insert(0, selected_symbol)
        self._poll_task = asyncio.ensure_future(self._poll_loop(symbols))

    async def _poll_loop(self, symbols: list[str]) -> None:
        force = False
        while True:
            if self.owner is not None and self.connected_chain_id == self.settings.chain_id:
                await self.refresh_many(symbols, force=force)
            else:
                logger.debug("Skipping balance poll: wallet not connected on the expected network")
            force = True
            await asyncio.sleep(self.settings.balance_poll_interval)

    def stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done():
            task.cancel()

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    # ======================
    # Lifecycle
    # ======================

    def set_owner(self, address: Optional[str], chain_id: Optional[int] = None) -> None:
        """Switch the wallet whose balances are tracked."""
        if chain_id is not None:
            self.connected_chain_id = chain_id
        if address is not None and self.owner is not None and address.lower() == self.owner.lower():
            return
        self.clear()
        self.owner = address

    def clear(self) -> None:
        """Drop cached balances and cancel every pending refresh and timer."""
        self._owner_generation.bump()
        self.stop_polling()
        self._debouncer.cancel()
        for future in list(self._in_flight.values()):
            if not future.done():
                future.cancel()
        self._in_flight.clear()
        self._balances.clear()
        self._errors.clear()
        self._locks.clear()

    def dispose(self) -> None:
        self.clear()
        self.owner = None
        self.connected_chain_id = None
        self._unsubscribe()
