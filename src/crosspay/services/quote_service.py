"""Conversion quotes with routing fallback, caching and supersession.

A quote is always backed by the routing client: the routed lookup (pair
discovery then amount-out) is tried first, the client's unrouted amount-out
second. When both fail the request raises InsufficientLiquidity; a quote is
never approximated from exchange rates.
"""

import asyncio
import logging
from collections import Counter
from decimal import Decimal, InvalidOperation
from typing import Optional

from crosspay.assets import Asset, AssetRegistry, get_registry
from crosspay.chain.gateway import ChainGateway
from crosspay.config import Settings
from crosspay.errors import ErrorKind, QuoteSuperseded, SwapError
from crosspay.models import Quote, QuoteFees
from crosspay.routing.base import PairHandle, RoutingClient
from crosspay.utils.async_tools import AsyncMemo, DebouncedCall, Generation, RequestCancelled
from crosspay.utils.retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)

QuoteKey = tuple[str, str, Decimal, Decimal]


def _describe(error: BaseException) -> str:
    return str(error) or type(error).__name__


class QuoteService:
    """Computes and caches quotes for the active network."""

    def __init__(
        self,
        settings: Settings,
        gateway: ChainGateway,
        router: RoutingClient,
        registry: Optional[AssetRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.settings = settings
        self.gateway = gateway
        self.router = router
        self.registry = registry or get_registry()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)

        self.memo: AsyncMemo[Quote] = AsyncMemo(ttl=settings.quote_ttl_seconds, name="quotes")
        self.latest_quote: Optional[Quote] = None
        self._generation = Generation()
        self._latest_key: Optional[QuoteKey] = None
        self._pinned: Counter = Counter()
        self._debounced = DebouncedCall(
            self.get_quote, settings.quote_debounce_seconds, name="quote-request"
        )

    @property
    def chain_id(self) -> int:
        return self.gateway.chain_id

    # ======================
    # Validation
    # ======================

    def _resolve_asset(self, symbol: str) -> Asset:
        asset = self.registry.get(symbol)
        if asset is None or not asset.address_on(self.chain_id):
            raise SwapError(
                ErrorKind.INVALID_PAIR,
                details=f"{symbol} is not available on chain {self.chain_id}",
            )
        return asset

    def validate(
        self, from_asset: str, to_asset: str, amount, slippage_tolerance=None
    ) -> tuple[Asset, Asset, Decimal, Decimal]:
        """Resolve and check a request.

        Raises:
            SwapError: InvalidPair for same-asset pairs, non-positive amounts,
                slippage outside [0, 1) or assets missing on the network
        """
        if slippage_tolerance is None:
            slippage_tolerance = self.settings.default_slippage
        try:
            amount = Decimal(str(amount))
            slippage = Decimal(str(slippage_tolerance))
        except (InvalidOperation, ValueError) as e:
            raise SwapError(ErrorKind.INVALID_PAIR, details=f"Invalid number: {e}")

        if not amount.is_finite() or amount <= 0:
            raise SwapError(ErrorKind.INVALID_PAIR, details="Amount must be greater than zero")
        if not slippage.is_finite() or not Decimal(0) <= slippage < Decimal(1):
            raise SwapError(ErrorKind.INVALID_PAIR, details="Slippage must be within [0, 1)")

        source = self._resolve_asset(from_asset)
        target = self._resolve_asset(to_asset)
        if source.symbol == target.symbol:
            raise SwapError(ErrorKind.INVALID_PAIR, details="Cannot convert an asset to itself")
        if source.address_on(self.chain_id).lower() == target.address_on(self.chain_id).lower():
            raise SwapError(
                ErrorKind.INVALID_PAIR,
                details=f"{source.symbol} and {target.symbol} share one token address "
                        f"on chain {self.chain_id}",
            )
        if source.to_base_units(amount) <= 0:
            raise SwapError(
                ErrorKind.INVALID_PAIR,
                details=f"Amount is below {source.symbol} precision",
            )
        return source, target, amount, slippage

    # ======================
    # Quotes
    # ======================

    async def get_quote(
        self,
        from_asset: str,
        to_asset: str,
        amount,
        slippage_tolerance=None,
        owner: Optional[str] = None,
        supersede: bool = True,
    ) -> Quote:
        """Quote converting ``amount`` of ``from_asset`` into ``to_asset``.

        With ``supersede`` (the interactive path) a request for a new key
        cancels the previous pending one and only the newest result becomes
        ``latest_quote``. Callers that must not be cancelled pass
        ``supersede=False``.

        Raises:
            SwapError: InvalidPair, InsufficientLiquidity or a classified failure
            QuoteSuperseded: a newer request replaced this one
        """
        source, target, amount, slippage = self.validate(
            from_asset, to_asset, amount, slippage_tolerance
        )
        key: QuoteKey = (source.symbol, target.symbol, amount, slippage)

        token: Optional[int] = None
        if supersede:
            token = self._supersede(key)
        else:
            self._pinned[key] += 1

        try:
            quote = await self.memo.get_or_load(
                key, lambda: self._build_quote(source, target, amount, slippage, owner)
            )
        except RequestCancelled:
            raise QuoteSuperseded(key)
        finally:
            if not supersede:
                self._pinned[key] -= 1
                if self._pinned[key] <= 0:
                    del self._pinned[key]

        if token is not None:
            if not self._generation.is_current(token):
                logger.debug(f"Dropping stale quote for {key!r}")
                raise QuoteSuperseded(key)
            self.latest_quote = quote
        return quote

    def _supersede(self, key: QuoteKey) -> int:
        if key == self._latest_key:
            return self._generation.value

        previous = self._latest_key
        self._latest_key = key
        token = self._generation.bump()
        if previous is not None and not self._pinned.get(previous):
            if self.memo.cancel(previous):
                logger.debug(f"Cancelled superseded quote request {previous!r}")
        return token

    async def request_quote(
        self,
        from_asset: str,
        to_asset: str,
        amount,
        slippage_tolerance=None,
        owner: Optional[str] = None,
    ) -> Quote:
        """Debounced ``get_quote`` for input that changes while the user types.

        Earlier calls inside the debounce window raise RequestCancelled.
        """
        return await self._debounced(from_asset, to_asset, amount, slippage_tolerance, owner)

    async def _build_quote(
        self,
        source: Asset,
        target: Asset,
        amount: Decimal,
        slippage: Decimal,
        owner: Optional[str],
    ) -> Quote:
        from_addr = source.address_on(self.chain_id)
        to_addr = target.address_on(self.chain_id)
        amount_in_raw = source.to_base_units(amount)
        label = f"{source.symbol}->{target.symbol}"

        pair: Optional[PairHandle] = None
        routed = True
        try:
            pair, expected_raw = await asyncio.wait_for(
                self._routed_lookup(from_addr, to_addr, amount_in_raw),
                timeout=self.settings.quote_lookup_timeout,
            )
        except asyncio.CancelledError:
            raise
        except Exception as routed_error:
            logger.warning(f"Routed lookup failed for {label}, trying direct amount-out: {routed_error}")
            routed = False
            try:
                expected_raw = await asyncio.wait_for(
                    with_retry(
                        lambda: self.router.get_amount_out(from_addr, to_addr, amount_in_raw),
                        policy=self.retry_policy,
                        description=f"Amount-out {label}",
                        default_kind=ErrorKind.INSUFFICIENT_LIQUIDITY,
                    ),
                    timeout=self.settings.quote_lookup_timeout,
                )
            except asyncio.CancelledError:
                raise
            except Exception as direct_error:
                logger.error(f"No liquidity for {label}: {direct_error}")
                raise SwapError(
                    ErrorKind.INSUFFICIENT_LIQUIDITY,
                    details=f"routed lookup: {_describe(routed_error)}; "
                            f"direct lookup: {_describe(direct_error)}",
                )

        if expected_raw <= 0:
            raise SwapError(
                ErrorKind.INSUFFICIENT_LIQUIDITY,
                details=f"{label} returned no output for {amount}",
            )

        # exact integer floor; base-unit outputs can exceed Decimal precision
        numerator, denominator = slippage.as_integer_ratio()
        min_raw = expected_raw * (denominator - numerator) // denominator
        expected = target.from_base_units(expected_raw)
        minimum = target.from_base_units(min_raw)

        impact = abs(Decimal(1) - expected / amount) * Decimal(100)
        impact = min(max(impact, Decimal(0)), Decimal(100)).quantize(Decimal("0.0001"))

        fees = await self._estimate_fees(pair, from_addr, to_addr, amount_in_raw, min_raw, owner)

        quote = Quote(
            from_asset=source.symbol,
            to_asset=target.symbol,
            input_amount=amount,
            expected_output=expected,
            minimum_output=minimum,
            price_impact=impact,
            route=self._route_symbols(source, target, pair),
            fees=fees,
            slippage_tolerance=slippage,
            amount_in_raw=amount_in_raw,
            expected_output_raw=expected_raw,
            minimum_output_raw=min_raw,
            pair=pair,
            routed=routed,
            ttl_seconds=self.settings.quote_ttl_seconds,
        )
        logger.info(
            f"Quote {amount} {source.symbol} -> {expected} {target.symbol} "
            f"(min {minimum}, impact {impact}%, route {'/'.join(quote.route)})"
        )
        return quote

    async def _routed_lookup(
        self, from_addr: str, to_addr: str, amount_in_raw: int
    ) -> tuple[PairHandle, int]:
        pair = await self.router.find_pair(from_addr, to_addr)
        if pair is None:
            raise LookupError(f"No trading pair for {from_addr} -> {to_addr}")
        amount_out = await with_retry(
            lambda: self.router.get_amount_out(from_addr, to_addr, amount_in_raw, pair),
            policy=self.retry_policy,
            description="Routed amount-out",
            default_kind=ErrorKind.INSUFFICIENT_LIQUIDITY,
        )
        return pair, amount_out

    def _route_symbols(self, source: Asset, target: Asset, pair: Optional[PairHandle]) -> list[str]:
        if pair is None or pair.is_direct:
            return [source.symbol, target.symbol]
        try:
            middle = pair.intermediate_assets(
                source.address_on(self.chain_id), target.address_on(self.chain_id)
            )
        except ValueError as e:
            logger.warning(f"Could not resolve route for {source.symbol}->{target.symbol}: {e}")
            return [source.symbol, target.symbol]
        symbols = [self.registry.symbol_for_address(a, self.chain_id) or a for a in middle]
        return [source.symbol, *symbols, target.symbol]

    async def _estimate_fees(
        self,
        pair: Optional[PairHandle],
        from_addr: str,
        to_addr: str,
        amount_in_raw: int,
        min_raw: int,
        owner: Optional[str],
    ) -> QuoteFees:
        """Best-effort gas estimate; falls back to the configured gas limit."""
        fallback = QuoteFees(gas_limit=self.settings.gas_fallback_limit)
        if not owner:
            return fallback

        try:
            tx = await self.router.build_swap_tx(
                pair, from_addr, to_addr, amount_in_raw, min_raw, owner
            )
            gas_limit = await asyncio.wait_for(
                self.gateway.estimate_gas(tx.to_call(owner)),
                timeout=self.settings.quote_gas_timeout,
            )
            gas_price = await asyncio.wait_for(
                self.gateway.get_gas_price(), timeout=self.settings.quote_gas_timeout
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Quote gas estimate unavailable: {e}")
            return fallback

        native = self.registry.native()
        return QuoteFees(
            gas_limit=gas_limit,
            gas_price=gas_price,
            network_fee=native.from_base_units(gas_limit * gas_price),
            fee_asset=native.symbol,
            estimated=gas_limit != self.gateway.gas_fallback,
        )

    # ======================
    # Lifecycle
    # ======================

    def clear_cache(self) -> None:
        """Drop cached quotes and cancel pending and debounced requests."""
        self._debounced.cancel()
        self.memo.clear()
        self.latest_quote = None
        self._latest_key = None
        self._generation.bump()

    def dispose(self) -> None:
        self.clear_cache()
