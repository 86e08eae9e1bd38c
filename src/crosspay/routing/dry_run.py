"""Simulated routing client for dry-run mode, the command line and tests."""

import hashlib
import logging
from collections import Counter
from decimal import Decimal
from typing import Iterable, Optional

from web3 import Web3

from crosspay.assets import AssetRegistry, get_registry
from crosspay.config import CELO_MAINNET_ID
from crosspay.routing.base import Hop, PairHandle, RoutingClient, UnsignedTx

logger = logging.getLogger(__name__)

# Simulated prices in the FIAT anchor unit (USD), matching the default rate table
SIMULATED_PRICES: dict[str, Decimal] = {
    "CELO": Decimal("2"),
    "USDT": Decimal("1"),
    "cUSD": Decimal("1"),
    "cEUR": Decimal("0.85"),
    "cREAL": Decimal("0.2"),
    "cKES": Decimal("0.007"),
    "PUSO": Decimal("0.018"),
    "cCOP": Decimal("0.00025"),
    "eXOF": Decimal("0.0017"),
    "cNGN": Decimal("0.0024"),
    "cJPY": Decimal("0.0067"),
    "cCHF": Decimal("1.1"),
    "cZAR": Decimal("0.055"),
    "cGBP": Decimal("1.27"),
    "cAUD": Decimal("0.67"),
    "cCAD": Decimal("0.74"),
    "cGHS": Decimal("0.083"),
}

# Pools besides the CELO pool every token gets
DIRECT_POOLS: tuple[tuple[str, str], ...] = (
    ("cUSD", "cEUR"),
    ("cUSD", "cREAL"),
    ("cUSD", "USDT"),
)

SIMULATED_BROKER = "0x777A8255cA72412f0d706dc03C9D1987306B4CaD"
SIMULATED_PROVIDER = "0x22d9db95E6Ae61c104A7B6F6C78D7993B94ec901"

SWAP_IN_SIGNATURE = "swapIn(address,bytes32,address,address,uint256,uint256)"


def _selector(signature: str) -> str:
    return Web3.to_hex(Web3.keccak(text=signature)[:4])


def _exchange_id(a: str, b: str) -> str:
    return "0x" + hashlib.sha256("/".join(sorted((a.lower(), b.lower()))).encode()).hexdigest()


class SimulatedRoutingClient(RoutingClient):
    """
    Simulated Mento-style broker.

    Every token trades against CELO; a few stables also have a direct pool.
    Pairs without a shared pool route through the one token both sides trade
    against. Outputs are priced from SIMULATED_PRICES minus a per-hop spread.
    """

    def __init__(
        self,
        chain_id: int = CELO_MAINNET_ID,
        registry: Optional[AssetRegistry] = None,
        spread_percent: Decimal = Decimal("0.25"),
        prices: Optional[dict[str, Decimal]] = None,
        pools: Iterable[tuple[str, str]] = DIRECT_POOLS,
    ):
        self.chain_id = chain_id
        self.registry = registry or get_registry()
        self.spread_percent = spread_percent
        self._prices = dict(prices or SIMULATED_PRICES)
        self._disabled: set[frozenset] = set()
        self._hops: list[Hop] = []

        native = self.registry.native().address_on(chain_id)
        deployed = self.registry.supported_on(chain_id)
        counts = Counter(a.address_on(chain_id).lower() for a in deployed)
        for asset in deployed:
            # placeholder deployments shared by several symbols are not tradable
            if asset.native or counts[asset.address_on(chain_id).lower()] > 1:
                continue
            self._add_pool(asset.address_on(chain_id), native)
        for a, b in pools:
            addr_a = self.registry.address(a, chain_id)
            addr_b = self.registry.address(b, chain_id)
            if addr_a and addr_b:
                self._add_pool(addr_a, addr_b)

    def _add_pool(self, addr_a: Optional[str], addr_b: Optional[str]) -> None:
        if not addr_a or not addr_b or addr_a.lower() == addr_b.lower():
            return
        hop = Hop(
            exchange_id=_exchange_id(addr_a, addr_b),
            provider=SIMULATED_PROVIDER,
            assets=(addr_a, addr_b),
        )
        if all(h.exchange_id != hop.exchange_id for h in self._hops):
            self._hops.append(hop)

    @property
    def name(self) -> str:
        return "dry_run"

    @property
    def spender(self) -> str:
        return SIMULATED_BROKER

    def set_price(self, symbol: str, price: Decimal) -> None:
        """Set the simulated price of an asset."""
        self._prices[symbol] = price

    def get_price(self, symbol: str) -> Optional[Decimal]:
        return self._prices.get(symbol)

    def disable_pair(self, from_symbol: str, to_symbol: str) -> None:
        """Make a pair unavailable, both routed and unrouted."""
        self._disabled.add(frozenset({from_symbol, to_symbol}))

    def _symbol(self, address: str) -> Optional[str]:
        return self.registry.symbol_for_address(address, self.chain_id)

    def _is_disabled(self, from_addr: str, to_addr: str) -> bool:
        return frozenset({self._symbol(from_addr), self._symbol(to_addr)}) in self._disabled

    def _direct_hop(self, a: str, b: str) -> Optional[Hop]:
        for hop in self._hops:
            if hop.trades(a) and hop.trades(b):
                return hop
        return None

    async def find_pair(self, from_addr: str, to_addr: str) -> Optional[PairHandle]:
        if self._is_disabled(from_addr, to_addr):
            return None

        direct = self._direct_hop(from_addr, to_addr)
        if direct is not None:
            return PairHandle(id=direct.exchange_id, path=(direct,))

        for first in self._hops:
            if not first.trades(from_addr):
                continue
            middle = next(a for a in first.assets if a.lower() != from_addr.lower())
            second = self._direct_hop(middle, to_addr)
            if second is not None:
                return PairHandle(
                    id=f"{first.exchange_id}:{second.exchange_id}",
                    path=(first, second),
                )
        return None

    def _quote_hop(self, from_addr: str, to_addr: str, amount_in: int) -> int:
        from_symbol = self._symbol(from_addr)
        to_symbol = self._symbol(to_addr)
        from_price = self._prices.get(from_symbol)
        to_price = self._prices.get(to_symbol)
        if from_price is None or to_price is None:
            raise ValueError(f"no valid median for {from_symbol}/{to_symbol}")

        from_asset = self.registry.require(from_symbol)
        to_asset = self.registry.require(to_symbol)

        value = from_asset.from_base_units(amount_in) * from_price
        out = value / to_price * (Decimal(1) - self.spread_percent / Decimal(100))
        return to_asset.to_base_units(out)

    async def get_amount_out(
        self,
        from_addr: str,
        to_addr: str,
        amount_in: int,
        pair: Optional[PairHandle] = None,
    ) -> int:
        if amount_in <= 0:
            raise ValueError("amount_in must be positive")
        if self._is_disabled(from_addr, to_addr):
            raise ValueError("Trading pair not available: no valid median")

        if pair is None:
            pair = await self.find_pair(from_addr, to_addr)
            if pair is None:
                raise ValueError("Trading pair not available")

        amount = amount_in
        current = from_addr
        for hop_to in pair.intermediate_assets(from_addr, to_addr) + [to_addr]:
            amount = self._quote_hop(current, hop_to, amount)
            current = hop_to
        logger.debug(
            f"Simulated {self._symbol(from_addr)}->{self._symbol(to_addr)}: "
            f"{amount_in} -> {amount}"
        )
        return amount

    async def build_swap_tx(
        self,
        pair: Optional[PairHandle],
        from_addr: str,
        to_addr: str,
        amount_in: int,
        min_amount_out: int,
        recipient: str,
    ) -> UnsignedTx:
        """Broker ``swapIn`` calldata; multi-hop appends the remaining hop ids."""
        if pair is None:
            pair = await self.find_pair(from_addr, to_addr)
            if pair is None:
                raise ValueError("Trading pair not available")

        first = pair.path[0]
        words = [
            first.provider.lower().replace("0x", "").zfill(64),
            first.exchange_id.replace("0x", "").zfill(64),
            from_addr.lower().replace("0x", "").zfill(64),
            to_addr.lower().replace("0x", "").zfill(64),
            format(amount_in, "064x"),
            format(min_amount_out, "064x"),
        ]
        words.extend(hop.exchange_id.replace("0x", "").zfill(64) for hop in pair.path[1:])
        return UnsignedTx(
            to=self.spender,
            data=_selector(SWAP_IN_SIGNATURE) + "".join(words),
        )

