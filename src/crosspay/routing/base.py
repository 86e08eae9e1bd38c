"""Abstract interface of the AMM/routing protocol client."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from crosspay.chain.gateway import encode_approve

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Hop:
    """One exchange (pool) traversed by a route."""

    exchange_id: str
    provider: str
    assets: tuple[str, ...]  # token addresses traded by the exchange

    def trades(self, address: str) -> bool:
        return address.lower() in {a.lower() for a in self.assets}


@dataclass(frozen=True)
class PairHandle:
    """A tradable pair discovered by the routing client."""

    id: str
    path: tuple[Hop, ...]

    @property
    def is_direct(self) -> bool:
        return len(self.path) == 1

    def intermediate_assets(self, from_addr: str, to_addr: str) -> list[str]:
        """Addresses shared by consecutive hops, in traversal order."""
        endpoints = {from_addr.lower(), to_addr.lower()}
        found = []
        for first, second in zip(self.path, self.path[1:]):
            shared = [
                a for a in first.assets
                if second.trades(a) and a.lower() not in endpoints
            ]
            if not shared:
                raise ValueError("No intermediate token found")
            found.append(shared[0])
        return found


@dataclass
class UnsignedTx:
    """A transaction ready to hand to the signer."""

    to: str
    data: str
    value: int = 0
    gas_limit: Optional[int] = None

    def to_call(self, sender: Optional[str] = None) -> dict:
        call = {"to": self.to, "data": self.data, "value": self.value}
        if sender:
            call["from"] = sender
        return call


class RoutingClient(ABC):
    """Protocol client that discovers pairs, prices and builds transactions."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Client name identifier."""
        pass

    @property
    @abstractmethod
    def spender(self) -> str:
        """Contract that pulls input tokens during a swap (needs allowance)."""
        pass

    @abstractmethod
    async def find_pair(self, from_addr: str, to_addr: str) -> Optional[PairHandle]:
        """Direct or multi-hop pair between two tokens, None if none exists."""
        pass

    @abstractmethod
    async def get_amount_out(
        self,
        from_addr: str,
        to_addr: str,
        amount_in: int,
        pair: Optional[PairHandle] = None,
    ) -> int:
        """Expected output in base units.

        Without ``pair`` the client performs its own unrouted lookup.
        """
        pass

    @abstractmethod
    async def build_swap_tx(
        self,
        pair: Optional[PairHandle],
        from_addr: str,
        to_addr: str,
        amount_in: int,
        min_amount_out: int,
        recipient: str,
    ) -> UnsignedTx:
        """Swap transaction; ``min_amount_out`` must be enforced on-chain."""
        pass

    async def build_approval_tx(self, asset_addr: str, amount: int) -> UnsignedTx:
        """ERC-20 approval of ``amount`` for the spender."""
        return UnsignedTx(to=asset_addr, data=encode_approve(self.spender, amount))
