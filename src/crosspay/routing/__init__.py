"""Routing clients for stable-token conversions.

Clients:
- RoutingClient: interface of the on-chain broker (pairs, prices, calldata)
- SimulatedRoutingClient: priced from static rates for dry runs and tests
"""

from crosspay.routing.base import Hop, PairHandle, RoutingClient, UnsignedTx
from crosspay.routing.dry_run import SimulatedRoutingClient

__all__ = [
    "Hop",
    "PairHandle",
    "RoutingClient",
    "UnsignedTx",
    "SimulatedRoutingClient",
]
