"""Ledger access: JSON-RPC transport, signer capability and gateway."""

from crosspay.chain.gateway import MAX_UINT256, ChainGateway, Receipt
from crosspay.chain.rpc import JsonRpcClient
from crosspay.chain.signer import LocalAccountSigner, Signer

__all__ = [
    "ChainGateway",
    "JsonRpcClient",
    "LocalAccountSigner",
    "MAX_UINT256",
    "Receipt",
    "Signer",
]
