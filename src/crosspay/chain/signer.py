"""Signer capability consumed by the chain gateway.

The engine never connects wallets itself; it receives an object satisfying
``Signer``. ``LocalAccountSigner`` is the key-in-process implementation used
by the command line and scripts.
"""

import asyncio
import logging
from typing import Optional, Protocol, runtime_checkable

from eth_account import Account
from web3 import Web3

from crosspay.chain.rpc import JsonRpcClient

logger = logging.getLogger(__name__)


@runtime_checkable
class Signer(Protocol):
    """An already-connected wallet able to sign and broadcast transactions."""

    @property
    def address(self) -> str: ...

    async def send_transaction(self, tx: dict) -> str:
        """Sign and broadcast ``tx`` (to, data, value, gas); return its hash."""
        ...


class LocalAccountSigner:
    """Signs with a local private key and broadcasts raw transactions."""

    def __init__(self, private_key: str, rpc: JsonRpcClient, chain_id: int):
        self._account = Account.from_key(private_key)
        self.rpc = rpc
        self.chain_id = chain_id
        self._nonce_lock = asyncio.Lock()
        self._next_nonce: Optional[int] = None

    @property
    def address(self) -> str:
        return self._account.address

    async def _get_next_nonce(self) -> int:
        """Pending nonce, never lower than the last one we used."""
        chain_nonce = int(
            await self.rpc.call("eth_getTransactionCount", [self.address, "pending"]), 16
        )
        if self._next_nonce is not None:
            return max(chain_nonce, self._next_nonce)
        return chain_nonce

    async def send_transaction(self, tx: dict) -> str:
        async with self._nonce_lock:
            params = {
                "to": Web3.to_checksum_address(tx["to"]),
                "data": tx.get("data", "0x"),
                "value": int(tx.get("value", 0)),
                "chainId": self.chain_id,
                "nonce": await self._get_next_nonce(),
            }
            if tx.get("gas"):
                params["gas"] = int(tx["gas"])
            else:
                estimate = await self.rpc.call(
                    "eth_estimateGas",
                    [{"from": self.address, "to": params["to"], "data": params["data"],
                      "value": hex(params["value"])}],
                )
                params["gas"] = int(estimate, 16)
            params["gasPrice"] = int(await self.rpc.call("eth_gasPrice", []), 16)

            signed = self._account.sign_transaction(params)
            # eth-account >= 0.13 renamed rawTransaction to raw_transaction
            raw_tx = getattr(signed, "raw_transaction", None) or signed.rawTransaction

            try:
                tx_hash = await self.rpc.call("eth_sendRawTransaction", [Web3.to_hex(raw_tx)])
            except Exception:
                # Next transaction re-reads the nonce from the node
                self._next_nonce = None
                raise

            self._next_nonce = params["nonce"] + 1
            logger.info(f"Broadcast tx {tx_hash} (nonce {params['nonce']})")
            return tx_hash
