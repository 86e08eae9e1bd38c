"""Reads and writes against the ledger through JSON-RPC and the signer.

Every network call is bounded by a timeout. Failures are raised unmodified,
except transient receipt polls which are retried until the deadline;
the calling component hands them to the error classifier.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from web3 import Web3

from crosspay.assets import Asset
from crosspay.chain.rpc import JsonRpcClient
from crosspay.chain.signer import Signer
from crosspay.errors import classify

logger = logging.getLogger(__name__)

# ERC-20 function selectors
BALANCE_OF_SELECTOR = "0x70a08231"
ALLOWANCE_SELECTOR = "0xdd62ed3e"
APPROVE_SELECTOR = "0x095ea7b3"
TRANSFER_SELECTOR = "0xa9059cbb"

MAX_UINT256 = 2**256 - 1
GAS_BUFFER_PERCENT = 120
DEFAULT_GAS_FALLBACK = 500_000


def _word(value: int) -> str:
    return format(value, "064x")


def _address_word(address: str) -> str:
    return address.lower().replace("0x", "").zfill(64)


def encode_balance_of(owner: str) -> str:
    return f"{BALANCE_OF_SELECTOR}{_address_word(owner)}"


def encode_allowance(owner: str, spender: str) -> str:
    return f"{ALLOWANCE_SELECTOR}{_address_word(owner)}{_address_word(spender)}"


def encode_approve(spender: str, amount: int) -> str:
    return f"{APPROVE_SELECTOR}{_address_word(spender)}{_word(amount)}"


def encode_transfer(recipient: str, amount: int) -> str:
    return f"{TRANSFER_SELECTOR}{_address_word(recipient)}{_word(amount)}"


def _to_int(result: Optional[str]) -> int:
    if not result or result == "0x":
        return 0
    return int(result, 16)


@dataclass
class Receipt:
    """Mined transaction outcome."""

    tx_hash: str
    status: int
    block_number: int
    gas_used: int = 0
    logs: list = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class ChainGateway:
    """Ledger access for one wallet on one network."""

    def __init__(
        self,
        rpc: JsonRpcClient,
        signer: Optional[Signer],
        chain_id: int,
        read_timeout: float = 15.0,
        submit_timeout: float = 60.0,
        estimate_timeout: float = 10.0,
        poll_interval: float = 2.0,
        gas_fallback: int = DEFAULT_GAS_FALLBACK,
    ):
        self.rpc = rpc
        self.signer = signer
        self.chain_id = chain_id
        self.read_timeout = read_timeout
        self.submit_timeout = submit_timeout
        self.estimate_timeout = estimate_timeout
        self.poll_interval = poll_interval
        self.gas_fallback = gas_fallback

    @classmethod
    def from_settings(
        cls, settings, rpc: JsonRpcClient, signer: Optional[Signer]
    ) -> "ChainGateway":
        return cls(
            rpc,
            signer,
            chain_id=settings.chain_id,
            read_timeout=settings.rpc_read_timeout,
            submit_timeout=settings.rpc_submit_timeout,
            estimate_timeout=settings.gas_estimate_timeout,
            poll_interval=settings.receipt_poll_interval,
            gas_fallback=settings.gas_fallback_limit,
        )

    @property
    def address(self) -> Optional[str]:
        """Wallet address, None for a read-only gateway."""
        return self.signer.address if self.signer is not None else None

    def _token_address(self, asset: Asset) -> str:
        address = asset.address_on(self.chain_id)
        if not address:
            raise ValueError(f"{asset.symbol} is not deployed on chain {self.chain_id}")
        return address

    # ======================
    # Reads
    # ======================

    async def get_chain_id(self) -> int:
        return _to_int(await self.rpc.call("eth_chainId", [], timeout=self.read_timeout))

    async def get_gas_price(self) -> int:
        return _to_int(await self.rpc.call("eth_gasPrice", [], timeout=self.read_timeout))

    async def get_block_number(self) -> int:
        return _to_int(await self.rpc.call("eth_blockNumber", [], timeout=self.read_timeout))

    async def read_balance(self, asset: Asset, owner: str) -> int:
        """Balance of ``owner`` in base units."""
        if asset.native:
            result = await self.rpc.call(
                "eth_getBalance", [owner, "latest"], timeout=self.read_timeout
            )
        else:
            result = await self.rpc.call(
                "eth_call",
                [{"to": self._token_address(asset), "data": encode_balance_of(owner)}, "latest"],
                timeout=self.read_timeout,
            )
        return _to_int(result)

    async def read_allowance(self, asset: Asset, owner: str, spender: str) -> int:
        result = await self.rpc.call(
            "eth_call",
            [{"to": self._token_address(asset), "data": encode_allowance(owner, spender)}, "latest"],
            timeout=self.read_timeout,
        )
        return _to_int(result)

    # ======================
    # Writes
    # ======================

    async def estimate_gas(self, call: dict) -> int:
        """Gas estimate with a 20% buffer, or the fallback constant on failure."""
        params = {"from": call.get("from", self.address), "to": call["to"]}
        if call.get("data"):
            params["data"] = call["data"]
        if call.get("value"):
            params["value"] = hex(int(call["value"]))
        try:
            result = await self.rpc.call(
                "eth_estimateGas", [params], timeout=self.estimate_timeout
            )
            return _to_int(result) * GAS_BUFFER_PERCENT // 100
        except Exception as e:
            logger.warning(f"Gas estimation failed, using fallback {self.gas_fallback}: {e}")
            return self.gas_fallback

    async def submit_transaction(
        self,
        to: str,
        data: str = "0x",
        value: int = 0,
        gas_limit: Optional[int] = None,
    ) -> str:
        """Hand an unsigned transaction to the signer and return its hash."""
        if self.signer is None:
            raise RuntimeError("No signer connected")
        tx = {
            "from": self.address,
            "to": Web3.to_checksum_address(to),
            "data": data,
            "value": value,
        }
        if gas_limit:
            tx["gas"] = gas_limit

        tx_hash = await asyncio.wait_for(
            self.signer.send_transaction(tx), timeout=self.submit_timeout
        )
        logger.info(f"Submitted tx {tx_hash} to {to}")
        return tx_hash

    async def wait_for_receipt(
        self,
        tx_hash: str,
        timeout: float = 60.0,
        confirmations: int = 1,
    ) -> Receipt:
        """Poll until the transaction has ``confirmations`` blocks.

        Network errors and timeouts of a single poll are logged and polling
        continues until the deadline.

        Raises:
            TimeoutError: If the transaction is not confirmed within ``timeout``
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TimeoutError(f"Transaction {tx_hash} not confirmed after {timeout}s")

            try:
                receipt = await self._poll_receipt(
                    tx_hash, confirmations, min(self.read_timeout, remaining)
                )
            except Exception as e:
                error = classify(e)
                if not error.retryable:
                    raise
                logger.warning(
                    f"Receipt poll for {tx_hash} failed ({error.kind.value}), retrying: {e}"
                )
                receipt = None
            if receipt is not None:
                return receipt

            await asyncio.sleep(min(self.poll_interval, max(deadline - loop.time(), 0)))

    async def _poll_receipt(
        self, tx_hash: str, confirmations: int, timeout: float
    ) -> Optional[Receipt]:
        receipt = await self.rpc.call("eth_getTransactionReceipt", [tx_hash], timeout=timeout)
        if receipt is None or not receipt.get("blockNumber"):
            return None
        tx_block = _to_int(receipt["blockNumber"])
        if confirmations > 1 and await self.get_block_number() - tx_block + 1 < confirmations:
            return None
        return Receipt(
            tx_hash=tx_hash,
            status=_to_int(receipt.get("status")),
            block_number=tx_block,
            gas_used=_to_int(receipt.get("gasUsed")),
            logs=list(receipt.get("logs") or []),
        )

    # ======================
    # Calldata helpers
    # ======================

    def build_transfer(self, asset: Asset, recipient: str, amount: int) -> dict:
        """Unsigned ERC-20 transfer of ``amount`` base units."""
        return {
            "to": self._token_address(asset),
            "data": encode_transfer(Web3.to_checksum_address(recipient), amount),
            "value": 0,
        }
