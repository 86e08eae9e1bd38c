"""Spender authorization for token swaps."""

import logging
import time
from typing import Optional

from crosspay.assets import AssetRegistry, get_registry
from crosspay.chain.gateway import MAX_UINT256, ChainGateway, encode_approve
from crosspay.config import Settings
from crosspay.errors import ErrorKind, SwapError, classify
from crosspay.models import AllowanceRecord
from crosspay.routing.base import RoutingClient, UnsignedTx
from crosspay.utils.locks import KeyedLocks
from crosspay.utils.retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)


class AllowanceManager:
    """Ensures a spender may move enough of an owner's tokens."""

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
        self._records: dict[tuple[str, str, str], AllowanceRecord] = {}
        self._locks = KeyedLocks("allowances")

    def get_record(self, asset: str, owner: str, spender: str) -> Optional[AllowanceRecord]:
        """Last observed allowance, None if never read."""
        return self._records.get((asset, owner.lower(), spender.lower()))

    def _remember(self, asset: str, owner: str, spender: str, amount: int) -> AllowanceRecord:
        record = AllowanceRecord(
            owner=owner, spender=spender, asset=asset, authorized_amount=amount
        )
        self._records[(asset, owner.lower(), spender.lower())] = record
        return record

    async def read_allowance(self, asset: str, owner: str, spender: str) -> int:
        token = self.registry.require(asset)
        current = await with_retry(
            lambda: self.gateway.read_allowance(token, owner, spender),
            policy=self.retry_policy,
            description=f"Allowance read {asset}",
            default_kind=ErrorKind.NETWORK_ERROR,
        )
        self._remember(token.symbol, owner, spender, current)
        return current

    async def ensure_allowance(
        self,
        asset: str,
        owner: str,
        spender: str,
        required_amount: int,
    ) -> Optional[str]:
        """Approve ``spender`` if the on-chain allowance is below ``required_amount``.

        The current allowance is always re-read from chain first. Returns the
        approval transaction hash, or None when nothing had to be submitted.

        Raises:
            SwapError: UserRejected when the signer declines, AllowanceRequired
                when the approval reverts, or another classified failure
        """
        token = self.registry.require(asset)
        async with self._locks.hold((token.symbol, owner.lower(), spender.lower()),
                                    timeout=None, operation="ensure_allowance"):
            current = await self.read_allowance(token.symbol, owner, spender)
            if current >= required_amount:
                logger.debug(
                    f"Allowance for {token.symbol} already sufficient ({current} >= {required_amount})"
                )
                return None

            amount = MAX_UINT256 if self.settings.approval_amount == "max" else required_amount
            tx = await self._build_approval(token.address_on(self.gateway.chain_id), spender, amount)
            gas_limit = await self.gateway.estimate_gas(tx.to_call(owner))

            logger.info(f"Approving {spender} for {token.symbol} (current {current}, need {required_amount})")
            try:
                tx_hash = await self.gateway.submit_transaction(
                    tx.to, tx.data, tx.value, gas_limit
                )
            except Exception as e:
                raise classify(e)

            try:
                receipt = await self.gateway.wait_for_receipt(
                    tx_hash,
                    timeout=self.settings.receipt_timeout,
                    confirmations=self.settings.approval_confirmations,
                )
            except Exception as e:
                raise classify(e)

            if not receipt.succeeded:
                logger.error(f"Approval {tx_hash} for {token.symbol} reverted")
                raise SwapError(
                    ErrorKind.ALLOWANCE_REQUIRED,
                    "Token approval failed",
                    details=f"Approval transaction {tx_hash} reverted",
                )

            record = self._remember(token.symbol, owner, spender, amount)
            record.last_checked = time.time()
            logger.info(f"Approval {tx_hash} confirmed for {token.symbol}")
            return tx_hash

    async def _build_approval(self, token_address: str, spender: str, amount: int) -> UnsignedTx:
        if spender.lower() == self.router.spender.lower():
            return await self.router.build_approval_tx(token_address, amount)
        return UnsignedTx(to=token_address, data=encode_approve(spender, amount))
