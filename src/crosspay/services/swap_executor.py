"""Swap session state machine: quote, approve, swap and optional forward.

Idle -> Quoting -> Approving -> Swapping -> [Forwarding] -> Completed, any
step -> Failed. Failures are classified and kept on the session; ``resume``
re-enters at the failed step and skips work already done on chain.
"""

import asyncio
import logging
from typing import Optional

from crosspay.assets import Asset, AssetRegistry, get_registry
from crosspay.chain.gateway import ChainGateway, Receipt
from crosspay.config import Settings
from crosspay.errors import ErrorKind, SessionBusyError, SwapError, classify
from crosspay.models import Quote, SwapSession, SwapStatus
from crosspay.routing.base import RoutingClient
from crosspay.services.allowance import AllowanceManager
from crosspay.services.balance_sync import BalanceSynchronizer
from crosspay.services.quote_service import QuoteService
from crosspay.utils.retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)

STEPS = (
    SwapStatus.QUOTING,
    SwapStatus.APPROVING,
    SwapStatus.SWAPPING,
    SwapStatus.FORWARDING,
)


class SwapExecutor:
    """Runs swap sessions for the connected wallet, one at a time."""

    def __init__(
        self,
        settings: Settings,
        gateway: ChainGateway,
        router: RoutingClient,
        quotes: QuoteService,
        allowances: AllowanceManager,
        balances: BalanceSynchronizer,
        registry: Optional[AssetRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.settings = settings
        self.gateway = gateway
        self.router = router
        self.quotes = quotes
        self.allowances = allowances
        self.balances = balances
        self.registry = registry or get_registry()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)

        self._sessions: dict[str, SwapSession] = {}
        self._active: dict[str, str] = {}  # owner -> session id
        self._background: set[asyncio.Task] = set()

    # ======================
    # Sessions
    # ======================

    def get_session(self, session_id: str) -> Optional[SwapSession]:
        return self._sessions.get(session_id)

    def active_session(self, owner: Optional[str] = None) -> Optional[SwapSession]:
        owner = (owner or self.gateway.address).lower()
        session_id = self._active.get(owner)
        if session_id is None:
            return None
        session = self._sessions[session_id]
        if session.is_terminal:
            del self._active[owner]
            return None
        return session

    def _claim(self, session: SwapSession) -> None:
        active = self.active_session(session.owner)
        if active is not None and active.id != session.id:
            raise SessionBusyError(active.id)
        self._active[session.owner.lower()] = session.id

    def _release(self, session: SwapSession) -> None:
        if self._active.get(session.owner.lower()) == session.id:
            del self._active[session.owner.lower()]

    async def initiate(
        self,
        from_asset: str,
        to_asset: str,
        amount,
        slippage_tolerance=None,
        recipient: Optional[str] = None,
    ) -> SwapSession:
        """Start a conversion and drive it to Completed or Failed.

        The returned session carries the outcome; call ``raise_for_error()``
        on it to turn a failure into an exception.

        Raises:
            SessionBusyError: another session of this wallet has not finished
            SwapError: InvalidPair for a request that can never be quoted
        """
        source, target, amount, slippage = self.quotes.validate(
            from_asset, to_asset, amount, slippage_tolerance
        )
        owner = self.gateway.address
        session = SwapSession(
            from_asset=source.symbol,
            to_asset=target.symbol,
            amount=amount,
            slippage_tolerance=slippage,
            owner=owner,
            recipient=recipient,
        )
        self._claim(session)
        self._sessions[session.id] = session
        logger.info(
            f"Swap session {session.id}: {amount} {from_asset} -> {to_asset}"
            + (f" for {recipient}" if session.requires_forwarding else "")
        )
        await self._run(session, SwapStatus.QUOTING, resumed=False)
        return session

    async def resume(self, session_id: str) -> SwapSession:
        """Retry a failed session from the step that failed.

        Raises:
            SessionBusyError: the session (or another one) is still running
            KeyError: unknown session id
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"Unknown swap session {session_id}")
        if session.status == SwapStatus.COMPLETED:
            return session
        if not session.is_terminal:
            raise SessionBusyError(session.id)

        self._claim(session)
        start = session.reopen()
        logger.info(f"Resuming swap session {session.id} at {start.value}")
        await self._run(session, start, resumed=True)
        return session

    # ======================
    # State machine
    # ======================

    async def _run(self, session: SwapSession, start: SwapStatus, resumed: bool) -> None:
        session.attempts += 1
        steps = {
            SwapStatus.QUOTING: self._quote_step,
            SwapStatus.APPROVING: self._approve_step,
            SwapStatus.SWAPPING: self._swap_step,
            SwapStatus.FORWARDING: self._forward_step,
        }
        try:
            for status in STEPS[STEPS.index(start):]:
                if status == SwapStatus.FORWARDING and not session.requires_forwarding:
                    continue
                session.advance(status)
                await steps[status](session, resumed)
        except asyncio.CancelledError:
            session.fail(SwapError(ErrorKind.UNKNOWN, "Swap cancelled"))
            self._release(session)
            raise
        except Exception as e:
            error = classify(e)
            session.fail(error)
            logger.error(
                f"Swap session {session.id} failed at {session.failed_status.value}: "
                f"{error.kind.value} ({error.details})"
            )
            self._release(session)
            return

        session.complete()
        self._release(session)
        logger.info(f"Swap session {session.id} completed (tx {session.swap_tx_hash})")
        self._schedule_refresh(session)

    async def _quote_step(self, session: SwapSession, resumed: bool) -> None:
        source, _, amount, _ = self.quotes.validate(
            session.from_asset, session.to_asset, session.amount, session.slippage_tolerance
        )
        held = await self._read_balance(source, session.owner)
        if held < source.to_base_units(amount):
            raise SwapError(
                ErrorKind.INSUFFICIENT_BALANCE,
                details=f"Wallet holds {source.from_base_units(held)} {source.symbol}, "
                        f"needs {amount}",
            )
        session.quote = await self._request_quote(session)

    async def _approve_step(self, session: SwapSession, resumed: bool) -> None:
        quote = await self._current_quote(session)
        tx_hash = await self.allowances.ensure_allowance(
            quote.from_asset, session.owner, self.router.spender, quote.amount_in_raw
        )
        if tx_hash:
            session.approval_tx_hash = tx_hash

    async def _swap_step(self, session: SwapSession, resumed: bool) -> None:
        if session.swap_confirmed:
            return
        if session.swap_tx_hash and await self._previous_tx_succeeded(session.swap_tx_hash):
            session.swap_confirmed = True
            return

        quote = await self._current_quote(session)
        if resumed:
            # approval may have been spent or revoked since the failure
            tx_hash = await self.allowances.ensure_allowance(
                quote.from_asset, session.owner, self.router.spender, quote.amount_in_raw
            )
            if tx_hash:
                session.approval_tx_hash = tx_hash

        source = self.registry.require(quote.from_asset)
        target = self.registry.require(quote.to_asset)
        before = await self._balance_snapshot(target, session) if session.requires_forwarding else None

        tx = await self.router.build_swap_tx(
            quote.pair,
            source.address_on(self.gateway.chain_id),
            target.address_on(self.gateway.chain_id),
            quote.amount_in_raw,
            quote.minimum_output_raw,
            session.owner,
        )
        gas_limit = await self.gateway.estimate_gas(tx.to_call(session.owner))
        session.swap_tx_hash = await self.gateway.submit_transaction(
            tx.to, tx.data, tx.value, gas_limit
        )
        receipt = await self._wait(session.swap_tx_hash)
        if not receipt.succeeded:
            raise SwapError(
                ErrorKind.SLIPPAGE_EXCEEDED,
                details=f"Swap transaction {session.swap_tx_hash} reverted "
                        f"(minimum output {quote.minimum_output} {quote.to_asset})",
            )
        session.swap_confirmed = True
        logger.info(f"Swap {session.swap_tx_hash} confirmed in block {receipt.block_number}")

        if before is not None:
            after = await self._balance_snapshot(target, session)
            if after is not None and after > before:
                session.received_raw = after - before

    async def _forward_step(self, session: SwapSession, resumed: bool) -> None:
        if session.forward_tx_hash and await self._previous_tx_succeeded(session.forward_tx_hash):
            return

        quote = await self._current_quote(session, refresh=False)
        target = self.registry.require(quote.to_asset)
        amount = session.received_raw or quote.minimum_output_raw

        tx = self.gateway.build_transfer(target, session.recipient, amount)
        gas_limit = await self.gateway.estimate_gas({**tx, "from": session.owner})
        session.forward_tx_hash = await self.gateway.submit_transaction(
            tx["to"], tx["data"], tx["value"], gas_limit
        )
        receipt = await self._wait(session.forward_tx_hash)
        if not receipt.succeeded:
            raise SwapError(
                ErrorKind.UNKNOWN,
                "Transfer to recipient failed",
                details=f"Transfer {session.forward_tx_hash} reverted",
            )
        logger.info(
            f"Forwarded {target.from_base_units(amount)} {target.symbol} to {session.recipient}"
        )

    # ======================
    # Helpers
    # ======================

    async def _request_quote(self, session: SwapSession) -> Quote:
        return await self.quotes.get_quote(
            session.from_asset,
            session.to_asset,
            session.amount,
            session.slippage_tolerance,
            owner=session.owner,
            supersede=False,
        )

    async def _current_quote(self, session: SwapSession, refresh: bool = True) -> Quote:
        """Session quote, re-requested when it expired."""
        if session.quote is None or (refresh and session.quote.is_expired):
            if session.quote is not None:
                logger.info(f"Quote for session {session.id} expired, refreshing")
            session.quote = await self._request_quote(session)
        return session.quote

    async def _read_balance(self, asset: Asset, owner: str) -> int:
        return await with_retry(
            lambda: self.gateway.read_balance(asset, owner),
            policy=self.retry_policy,
            description=f"Balance read {asset.symbol}",
            default_kind=ErrorKind.NETWORK_ERROR,
        )

    async def _balance_snapshot(self, asset: Asset, session: SwapSession) -> Optional[int]:
        try:
            return await self._read_balance(asset, session.owner)
        except SwapError as e:
            logger.warning(f"Could not read {asset.symbol} balance around swap {session.id}: {e}")
            return None

    async def _wait(self, tx_hash: str) -> Receipt:
        return await self.gateway.wait_for_receipt(tx_hash, timeout=self.settings.receipt_timeout)

    async def _previous_tx_succeeded(self, tx_hash: str) -> bool:
        """Check a transaction submitted by an earlier attempt.

        Raises:
            TimeoutError: still unconfirmed, so it must not be resubmitted yet
        """
        receipt = await self._wait(tx_hash)
        if receipt.succeeded:
            logger.info(f"Earlier transaction {tx_hash} already confirmed, not resubmitting")
            return True
        logger.info(f"Earlier transaction {tx_hash} reverted, submitting a new one")
        return False

    # ======================
    # Post-swap refresh
    # ======================

    def _schedule_refresh(self, session: SwapSession) -> None:
        symbols = [session.from_asset, session.to_asset, self.registry.native().symbol]
        task = asyncio.ensure_future(self._settle_and_refresh(symbols))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _settle_and_refresh(self, symbols: list[str]) -> None:
        await asyncio.sleep(self.settings.settle_delay_seconds)
        await self.balances.refresh_many(symbols, force=True)

    async def wait_idle(self) -> None:
        """Wait for scheduled post-swap refreshes."""
        if self._background:
            await asyncio.wait(set(self._background))

    def dispose(self) -> None:
        for task in list(self._background):
            task.cancel()
        self._background.clear()
        self._active.clear()
