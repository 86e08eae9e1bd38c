"""Pytest configuration and fixtures."""

import asyncio
from collections import Counter
from typing import Optional

import pytest

from crosspay.assets import get_registry
from crosspay.chain.gateway import APPROVE_SELECTOR, TRANSFER_SELECTOR, ChainGateway, Receipt
from crosspay.config import CELO_MAINNET_ID, Settings
from crosspay.errors import RpcError
from crosspay.routing.dry_run import SimulatedRoutingClient
from crosspay.services.allowance import AllowanceManager
from crosspay.services.balance_sync import BalanceSynchronizer
from crosspay.services.exchange_rates import ExchangeRateService
from crosspay.services.quote_service import QuoteService
from crosspay.services.swap_executor import SwapExecutor

OWNER = "0x1111111111111111111111111111111111111111"
OTHER_OWNER = "0x3333333333333333333333333333333333333333"
RECIPIENT = "0x2222222222222222222222222222222222222222"

ONE = 10**18


def _words(data: str) -> list[str]:
    body = data[10:]
    return [body[i:i + 64] for i in range(0, len(body), 64)]


def _address(word: str) -> str:
    return "0x" + word[-40:]


class FakeGateway(ChainGateway):
    """In-memory ledger for one wallet.

    Submitted approvals, swaps (broker ``swapIn`` calldata) and transfers are
    applied to the balance and allowance tables when they succeed.
    """

    def __init__(self, address: Optional[str] = OWNER, chain_id: int = CELO_MAINNET_ID):
        super().__init__(rpc=None, signer=None, chain_id=chain_id)
        self._address = address
        self.registry = get_registry()
        self.reported_chain_id = chain_id
        self.chain_id_error: Optional[Exception] = None

        self.balances: dict[str, int] = {}
        self.allowances: dict[str, int] = {}
        self.read_calls: Counter = Counter()
        self.read_errors: dict[str, Exception] = {}
        self.read_gate: Optional[asyncio.Event] = None
        self.read_started = asyncio.Event()

        self.submitted: list[dict] = []
        self.transfers: list[tuple[str, str, int]] = []
        self.receipts: dict[str, int] = {}
        self.wait_calls: list[tuple[str, int]] = []
        self.submit_gate: Optional[asyncio.Event] = None
        self.submit_started = asyncio.Event()
        self.reject_submissions = False
        self.revert_approvals = False
        self.revert_swaps = False
        self.revert_transfers = False

        self.gas_estimate = 120_000
        self.gas_price = 5 * 10**9

    @property
    def address(self) -> Optional[str]:
        return self._address

    def count(self, kind: str) -> int:
        return sum(1 for tx in self.submitted if tx["kind"] == kind)

    def _symbol(self, address: str) -> str:
        return self.registry.symbol_for_address(address, self.chain_id)

    async def get_chain_id(self) -> int:
        if self.chain_id_error is not None:
            raise self.chain_id_error
        return self.reported_chain_id

    async def get_gas_price(self) -> int:
        return self.gas_price

    async def read_balance(self, asset, owner: str) -> int:
        self.read_calls[asset.symbol] += 1
        self.read_started.set()
        if self.read_gate is not None:
            await self.read_gate.wait()
        error = self.read_errors.get(asset.symbol)
        if error is not None:
            raise error
        return self.balances.get(asset.symbol, 0)

    async def read_allowance(self, asset, owner: str, spender: str) -> int:
        return self.allowances.get(asset.symbol, 0)

    async def estimate_gas(self, call: dict) -> int:
        return self.gas_estimate

    async def submit_transaction(self, to, data="0x", value=0, gas_limit=None) -> str:
        self.submit_started.set()
        if self.submit_gate is not None:
            await self.submit_gate.wait()
        if self.reject_submissions:
            raise RpcError(4001, "User rejected the request")

        if data.startswith(APPROVE_SELECTOR):
            kind = "approval"
        elif data.startswith(TRANSFER_SELECTOR):
            kind = "transfer"
        else:
            kind = "swap"
        tx_hash = "0x" + format(len(self.submitted) + 1, "064x")
        self.submitted.append(
            {"hash": tx_hash, "kind": kind, "to": to, "data": data, "value": value, "gas": gas_limit}
        )
        succeeded = not getattr(self, f"revert_{kind}s")
        self.receipts[tx_hash] = 1 if succeeded else 0
        if succeeded:
            self._apply(kind, to, data)
        return tx_hash

    def _apply(self, kind: str, to: str, data: str) -> None:
        words = _words(data)
        if kind == "approval":
            self.allowances[self._symbol(to)] = int(words[1], 16)
        elif kind == "transfer":
            symbol = self._symbol(to)
            amount = int(words[1], 16)
            self.balances[symbol] = self.balances.get(symbol, 0) - amount
            self.transfers.append((_address(words[0]), symbol, amount))
        else:
            source = self._symbol(_address(words[2]))
            target = self._symbol(_address(words[3]))
            self.balances[source] = self.balances.get(source, 0) - int(words[4], 16)
            self.balances[target] = self.balances.get(target, 0) + int(words[5], 16)

    async def wait_for_receipt(self, tx_hash: str, timeout: float = 60.0, confirmations: int = 1) -> Receipt:
        self.wait_calls.append((tx_hash, confirmations))
        return Receipt(tx_hash=tx_hash, status=self.receipts[tx_hash], block_number=100)


class CountingRouter(SimulatedRoutingClient):
    """Simulated client that counts amount-out calls and can be held open."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.amount_out_calls = 0
        self.gate: Optional[asyncio.Event] = None

    async def get_amount_out(self, from_addr, to_addr, amount_in, pair=None):
        self.amount_out_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        return await super().get_amount_out(from_addr, to_addr, amount_in, pair)


@pytest.fixture
def settings():
    """Settings with short timers and no persisted rate cache."""
    return Settings(
        _env_file=None,
        chain_id=CELO_MAINNET_ID,
        dry_run=True,
        rate_cache_path=None,
        quote_debounce_seconds=0.01,
        quote_lookup_timeout=1.0,
        quote_gas_timeout=1.0,
        balance_debounce_seconds=0.01,
        settle_delay_seconds=0,
        retry_base_delay=0,
        receipt_timeout=1.0,
        receipt_poll_interval=0.01,
    )


@pytest.fixture
def gateway():
    gw = FakeGateway()
    gw.balances = {"cUSD": 100 * ONE, "CELO": 10 * ONE}
    return gw


@pytest.fixture
def router():
    return CountingRouter()


@pytest.fixture
def rates(settings):
    return ExchangeRateService(settings)


@pytest.fixture
def quotes(settings, gateway, router):
    return QuoteService(settings, gateway, router)


@pytest.fixture
def allowances(settings, gateway, router):
    return AllowanceManager(settings, gateway, router)


@pytest.fixture
def balances(settings, gateway, rates):
    sync = BalanceSynchronizer(settings, gateway, rates)
    sync.set_owner(OWNER, CELO_MAINNET_ID)
    return sync


@pytest.fixture
def executor(settings, gateway, router, quotes, allowances, balances):
    return SwapExecutor(settings, gateway, router, quotes, allowances, balances)
