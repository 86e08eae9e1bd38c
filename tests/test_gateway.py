"""Tests for the JSON-RPC transport, chain gateway and local signer."""

import json

import httpx
import pytest
from web3 import Web3

from crosspay.assets import get_registry
from crosspay.chain.gateway import (
    ALLOWANCE_SELECTOR,
    APPROVE_SELECTOR,
    BALANCE_OF_SELECTOR,
    MAX_UINT256,
    TRANSFER_SELECTOR,
    ChainGateway,
    encode_approve,
)
from crosspay.chain.rpc import JsonRpcClient
from crosspay.chain.signer import LocalAccountSigner, Signer
from crosspay.config import CELO_MAINNET_ID
from crosspay.errors import RpcError

OWNER = "0x1111111111111111111111111111111111111111"
SPENDER = "0x777A8255cA72412f0d706dc03C9D1987306B4CaD"
TEST_KEY = "0x" + "11" * 32


class RpcNode:
    """Scripted JSON-RPC node behind httpx.MockTransport."""

    def __init__(self):
        self.requests: list[dict] = []
        self.results: dict = {}
        self.errors: dict = {}
        self.http_failures: dict[str, list[int]] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.requests.append(payload)
        method = payload["method"]
        failures = self.http_failures.get(method)
        if failures:
            return httpx.Response(failures.pop(0))
        body = {"jsonrpc": "2.0", "id": payload["id"]}
        if method in self.errors:
            body["error"] = self.errors[method]
        else:
            result = self.results.get(method)
            body["result"] = result(payload["params"]) if callable(result) else result
        return httpx.Response(200, json=body)

    def methods(self) -> list[str]:
        return [r["method"] for r in self.requests]


@pytest.fixture
def node():
    return RpcNode()


@pytest.fixture
def rpc(node):
    client = httpx.AsyncClient(transport=httpx.MockTransport(node.handler))
    return JsonRpcClient("https://rpc.test", client=client)


class FakeSigner:
    def __init__(self):
        self.sent = []

    @property
    def address(self) -> str:
        return OWNER

    async def send_transaction(self, tx: dict) -> str:
        self.sent.append(tx)
        return "0xfeed"


def make_gateway(rpc, signer=None) -> ChainGateway:
    return ChainGateway(rpc, signer, chain_id=CELO_MAINNET_ID, poll_interval=0.01)


class TestJsonRpcClient:
    """Tests for JsonRpcClient."""

    @pytest.mark.asyncio
    async def test_returns_result(self, node, rpc):
        node.results["eth_chainId"] = hex(CELO_MAINNET_ID)

        assert await rpc.call("eth_chainId", []) == hex(CELO_MAINNET_ID)
        assert node.requests[0]["jsonrpc"] == "2.0"

    @pytest.mark.asyncio
    async def test_error_object_raises(self, node, rpc):
        node.errors["eth_call"] = {"code": -32000, "message": "execution reverted", "data": "0x"}

        with pytest.raises(RpcError) as exc_info:
            await rpc.call("eth_call", [])
        assert exc_info.value.code == -32000

    @pytest.mark.asyncio
    async def test_http_status_error(self):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(503))
        )
        rpc = JsonRpcClient("https://rpc.test", client=client)

        with pytest.raises(httpx.HTTPStatusError):
            await rpc.call("eth_chainId", [])


class TestChainGatewayReads:
    """Tests for gateway reads."""

    @pytest.mark.asyncio
    async def test_token_balance_uses_balance_of(self, node, rpc):
        node.results["eth_call"] = hex(25 * 10**18)
        gateway = make_gateway(rpc)
        cusd = get_registry().require("cUSD")

        assert await gateway.read_balance(cusd, OWNER) == 25 * 10**18

        call = node.requests[0]["params"][0]
        assert call["to"] == cusd.address_on(CELO_MAINNET_ID)
        assert call["data"].startswith(BALANCE_OF_SELECTOR)
        assert call["data"].endswith(OWNER[2:])

    @pytest.mark.asyncio
    async def test_native_balance(self, node, rpc):
        node.results["eth_getBalance"] = "0x0de0b6b3a7640000"
        gateway = make_gateway(rpc)

        assert await gateway.read_balance(get_registry().native(), OWNER) == 10**18
        assert node.methods() == ["eth_getBalance"]

    @pytest.mark.asyncio
    async def test_empty_result_reads_as_zero(self, node, rpc):
        node.results["eth_call"] = "0x"
        gateway = make_gateway(rpc)

        assert await gateway.read_balance(get_registry().require("cEUR"), OWNER) == 0

    @pytest.mark.asyncio
    async def test_allowance(self, node, rpc):
        node.results["eth_call"] = hex(MAX_UINT256)
        gateway = make_gateway(rpc)

        assert await gateway.read_allowance(get_registry().require("cUSD"), OWNER, SPENDER) == MAX_UINT256
        data = node.requests[0]["params"][0]["data"]
        assert data.startswith(ALLOWANCE_SELECTOR)
        assert SPENDER[2:].lower() in data

    @pytest.mark.asyncio
    async def test_undeployed_asset(self, rpc):
        gateway = make_gateway(rpc)

        with pytest.raises(ValueError):
            await gateway.read_balance(get_registry().require("cZAR"), OWNER)


class TestChainGatewayWrites:
    """Tests for gas estimation, submission and receipts."""

    @pytest.mark.asyncio
    async def test_estimate_gas_adds_buffer(self, node, rpc):
        node.results["eth_estimateGas"] = hex(100_000)
        gateway = make_gateway(rpc, FakeSigner())

        assert await gateway.estimate_gas({"to": SPENDER, "data": "0x1234"}) == 120_000
        assert node.requests[0]["params"][0]["from"] == OWNER

    @pytest.mark.asyncio
    async def test_estimate_gas_falls_back(self, node, rpc):
        node.errors["eth_estimateGas"] = {"code": -32000, "message": "gas required exceeds allowance"}
        gateway = make_gateway(rpc, FakeSigner())

        assert await gateway.estimate_gas({"to": SPENDER, "data": "0x"}) == 500_000

    @pytest.mark.asyncio
    async def test_submit_hands_tx_to_signer(self, rpc):
        signer = FakeSigner()
        gateway = make_gateway(rpc, signer)

        tx_hash = await gateway.submit_transaction(SPENDER.lower(), "0xabcd", 0, 90_000)

        assert tx_hash == "0xfeed"
        assert signer.sent == [
            {"from": OWNER, "to": Web3.to_checksum_address(SPENDER), "data": "0xabcd", "value": 0,
             "gas": 90_000}
        ]

    @pytest.mark.asyncio
    async def test_submit_without_signer(self, rpc):
        gateway = make_gateway(rpc)

        assert gateway.address is None
        with pytest.raises(RuntimeError):
            await gateway.submit_transaction(SPENDER, "0x")

    @pytest.mark.asyncio
    async def test_wait_for_receipt_polls(self, node, rpc):
        receipts = [None, {"blockNumber": "0x10", "status": "0x1", "gasUsed": "0x5208", "logs": []}]
        node.results["eth_getTransactionReceipt"] = lambda params: receipts.pop(0)
        gateway = make_gateway(rpc)

        receipt = await gateway.wait_for_receipt("0xabc", timeout=1.0)

        assert receipt.succeeded
        assert receipt.block_number == 16
        assert receipt.gas_used == 21000
        assert node.methods().count("eth_getTransactionReceipt") == 2

    @pytest.mark.asyncio
    async def test_wait_for_confirmations(self, node, rpc):
        node.results["eth_getTransactionReceipt"] = {"blockNumber": "0x10", "status": "0x0"}
        node.results["eth_blockNumber"] = "0x11"
        gateway = make_gateway(rpc)

        receipt = await gateway.wait_for_receipt("0xabc", timeout=1.0, confirmations=2)

        assert not receipt.succeeded
        assert "eth_blockNumber" in node.methods()

    @pytest.mark.asyncio
    async def test_wait_for_receipt_timeout(self, node, rpc):
        node.results["eth_getTransactionReceipt"] = None
        gateway = make_gateway(rpc)

        with pytest.raises(TimeoutError):
            await gateway.wait_for_receipt("0xabc", timeout=0.05)

    @pytest.mark.asyncio
    async def test_wait_for_receipt_survives_transient_failure(self, node, rpc):
        node.http_failures["eth_getTransactionReceipt"] = [503]
        node.results["eth_getTransactionReceipt"] = {"blockNumber": "0x10", "status": "0x1"}
        gateway = make_gateway(rpc)

        receipt = await gateway.wait_for_receipt("0xabc", timeout=5.0)

        assert receipt.succeeded
        assert node.methods().count("eth_getTransactionReceipt") == 2

    @pytest.mark.asyncio
    async def test_wait_for_receipt_raises_node_errors(self, node, rpc):
        node.errors["eth_getTransactionReceipt"] = {"code": -32602, "message": "invalid argument"}
        gateway = make_gateway(rpc)

        with pytest.raises(RpcError):
            await gateway.wait_for_receipt("0xabc", timeout=5.0)
        assert node.methods().count("eth_getTransactionReceipt") == 1

    def test_build_transfer(self, rpc):
        gateway = make_gateway(rpc)
        ceur = get_registry().require("cEUR")

        tx = gateway.build_transfer(ceur, OWNER, 5)

        assert tx["to"] == ceur.address_on(CELO_MAINNET_ID)
        assert tx["data"].startswith(TRANSFER_SELECTOR)
        assert tx["data"].endswith(format(5, "064x"))

    def test_encode_approve_max(self):
        data = encode_approve(SPENDER, MAX_UINT256)

        assert data.startswith(APPROVE_SELECTOR)
        assert data.endswith("f" * 64)
        assert len(data) == 10 + 128


class TestLocalAccountSigner:
    """Tests for the key-in-process signer."""

    @pytest.mark.asyncio
    async def test_signs_and_tracks_nonce(self, node, rpc):
        node.results["eth_getTransactionCount"] = "0x0"
        node.results["eth_gasPrice"] = hex(5 * 10**9)
        node.results["eth_sendRawTransaction"] = "0x" + "ab" * 32
        signer = LocalAccountSigner(TEST_KEY, rpc, CELO_MAINNET_ID)

        assert isinstance(signer, Signer)
        for _ in range(2):
            tx_hash = await signer.send_transaction(
                {"to": SPENDER, "data": "0x", "value": 0, "gas": 21000}
            )

        assert tx_hash == "0x" + "ab" * 32
        assert node.methods().count("eth_sendRawTransaction") == 2
        assert "eth_estimateGas" not in node.methods()
        assert signer._next_nonce == 2

    @pytest.mark.asyncio
    async def test_failed_broadcast_resets_nonce(self, node, rpc):
        node.results["eth_getTransactionCount"] = "0x4"
        node.results["eth_gasPrice"] = "0x1"
        node.errors["eth_sendRawTransaction"] = {"code": -32000, "message": "nonce too low"}
        signer = LocalAccountSigner(TEST_KEY, rpc, CELO_MAINNET_ID)

        with pytest.raises(RpcError):
            await signer.send_transaction({"to": SPENDER, "gas": 21000})
        assert signer._next_nonce is None
