"""
Shared fixtures: a signer, a mocked web3 handle and JSON-RPC stubs for the
bundler and paymaster endpoints.
"""
import itertools
from typing import Any, Callable, Dict, List, Optional, Tuple
from unittest.mock import MagicMock, PropertyMock

import pytest
from web3 import Web3

from bundler import BundlerClient
from config import ENTRYPOINT_V07, SmartAccountConfig
from paymaster import PaymasterClient
from signer import LocalAccountSigner
from smart_account import SmartAccount

TEST_PRIV_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
TEST_CHAIN_ID = 84532
TEST_RPC_URL = "https://rpc.example.com"
TEST_BUNDLER_URL = "https://bundler.example.com/rpc"
TEST_PAYMASTER_URL = "https://paymaster.example.com/84532/rpc"
TEST_PAYMASTER_API_KEY = "pm-test-key"
TEST_SMART_ACCOUNT = Web3.to_checksum_address("0x2a456304c6d79c91ef8a02bd87f85486d5d2d7e0")
TEST_PAYMASTER = Web3.to_checksum_address("0x777777777777ac5a9ab9fef2ad6d6c1b2b3c4d5e")
TEST_USER_OP_HASH = "0x" + "ab" * 32
TEST_TX_HASH = "0x" + "cd" * 32


class JsonRpcStub:
    """requests-mock callback dispatching JSON-RPC requests by method.

    A handler is either a plain result, a callable taking the params, or an
    ``RpcFailure``. Exceptions raised by a callable propagate to the client
    as transport failures.
    """

    def __init__(self):
        self.handlers: Dict[str, Any] = {}
        self.calls: List[Tuple[str, list]] = []

    def on(self, method: str, handler: Any) -> "JsonRpcStub":
        self.handlers[method] = handler
        return self

    def methods(self) -> List[str]:
        return [method for method, _ in self.calls]

    def params(self, method: str) -> List[list]:
        return [params for called, params in self.calls if called == method]

    def __call__(self, request, context):
        body = request.json()
        method, params = body["method"], body["params"]
        self.calls.append((method, params))

        if method not in self.handlers:
            return {"jsonrpc": "2.0", "id": body["id"],
                    "error": {"code": -32601, "message": f"method {method} not found"}}
        handler = self.handlers[method]
        if callable(handler):
            handler = handler(params)
        if isinstance(handler, RpcFailure):
            context.status_code = handler.status_code
            if handler.code is None:
                return {"detail": handler.message}
            return {"jsonrpc": "2.0", "id": body["id"],
                    "error": {"code": handler.code, "message": handler.message}}
        return {"jsonrpc": "2.0", "id": body["id"], "result": handler}


class RpcFailure:
    def __init__(self, message: str, code: Optional[int] = -32500, status_code: int = 200):
        self.message = message
        self.code = code
        self.status_code = status_code


def gas_estimate(params) -> Dict[str, str]:
    return {
        "callGasLimit": hex(50_000),
        "verificationGasLimit": hex(100_000),
        "preVerificationGas": hex(45_000),
    }


def gas_prices(params) -> Dict[str, Dict[str, str]]:
    tier = {"maxFeePerGas": hex(2_000_000_000), "maxPriorityFeePerGas": hex(1_000_000_000)}
    return {"slow": tier, "standard": tier, "fast": tier}


def sponsorship_responder() -> Callable:
    """Paymaster answers with split v0.7 fields and fresh data on every call"""
    counter = itertools.count(1)

    def respond(params):
        return {
            "paymaster": TEST_PAYMASTER,
            "paymasterVerificationGasLimit": hex(100_000),
            "paymasterPostOpGasLimit": hex(15_000),
            "paymasterData": "0x" + f"{next(counter):02x}" * 65,
            "callGasLimit": hex(999_999),
        }

    return respond


def user_operation_receipt(success: bool = True, block_number: int = 100,
                           reason: str = "") -> Dict[str, Any]:
    return {
        "userOpHash": TEST_USER_OP_HASH,
        "sender": TEST_SMART_ACCOUNT,
        "nonce": "0x5",
        "actualGasCost": hex(21_000 * 2_000_000_000),
        "actualGasUsed": hex(21_000),
        "success": success,
        "reason": reason,
        "logs": [],
        "receipt": {"transactionHash": TEST_TX_HASH, "blockNumber": hex(block_number)},
    }


@pytest.fixture
def signer():
    return LocalAccountSigner.from_key(TEST_PRIV_KEY)


@pytest.fixture
def config():
    return SmartAccountConfig(
        paymaster_url_template="https://paymaster.example.com/{chain_id}/rpc?apikey={api_key}",
        poll_interval=0.01,
        confirmation_timeout=0.5,
    )


@pytest.fixture
def mock_w3():
    """Web3 handle for a deployed account with nonce 5 at block 100"""
    w3 = MagicMock()
    w3.eth.chain_id = TEST_CHAIN_ID
    contract = w3.eth.contract.return_value
    contract.functions.getNonce.return_value.call.return_value = 5
    contract.functions.getAddress.return_value.call.return_value = TEST_SMART_ACCOUNT.lower()
    w3.eth.get_code.return_value = b"\x60\x80"
    w3.eth.get_balance.return_value = 10**18
    type(w3.eth).block_number = PropertyMock(return_value=100)
    return w3


@pytest.fixture
def bundler_stub():
    return (
        JsonRpcStub()
        .on("eth_supportedEntryPoints", [ENTRYPOINT_V07])
        .on("pimlico_getUserOperationGasPrice", gas_prices)
        .on("eth_estimateUserOperationGas", gas_estimate)
        .on("eth_sendUserOperation", TEST_USER_OP_HASH)
        .on("eth_getUserOperationReceipt", user_operation_receipt())
    )


@pytest.fixture
def paymaster_stub():
    return (
        JsonRpcStub()
        .on("eth_chainId", hex(TEST_CHAIN_ID))
        .on("pm_sponsorUserOperation", sponsorship_responder())
    )


@pytest.fixture
def endpoints(requests_mock, bundler_stub, paymaster_stub):
    requests_mock.post(TEST_BUNDLER_URL, json=bundler_stub)
    requests_mock.post(TEST_PAYMASTER_URL, json=paymaster_stub)
    return requests_mock


@pytest.fixture
def account(signer, config, mock_w3, endpoints):
    return SmartAccount(
        signer=signer,
        owner=signer.address,
        address=TEST_SMART_ACCOUNT,
        chain_id=TEST_CHAIN_ID,
        rpc_url=TEST_RPC_URL,
        bundler_url=TEST_BUNDLER_URL,
        config=config,
        web3=mock_w3,
        bundler=BundlerClient(TEST_BUNDLER_URL, config),
        paymaster=PaymasterClient(TEST_PAYMASTER_URL, config.request_timeout),
    )
