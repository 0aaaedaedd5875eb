"""
Tests for smart account provisioning and the sponsored pipeline entry points.
"""
import asyncio
import threading
import time
from types import SimpleNamespace
from unittest.mock import patch

import pytest
import requests

from bundler import submit_user_operation
from config import RelaySettings
from errors import (
    EncodingError,
    EstimationError,
    ProvisioningError,
    SponsorshipDenied,
    SubmissionUnavailable,
)
from paymaster import sponsor_user_operation
from smart_account import (
    AccountFactory,
    SponsoredWalletService,
    send_contract_operation,
    send_transfer_operation,
)
from user_operations import Call, build_user_operation
from conftest import (
    RpcFailure,
    TEST_BUNDLER_URL,
    TEST_CHAIN_ID,
    TEST_PAYMASTER_API_KEY,
    TEST_RPC_URL,
    TEST_SMART_ACCOUNT,
    TEST_USER_OP_HASH,
)

BEEF = "0x000000000000000000000000000000000000beef"
COUNTER_ABI = [{
    "inputs": [{"name": "amount", "type": "uint256"}],
    "name": "increment",
    "outputs": [],
    "stateMutability": "nonpayable",
    "type": "function"
}]


@pytest.fixture
def factory():
    return AccountFactory()


@pytest.fixture
def connect(mock_w3, endpoints):
    with patch("smart_account._connect", return_value=mock_w3) as connect:
        yield connect


async def _create(factory, signer, config, **overrides):
    kwargs = dict(
        signer=signer,
        bundler_url=TEST_BUNDLER_URL,
        paymaster_api_key=TEST_PAYMASTER_API_KEY,
        rpc_url=TEST_RPC_URL,
        config=config,
    )
    kwargs.update(overrides)
    return await factory.create_account(**kwargs)


@pytest.mark.asyncio
async def test_create_account_resolves_counterfactual_address(factory, signer, config, connect, mock_w3):
    account = await _create(factory, signer, config)

    assert account.address == TEST_SMART_ACCOUNT
    assert account.owner == signer.address
    assert account.chain_id == TEST_CHAIN_ID
    connect.assert_called_once_with(TEST_RPC_URL, config.request_timeout)
    mock_w3.eth.contract.return_value.functions.getAddress.assert_called_once_with(
        signer.address, config.account_salt
    )


@pytest.mark.asyncio
async def test_create_account_is_cached_per_owner_and_network(factory, signer, config, connect):
    first = await _create(factory, signer, config)
    second = await _create(factory, signer, config)
    other_network = await _create(factory, signer, config, rpc_url="https://other-rpc.example.com")

    assert first is second
    assert other_network is not first
    assert connect.call_count == 2


@pytest.mark.asyncio
async def test_concurrent_create_account_is_coalesced(factory, signer, config, connect, mock_w3):
    release = threading.Event()
    original_contract = mock_w3.eth.contract

    def slow_contract(*args, **kwargs):
        release.wait(timeout=1)
        return original_contract(*args, **kwargs)

    with patch.object(mock_w3.eth, "contract", side_effect=slow_contract):
        tasks = [asyncio.ensure_future(_create(factory, signer, config)) for _ in range(3)]
        await asyncio.sleep(0.05)
        release.set()
        accounts = await asyncio.gather(*tasks)

    assert accounts[0] is accounts[1] is accounts[2]
    assert connect.call_count == 1


def test_create_account_coalesces_across_event_loops(factory, signer, config, connect, mock_w3):
    release = threading.Event()
    original_contract = mock_w3.eth.contract
    accounts, failures = [], []

    def slow_contract(*args, **kwargs):
        release.wait(timeout=1)
        return original_contract(*args, **kwargs)

    def request_account():
        try:
            accounts.append(asyncio.run(_create(factory, signer, config)))
        except Exception as e:
            failures.append(e)

    with patch.object(mock_w3.eth, "contract", side_effect=slow_contract):
        threads = [threading.Thread(target=request_account) for _ in range(2)]
        for thread in threads:
            thread.start()
        time.sleep(0.05)
        release.set()
        for thread in threads:
            thread.join(timeout=5)

    assert failures == []
    assert len(accounts) == 2
    assert accounts[0] is accounts[1]
    assert connect.call_count == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("bad_signer", [
    None,
    SimpleNamespace(address=None, sign_user_operation_hash=lambda h: b""),
    SimpleNamespace(address="0x1234", sign_user_operation_hash=lambda h: b""),
    SimpleNamespace(address="0x000000000000000000000000000000000000beef"),
])
async def test_create_account_rejects_invalid_signer(factory, config, connect, bad_signer):
    with pytest.raises(ProvisioningError):
        await _create(factory, bad_signer, config)

    connect.assert_not_called()


@pytest.mark.asyncio
async def test_create_account_requires_paymaster_key(factory, signer, config, connect):
    with pytest.raises(ProvisioningError):
        await _create(factory, signer, config, paymaster_api_key="")


@pytest.mark.asyncio
async def test_create_account_unreachable_rpc(factory, signer, config, connect, mock_w3):
    mock_w3.eth.contract.return_value.functions.getAddress.return_value.call.side_effect = (
        requests.ConnectionError("rpc down")
    )

    with pytest.raises(ProvisioningError, match="RPC"):
        await _create(factory, signer, config)


@pytest.mark.asyncio
async def test_create_account_unreachable_bundler(factory, signer, config, connect, bundler_stub):
    bundler_stub.on("eth_supportedEntryPoints", RpcFailure("bad gateway", code=None, status_code=502))

    with pytest.raises(ProvisioningError, match="Bundler"):
        await _create(factory, signer, config)


@pytest.mark.asyncio
async def test_create_account_requires_supported_entry_point(factory, signer, config, connect, bundler_stub):
    bundler_stub.on("eth_supportedEntryPoints", ["0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789"])

    with pytest.raises(ProvisioningError, match="EntryPoint"):
        await _create(factory, signer, config)


@pytest.mark.asyncio
async def test_create_account_paymaster_on_other_chain(factory, signer, config, connect, paymaster_stub):
    paymaster_stub.on("eth_chainId", hex(1))

    with pytest.raises(ProvisioningError, match="Paymaster"):
        await _create(factory, signer, config)


@pytest.mark.asyncio
async def test_failed_provisioning_is_not_cached(factory, signer, config, connect, paymaster_stub):
    paymaster_stub.on("eth_chainId", RpcFailure("down", code=None, status_code=503))
    with pytest.raises(ProvisioningError):
        await _create(factory, signer, config)

    paymaster_stub.on("eth_chainId", hex(TEST_CHAIN_ID))
    account = await _create(factory, signer, config)

    assert account.address == TEST_SMART_ACCOUNT


@pytest.mark.asyncio
async def test_transfer_end_to_end(account, bundler_stub, paymaster_stub):
    pending_hashes = []
    original_send = account.bundler.send_user_operation

    def record_send(signed_user_op):
        user_operation_hash = original_send(signed_user_op)
        pending_hashes.append(user_operation_hash)
        return user_operation_hash

    with patch.object(account.bundler, "send_user_operation", side_effect=record_send):
        receipt = await send_transfer_operation(account, BEEF, 100)

    assert receipt.status == "success"
    assert receipt.user_operation_hash == pending_hashes[0] == TEST_USER_OP_HASH
    assert bundler_stub.methods() == [
        "pimlico_getUserOperationGasPrice",
        "eth_estimateUserOperationGas",
        "eth_sendUserOperation",
        "eth_getUserOperationReceipt",
    ]
    assert paymaster_stub.methods() == ["pm_sponsorUserOperation"]
    sent = bundler_stub.params("eth_sendUserOperation")[0][0]
    assert sent["paymaster"]


@pytest.mark.asyncio
async def test_contract_operation_end_to_end(account, bundler_stub):
    receipt = await send_contract_operation(account, BEEF, COUNTER_ABI, "increment", [3])

    assert receipt.success
    assert len(bundler_stub.params("eth_sendUserOperation")) == 1


@pytest.mark.asyncio
async def test_contract_operation_encoding_error(account, bundler_stub, paymaster_stub):
    with pytest.raises(EncodingError):
        await send_contract_operation(account, BEEF, COUNTER_ABI, "increment", ["three", 4])

    assert bundler_stub.calls == []
    assert paymaster_stub.calls == []


@pytest.mark.asyncio
async def test_paymaster_decline_stops_before_submission(account, bundler_stub, paymaster_stub):
    paymaster_stub.on("pm_sponsorUserOperation", RpcFailure("policy rejected", code=-32600))

    with pytest.raises(SponsorshipDenied):
        await send_contract_operation(account, BEEF, COUNTER_ABI, "increment", [3])

    assert "eth_sendUserOperation" not in bundler_stub.methods()


@pytest.mark.asyncio
async def test_retry_after_submission_timeout_rebuilds_with_fresh_nonce(account, mock_w3, bundler_stub):
    get_nonce = mock_w3.eth.contract.return_value.functions.getNonce.return_value
    get_nonce.call.side_effect = [5, 6]
    outcomes = iter(["timeout", "accepted"])

    def flaky_send(params):
        if next(outcomes) == "timeout":
            raise requests.ReadTimeout("bundler timed out")
        return TEST_USER_OP_HASH

    bundler_stub.on("eth_sendUserOperation", flaky_send)

    first = await build_user_operation(account, [Call(to=BEEF, value=100)])
    with pytest.raises(SubmissionUnavailable):
        await submit_user_operation(await sponsor_user_operation(first))

    # the account's nonce advanced in the meantime; the retry starts from build
    rebuilt = await build_user_operation(account, [Call(to=BEEF, value=100)])
    pending = await submit_user_operation(await sponsor_user_operation(rebuilt))
    receipt = await pending.wait()

    assert (first.nonce, rebuilt.nonce) == (5, 6)
    submitted = bundler_stub.params("eth_sendUserOperation")
    assert [op["nonce"] for op, _ in submitted] == [hex(5), hex(6)]
    assert receipt.user_operation_hash == pending.user_operation_hash


@pytest.fixture
def service(signer, config):
    settings = RelaySettings(
        rpc_url=TEST_RPC_URL,
        bundler_url=TEST_BUNDLER_URL,
        paymaster_api_key=TEST_PAYMASTER_API_KEY,
        signer_private_key="unused",
        relay_public_key="unused",
    )
    return SponsoredWalletService(settings, config, signer=signer)


def test_balance_check_rejects_insufficient_funds(service, account, mock_w3):
    mock_w3.eth.get_balance.return_value = 50

    with pytest.raises(ValueError, match="Insufficient balance"):
        service._validate_balance(account, 100)


def test_balance_read_failure_is_estimation_error(service, account, mock_w3):
    mock_w3.eth.get_balance.side_effect = requests.ConnectionError("rpc down")

    with pytest.raises(EstimationError, match="balance"):
        service._validate_balance(account, 100)
