"""
Smart Account provisioning and sponsored user operation orchestration
"""

import asyncio
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests
from web3 import Web3
from web3.exceptions import Web3Exception

from bundler import BundlerClient, TransactionReceipt, submit_user_operation
from config import RelaySettings, SmartAccountConfig
from errors import EstimationError, ProvisioningError
from paymaster import PaymasterClient, SponsorshipPolicy, sponsor_user_operation
from rpc import RpcError, RpcTransportError
from signer import LocalAccountSigner, Signer
from user_operations import (
    Call,
    CallIntent,
    build_user_operation,
    encode_create_account,
    encode_function_call,
)

logger = logging.getLogger(__name__)

ACCOUNT_FACTORY_ABI = [{
    "inputs": [{"name": "owner", "type": "address"}, {"name": "salt", "type": "uint256"}],
    "name": "getAddress",
    "outputs": [{"name": "", "type": "address"}],
    "stateMutability": "view",
    "type": "function"
}]


@dataclass(frozen=True)
class SmartAccount:
    """Smart account bound to one signer and one network"""
    signer: Signer = field(repr=False)
    owner: str
    address: str
    chain_id: int
    rpc_url: str
    bundler_url: str
    config: SmartAccountConfig = field(repr=False)
    web3: Web3 = field(repr=False, compare=False)
    bundler: BundlerClient = field(repr=False, compare=False)
    paymaster: PaymasterClient = field(repr=False, compare=False)

    @property
    def factory_data(self) -> bytes:
        return encode_create_account(self.owner, self.config.account_salt)


def _connect(rpc_url: str, timeout: float) -> Web3:
    return Web3(Web3.HTTPProvider(rpc_url, request_kwargs={'timeout': timeout}))


def _validate_signer(signer: Any) -> str:
    """Return the signer's checksum address or raise ProvisioningError"""
    address = getattr(signer, 'address', None)
    if not address or not callable(getattr(signer, 'sign_user_operation_hash', None)):
        raise ProvisioningError("Signer must expose an address and sign_user_operation_hash()")
    try:
        return Web3.to_checksum_address(address)
    except (TypeError, ValueError) as e:
        raise ProvisioningError(f"Signer address is invalid: {address!r}") from e


def _provision(signer: Signer, owner: str, bundler_url: str, paymaster_api_key: str,
               rpc_url: str, config: SmartAccountConfig) -> SmartAccount:
    """Resolve the counterfactual account and check every endpoint answers"""
    web3 = _connect(rpc_url, config.request_timeout)
    try:
        chain_id = web3.eth.chain_id
        factory_contract = web3.eth.contract(
            address=Web3.to_checksum_address(config.account_factory_address),
            abi=ACCOUNT_FACTORY_ABI
        )
        address = factory_contract.functions.getAddress(owner, config.account_salt).call()
    except (Web3Exception, requests.RequestException, ValueError) as e:
        raise ProvisioningError(f"RPC endpoint unavailable: {e}") from e

    bundler = BundlerClient(bundler_url, config)
    try:
        entry_points = bundler.supported_entry_points() or []
    except (RpcError, RpcTransportError) as e:
        raise ProvisioningError(f"Bundler endpoint unavailable: {e}") from e
    if config.entry_point_address.lower() not in [entry_point.lower() for entry_point in entry_points]:
        raise ProvisioningError(
            f"Bundler does not support EntryPoint {config.entry_point_address} (supports {entry_points})"
        )

    paymaster = PaymasterClient(config.paymaster_url(chain_id, paymaster_api_key), config.request_timeout)
    try:
        paymaster_chain_id = paymaster.chain_id()
    except (RpcError, RpcTransportError, ValueError) as e:
        raise ProvisioningError(f"Paymaster endpoint unavailable: {e}") from e
    if paymaster_chain_id != chain_id:
        raise ProvisioningError(f"Paymaster serves chain {paymaster_chain_id}, RPC serves chain {chain_id}")

    account = SmartAccount(
        signer=signer,
        owner=owner,
        address=Web3.to_checksum_address(address),
        chain_id=chain_id,
        rpc_url=rpc_url,
        bundler_url=bundler_url,
        config=config,
        web3=web3,
        bundler=bundler,
        paymaster=paymaster,
    )
    logger.info(f"Smart account {account.address} provisioned for owner {owner} on chain {chain_id}")
    return account


class AccountFactory:
    """Creates smart accounts, caching one per (owner, network).

    Concurrent requests for the same pair wait on a single provisioning
    job, whichever event loop they run on. Failures are not cached.
    """

    def __init__(self, max_workers: int = 4):
        self._accounts: Dict[Tuple[str, str], SmartAccount] = {}
        self._pending: Dict[Tuple[str, str], Future] = {}
        # re-entrant: a job that is already done runs its callback inline
        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="account-provisioning")

    async def create_account(self, signer: Signer, bundler_url: str, paymaster_api_key: str,
                             rpc_url: str, config: Optional[SmartAccountConfig] = None) -> SmartAccount:
        owner = _validate_signer(signer)
        if not paymaster_api_key:
            raise ProvisioningError("Paymaster API key is required")

        key = (owner, rpc_url)
        with self._lock:
            account = self._accounts.get(key)
            if account is not None:
                return account

            job = self._pending.get(key)
            if job is None:
                job = self._executor.submit(
                    _provision, signer, owner, bundler_url, paymaster_api_key, rpc_url,
                    config or SmartAccountConfig()
                )
                self._pending[key] = job
                job.add_done_callback(lambda done: self._finish(key, done))
        # a cancelled caller must not cancel the job other callers share
        return await asyncio.shield(asyncio.wrap_future(job))

    def _finish(self, key: Tuple[str, str], job: Future) -> None:
        with self._lock:
            self._pending.pop(key, None)
            if not job.cancelled() and job.exception() is None:
                self._accounts[key] = job.result()

    def clear(self) -> None:
        with self._lock:
            self._accounts.clear()


_account_factory = AccountFactory()


async def create_account(signer: Signer, bundler_url: str, paymaster_api_key: str, rpc_url: str,
                         config: Optional[SmartAccountConfig] = None) -> SmartAccount:
    """Create (or reuse) the smart account for ``signer`` on the network behind ``rpc_url``"""
    return await _account_factory.create_account(signer, bundler_url, paymaster_api_key, rpc_url, config)


async def send_contract_operation(
    account: SmartAccount,
    address: str,
    abi: List[Dict[str, Any]],
    function_name: str,
    args: Sequence[Any],
    value: int = 0,
    *,
    confirmations: Optional[int] = None,
    timeout: Optional[float] = None
) -> TransactionReceipt:
    """Call ``function_name(*args)`` on ``address`` through a sponsored user operation"""
    data = encode_function_call(abi, function_name, args)
    intent = CallIntent.of(Call(to=address, data=data, value=value))
    return await _send_sponsored(account, intent, confirmations, timeout)


async def send_transfer_operation(
    account: SmartAccount,
    to: str,
    amount: int,
    *,
    confirmations: Optional[int] = None,
    timeout: Optional[float] = None
) -> TransactionReceipt:
    """Transfer ``amount`` wei to ``to`` through a sponsored user operation"""
    intent = CallIntent.of(Call(to=to, value=amount))
    return await _send_sponsored(account, intent, confirmations, timeout)


async def _send_sponsored(account: SmartAccount, intent: CallIntent,
                          confirmations: Optional[int], timeout: Optional[float]) -> TransactionReceipt:
    # build -> sponsor -> submit -> wait; a failed stage aborts the whole run
    user_operation = await build_user_operation(account, intent)
    sponsored_user_operation = await sponsor_user_operation(user_operation, SponsorshipPolicy.SPONSORED)
    pending = await submit_user_operation(sponsored_user_operation)
    return await pending.wait(confirmations, timeout)


class SponsoredWalletService:
    """Service running sponsored operations for the relay's signer"""

    def __init__(self, settings: RelaySettings, config: SmartAccountConfig, signer: Optional[Signer] = None):
        self.settings = settings
        self.config = config
        self.signer = signer or LocalAccountSigner.from_key(settings.signer_private_key)

        logger.info(f"Sponsored wallet service initialized for owner {self.signer.address}")

    async def get_account(self) -> SmartAccount:
        return await create_account(
            self.signer,
            self.settings.bundler_url,
            self.settings.paymaster_api_key,
            self.settings.rpc_url,
            self.config
        )

    async def send_eth(self, recipient: str, amount_wei: int) -> Dict:
        """Send ETH from smart account to recipient"""
        account = await self.get_account()
        await asyncio.to_thread(self._validate_balance, account, amount_wei)

        receipt = await send_transfer_operation(account, recipient, amount_wei)
        return self._format_result(account, receipt, recipient=recipient, amount_wei=amount_wei)

    async def call_contract(self, address: str, abi: List[Dict[str, Any]], function_name: str,
                            args: Sequence[Any], value: int = 0) -> Dict:
        account = await self.get_account()
        receipt = await send_contract_operation(account, address, abi, function_name, args, value)
        return self._format_result(account, receipt, contract=address, function_name=function_name)

    def _validate_balance(self, account: SmartAccount, amount_wei: int) -> None:
        """Validate sufficient balance for transfer"""
        try:
            balance_wei = account.web3.eth.get_balance(account.address)
        except (Web3Exception, requests.RequestException, ValueError) as e:
            raise EstimationError(f"Could not read balance of {account.address}: {e}") from e
        logger.info(f"Sending {amount_wei} wei (balance: {balance_wei} wei)")

        if balance_wei < amount_wei:
            raise ValueError(f"Insufficient balance: {balance_wei} wei < {amount_wei} wei")

    def _format_result(self, account: SmartAccount, receipt: TransactionReceipt, **details) -> Dict:
        """Format the pipeline result for consistent response"""
        if receipt.success:
            logger.info(f"UserOperation {receipt.user_operation_hash} succeeded")
        else:
            logger.error(f"UserOperation {receipt.user_operation_hash} reverted: {receipt.reason}")
        return {
            'smart_account': account.address,
            **details,
            'user_operation_hash': receipt.user_operation_hash,
            'transaction_hash': receipt.transaction_hash,
            'block_number': receipt.block_number,
            'status': receipt.status,
            'success': receipt.success
        }


def create_sponsored_wallet_service() -> SponsoredWalletService:
    """Create a sponsored wallet service from environment configuration"""
    return SponsoredWalletService(RelaySettings.from_env(), SmartAccountConfig.from_env())
