"""
Bundler integration: wire format, submission and confirmation polling
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

import requests
from web3.exceptions import Web3Exception

from config import DUMMY_SIGNATURE, SmartAccountConfig
from errors import ConfirmationTimeout, Reverted, SubmissionRejected, SubmissionUnavailable
from rpc import JsonRpcClient, RpcError, RpcTransportError
from user_operations import (
    SignedUserOperation,
    SponsoredUserOperation,
    UserOperation,
    compute_user_operation_hash,
    parse_quantity,
    to_hex,
)

if TYPE_CHECKING:
    from smart_account import SmartAccount

logger = logging.getLogger(__name__)


def convert_user_operation_to_bundler_format(
    user_op: Union[UserOperation, SignedUserOperation],
    signature: bytes = None
) -> Dict:
    """Convert a UserOperation to the bundler JSON-RPC format (EntryPoint v0.7)"""
    # Handle SignedUserOperation wrapper
    if isinstance(user_op, SignedUserOperation):
        op = user_op.user_operation
        signature = user_op.signature
    else:
        op = user_op

    bundler_dict = {
        "sender": op.sender,
        "nonce": hex(op.nonce),
        "callData": to_hex(op.call_data),
        "callGasLimit": hex(op.call_gas_limit),
        "verificationGasLimit": hex(op.verification_gas_limit),
        "preVerificationGas": hex(op.pre_verification_gas),
        "maxFeePerGas": hex(op.max_fee_per_gas),
        "maxPriorityFeePerGas": hex(op.max_priority_fee_per_gas),
        # Unsigned operations carry a dummy signature for simulation
        "signature": to_hex(signature) if signature else DUMMY_SIGNATURE,
    }

    # Factory fields only while the account is undeployed
    if op.factory:
        bundler_dict.update({
            "factory": op.factory,
            "factoryData": to_hex(op.factory_data),
        })

    # Paymaster fields only once sponsored
    if isinstance(op, SponsoredUserOperation):
        sponsorship = op.sponsorship
        bundler_dict.update({
            "paymaster": sponsorship.paymaster,
            "paymasterVerificationGasLimit": hex(sponsorship.paymaster_verification_gas_limit),
            "paymasterPostOpGasLimit": hex(sponsorship.paymaster_post_op_gas_limit),
            "paymasterData": to_hex(sponsorship.paymaster_data),
        })

    return bundler_dict


class BundlerClient:
    """Client for interacting with ERC-4337 bundlers"""

    def __init__(self, bundler_url: str, config: SmartAccountConfig):
        self.config = config
        self.rpc = JsonRpcClient(bundler_url, name="Bundler", timeout=config.request_timeout)

    def supported_entry_points(self) -> List[str]:
        return self.rpc.request("eth_supportedEntryPoints", [])

    def estimate_user_operation_gas(self, user_operation: UserOperation) -> Dict:
        """Estimate gas for UserOperation (dummy signature)"""
        user_op_dict = convert_user_operation_to_bundler_format(user_operation)
        return self.rpc.request("eth_estimateUserOperationGas", [user_op_dict, self.config.entry_point_address])

    def get_user_operation_gas_price(self, method: str) -> Optional[Dict]:
        """Get current gas prices from the bundler's price method"""
        return self.rpc.request(method, [])

    def send_user_operation(self, signed_user_op: SignedUserOperation) -> str:
        """Send SignedUserOperation to bundler and return the user operation hash"""
        logger.info("Sending UserOperation to bundler...")

        user_op_dict = convert_user_operation_to_bundler_format(signed_user_op)
        logger.debug(f"Full UserOp to bundler: {user_op_dict}")
        return self.rpc.request("eth_sendUserOperation", [user_op_dict, self.config.entry_point_address])

    def get_user_operation_receipt(self, user_operation_hash: str) -> Optional[Dict]:
        return self.rpc.request("eth_getUserOperationReceipt", [user_operation_hash])


@dataclass(frozen=True)
class TransactionReceipt:
    """Receipt of an included user operation"""
    user_operation_hash: str
    transaction_hash: str
    block_number: int
    success: bool
    reason: Optional[str] = None
    actual_gas_used: int = 0
    actual_gas_cost: int = 0
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def status(self) -> str:
        return "success" if self.success else "reverted"

    def raise_for_status(self) -> None:
        """Raise Reverted if the batched calls failed on-chain"""
        if not self.success:
            raise Reverted(self)

    @classmethod
    def from_rpc(cls, payload: Dict[str, Any]) -> "TransactionReceipt":
        receipt = payload.get('receipt') or {}
        return cls(
            user_operation_hash=payload['userOpHash'],
            transaction_hash=receipt.get('transactionHash', ''),
            block_number=parse_quantity(receipt['blockNumber']),
            success=bool(payload.get('success', False)),
            reason=payload.get('reason') or None,
            actual_gas_used=parse_quantity(payload.get('actualGasUsed', 0)),
            actual_gas_cost=parse_quantity(payload.get('actualGasCost', 0)),
            raw=payload,
        )


@dataclass
class PendingUserOperation:
    """Handle on a submitted user operation"""
    user_operation_hash: str
    user_operation: SignedUserOperation = field(repr=False)
    account: "SmartAccount" = field(repr=False, compare=False)

    async def wait(self, confirmations: Optional[int] = None,
                   timeout: Optional[float] = None) -> TransactionReceipt:
        return await wait_for_user_operation(self, confirmations, timeout)


async def submit_user_operation(operation: SponsoredUserOperation) -> PendingUserOperation:
    """Sign a sponsored UserOperation and hand it to the bundler.

    Returns as soon as the bundler accepts the operation; inclusion is
    awaited separately through the returned handle.
    """
    if not isinstance(operation, SponsoredUserOperation):
        state = getattr(operation, "state", type(operation).__name__)
        raise SubmissionRejected(f"Only sponsored user operations can be submitted (got {state})")
    return await asyncio.to_thread(_submit_user_operation, operation)


def _submit_user_operation(operation: SponsoredUserOperation) -> PendingUserOperation:
    account = operation.account
    user_operation_hash = compute_user_operation_hash(
        operation, account.config.entry_point_address, account.chain_id
    )
    signed_user_operation = SignedUserOperation(
        user_operation=operation,
        signature=account.signer.sign_user_operation_hash(user_operation_hash)
    )

    try:
        result = account.bundler.send_user_operation(signed_user_operation)
    except RpcError as e:
        raise SubmissionRejected(f"Bundler rejected UserOperation: {e.message}", e.code) from e
    except RpcTransportError as e:
        raise SubmissionUnavailable(f"Bundler unavailable: {e}") from e

    if not isinstance(result, str):
        raise SubmissionUnavailable(f"Bundler returned invalid user operation hash: {result!r}")
    if result.lower() != to_hex(user_operation_hash):
        logger.warning(f"Bundler hash {result} differs from local hash {to_hex(user_operation_hash)}")

    logger.info(f"UserOperation sent successfully: {result}")
    return PendingUserOperation(
        user_operation_hash=result,
        user_operation=signed_user_operation,
        account=account
    )


async def wait_for_user_operation(
    handle: PendingUserOperation,
    confirmations: Optional[int] = None,
    timeout: Optional[float] = None
) -> TransactionReceipt:
    """Poll until the user operation has ``confirmations`` confirmations.

    The deadline covers the whole wait, in-flight polls included. A reverted
    operation is returned like any other receipt; check ``receipt.status``
    or call ``receipt.raise_for_status()``.
    """
    config = handle.account.config
    if confirmations is None:
        confirmations = config.confirmations
    if confirmations < 1:
        raise ValueError("confirmations must be at least 1")
    if timeout is None:
        timeout = config.confirmation_timeout

    try:
        return await asyncio.wait_for(_poll_until_confirmed(handle, confirmations), timeout)
    except asyncio.TimeoutError:
        raise ConfirmationTimeout(
            f"UserOperation {handle.user_operation_hash} not confirmed within {timeout}s",
            handle.user_operation_hash
        ) from None


async def _poll_until_confirmed(handle: PendingUserOperation, confirmations: int) -> TransactionReceipt:
    poll_interval = handle.account.config.poll_interval
    receipt = None

    while True:
        if receipt is None:
            receipt = await asyncio.to_thread(_poll_receipt, handle)
            if receipt is not None and confirmations == 1:
                return receipt

        if receipt is not None:
            head = await asyncio.to_thread(_poll_block_number, handle.account)
            if head is not None and head - receipt.block_number + 1 >= confirmations:
                logger.info(f"UserOperation {handle.user_operation_hash} has {confirmations} confirmations")
                return receipt

        await asyncio.sleep(poll_interval)


def _poll_receipt(handle: PendingUserOperation) -> Optional[TransactionReceipt]:
    try:
        payload = handle.account.bundler.get_user_operation_receipt(handle.user_operation_hash)
    except (RpcError, RpcTransportError) as e:
        logger.warning(f"Receipt poll for {handle.user_operation_hash} failed: {e}")
        return None
    if not payload:
        return None

    try:
        receipt = TransactionReceipt.from_rpc(payload)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"Ignoring malformed receipt for {handle.user_operation_hash}: {e}")
        return None

    logger.info(
        f"UserOp receipt: status={receipt.status} tx={receipt.transaction_hash} block={receipt.block_number}"
    )
    return receipt


def _poll_block_number(account: "SmartAccount") -> Optional[int]:
    try:
        return account.web3.eth.block_number
    except (Web3Exception, requests.RequestException, ValueError) as e:
        logger.warning(f"Block number poll failed: {e}")
        return None
