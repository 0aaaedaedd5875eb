"""
Paymaster sponsorship for user operations
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from hexbytes import HexBytes
from web3 import Web3

from bundler import convert_user_operation_to_bundler_format
from errors import SponsorshipDenied, SponsorshipUnavailable
from rpc import JsonRpcClient, RpcError, RpcTransportError
from user_operations import SponsoredUserOperation, UnsponsoredUserOperation, parse_quantity

logger = logging.getLogger(__name__)

# paymaster(20) || verificationGasLimit(16) || postOpGasLimit(16) || paymasterData
PAYMASTER_FIELDS_LENGTH = 52

# Gas fields a paymaster may echo back with its own suggestion
SUGGESTED_GAS_FIELDS = (
    ('callGasLimit', 'call_gas_limit'),
    ('verificationGasLimit', 'verification_gas_limit'),
    ('preVerificationGas', 'pre_verification_gas'),
    ('maxFeePerGas', 'max_fee_per_gas'),
    ('maxPriorityFeePerGas', 'max_priority_fee_per_gas'),
)


class SponsorshipPolicy(str, Enum):
    """Who pays for gas, as requested from the paymaster"""
    SPONSORED = "SPONSORED"
    ERC20 = "ERC20"


@dataclass(frozen=True)
class SponsorIdentity:
    """Smart account metadata attached to every sponsorship request"""
    name: str
    version: str


@dataclass(frozen=True)
class SponsorshipPayload:
    """Opaque paymaster data committing to one user operation"""
    paymaster_and_data: bytes
    policy: SponsorshipPolicy
    sponsor: SponsorIdentity

    @property
    def paymaster(self) -> str:
        return Web3.to_checksum_address(self.paymaster_and_data[:20])

    @property
    def paymaster_verification_gas_limit(self) -> int:
        return int.from_bytes(self.paymaster_and_data[20:36], "big")

    @property
    def paymaster_post_op_gas_limit(self) -> int:
        return int.from_bytes(self.paymaster_and_data[36:52], "big")

    @property
    def paymaster_data(self) -> bytes:
        return self.paymaster_and_data[52:]


def pack_paymaster_fields(paymaster: str, verification_gas_limit: int,
                          post_op_gas_limit: int, paymaster_data: bytes) -> bytes:
    return (
        bytes(HexBytes(paymaster))
        + verification_gas_limit.to_bytes(16, "big")
        + post_op_gas_limit.to_bytes(16, "big")
        + bytes(paymaster_data)
    )


def build_sponsorship_context(policy: SponsorshipPolicy, sponsor: SponsorIdentity,
                              sponsorship_policy_id: Optional[str] = None) -> Dict[str, Any]:
    context = {
        "mode": policy.value,
        "calculateGasLimits": False,
        "sponsorshipInfo": {
            "smartAccountInfo": {
                "name": sponsor.name,
                "version": sponsor.version,
            },
        },
    }
    if sponsorship_policy_id:
        context["sponsorshipPolicyId"] = sponsorship_policy_id
    return context


class PaymasterClient:
    """Client for ERC-4337 paymaster services (pm_sponsorUserOperation)"""

    def __init__(self, url: str, timeout: float = 30.0):
        self.rpc = JsonRpcClient(url, name="Paymaster", timeout=timeout)

    def chain_id(self) -> int:
        return parse_quantity(self.rpc.request("eth_chainId", []))

    def sponsor_user_operation(self, user_op_dict: Dict, entry_point: str, context: Dict) -> Dict:
        return self.rpc.request("pm_sponsorUserOperation", [user_op_dict, entry_point, context])


async def sponsor_user_operation(
    operation: UnsponsoredUserOperation,
    policy: SponsorshipPolicy = SponsorshipPolicy.SPONSORED
) -> SponsoredUserOperation:
    """Request sponsorship for ``operation`` and return its sponsored counterpart.

    Gas and nonce fields are carried over untouched; only the paymaster
    payload is added. Each call issues a fresh request, so a payload is never
    shared between two sponsored operations.
    """
    if not isinstance(operation, UnsponsoredUserOperation):
        raise TypeError(f"Expected an unsponsored user operation, got {type(operation).__name__}")
    return await asyncio.to_thread(_sponsor_user_operation, operation, policy)


def _sponsor_user_operation(operation: UnsponsoredUserOperation,
                            policy: SponsorshipPolicy) -> SponsoredUserOperation:
    account = operation.account
    config = account.config
    sponsor = SponsorIdentity(config.smart_account_name, config.smart_account_version)
    context = build_sponsorship_context(policy, sponsor, config.sponsorship_policy_id)

    logger.info(f"Requesting {policy.value} sponsorship for {operation.sender} nonce={operation.nonce}")
    try:
        result = account.paymaster.sponsor_user_operation(
            convert_user_operation_to_bundler_format(operation),
            config.entry_point_address,
            context
        )
    except RpcError as e:
        raise SponsorshipDenied(f"Paymaster declined sponsorship: {e.message}", e.code) from e
    except RpcTransportError as e:
        raise SponsorshipUnavailable(f"Paymaster unavailable: {e}") from e

    payload = SponsorshipPayload(
        paymaster_and_data=_parse_paymaster_and_data(result),
        policy=policy,
        sponsor=sponsor,
    )
    _warn_on_gas_suggestions(operation, result)
    logger.info(f"UserOperation sponsored by paymaster {payload.paymaster}")
    return operation.with_sponsorship(payload)


def _parse_paymaster_and_data(result: Any) -> bytes:
    """Accept a packed paymasterAndData or the split v0.7 paymaster fields"""
    if not isinstance(result, dict):
        raise SponsorshipUnavailable(f"Paymaster returned invalid sponsorship payload: {result!r}")

    try:
        if result.get('paymasterAndData'):
            paymaster_and_data = bytes(HexBytes(result['paymasterAndData']))
        elif result.get('paymaster'):
            paymaster_and_data = pack_paymaster_fields(
                result['paymaster'],
                parse_quantity(result.get('paymasterVerificationGasLimit', 0)),
                parse_quantity(result.get('paymasterPostOpGasLimit', 0)),
                bytes(HexBytes(result.get('paymasterData') or '0x')),
            )
        else:
            raise SponsorshipUnavailable("Paymaster response carries no sponsorship payload")
    except (TypeError, ValueError, OverflowError) as e:
        raise SponsorshipUnavailable(f"Paymaster returned malformed sponsorship payload: {e}") from e

    if len(paymaster_and_data) < PAYMASTER_FIELDS_LENGTH:
        raise SponsorshipUnavailable(
            f"Paymaster payload too short ({len(paymaster_and_data)} bytes) for EntryPoint v0.7"
        )
    return paymaster_and_data


def _warn_on_gas_suggestions(operation: UnsponsoredUserOperation, result: Dict) -> None:
    """Gas suggestions are not adopted; flag the ones the operation does not match"""
    for rpc_name, field_name in SUGGESTED_GAS_FIELDS:
        if result.get(rpc_name) is None:
            continue
        try:
            suggested = parse_quantity(result[rpc_name])
        except (TypeError, ValueError):
            continue
        current = getattr(operation, field_name)
        if suggested != current:
            logger.warning(
                f"Paymaster suggested {rpc_name}={suggested}, UserOperation keeps {current}"
            )
