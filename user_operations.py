"""
UserOperation types, calldata encoding and the Operation Builder
"""

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import requests
from eth_abi import encode
from eth_abi.exceptions import EncodingError as AbiEncodingError
from eth_abi.exceptions import ParseError as AbiParseError
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import Web3Exception

from config import DEFAULT_GAS_LIMITS
from errors import EncodingError, EstimationError
from rpc import RpcError, RpcTransportError

if TYPE_CHECKING:
    from paymaster import SponsorshipPayload
    from smart_account import SmartAccount

logger = logging.getLogger(__name__)

# SimpleAccount v0.7 entry points
EXECUTE_SELECTOR = Web3.keccak(text="execute(address,uint256,bytes)")[:4]
EXECUTE_BATCH_SELECTOR = Web3.keccak(text="executeBatch(address[],uint256[],bytes[])")[:4]
CREATE_ACCOUNT_SELECTOR = Web3.keccak(text="createAccount(address,uint256)")[:4]

GET_NONCE_ABI = [{
    "inputs": [{"name": "sender", "type": "address"}, {"name": "key", "type": "uint192"}],
    "name": "getNonce",
    "outputs": [{"name": "", "type": "uint256"}],
    "stateMutability": "view",
    "type": "function"
}]

_ABI_ERRORS = (AbiEncodingError, AbiParseError, TypeError, ValueError, OverflowError)


def parse_quantity(value: Union[int, str]) -> int:
    """Parse a JSON-RPC quantity (hex string or int)"""
    if isinstance(value, int):
        return value
    return int(value, 16)


def to_hex(data: bytes) -> str:
    return "0x" + bytes(data).hex()


@dataclass(frozen=True)
class Call:
    """One target call: a contract invocation or a plain value transfer"""
    to: str
    data: bytes = b''
    value: int = 0


@dataclass(frozen=True)
class CallIntent:
    """Ordered, non-empty sequence of calls executed by one user operation"""
    calls: Tuple[Call, ...]

    def __post_init__(self):
        calls = tuple(self.calls)
        if not calls:
            raise EncodingError("CallIntent requires at least one call")
        object.__setattr__(self, 'calls', calls)

    @classmethod
    def of(cls, *calls: Call) -> "CallIntent":
        return cls(calls)

    def __iter__(self):
        return iter(self.calls)

    def __len__(self) -> int:
        return len(self.calls)


# Provider-less handle; only its contract encoder is used
_abi_encoder = Web3()


def encode_function_call(abi: List[Dict[str, Any]], function_name: str, args: Sequence[Any]) -> bytes:
    """ABI-encode ``function_name(*args)`` against ``abi``.

    Arguments go through web3's normalizers, so ``bytes``/``bytesN`` values
    may be given as hex strings. Address arguments must be checksummed.
    Overloads are resolved by web3 from the argument types.
    """
    args = list(args or [])
    functions = [
        item for item in abi
        if item.get("type", "function") == "function" and item.get("name") == function_name
    ]
    if not functions:
        raise EncodingError(f"Function {function_name} not found in ABI")

    if not any(len(fn.get("inputs", [])) == len(args) for fn in functions):
        raise EncodingError(
            f"Function {function_name} takes {[len(fn.get('inputs', [])) for fn in functions]} "
            f"arguments, got {len(args)}"
        )

    try:
        contract = _abi_encoder.eth.contract(abi=abi)
        return bytes(HexBytes(contract.encode_abi(function_name, args=args)))
    except (Web3Exception,) + _ABI_ERRORS as e:
        raise EncodingError(f"Could not encode arguments for {function_name}: {e}") from e


def _checksum(address: str) -> str:
    try:
        return Web3.to_checksum_address(address)
    except (TypeError, ValueError) as e:
        raise EncodingError(f"Invalid address: {address!r}") from e


def encode_execute_calldata(intent: CallIntent) -> bytes:
    """Wrap the intent in SimpleAccount execute / executeBatch calldata"""
    try:
        for call in intent:
            if call.value < 0:
                raise EncodingError(f"Negative value for call to {call.to}")

        if len(intent) == 1:
            call = intent.calls[0]
            return bytes(EXECUTE_SELECTOR) + encode(
                ['address', 'uint256', 'bytes'],
                [_checksum(call.to), call.value, bytes(call.data)]
            )

        return bytes(EXECUTE_BATCH_SELECTOR) + encode(
            ['address[]', 'uint256[]', 'bytes[]'],
            [
                [_checksum(call.to) for call in intent],
                [call.value for call in intent],
                [bytes(call.data) for call in intent],
            ]
        )
    except _ABI_ERRORS as e:
        raise EncodingError(f"Could not encode account calldata: {e}") from e


def encode_create_account(owner: str, salt: int) -> bytes:
    """Factory calldata deploying the account on its first operation"""
    return bytes(CREATE_ACCOUNT_SELECTOR) + encode(['address', 'uint256'], [_checksum(owner), salt])


@dataclass(frozen=True)
class UserOperation:
    """Fields shared by every user operation state (EntryPoint v0.7 layout)"""
    account: "SmartAccount" = field(repr=False, compare=False)
    sender: str
    nonce: int
    factory: Optional[str]
    factory_data: bytes
    call_data: bytes
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int

    state = "draft"

    @property
    def paymaster_and_data(self) -> bytes:
        return b''

    def _field_values(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in dataclasses.fields(UserOperation)}


@dataclass(frozen=True)
class UnsponsoredUserOperation(UserOperation):
    """Built user operation, not yet sponsored"""

    state = "unsponsored"

    def with_sponsorship(self, sponsorship: "SponsorshipPayload") -> "SponsoredUserOperation":
        """Return the sponsored counterpart; this operation is left untouched"""
        return SponsoredUserOperation(**self._field_values(), sponsorship=sponsorship)


@dataclass(frozen=True)
class SponsoredUserOperation(UserOperation):
    """User operation carrying a paymaster sponsorship, ready for submission"""
    sponsorship: "SponsorshipPayload" = None

    state = "sponsored"

    def __post_init__(self):
        if self.sponsorship is None:
            raise TypeError("SponsoredUserOperation requires a sponsorship payload")

    @property
    def paymaster_and_data(self) -> bytes:
        return self.sponsorship.paymaster_and_data


@dataclass
class SignedUserOperation:
    """Wrapper holding a sponsored UserOperation and its signature"""
    user_operation: SponsoredUserOperation
    signature: bytes

    state = "submitted"


def compute_user_operation_hash(user_op: UserOperation, entry_point: str, chain_id: int) -> bytes:
    """EntryPoint v0.7 hash: keccak(abi.encode(keccak(pack(userOp)), entryPoint, chainId))"""
    if user_op.factory:
        init_code = bytes(HexBytes(user_op.factory)) + bytes(user_op.factory_data)
    else:
        init_code = b''

    # accountGasLimits = verificationGasLimit || callGasLimit, gasFees = priority || max
    account_gas_limits = (
        user_op.verification_gas_limit.to_bytes(16, "big") + user_op.call_gas_limit.to_bytes(16, "big")
    )
    gas_fees = (
        user_op.max_priority_fee_per_gas.to_bytes(16, "big") + user_op.max_fee_per_gas.to_bytes(16, "big")
    )

    packed = encode(
        ["address", "uint256", "bytes32", "bytes32", "bytes32", "uint256", "bytes32", "bytes32"],
        [
            Web3.to_checksum_address(user_op.sender),
            user_op.nonce,
            Web3.keccak(init_code),
            Web3.keccak(bytes(user_op.call_data)),
            account_gas_limits,
            user_op.pre_verification_gas,
            gas_fees,
            Web3.keccak(user_op.paymaster_and_data),
        ],
    )
    return bytes(Web3.keccak(
        encode(["bytes32", "address", "uint256"], [Web3.keccak(packed), Web3.to_checksum_address(entry_point), chain_id])
    ))


async def build_user_operation(
    account: "SmartAccount",
    calls: Union[CallIntent, Iterable[Call]]
) -> UnsponsoredUserOperation:
    """Build an unsponsored UserOperation for ``calls`` against the account's current state"""
    intent = calls if isinstance(calls, CallIntent) else CallIntent(tuple(calls))
    call_data = encode_execute_calldata(intent)
    return await asyncio.to_thread(_build_user_operation, account, call_data)


def _build_user_operation(account: "SmartAccount", call_data: bytes) -> UnsponsoredUserOperation:
    nonce = _get_nonce(account)
    factory, factory_data = _get_init_fields(account)
    max_fee_per_gas, max_priority_fee_per_gas = _get_gas_prices(account)

    draft = UnsponsoredUserOperation(
        account=account,
        sender=account.address,
        nonce=nonce,
        factory=factory,
        factory_data=factory_data,
        call_data=call_data,
        call_gas_limit=DEFAULT_GAS_LIMITS["call"],
        verification_gas_limit=DEFAULT_GAS_LIMITS["verification"],
        pre_verification_gas=DEFAULT_GAS_LIMITS["pre_verification"],
        max_fee_per_gas=max_fee_per_gas,
        max_priority_fee_per_gas=max_priority_fee_per_gas,
    )

    try:
        estimates = account.bundler.estimate_user_operation_gas(draft)
    except (RpcError, RpcTransportError) as e:
        raise EstimationError(f"Gas estimation failed: {e}") from e

    try:
        call_gas_limit = parse_quantity(estimates['callGasLimit'])
        base_verification_gas = parse_quantity(estimates['verificationGasLimit'])
        pre_verification_gas = parse_quantity(estimates['preVerificationGas'])
    except (KeyError, TypeError, ValueError) as e:
        raise EstimationError(f"Bundler returned invalid gas estimate: {estimates!r}") from e

    user_operation = dataclasses.replace(
        draft,
        call_gas_limit=call_gas_limit,
        verification_gas_limit=int(base_verification_gas * account.config.verification_gas_buffer),
        pre_verification_gas=pre_verification_gas,
    )
    logger.info(
        f"Built UserOperation for {account.address}: nonce={nonce}, "
        f"callGas={user_operation.call_gas_limit}, verificationGas={user_operation.verification_gas_limit}"
    )
    return user_operation


def _get_nonce(account: "SmartAccount") -> int:
    """Get current nonce for smart account from EntryPoint"""
    try:
        entry_point_contract = account.web3.eth.contract(
            address=Web3.to_checksum_address(account.config.entry_point_address),
            abi=GET_NONCE_ABI
        )
        nonce = entry_point_contract.functions.getNonce(
            Web3.to_checksum_address(account.address),
            0  # Default key
        ).call()
    except (Web3Exception, requests.RequestException, ValueError) as e:
        raise EstimationError(f"Could not read nonce for {account.address}: {e}") from e

    logger.info(f"Current nonce: {nonce}")
    return nonce


def _get_init_fields(account: "SmartAccount") -> Tuple[Optional[str], bytes]:
    """Factory fields are only sent while the account is not deployed"""
    try:
        code = account.web3.eth.get_code(Web3.to_checksum_address(account.address))
    except (Web3Exception, requests.RequestException, ValueError) as e:
        raise EstimationError(f"Could not read code at {account.address}: {e}") from e

    if len(code) > 0:
        return None, b''
    logger.info(f"Smart account {account.address} not deployed yet, attaching factory data")
    return account.config.account_factory_address, account.factory_data


def _get_gas_prices(account: "SmartAccount") -> Tuple[int, int]:
    """Gas prices from the bundler, or from the node when the bundler has no price method"""
    config = account.config
    if config.gas_price_method:
        try:
            gas_prices = account.bundler.get_user_operation_gas_price(config.gas_price_method)
        except RpcTransportError as e:
            raise EstimationError(f"Could not fetch gas prices: {e}") from e
        except RpcError as e:
            logger.warning(f"{config.gas_price_method} unavailable ({e.message}), using node fee data")
            gas_prices = None

        if gas_prices and config.gas_price_tier in gas_prices:
            tier = gas_prices[config.gas_price_tier]
            try:
                return parse_quantity(tier['maxFeePerGas']), parse_quantity(tier['maxPriorityFeePerGas'])
            except (KeyError, TypeError, ValueError) as e:
                raise EstimationError(f"Bundler returned invalid gas prices: {tier!r}") from e

    try:
        max_priority_fee_per_gas = account.web3.eth.max_priority_fee
        base_fee = account.web3.eth.get_block('latest').get('baseFeePerGas', 0)
    except (Web3Exception, requests.RequestException, ValueError) as e:
        raise EstimationError(f"Could not read fee data: {e}") from e
    return 2 * base_fee + max_priority_fee_per_gas, max_priority_fee_per_gas
