"""
Failures raised by the user operation pipeline, one per stage outcome
"""

from typing import Any, Optional


class SmartAccountError(Exception):
    """Base class for pipeline failures"""


class ProvisioningError(SmartAccountError):
    """Smart account could not be provisioned (bad signer or unreachable endpoint)"""


class EncodingError(SmartAccountError):
    """Calls could not be encoded into user operation calldata"""


class EstimationError(SmartAccountError):
    """Nonce, deployment state or gas could not be read for a user operation"""


class SponsorshipDenied(SmartAccountError):
    """Paymaster answered and declined to sponsor the user operation"""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class SponsorshipUnavailable(SmartAccountError):
    """Paymaster could not be reached or returned an unusable answer"""


class SubmissionRejected(SmartAccountError):
    """Bundler validated and rejected the user operation"""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class SubmissionUnavailable(SmartAccountError):
    """Bundler could not be reached"""


class ConfirmationTimeout(SmartAccountError):
    """User operation was not observed on-chain before the deadline"""

    def __init__(self, message: str, user_operation_hash: str):
        super().__init__(message)
        self.user_operation_hash = user_operation_hash


class Reverted(SmartAccountError):
    """User operation was included but its calls failed on-chain"""

    def __init__(self, receipt: Any):
        reason = getattr(receipt, "reason", None) or "unknown reason"
        super().__init__(
            f"UserOperation {receipt.user_operation_hash} reverted in "
            f"transaction {receipt.transaction_hash}: {reason}"
        )
        self.receipt = receipt
