"""
Signers able to authorize user operations for a Smart Account owner
"""

from typing import Protocol

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount


class Signer(Protocol):
    """Protocol for user operation signers"""
    address: str

    def sign_user_operation_hash(self, user_operation_hash: bytes) -> bytes:
        """Sign the EntryPoint user operation hash and return the raw signature"""
        ...


class LocalAccountSigner:
    """Signs user operation hashes with a local private key.

    SimpleAccount validates an EIP-191 personal signature over the user
    operation hash, so the hash is wrapped with ``encode_defunct`` before
    signing.
    """

    def __init__(self, account: LocalAccount):
        self.account = account
        self.address = account.address

    @classmethod
    def from_key(cls, private_key: str) -> "LocalAccountSigner":
        return cls(Account.from_key(private_key))

    def sign_user_operation_hash(self, user_operation_hash: bytes) -> bytes:
        message = encode_defunct(primitive=bytes(user_operation_hash))
        return bytes(self.account.sign_message(message).signature)
