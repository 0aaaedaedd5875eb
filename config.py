"""
Configuration for sponsored Smart Account operations
"""

import os
from dataclasses import dataclass
from typing import Optional

# Network constants
ENTRYPOINT_V07 = "0x0000000071727De22E5E9d8BAf0edAc6f37da032"
SIMPLE_ACCOUNT_FACTORY_V07 = "0x91E60e0613810449d098b0b5Ec8b51A0FE8c8985"

# Placeholder gas values sent with the estimation request
DEFAULT_GAS_LIMITS = {
    "call": 300000,
    "verification": 1000000,
    "pre_verification": 60000,
    "fee": 1100000
}

# r=1, s=1, v=27: well-formed ECDSA with a low s value
DUMMY_SIGNATURE = "0x" + "00" * 31 + "01" + "00" * 31 + "01" + "1b"

PIMLICO_PAYMASTER_URL = "https://api.pimlico.io/v2/{chain_id}/rpc?apikey={api_key}"


@dataclass(frozen=True)
class SmartAccountConfig:
    """Configuration for Smart Account provisioning and the user operation pipeline"""

    entry_point_address: str = ENTRYPOINT_V07
    account_factory_address: str = SIMPLE_ACCOUNT_FACTORY_V07
    account_salt: int = 0

    # Paymaster configuration
    paymaster_url_template: str = PIMLICO_PAYMASTER_URL
    sponsorship_policy_id: Optional[str] = None
    smart_account_name: str = "SimpleAccount"
    smart_account_version: str = "0.7.0"

    # Gas configuration
    gas_price_method: Optional[str] = "pimlico_getUserOperationGasPrice"
    gas_price_tier: str = "fast"
    verification_gas_buffer: float = 1.5

    # Transport and confirmation configuration
    request_timeout: float = 30.0
    confirmations: int = 1
    confirmation_timeout: float = 180.0
    poll_interval: float = 2.0

    def paymaster_url(self, chain_id: int, api_key: str) -> str:
        return self.paymaster_url_template.format(chain_id=chain_id, api_key=api_key)

    @classmethod
    def from_env(cls) -> "SmartAccountConfig":
        """Build a config from SMART_ACCOUNT_* / PAYMASTER_* environment variables"""
        defaults = cls()
        config = cls(
            entry_point_address=os.environ.get('SMART_ACCOUNT_ENTRYPOINT', defaults.entry_point_address),
            account_factory_address=os.environ.get('SMART_ACCOUNT_FACTORY', defaults.account_factory_address),
            account_salt=int(os.environ.get('SMART_ACCOUNT_SALT', defaults.account_salt)),
            paymaster_url_template=os.environ.get('PAYMASTER_URL_TEMPLATE', defaults.paymaster_url_template),
            sponsorship_policy_id=os.environ.get('PAYMASTER_SPONSORSHIP_POLICY_ID') or None,
            confirmations=int(os.environ.get('SMART_ACCOUNT_CONFIRMATIONS', defaults.confirmations)),
            confirmation_timeout=float(
                os.environ.get('SMART_ACCOUNT_CONFIRMATION_TIMEOUT', defaults.confirmation_timeout)
            ),
        )
        if config.confirmations < 1:
            raise ValueError("SMART_ACCOUNT_CONFIRMATIONS must be at least 1")
        return config


@dataclass
class RelaySettings:
    """Endpoints and credentials for the HTTP relay"""

    rpc_url: str
    bundler_url: str
    paymaster_api_key: str
    signer_private_key: str
    relay_public_key: str

    @classmethod
    def from_env(cls) -> "RelaySettings":
        values = {}
        for field_name, env_name in (
            ("rpc_url", "RPC_URL"),
            ("bundler_url", "BUNDLER_URL"),
            ("paymaster_api_key", "PAYMASTER_API_KEY"),
            ("signer_private_key", "SIGNER_PRIVATE_KEY"),
            ("relay_public_key", "RELAY_PUBLIC_KEY"),
        ):
            value = os.environ.get(env_name)
            if not value:
                raise ValueError(f"{env_name} environment variable is required")
            values[field_name] = value
        return cls(**values)
