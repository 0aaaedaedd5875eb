"""
Sponsored Smart Account relay

A small HTTP service that:
1. Authenticates client requests with Ed25519 signatures
2. Runs ETH transfers and contract calls as sponsored user operations
3. Returns the on-chain receipt once the operation is confirmed
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from flask import Flask, abort, jsonify, request
from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

from errors import (
    ConfirmationTimeout,
    EncodingError,
    SmartAccountError,
    SponsorshipDenied,
    SubmissionRejected,
)
from smart_account import SponsoredWalletService, create_sponsored_wallet_service

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Constants
SIGNATURE_HEADER = "X-Signature-Ed25519"
TIMESTAMP_HEADER = "X-Signature-Timestamp"

# Server defaults
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080

ERROR_STATUS_CODES = (
    (EncodingError, 400),
    (SponsorshipDenied, 402),
    (SubmissionRejected, 409),
    (ConfirmationTimeout, 504),
    (SmartAccountError, 502),
)


def verify_request_signature(public_key: str, signature: str, timestamp: str, body: str) -> None:
    """Verify client request signature"""
    try:
        verify_key = VerifyKey(key=bytes.fromhex(public_key))
        signed_message = f"{timestamp}{body}".encode("utf-8")
        verify_key.verify(smessage=signed_message, signature=bytes.fromhex(signature))
    except (BadSignatureError, ValueError):
        logger.warning("Invalid request signature")
        abort(401, description="Invalid request signature")


def parse_amount_wei(value: Any) -> int:
    """Parse a positive wei amount given as an int or a decimal string"""
    try:
        amount = int(value)
    except (TypeError, ValueError):
        raise ValueError("amount_wei must be an integer") from None
    if amount <= 0:
        raise ValueError("amount_wei must be greater than 0")
    return amount


def error_response(error: Exception):
    if isinstance(error, ValueError):
        return jsonify({"error": "ValueError", "message": str(error)}), 400
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return jsonify({"error": type(error).__name__, "message": str(error)}), status_code
    raise error


class RelayHandler:
    """Handles relay requests and maps pipeline outcomes to HTTP responses"""

    def __init__(self, service: Optional[SponsoredWalletService] = None):
        self.app = Flask(__name__)
        self.service = service or create_sponsored_wallet_service()
        self._setup_routes()

    def _setup_routes(self) -> None:
        """Set up Flask routes"""
        self.app.route("/transfer", methods=["POST"])(self.handle_transfer)
        self.app.route("/contract-call", methods=["POST"])(self.handle_contract_call)
        self.app.route("/account", methods=["GET"])(self.handle_account)
        self.app.route("/health", methods=["GET"])(self.health_check)

    def _authenticated_payload(self) -> Dict[str, Any]:
        signature = request.headers.get(SIGNATURE_HEADER)
        timestamp = request.headers.get(TIMESTAMP_HEADER)
        if not signature or not timestamp:
            abort(401, description="Missing request signature")

        body = request.get_data(as_text=True)
        verify_request_signature(self.service.settings.relay_public_key, signature, timestamp, body)

        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            abort(400, description="Request body must be a JSON object")
        return payload

    def handle_transfer(self):
        """Send ETH as a sponsored user operation"""
        payload = self._authenticated_payload()
        try:
            amount_wei = parse_amount_wei(payload.get("amount_wei"))
            recipient = payload.get("to")
            if not recipient:
                raise ValueError("to is required")
            result = asyncio.run(self.service.send_eth(recipient, amount_wei))
        except (ValueError, SmartAccountError) as e:
            logger.error(f"Transfer failed: {e}")
            return error_response(e)
        return jsonify(result)

    def handle_contract_call(self):
        """Call a contract function as a sponsored user operation"""
        payload = self._authenticated_payload()
        try:
            for required in ("address", "abi", "function_name"):
                if not payload.get(required):
                    raise ValueError(f"{required} is required")
            result = asyncio.run(self.service.call_contract(
                payload["address"],
                payload["abi"],
                payload["function_name"],
                payload.get("args", []),
                int(payload.get("value", 0))
            ))
        except (ValueError, SmartAccountError) as e:
            logger.error(f"Contract call failed: {e}")
            return error_response(e)
        return jsonify(result)

    def handle_account(self):
        """Report the relay's smart account"""
        try:
            account = asyncio.run(self.service.get_account())
        except SmartAccountError as e:
            return error_response(e)
        return jsonify({
            "owner": account.owner,
            "smart_account": account.address,
            "chain_id": account.chain_id
        })

    def health_check(self):
        """Dead-simple health check endpoint"""
        return "OK", 200

    def run(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> None:
        """Run the Flask application"""
        self.app.run(host=host, port=port)


if __name__ == "__main__":
    handler = RelayHandler()
    handler.run()
