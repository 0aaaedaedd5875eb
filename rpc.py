"""
JSON-RPC transport shared by the bundler and paymaster clients
"""

import itertools
import logging
from typing import Any, List, Optional

import requests

logger = logging.getLogger(__name__)


class RpcError(Exception):
    """The endpoint answered with a JSON-RPC error (or refused the request)"""

    def __init__(self, method: str, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(f"{method} failed: {message}")
        self.method = method
        self.message = message
        self.code = code
        self.data = data


class RpcTransportError(Exception):
    """No usable answer: connection failure, timeout, server error or malformed body"""

    def __init__(self, method: str, message: str):
        super().__init__(f"{method} failed: {message}")
        self.method = method


class JsonRpcClient:
    """Minimal JSON-RPC 2.0 client over a requests session"""

    def __init__(self, url: str, name: str = "rpc", timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.url = url
        self.name = name
        self.timeout = timeout
        self.session = session or requests.Session()
        self._ids = itertools.count(1)

    def request(self, method: str, params: List) -> Any:
        """Make JSON-RPC request and return its result"""
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": next(self._ids)
        }

        try:
            response = self.session.post(
                self.url,
                json=payload,
                headers={'Content-Type': 'application/json'},
                timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.error(f"{self.name} request failed: {e}")
            raise RpcTransportError(method, str(e)) from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict) and body.get('error'):
            error = body['error']
            if not isinstance(error, dict):
                error = {'message': str(error)}
            logger.error(f"{self.name} error: {error.get('message', 'Unknown error')}")
            raise RpcError(method, error.get('message', 'Unknown error'), error.get('code'), error.get('data'))

        if response.status_code >= 500:
            logger.error(f"{self.name} HTTP error: {response.status_code}")
            raise RpcTransportError(method, f"HTTP {response.status_code}")
        if response.status_code >= 400:
            logger.error(f"{self.name} HTTP error: {response.status_code}")
            raise RpcError(method, f"HTTP {response.status_code}", response.status_code)

        if not isinstance(body, dict) or 'result' not in body:
            raise RpcTransportError(method, "malformed JSON-RPC response")
        return body['result']
