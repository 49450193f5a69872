"""JSON-RPC over HTTP with retries and endpoint failover"""
import itertools
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from kubi_pipeline.errors import RpcResponseError, TransientRpcError

logger = logging.getLogger(__name__)

# JSON-RPC error codes providers use for throttling / temporary unavailability
TRANSIENT_RPC_CODES = {-32005, -32603, 429}
RETRY_BASE_DELAY = 0.5


class JsonRpcClient:
    """
    Minimal JSON-RPC client for one network.

    Endpoints are tried in order. A transient failure is retried on the
    same endpoint with exponential backoff, then the client fails over to
    the next endpoint and keeps using it for later calls.
    """

    def __init__(self, urls: List[str], timeout: float = 30.0, max_retries: int = 3,
                 session: Optional[requests.Session] = None):
        if not urls:
            raise ValueError("at least one RPC URL is required")
        self.urls = list(urls)
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.session = session or requests.Session()
        self._current = 0
        self._ids = itertools.count(1)
        self._sleep = time.sleep

    @property
    def current_url(self) -> str:
        return self.urls[self._current]

    def _post(self, url: str, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientRpcError(f"{method} via {url}: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientRpcError(f"{method} via {url}: HTTP {response.status_code}")
        if response.status_code >= 400:
            raise RpcResponseError(f"{method} via {url}: HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise RpcResponseError(f"{method} via {url}: malformed JSON response") from e

        if not isinstance(body, dict):
            raise RpcResponseError(f"{method} via {url}: unexpected response shape")

        error = body.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", "") if isinstance(error, dict) else str(error)
            if code in TRANSIENT_RPC_CODES or "rate limit" in message.lower():
                raise TransientRpcError(f"{method} via {url}: {message}")
            raise RpcResponseError(f"{method} via {url}: {message} (code={code})")

        if "result" not in body:
            raise RpcResponseError(f"{method} via {url}: response has no result")
        return body["result"]

    def call(self, method: str, params: Optional[list] = None) -> Any:
        """
        Perform a JSON-RPC call.

        Raises:
            TransientRpcError: If every endpoint failed with transient errors
            RpcResponseError: On a non-retryable response
        """
        params = params or []
        last_error: Optional[Exception] = None

        for offset in range(len(self.urls)):
            index = (self._current + offset) % len(self.urls)
            url = self.urls[index]
            for attempt in range(self.max_retries):
                try:
                    result = self._post(url, method, params)
                    if index != self._current:
                        logger.warning(f"RPC failover: now using {url}")
                        self._current = index
                    return result
                except TransientRpcError as e:
                    last_error = e
                    if attempt < self.max_retries - 1:
                        delay = RETRY_BASE_DELAY * (2 ** attempt)
                        logger.warning(f"Retrying {method} in {delay:.1f}s after error: {e}")
                        self._sleep(delay)

        raise TransientRpcError(f"{method} failed on all endpoints: {last_error}")

    def block_number(self) -> int:
        return int(self.call("eth_blockNumber"), 16)

    def get_logs(self, address: str, topics: List[str], from_block: int, to_block: int) -> List[Dict]:
        return self.call("eth_getLogs", [{
            "address": address,
            "topics": [topics],
            "fromBlock": hex(from_block),
            "toBlock": hex(to_block),
        }])

    def block_timestamp(self, block_number: int) -> datetime:
        block = self.call("eth_getBlockByNumber", [hex(block_number), False])
        if not block or "timestamp" not in block:
            raise RpcResponseError(f"block {block_number} not found")
        return datetime.fromtimestamp(int(block["timestamp"], 16), tz=timezone.utc)
