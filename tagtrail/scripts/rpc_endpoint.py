"""Endpoint handle: one JSON-RPC node, verified chain id, typed provider calls."""

from __future__ import annotations

import http.client
import itertools
import json
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from socket import timeout as SocketTimeout
from typing import Any

from error_map import (
    ERR_RPC_BAD_RESULT,
    ERR_RPC_REMOTE,
    ERR_RPC_TIMEOUT,
    ERR_RPC_TRANSPORT,
    RpcCallError,
)
from quantity import parse_quantity, to_hex_quantity

DEFAULT_TIMEOUT_SECONDS = 20.0
RETRYABLE_HTTP_CODES = {429, 502, 503, 504}

_request_ids = itertools.count(1)


def _sleep_backoff(attempt: int) -> None:
    backoffs = [0.15, 0.40]
    if attempt < len(backoffs):
        time.sleep(backoffs[attempt])


def redact_url(url: str) -> str:
    """Hide a trailing API key path segment (``.../v2/<key>``) for logging."""
    head, sep, tail = url.rstrip("/").rpartition("/")
    if sep and len(tail) >= 16 and "." not in tail:
        return f"{head}/****"
    return url


@dataclass(frozen=True)
class RpcEndpoint:
    """Immutable connection handle. ``chain_id`` is the id verified at connect time."""

    url: str
    chain_id: int | None = None
    label: str = "primary"
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    retries: int = 0
    headers: dict[str, str] = field(default_factory=dict, compare=False)

    def _post(self, body: bytes) -> Any:
        last_error: RpcCallError | None = None
        for attempt in range(self.retries + 1):
            req = urllib.request.Request(
                self.url,
                data=body,
                method="POST",
                headers={"Content-Type": "application/json", **self.headers},
            )
            try:
                with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                    text = resp.read().decode("utf-8")
            except (SocketTimeout, TimeoutError) as err:
                raise RpcCallError(str(err) or "rpc request timed out", code=ERR_RPC_TIMEOUT) from err
            except urllib.error.HTTPError as err:
                text = err.read().decode("utf-8", errors="replace")
                last_error = RpcCallError(
                    f"http error {err.code}",
                    rpc_response={"status": err.code, "raw": text},
                )
                if err.code in RETRYABLE_HTTP_CODES and attempt < self.retries:
                    _sleep_backoff(attempt)
                    continue
                raise last_error from err
            except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as err:
                last_error = RpcCallError(str(err))
                if attempt < self.retries:
                    _sleep_backoff(attempt)
                    continue
                raise last_error from err

            try:
                return json.loads(text)
            except json.JSONDecodeError as err:
                raise RpcCallError(
                    "rpc endpoint returned non-json response",
                    rpc_response={"raw": text},
                ) from err
        raise last_error or RpcCallError("unknown transport failure", code=ERR_RPC_TRANSPORT)

    def request(self, method: str, params: list[Any] | None = None) -> Any:
        """Issue one JSON-RPC call and return its ``result``.

        Raises RpcCallError for transport failures and remote ``error`` objects.
        """
        payload = {
            "jsonrpc": "2.0",
            "id": next(_request_ids),
            "method": method,
            "params": list(params or []),
        }
        try:
            rpc_response = self._post(json.dumps(payload).encode("utf-8"))
        except RpcCallError as err:
            err.method = method
            err.details["method"] = method
            raise

        if not isinstance(rpc_response, dict):
            raise RpcCallError(
                "rpc response must be a JSON object",
                code=ERR_RPC_BAD_RESULT,
                method=method,
                rpc_response=rpc_response,
            )
        if "error" in rpc_response:
            error_obj = rpc_response.get("error")
            message = error_obj.get("message") if isinstance(error_obj, dict) else None
            raise RpcCallError(
                f"rpc returned an error response: {message or error_obj}",
                code=ERR_RPC_REMOTE,
                method=method,
                rpc_response=rpc_response,
            )
        return rpc_response.get("result")

    def get_chain_id(self) -> int:
        result = self.request("eth_chainId")
        try:
            return parse_quantity(result)
        except ValueError as err:
            raise RpcCallError(f"invalid chain id: {result!r}", code=ERR_RPC_BAD_RESULT, method="eth_chainId") from err

    def get_block_number(self) -> int:
        result = self.request("eth_blockNumber")
        try:
            return parse_quantity(result)
        except ValueError as err:
            raise RpcCallError(
                f"invalid block number: {result!r}", code=ERR_RPC_BAD_RESULT, method="eth_blockNumber"
            ) from err

    def get_logs(self, logs_filter: dict[str, Any]) -> list[dict[str, Any]]:
        request_filter = dict(logs_filter)
        for key in ("fromBlock", "toBlock"):
            if isinstance(request_filter.get(key), int):
                request_filter[key] = to_hex_quantity(request_filter[key])
        result = self.request("eth_getLogs", [request_filter])
        if not isinstance(result, list):
            raise RpcCallError("eth_getLogs returned a non-array result", code=ERR_RPC_BAD_RESULT, method="eth_getLogs")
        return result

    def call(self, to: str, data: str, block: int | str = "latest") -> str:
        """``eth_call`` a view function; returns the raw ``0x`` output."""
        block_param = to_hex_quantity(block) if isinstance(block, int) else block
        result = self.request("eth_call", [{"to": to, "data": data}, block_param])
        if not isinstance(result, str) or not result.startswith("0x"):
            raise RpcCallError("eth_call returned a non-hex result", code=ERR_RPC_BAD_RESULT, method="eth_call")
        return result
