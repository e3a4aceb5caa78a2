"""Stable error codes and the exception taxonomy shared by every workflow."""

from __future__ import annotations

from typing import Any

ERR_INVALID_REQUEST = "INVALID_REQUEST"
ERR_INVALID_CONFIG = "INVALID_CONFIG"
ERR_CONNECTION_FAILED = "CONNECTION_FAILED"
ERR_RPC_TRANSPORT = "RPC_TRANSPORT"
ERR_RPC_TIMEOUT = "RPC_TIMEOUT"
ERR_RPC_REMOTE = "RPC_REMOTE"
ERR_RPC_BAD_RESULT = "RPC_BAD_RESULT"
ERR_SCAN_WINDOW_FAILED = "SCAN_WINDOW_FAILED"
ERR_LOG_DECODE_FAILED = "LOG_DECODE_FAILED"
ERR_STATE_QUERY_FAILED = "STATE_QUERY_FAILED"
ERR_INCOMPLETE_RESULT = "INCOMPLETE_RESULT"
ERR_INTERNAL = "INTERNAL_ERROR"

EXIT_OK = 0
EXIT_RPC_FAILURE = 1
EXIT_INVALID_REQUEST = 2
EXIT_INCOMPLETE = 3


class RegistryError(Exception):
    """Base class; every subclass carries a stable ``code``."""

    code = ERR_INTERNAL

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class ValidationError(RegistryError, ValueError):
    code = ERR_INVALID_REQUEST


class ConfigError(ValidationError):
    code = ERR_INVALID_CONFIG


class RpcCallError(RegistryError):
    """A single JSON-RPC call failed (transport, remote error or bad result)."""

    def __init__(
        self,
        message: str,
        *,
        code: str = ERR_RPC_TRANSPORT,
        method: str = "",
        rpc_response: Any = None,
    ) -> None:
        super().__init__(message, details={"method": method} if method else None)
        self.code = code
        self.method = method
        self.rpc_response = rpc_response


class EndpointConnectionError(RegistryError):
    code = ERR_CONNECTION_FAILED


class ScanWindowError(RegistryError):
    code = ERR_SCAN_WINDOW_FAILED

    def __init__(self, message: str, *, from_block: int | None = None, to_block: int | None = None) -> None:
        details: dict[str, Any] = {}
        if from_block is not None:
            details["from_block"] = from_block
        if to_block is not None:
            details["to_block"] = to_block
        super().__init__(message, details=details)
        self.from_block = from_block
        self.to_block = to_block


class DecodeError(RegistryError, ValueError):
    code = ERR_LOG_DECODE_FAILED


class StateQueryError(RegistryError):
    code = ERR_STATE_QUERY_FAILED


def exit_code_for(err: RegistryError) -> int:
    if isinstance(err, ValidationError):
        return EXIT_INVALID_REQUEST
    return EXIT_RPC_FAILURE
