"""Pick a working RPC endpoint for the configured network, with one fallback."""

from __future__ import annotations

from typing import Any

from error_map import EndpointConnectionError, RegistryError
from log_setup import setup_logger
from rpc_endpoint import DEFAULT_TIMEOUT_SECONDS, RpcEndpoint, redact_url

logger = setup_logger(__name__)


def _probe(
    url: str,
    *,
    label: str,
    expected_chain_id: int,
    timeout_seconds: float,
    retries: int,
) -> RpcEndpoint:
    if not url:
        raise EndpointConnectionError(f"{label} rpc url is not configured")
    candidate = RpcEndpoint(url=url, label=label, timeout_seconds=timeout_seconds, retries=retries)
    chain_id = candidate.get_chain_id()
    if chain_id != expected_chain_id:
        raise EndpointConnectionError(
            f"wrong network on {label} endpoint: expected chain id {expected_chain_id}, got {chain_id}",
            details={"expected_chain_id": expected_chain_id, "chain_id": chain_id},
        )
    return RpcEndpoint(
        url=url,
        chain_id=chain_id,
        label=label,
        timeout_seconds=timeout_seconds,
        retries=retries,
    )


def connect(
    primary_url: str,
    fallback_url: str | None,
    expected_chain_id: int,
    *,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    retries: int = 0,
) -> RpcEndpoint:
    """Return a handle whose chain id equals ``expected_chain_id``.

    The primary is tried once; on any failure the fallback is tried once with
    the same check. If neither works a single EndpointConnectionError carries
    both causes.
    """
    attempts: list[dict[str, Any]] = []
    candidates = [("primary", primary_url)]
    if fallback_url:
        candidates.append(("fallback", fallback_url))

    for label, url in candidates:
        logger.info("connecting to %s rpc %s", label, redact_url(url or "<unset>"))
        try:
            endpoint = _probe(
                url,
                label=label,
                expected_chain_id=expected_chain_id,
                timeout_seconds=timeout_seconds,
                retries=retries,
            )
        except RegistryError as err:
            logger.warning("%s rpc endpoint unusable: %s", label, err.message)
            attempts.append({"endpoint": label, "url": redact_url(url or ""), **err.to_dict()})
            continue
        logger.info("connected to %s rpc (chain id %s)", label, endpoint.chain_id)
        return endpoint

    raise EndpointConnectionError(
        "failed to connect to any rpc endpoint",
        details={"expected_chain_id": expected_chain_id, "attempts": attempts},
    )
