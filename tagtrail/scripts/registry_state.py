"""Typed reads of the registry's view functions through ``eth_call``."""

from __future__ import annotations

from typing import Any, Protocol

from abi_codec import decode_output, encode_call
from error_map import RegistryError, StateQueryError
from registry_config import ContractDescriptor


class CallProvider(Protocol):
    def call(self, to: str, data: str, block: int | str = "latest") -> str: ...


class RegistryState:
    """Authoritative contract state: counters, stored messages, ownership."""

    def __init__(self, provider: CallProvider, descriptor: ContractDescriptor, *, block: int | str = "latest") -> None:
        self.provider = provider
        self.descriptor = descriptor
        self.block = block

    def _read(self, view_name: str, *args: Any) -> Any:
        view = self.descriptor.view(view_name)
        try:
            output = self.provider.call(self.descriptor.address, encode_call(view.signature, list(args)), self.block)
            values = decode_output(list(view.returns), output)
        except RegistryError as err:
            raise StateQueryError(
                f"{view.signature} failed: {err.message}",
                details={"view": view_name, "args": [str(a) for a in args]},
            ) from err
        except ValueError as err:
            raise StateQueryError(
                f"{view.signature} returned undecodable output: {err}",
                details={"view": view_name, "args": [str(a) for a in args]},
            ) from err
        return values[0] if len(values) == 1 else values

    def event_count(self, asset_id: int) -> int:
        return int(self._read("event_count", asset_id))

    def event_message(self, asset_id: int, event_index: int) -> str:
        return str(self._read("event_message", asset_id, event_index))

    def is_token_registered(self, token_id: str) -> bool:
        return bool(self._read("is_registered", token_id))

    def asset_id_for(self, token_id: str) -> int:
        return int(self._read("asset_id", token_id))

    def owner_of(self, asset_id: int) -> str:
        return str(self._read("owner_of", asset_id))

    def contract_owner(self) -> str:
        return str(self._read("contract_owner"))
