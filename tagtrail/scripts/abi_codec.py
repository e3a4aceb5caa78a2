"""ABI encoding for the handful of Solidity types the tag registry exposes.

Supported: ``address``, ``bool``, ``uint<N>``, ``bytes<N>`` and ``string``.
Arrays, tuples, signed integers and dynamic ``bytes`` never appear in the
registry's events or views and are rejected at parse time.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from transforms import keccak256

WORD = 32
HEX_RE = re.compile(r"^0x[0-9a-fA-F]*$")
ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
SIG_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\((.*)\)$")
_SIZED_RE = re.compile(r"^(uint|bytes)([0-9]*)$")


@dataclass(frozen=True)
class AbiType:
    kind: str
    width: int | None = None

    @property
    def canonical(self) -> str:
        return f"{self.kind}{self.width}" if self.width is not None else self.kind

    @property
    def dynamic(self) -> bool:
        return self.kind == "string"


@dataclass(frozen=True)
class EventParam:
    name: str
    abi_type: AbiType
    indexed: bool


@dataclass(frozen=True)
class EventDeclaration:
    name: str
    params: tuple[EventParam, ...]
    canonical: str
    topic0: str

    @property
    def indexed_params(self) -> tuple[EventParam, ...]:
        return tuple(p for p in self.params if p.indexed)

    @property
    def data_params(self) -> tuple[EventParam, ...]:
        return tuple(p for p in self.params if not p.indexed)


def parse_type(raw_type: str) -> AbiType:
    name = str(raw_type).strip()
    if name in {"address", "bool", "string"}:
        return AbiType(kind=name)

    m = _SIZED_RE.fullmatch(name)
    if not m or (m.group(1) == "bytes" and not m.group(2)):
        raise ValueError(f"unsupported ABI type: {raw_type!r}")
    if m.group(1) == "uint":
        bits = int(m.group(2) or "256")
        if not 8 <= bits <= 256 or bits % 8:
            raise ValueError(f"invalid integer width: {name}")
        return AbiType(kind="uint", width=bits)

    size = int(m.group(2))
    if not 1 <= size <= WORD:
        raise ValueError(f"invalid fixed bytes size: {name}")
    return AbiType(kind="bytes", width=size)


def _items(raw: str) -> list[str]:
    if not raw.strip():
        return []
    items = [part.strip() for part in raw.split(",")]
    if "" in items:
        raise ValueError(f"empty entry in type list: {raw!r}")
    return items


def parse_types(types: Any) -> list[AbiType]:
    if isinstance(types, str):
        return [parse_type(item) for item in _items(types)]
    if isinstance(types, (list, tuple)) and all(isinstance(item, str) for item in types):
        return [parse_type(item) for item in types]
    raise ValueError("types must be a comma-separated string or a list of strings")


def parse_function_signature(signature: str) -> tuple[str, list[AbiType], str]:
    m = SIG_RE.fullmatch(str(signature).strip())
    if not m:
        raise ValueError(f"not a function signature: {signature!r}")
    arg_types = parse_types(m.group(2))
    return m.group(1), arg_types, f"{m.group(1)}({','.join(t.canonical for t in arg_types)})"


def parse_event_declaration(declaration: str) -> EventDeclaration:
    """Parse ``Name(type [indexed] [name], ...)`` into an EventDeclaration.

    Unnamed parameters are called ``arg<position>``.
    """
    m = SIG_RE.fullmatch(str(declaration).strip())
    if not m:
        raise ValueError(f"not an event declaration: {declaration!r}")

    params = []
    for position, item in enumerate(_items(m.group(2))):
        type_name, *rest = item.split()
        labels = [word for word in rest if word != "indexed"]
        params.append(
            EventParam(
                name=labels[-1] if labels else f"arg{position}",
                abi_type=parse_type(type_name),
                indexed="indexed" in rest,
            )
        )
    if len([p for p in params if p.indexed]) > 3:
        raise ValueError("an event has at most 3 indexed parameters")

    canonical = f"{m.group(1)}({','.join(p.abi_type.canonical for p in params)})"
    return EventDeclaration(
        name=m.group(1),
        params=tuple(params),
        canonical=canonical,
        topic0="0x" + keccak256(canonical.encode("utf-8")).hex(),
    )


def _hex_bytes(value: Any, what: str) -> bytes:
    if not isinstance(value, str) or not HEX_RE.fullmatch(value) or len(value) % 2:
        raise ValueError(f"{what} must be an even-length 0x-prefixed hex string")
    return bytes.fromhex(value[2:])


def _uint_word(value: int) -> bytes:
    return value.to_bytes(WORD, "big")


def _padded(raw: bytes) -> bytes:
    return raw + b"\x00" * (-len(raw) % WORD)


def _coerce_uint(value: Any, t: AbiType) -> int:
    if isinstance(value, str) and value.strip():
        text = value.strip()
        value = int(text, 16) if text.lower().startswith("0x") else int(text)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{t.canonical} value must be an integer")
    if not 0 <= value < 1 << int(t.width or 256):
        raise ValueError(f"{value} does not fit in {t.canonical}")
    return value


def encode_single(t: AbiType, value: Any) -> bytes:
    """Encode one value: a single word, or length word plus padded bytes for strings."""
    if t.kind == "uint":
        return _uint_word(_coerce_uint(value, t))
    if t.kind == "bool":
        if not isinstance(value, bool):
            raise ValueError("bool value must be True or False")
        return _uint_word(int(value))
    if t.kind == "address":
        if not isinstance(value, str) or not ADDRESS_RE.fullmatch(value):
            raise ValueError(f"not a 20-byte address: {value!r}")
        return bytes(12) + bytes.fromhex(value[2:])
    if t.kind == "bytes":
        raw = _hex_bytes(value, t.canonical)
        if len(raw) != t.width:
            raise ValueError(f"{t.canonical} value must be exactly {t.width} bytes")
        return _padded(raw)
    if not isinstance(value, str):
        raise ValueError("string value must be str")
    raw = value.encode("utf-8")
    return _uint_word(len(raw)) + _padded(raw)


def encode_abi(types: list[AbiType], values: list[Any]) -> bytes:
    if len(types) != len(values):
        raise ValueError(f"expected {len(types)} values, got {len(values)}")

    head = bytearray()
    tail = bytearray()
    for t, value in zip(types, values, strict=True):
        encoded = encode_single(t, value)
        if t.dynamic:
            head += _uint_word(WORD * len(types) + len(tail))
            tail += encoded
        else:
            head += encoded
    return bytes(head + tail)


def encode_topic(t: AbiType, value: Any) -> str:
    """Topic word for an indexed parameter; strings are indexed by their keccak hash."""
    if t.dynamic:
        if not isinstance(value, str):
            raise ValueError("string value must be str")
        return "0x" + keccak256(value.encode("utf-8")).hex()
    return "0x" + encode_single(t, value).hex()


def decode_static_word(t: AbiType, word: bytes) -> Any:
    if len(word) != WORD:
        raise ValueError(f"ABI word must be {WORD} bytes, got {len(word)}")
    number = int.from_bytes(word, "big")
    if t.kind == "uint":
        return number
    if t.kind == "bool":
        if number > 1:
            raise ValueError(f"bad bool word: {word.hex()}")
        return number == 1
    if t.kind == "address":
        return "0x" + word[12:].hex()
    if t.kind == "bytes":
        return "0x" + word[: t.width].hex()
    raise ValueError(f"{t.canonical} is not a static type")


def _read_string(data: bytes, offset: int) -> str:
    if offset + WORD > len(data):
        raise ValueError(f"string offset {offset} past end of data")
    start = offset + WORD
    end = start + int.from_bytes(data[offset:start], "big")
    if end > len(data):
        raise ValueError("string length runs past end of data")
    return data[start:end].decode("utf-8")


def decode_abi(types: list[AbiType], data_hex: str) -> list[Any]:
    data = _hex_bytes(data_hex, "data")
    if len(data) < WORD * len(types):
        raise ValueError(f"data holds {len(data)} bytes, head needs {WORD * len(types)}")

    out = []
    for slot, t in enumerate(types):
        word = data[slot * WORD : (slot + 1) * WORD]
        out.append(_read_string(data, int.from_bytes(word, "big")) if t.dynamic else decode_static_word(t, word))
    return out


def function_selector(signature: str) -> str:
    canonical = parse_function_signature(signature)[2]
    return "0x" + keccak256(canonical.encode("utf-8"))[:4].hex()


def event_topic0(declaration: str) -> str:
    return parse_event_declaration(declaration).topic0


def encode_call(signature: str, args: list[Any]) -> str:
    """Return ``0x`` calldata: selector followed by the ABI-encoded arguments."""
    _, arg_types, canonical = parse_function_signature(signature)
    if len(arg_types) != len(args):
        raise ValueError(f"{canonical} takes {len(arg_types)} arguments, got {len(args)}")
    return function_selector(canonical) + encode_abi(arg_types, list(args)).hex()


def decode_output(types_spec: Any, data_hex: str) -> list[Any]:
    return decode_abi(parse_types(types_spec), data_hex)


def decode_log(declaration: EventDeclaration, topics: list[str], data_hex: str) -> dict[str, Any]:
    """Decode a non-anonymous log into ``{param name: value}`` in declaration order.

    An indexed string only exists on chain as its hash, so the raw topic word
    is returned for it.
    """
    if not isinstance(topics, list) or not topics:
        raise ValueError("log has no topics")
    if str(topics[0]).lower() != declaration.topic0:
        raise ValueError(f"topic0 does not match {declaration.canonical}")
    indexed = declaration.indexed_params
    if len(topics) - 1 < len(indexed):
        raise ValueError(f"{declaration.name} needs {len(indexed)} indexed topics, log has {len(topics) - 1}")

    values: dict[str, Any] = {}
    for param, topic in zip(indexed, topics[1:]):
        word = _hex_bytes(topic, "topic")
        values[param.name] = "0x" + word.hex() if param.abi_type.dynamic else decode_static_word(param.abi_type, word)

    data_params = declaration.data_params
    values.update(zip((p.name for p in data_params), decode_abi([p.abi_type for p in data_params], data_hex)))
    return {p.name: values[p.name] for p in declaration.params}
