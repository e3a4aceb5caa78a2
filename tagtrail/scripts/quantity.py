"""Block numbers and RPC quantities."""

from __future__ import annotations

import re
from typing import Any

BLOCK_TAGS = {"earliest", "latest", "pending", "safe", "finalized"}
_HEX_RE = re.compile(r"^0x[0-9a-fA-F]+$")
_DEC_RE = re.compile(r"^[0-9]+$")


def parse_quantity(raw: Any) -> int:
    """Read a non-negative integer given as an int, a decimal string or ``0x`` hex."""
    if isinstance(raw, int) and not isinstance(raw, bool):
        if raw < 0:
            raise ValueError(f"negative quantity: {raw}")
        return raw
    text = str(raw).strip() if isinstance(raw, str) else ""
    if _HEX_RE.fullmatch(text):
        return int(text, 16)
    if _DEC_RE.fullmatch(text):
        return int(text)
    raise ValueError(f"not a quantity: {raw!r}")


def to_hex_quantity(value: int) -> str:
    return hex(value)


def parse_block_bound(value: Any, *, field: str) -> int | str:
    """Return a block number, or a block tag string such as ``latest``."""
    if isinstance(value, str) and value.strip() in BLOCK_TAGS:
        return value.strip()
    try:
        return parse_quantity(value)
    except ValueError:
        raise ValueError(f"{field} must be a block number or one of {sorted(BLOCK_TAGS)}: {value!r}") from None
