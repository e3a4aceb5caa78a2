"""Hashing and tag-identifier helpers.

A TokenId is keccak256(EPC || TID): the two raw tag fields concatenated as
bytes, hashed, and rendered as a 32-byte ``0x`` hex string.
"""

from __future__ import annotations

import re
from typing import Any

from error_map import ValidationError

HEX_BYTES_RE = re.compile(r"^0x(?:[0-9a-fA-F]{2})*$")
TOKEN_ID_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")

_MASK_64 = (1 << 64) - 1
_KECCAK_ROUNDS = 24
_KECCAK_RATE_BYTES = 136  # keccak-256 bitrate

_ROTATION_OFFSETS = [
    [0, 36, 3, 41, 18],
    [1, 44, 10, 45, 2],
    [62, 6, 43, 15, 61],
    [28, 55, 25, 21, 56],
    [27, 20, 39, 8, 14],
]

_ROUND_CONSTANTS = [
    0x0000000000000001,
    0x0000000000008082,
    0x800000000000808A,
    0x8000000080008000,
    0x000000000000808B,
    0x0000000080000001,
    0x8000000080008081,
    0x8000000000008009,
    0x000000000000008A,
    0x0000000000000088,
    0x0000000080008009,
    0x000000008000000A,
    0x000000008000808B,
    0x800000000000008B,
    0x8000000000008089,
    0x8000000000008003,
    0x8000000000008002,
    0x8000000000000080,
    0x000000000000800A,
    0x800000008000000A,
    0x8000000080008081,
    0x8000000000008080,
    0x0000000080000001,
    0x8000000080008008,
]


def _rotl64(value: int, shift: int) -> int:
    shift %= 64
    return ((value << shift) | (value >> (64 - shift))) & _MASK_64


def _keccak_f1600(state: list[int]) -> None:
    for round_idx in range(_KECCAK_ROUNDS):
        c = [state[x] ^ state[x + 5] ^ state[x + 10] ^ state[x + 15] ^ state[x + 20] for x in range(5)]
        d = [c[(x - 1) % 5] ^ _rotl64(c[(x + 1) % 5], 1) for x in range(5)]
        for x in range(5):
            for y in range(5):
                state[x + 5 * y] ^= d[x]

        b = [0] * 25
        for x in range(5):
            for y in range(5):
                b[y + 5 * ((2 * x + 3 * y) % 5)] = _rotl64(
                    state[x + 5 * y], _ROTATION_OFFSETS[x][y]
                )

        for x in range(5):
            for y in range(5):
                state[x + 5 * y] = (
                    b[x + 5 * y] ^ ((~b[(x + 1) % 5 + 5 * y]) & b[(x + 2) % 5 + 5 * y])
                ) & _MASK_64

        state[0] ^= _ROUND_CONSTANTS[round_idx]


def keccak256(data: bytes) -> bytes:
    state = [0] * 25
    padded = bytearray(data)
    padded.append(0x01)
    while (len(padded) % _KECCAK_RATE_BYTES) != (_KECCAK_RATE_BYTES - 1):
        padded.append(0)
    padded.append(0x80)

    for offset in range(0, len(padded), _KECCAK_RATE_BYTES):
        block = padded[offset : offset + _KECCAK_RATE_BYTES]
        for i in range(_KECCAK_RATE_BYTES // 8):
            lane = int.from_bytes(block[i * 8 : (i + 1) * 8], "little")
            state[i] ^= lane
        _keccak_f1600(state)

    output = bytearray()
    while len(output) < 32:
        for i in range(_KECCAK_RATE_BYTES // 8):
            output.extend(state[i].to_bytes(8, "little"))
        if len(output) >= 32:
            break
        _keccak_f1600(state)
    return bytes(output[:32])


def _tag_field_bytes(value: Any, *, field: str) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif isinstance(value, str) and HEX_BYTES_RE.fullmatch(value.strip()):
        raw = bytes.fromhex(value.strip()[2:])
    else:
        raise ValidationError(f"{field} must be 0x-prefixed hex bytes")
    if not raw:
        raise ValidationError(f"{field} cannot be empty")
    return raw


def derive_token_id(epc: Any, tid: Any) -> str:
    digest = keccak256(_tag_field_bytes(epc, field="epc") + _tag_field_bytes(tid, field="tid"))
    return f"0x{digest.hex()}"


def normalize_token_id(value: Any) -> str:
    """Validate a TokenId and return it lowercased.

    Exactly 32 bytes are required; a 63-digit value is rejected rather than
    left-padded.
    """
    if not isinstance(value, str):
        raise ValidationError("token id must be a string")
    raw = value.strip()
    if not TOKEN_ID_RE.fullmatch(raw):
        raise ValidationError(
            "token id must be a bytes32 value: 0x followed by exactly 64 hex characters",
            details={"token_id": raw},
        )
    return raw.lower()
