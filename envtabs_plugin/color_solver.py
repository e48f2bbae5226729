"""Steer a regex line into a chosen colour bucket of the host's colouriser.

The host colours each ColorByRegexConfig line by ``abs(hash(line)) % 16`` using
the legacy 32-bit .NET Framework string hash. That hash is reproduced here
bit-for-bit (UTF-16 code units, int32 wraparound) so an inert regex comment,
``(?#salt:N)``, can be brute-forced onto a line until it lands in the wanted
bucket.
"""
from __future__ import annotations

import logging
import re
from typing import List, Optional

LOGGER = logging.getLogger("EnvTabs.ColorSolver")

BUCKET_COUNT = 16
SALT_CEILING = 10000
_HASH_SEED = 5381
_HASH_MULTIPLIER = 1566083941
_SALT_PATTERN = re.compile(r"\(\?#salt:[^)]*\)")


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return value


def _utf16_units(text: str) -> List[int]:
    raw = text.encode("utf-16-le")
    return [int.from_bytes(raw[index : index + 2], "little") for index in range(0, len(raw), 2)]


def salt_annotation(salt: int) -> str:
    return f"(?#salt:{salt})"


def stable_hash_code(text: str) -> int:
    """Legacy x86 .NET ``String.GetHashCode`` over two interleaved accumulators."""

    units = _utf16_units(text)
    hash1 = _HASH_SEED
    hash2 = _HASH_SEED
    length = len(units)
    for index in range(0, length, 2):
        hash1 = _to_int32(((hash1 << 5) + hash1) ^ units[index])
        if index == length - 1:
            break
        hash2 = _to_int32(((hash2 << 5) + hash2) ^ units[index + 1])
    return _to_int32(hash1 + hash2 * _HASH_MULTIPLIER)


def bucket_for(text: str) -> int:
    # abs() cannot overflow here; int32 min lands in bucket 0.
    return abs(stable_hash_code(text)) % BUCKET_COUNT


def solve(base: str, target: int) -> Optional[int]:
    """Return the smallest salt that moves *base* into bucket *target*."""

    if target < 0 or target >= BUCKET_COUNT:
        return None
    for salt in range(1, SALT_CEILING):
        if bucket_for(base + salt_annotation(salt)) == target:
            return salt
    LOGGER.debug("No salt under %s puts '%s' in bucket %s", SALT_CEILING, base, target)
    return None


def solve_for_color(base: str, target: int) -> str:
    salt = solve(base, target)
    if salt is None:
        return base
    return base + salt_annotation(salt)


def apply_color_index(base: str, target: Optional[int]) -> str:
    """Return *base* salted so it colours as *target*, or unchanged if it already does."""

    if target is None or target < 0 or target >= BUCKET_COUNT:
        return base
    if bucket_for(base) == target:
        return base
    return solve_for_color(base, target)


def strip_salt_comment(text: str) -> str:
    return _SALT_PATTERN.sub("", (text or "").strip())
