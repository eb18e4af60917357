"""64-bit simhash fingerprints for near-duplicate detection."""

from __future__ import annotations

import hashlib
import re
from collections import Counter

FINGERPRINT_BITS = 64
_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def _normalize_for_hash(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip().lower()


def _token_hash(token: str) -> int:
    digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big")


def simhash(text: str) -> int | None:
    """Return the simhash of ``text`` or ``None`` when there is nothing to hash."""

    tokens = _TOKEN_RE.findall(_normalize_for_hash(text))
    if not tokens:
        return None
    weights = [0] * FINGERPRINT_BITS
    for token, count in Counter(tokens).items():
        value = _token_hash(token)
        for bit in range(FINGERPRINT_BITS):
            if value >> bit & 1:
                weights[bit] += count
            else:
                weights[bit] -= count
    fingerprint = 0
    for bit, weight in enumerate(weights):
        if weight > 0:
            fingerprint |= 1 << bit
    return fingerprint


def similarity(a: int, b: int) -> float:
    """Share of equal bits: ``1.0`` for identical fingerprints."""

    distance = bin(a ^ b).count("1")
    return 1.0 - distance / FINGERPRINT_BITS


def to_hex(fingerprint: int) -> str:
    return f"{fingerprint:016x}"


def from_hex(value: str | int | None) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, int):
        return value
    return int(value, 16)
