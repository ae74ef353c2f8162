"""Address normalization helpers."""

from __future__ import annotations


def normalize_address(value: str | None) -> str:
    """Normalize mint/pair addresses for internal maps and dedup.

    Solana addresses are base58 and case-sensitive, so only whitespace is stripped.
    """
    return str(value or "").strip()
