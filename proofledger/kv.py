# FILE: proofledger/kv.py
"""
Helpers for canonical JSON encoding and storage key derivation.

This module is used to build:
  - storage keys for proof records (timestamp + short content hash);
  - storage keys for tickets (fixed prefix + caller-supplied id);
  - the compact JSON encoding written to the ledger.

Key properties:
  - Record keys are unique with extremely low collision probability but are
    NOT a deduplication mechanism; see duplicates.py for that.
  - Ticket keys are a pure function of the ticket id, so two tickets with the
    same id land on the same key and the later write wins.
  - The hash is FNV-1a (32 bit). It is non-cryptographic and carries no
    security property; it only spreads keys written in the same millisecond.
"""

from __future__ import annotations

import hashlib
import json
import time
from typing import Any, Mapping, Optional, Union


RECORD_KEY_PREFIX = "PROOF"
TICKET_KEY_PREFIX = "TICKET"

_FNV32_OFFSET = 0x811C9DC5
_FNV32_PRIME = 0x01000193

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def canonical_json_dumps(obj: Any) -> str:
    """
    Compact JSON used for stored values and for key hashing.

      - separators=(",", ":") for a compact, stable representation;
      - ensure_ascii=False to keep Unicode stable;
      - insertion order is kept so stored documents read back the way
        they were submitted;
      - NaN and Infinity raise ValueError instead of leaking into storage.
    """
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def fnv1a_32(data: Union[bytes, str]) -> int:
    """32-bit FNV-1a over UTF-8 bytes."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    h = _FNV32_OFFSET
    for b in data:
        h ^= b
        h = (h * _FNV32_PRIME) & 0xFFFFFFFF
    return h


def to_base36(n: int) -> str:
    """Lowercase base-36 rendering of a non-negative integer."""
    if n < 0:
        raise ValueError("to_base36 only supports non-negative integers")
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_BASE36[r])
    return "".join(reversed(out))


def short_hash(text: str) -> str:
    return to_base36(fnv1a_32(text))


def new_record_key(content: Mapping[str, Any], *, now_ms: Optional[int] = None) -> str:
    """
    Derive a storage key for a new proof record:

        PROOF_<unix millis>_<base36 fnv1a of the record JSON>

    `now_ms` is injectable for deterministic tests.
    """
    ts = int(time.time() * 1000) if now_ms is None else int(now_ms)
    return f"{RECORD_KEY_PREFIX}_{ts}_{short_hash(canonical_json_dumps(dict(content)))}"


def new_ticket_key(ticket_id: Any) -> str:
    """TICKET_<id>. Deterministic; this is what makes ticket ids unique at rest."""
    return f"{TICKET_KEY_PREFIX}_{ticket_id}"


def _typed_scalar(value: Any) -> str:
    # Type tags keep "1", 1, 1.0 and True distinct.
    if value is None:
        return "t:none;"
    if isinstance(value, bool):
        return "t:bool;" + ("1" if value else "0")
    if isinstance(value, int):
        return "t:int;" + str(value)
    if isinstance(value, float):
        return "t:float;" + repr(value)
    if isinstance(value, str):
        return "t:str;" + value
    return "t:json;" + json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def canonical_kv_hash(mapping: Mapping[str, Any], *, ctx: str = "", label: str = "kv") -> str:
    """
    Order-independent sha256 over a flat mapping.

    Keys are sorted; each pair is fed as "k:<key>;v:<typed value>;" after a
    "<ctx>|<label>|" domain prefix. Used for config fingerprints in logs and
    /version, never for record keys.
    """
    h = hashlib.sha256(f"{ctx}|{label}|".encode("utf-8"))
    for k in sorted(mapping.keys(), key=str):
        h.update(f"k:{k};v:{_typed_scalar(mapping[k])};".encode("utf-8"))
    return h.hexdigest()
