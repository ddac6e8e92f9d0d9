"""
pad_utils.py — Primitives shared by the Number Station pad engine.

Key Design:
  - Key material      : os.urandom (CSPRNG), injectable for tests
  - Pad length policy : rounded up to a multiple of 5 so printed pads line up
                        with the 5-character groups used for transcription
  - Ciphertext text   : lowercase hex, grouped in clusters of 5, whitespace
                        is insignificant on the way back in
  - Pad id            : "<epoch seconds>-<random 1000..9999>"
  - Pad fingerprint   : SHA-256 over id + keys, read aloud to confirm that
                        operator and agent hold identical copies
"""

import os
import re
import time
import secrets
from datetime import datetime
from typing import Callable, Iterable, Optional, Tuple

from cryptography.hazmat.primitives import hashes

# ── Pad constants ─────────────────────────────────────────────────────────────
GROUP_SIZE          = 5              # hex characters per transcription group
LENGTH_MULTIPLE     = 5              # pad byte lengths are rounded up to this
PAD_ID_RAND_MIN     = 1000
PAD_ID_RAND_MAX     = 9999

_SCOPE_RE      = re.compile(r'^[A-Za-z0-9_-]{1,32}$')
_WHITESPACE_RE = re.compile(r'\s+')

Clock       = Callable[[], float]
RandomBytes = Callable[[int], bytes]


# ─────────────────────────────────────────────────────────────────────────────
# Collaborators: clock and secure random source
# ─────────────────────────────────────────────────────────────────────────────

def now() -> float:
    return time.time()


def secure_random_bytes(n: int) -> bytes:
    """Return `n` bytes from the OS CSPRNG."""
    return os.urandom(n)


def epoch_seconds(clock: Clock = now) -> int:
    return int(clock())


def date_stamp(clock: Clock = now) -> str:
    """Calendar date (local time) as YYYY-MM-DD, the sortable part of pad names."""
    return datetime.fromtimestamp(clock()).strftime("%Y-%m-%d")


# ─────────────────────────────────────────────────────────────────────────────
# Validation / policy
# ─────────────────────────────────────────────────────────────────────────────

def validate_scope(scope: str) -> bool:
    """
    Validate an agent/scope name before it becomes a directory component.
    Allows letters, digits, underscore, hyphen. 1-32 characters.
    """
    return bool(_SCOPE_RE.match(scope))


def round_up_length(length: int, multiple: int = LENGTH_MULTIPLE) -> int:
    # 3 -> 5, 7 -> 10, 15 -> 15, 500 -> 500
    return ((length + multiple - 1) // multiple) * multiple


def generate_pad_id(clock: Clock = now) -> str:
    """Epoch timestamp plus a random component; unique without coordination."""
    rand = PAD_ID_RAND_MIN + secrets.randbelow(PAD_ID_RAND_MAX - PAD_ID_RAND_MIN + 1)
    return f"{epoch_seconds(clock)}-{rand}"


# ─────────────────────────────────────────────────────────────────────────────
# XOR transform and hex text helpers
# ─────────────────────────────────────────────────────────────────────────────

def xor_bytes(data: bytes, key: bytes) -> bytes:
    """
    XOR `data` against the first len(data) bytes of `key`.
    Callers validate lengths first; a short key here is a programming error.
    """
    if len(data) > len(key):
        raise ValueError(f"Data ({len(data)} bytes) exceeds key ({len(key)} bytes)")
    return bytes(d ^ k for d, k in zip(data, key))


def group_hex(hex_text: str, group_size: int = GROUP_SIZE) -> str:
    """Split hex text into space-separated clusters: 'abcdef0123' -> 'abcde f0123'."""
    if group_size <= 0:
        return hex_text
    return ' '.join(hex_text[i:i + group_size]
                    for i in range(0, len(hex_text), group_size))


def strip_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub('', text)


def hex_to_bytes(hex_text: str) -> bytes:
    """Decode hex text, ignoring any grouping whitespace. Raises ValueError."""
    cleaned = strip_whitespace(hex_text)
    if len(cleaned) % 2:
        raise ValueError(f"Hex text has odd length ({len(cleaned)} characters)")
    return bytes.fromhex(cleaned)


# ─────────────────────────────────────────────────────────────────────────────
# Utilities
# ─────────────────────────────────────────────────────────────────────────────

def pad_fingerprint(pad_id: str, keys: Iterable[Tuple[int, bytes]]) -> str:
    """Return a short, human-readable fingerprint for out-of-band pad comparison.
    Format: XXXX:XXXX:XXXX:XXXX (first 16 hex chars of SHA-256).
    Consumption state is not part of the digest, so both copies agree
    regardless of which side has used pages."""
    h = hashes.Hash(hashes.SHA256())
    h.update(pad_id.encode("utf-8"))
    for index, key in sorted(keys):
        h.update(str(index).encode("ascii") + b":" + key)
    digest = h.finalize().hex()
    return ":".join(digest[i : i + 4] for i in range(0, 16, 4))


def describe_epoch(epoch: Optional[int]) -> str:
    if epoch is None:
        return "an unknown time"
    try:
        return datetime.fromtimestamp(epoch).strftime("%Y-%m-%d %H:%M:%S")
    except (OverflowError, ValueError, OSError):
        return f"epoch {epoch}"
