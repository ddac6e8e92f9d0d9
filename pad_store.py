"""
pad_store.py — Durable pad files for the Number Station.

A pad file holds one store-level id and many numbered pad entries. Each
entry is a fixed-length random key that may encrypt exactly one message.

On-disk format (UTF-8 JSON):
  {
    "id":   "1718000000-4821",
    "pads": {
      "0": {"key": "<hex>", "epoch_date": null,       "consumed": false},
      "1": {"key": "<hex>", "epoch_date": 1718000123, "consumed": true}
    }
  }

Legacy files written by the original pad maker store each pad as a bare hex
string ("0": "<hex>").  They are normalised on load to unconsumed entries
and rewritten in the current format on the first save.

Storage notes:
  • The file is the only source of truth: every load re-parses it and every
    consume rewrites the whole file.
  • Saves are atomic: a .tmp file is written, fsynced and renamed into place.
  • There is no locking.  Two processes consuming from the same file race,
    and the last writer wins.  Run one operator per pad file.
"""

import os
import json
import logging
from typing import Dict, List, Optional

from pad_utils import describe_epoch, pad_fingerprint

log = logging.getLogger("numstation.store")


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class PadError(Exception):
    """Base class for every pad engine failure."""


class DirectoryNotFoundError(PadError):
    def __init__(self, path: str, scope: Optional[str] = None) -> None:
        self.path  = path
        self.scope = scope
        if scope:
            msg = f"Agent pad directory does not exist: {path}"
        else:
            msg = f"Pads directory does not exist: {path}"
        super().__init__(msg)


class NoPadFilesError(PadError):
    def __init__(self, path: str, scope: Optional[str] = None) -> None:
        self.path  = path
        self.scope = scope
        if scope:
            msg = f"No pad files found for agent '{scope}' in {path}"
        else:
            msg = f"No pad files found in {path}"
        super().__init__(msg)


class NoEligiblePadError(PadError):
    def __init__(self, path: str, scope: Optional[str] = None,
                 require_unconsumed: bool = True,
                 min_length: Optional[int] = None) -> None:
        self.path               = path
        self.scope              = scope
        self.require_unconsumed = require_unconsumed
        self.min_length         = min_length
        msg = "No available (unconsumed) pads found" if require_unconsumed else "No pads found"
        if min_length:
            msg += f" of at least {min_length} bytes"
        if scope:
            msg += f" for agent '{scope}'"
        super().__init__(f"{msg} in {path}")


class MalformedStoreError(PadError):
    def __init__(self, path: Optional[str], reason: str) -> None:
        self.path   = path
        self.reason = reason
        super().__init__(f"Malformed pad file {path or '<memory>'}: {reason}")


class MessageTooLongError(PadError):
    def __init__(self, message_length: int, pad_length: int,
                 index: Optional[int] = None) -> None:
        self.message_length = message_length
        self.pad_length     = pad_length
        self.index          = index
        super().__init__(
            f"Message length ({message_length}) is larger than pad length "
            f"({pad_length}). Break the message into smaller parts.")


class AlreadyConsumedError(PadError):
    def __init__(self, index: int, consumed_at: Optional[int],
                 path: Optional[str] = None) -> None:
        self.index       = index
        self.consumed_at = consumed_at
        self.path        = path
        super().__init__(f"Pad {index} has already been consumed on {describe_epoch(consumed_at)}")


class PersistenceError(PadError):
    def __init__(self, path: str, reason: str) -> None:
        self.path   = path
        self.reason = reason
        super().__init__(f"Pad file storage failed for {path}: {reason}")


class TooManyCollisionsError(PadError):
    def __init__(self, base: str, limit: int) -> None:
        self.base  = base
        self.limit = limit
        super().__init__(f"Too many pad files with same date prefix: {base} (limit {limit})")


class UnknownEntryError(PadError, KeyError):
    def __init__(self, index: int, path: Optional[str] = None) -> None:
        self.index = index
        self.path  = path
        super().__init__(f"Pad {index} does not exist in {path or 'this pad file'}")

    def __str__(self) -> str:
        return self.args[0]


# ─────────────────────────────────────────────────────────────────────────────

class PadEntry:
    """One pad: key bytes plus its consumption state."""

    __slots__ = ("key", "consumed", "consumed_at")

    def __init__(self, key: bytes, consumed: bool = False,
                 consumed_at: Optional[int] = None) -> None:
        self.key         = key
        self.consumed    = consumed
        self.consumed_at = consumed_at

    def copy(self) -> "PadEntry":
        return PadEntry(self.key, self.consumed, self.consumed_at)

    def to_dict(self) -> Dict:
        return {
            "key":        self.key.hex(),
            "epoch_date": self.consumed_at,
            "consumed":   self.consumed,
        }

    def __repr__(self) -> str:
        return (f"PadEntry(length={len(self.key)}, consumed={self.consumed}, "
                f"consumed_at={self.consumed_at})")


class PadStore:
    """
    In-memory view of one pad file.

    Usage:
        store = PadStore.load("/path/to/agent-2024-01-02.json")
        store.mark_consumed(3, now)   # raises AlreadyConsumedError on reuse
        store.save()                  # rewrites the file atomically
    """

    def __init__(self, pad_id: str, entries: Dict[int, PadEntry],
                 path: Optional[str] = None) -> None:
        self.id      = pad_id
        self.entries = dict(sorted(entries.items()))
        self.path    = path

    # ── Loading ───────────────────────────────────────────────────────────────

    @classmethod
    def load(cls, path: str) -> "PadStore":
        """Read and parse a pad file. Raises MalformedStoreError or PersistenceError."""
        try:
            with open(path, "rb") as f:
                raw = f.read()
        except OSError as e:
            raise PersistenceError(str(path), f"unreadable: {e}") from e

        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedStoreError(str(path), f"not valid JSON: {e}") from e
        return cls.from_dict(data, str(path))

    @classmethod
    def from_dict(cls, data: Dict, path: Optional[str] = None) -> "PadStore":
        if not isinstance(data, dict):
            raise MalformedStoreError(path, "top level is not an object")
        if data.get("id") is None:
            raise MalformedStoreError(path, "missing 'id'")
        pads = data.get("pads")
        if not isinstance(pads, dict):
            raise MalformedStoreError(path, "missing 'pads'")

        entries: Dict[int, PadEntry] = {}
        for raw_index, value in pads.items():
            try:
                index = int(raw_index)
            except (TypeError, ValueError):
                raise MalformedStoreError(path, f"pad index {raw_index!r} is not an integer")
            # "0" and "00" would collapse into one entry and lose a key on save.
            if str(index) != raw_index:
                raise MalformedStoreError(path, f"pad index {raw_index!r} is not canonical")
            if index in entries:
                raise MalformedStoreError(path, f"pad index {index} appears twice")
            entries[index] = cls._decode_entry(value, index, path)
        return cls(str(data["id"]), entries, path)

    @staticmethod
    def _decode_entry(value, index: int, path: Optional[str]) -> PadEntry:
        # Current schema first, then the legacy bare-hex value.
        if isinstance(value, dict):
            key_hex     = value.get("key")
            consumed    = value.get("consumed", False)
            consumed_at = value.get("epoch_date")
            if not isinstance(consumed, bool):
                raise MalformedStoreError(path, f"pad {index} has a non-boolean 'consumed' flag")
            if consumed_at is not None and (
                    isinstance(consumed_at, bool) or not isinstance(consumed_at, int)):
                raise MalformedStoreError(path, f"pad {index} has a non-integer epoch_date")
        elif isinstance(value, str):
            key_hex, consumed, consumed_at = value, False, None
        else:
            raise MalformedStoreError(path, f"pad {index} has unexpected type {type(value).__name__}")

        if not isinstance(key_hex, str) or len(key_hex) % 2:
            raise MalformedStoreError(path, f"pad {index} key is not an even-length hex string")
        try:
            key = bytes.fromhex(key_hex)
        except ValueError:
            raise MalformedStoreError(path, f"pad {index} key is not hex")
        return PadEntry(key, consumed, consumed_at)

    # ── Saving ────────────────────────────────────────────────────────────────

    def to_dict(self) -> Dict:
        return {
            "id":   self.id,
            "pads": {str(i): e.to_dict() for i, e in self.entries.items()},
        }

    def save(self, path: Optional[str] = None) -> None:
        """Serialize the whole store and replace the file atomically.

        On PersistenceError the file on disk is either the old version or
        the new one; callers must assume the mutation did not take effect.
        """
        path = str(path or self.path or "")
        if not path:
            raise PersistenceError("<unset>", "pad store has no path")

        data = json.dumps(self.to_dict()).encode("utf-8")
        tmp  = path + ".tmp"
        try:
            with open(tmp, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except OSError as e:
            if os.path.exists(tmp):
                try:
                    os.remove(tmp)
                except OSError:
                    log.warning("Could not remove temporary file %s", tmp)
            raise PersistenceError(path, str(e)) from e
        self.path = path
        log.debug("Saved pad file %s (%d pads)", path, len(self.entries))

    def create(self, path: str) -> None:
        """
        Write the store to a path that must not exist yet.
        Raises FileExistsError if it does (the caller picks another name);
        any other OSError becomes PersistenceError.
        """
        path = str(path)
        data = json.dumps(self.to_dict()).encode("utf-8")
        try:
            f = open(path, "xb")
        except FileExistsError:
            raise
        except OSError as e:
            raise PersistenceError(path, str(e)) from e
        try:
            with f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            os.remove(path)
            raise PersistenceError(path, str(e)) from e
        self.path = path

    # ── Entries ───────────────────────────────────────────────────────────────

    def indices(self) -> List[int]:
        return list(self.entries.keys())

    def entry(self, index: int) -> PadEntry:
        try:
            return self.entries[int(index)]
        except KeyError:
            raise UnknownEntryError(int(index), self.path) from None

    def mark_consumed(self, index: int, now: int) -> PadEntry:
        """
        Flip pad `index` to consumed and stamp `now` (epoch seconds).
        Returns the entry's previous state.  The caller must save().

        Raises AlreadyConsumedError if the pad was used before; this is the
        single-use guarantee and never overwrites the original timestamp.
        """
        entry = self.entry(index)
        if entry.consumed:
            err = AlreadyConsumedError(int(index), entry.consumed_at, self.path)
            log.error("%s", err)
            raise err

        previous          = entry.copy()
        entry.consumed    = True
        entry.consumed_at = int(now)
        log.debug("Marking pad %s in %s as consumed", index, self.path)
        return previous

    def restore(self, index: int, previous: PadEntry) -> None:
        """Put back an entry state returned by mark_consumed()."""
        self.entries[int(index)] = previous.copy()

    # ── Summary ───────────────────────────────────────────────────────────────

    @property
    def key_length(self) -> int:
        """Byte length of the first pad; 0 for an empty store."""
        for e in self.entries.values():
            return len(e.key)
        return 0

    @property
    def unconsumed_count(self) -> int:
        return sum(1 for e in self.entries.values() if not e.consumed)

    def fingerprint(self) -> str:
        return pad_fingerprint(self.id, ((i, e.key) for i, e in self.entries.items()))

    def __len__(self) -> int:
        return len(self.entries)

    def __repr__(self) -> str:
        return f"PadStore(id={self.id!r}, pads={len(self.entries)}, path={self.path!r})"
