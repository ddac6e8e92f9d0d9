"""
pad_manager.py — Pad generation and lookup for the Number Station.

Storage layout:
  <root>/
      one_time_pad-2024-01-01.json        unscoped pads
      <agent>/
          <agent>-2024-01-01.json         first pad file of the day
          <agent>-2024-01-01-001.json     second one, counter-suffixed
          one_time_pad_48213.json         legacy random-number name

Lookup rule:
  Candidate files are sorted by name.  Names embed a YYYY-MM-DD date, so the
  first file in sorted order is the oldest.  Within a file, pads are tried in
  index order.  Two lookups against unchanged storage pick the same pad,
  which keeps "who used what" reproducible without a separate audit log.
"""

import os
import re
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from pad_store import (
    PadEntry,
    PadStore,
    DirectoryNotFoundError,
    MalformedStoreError,
    NoEligiblePadError,
    NoPadFilesError,
    PersistenceError,
    TooManyCollisionsError,
)
from pad_utils import (
    Clock,
    RandomBytes,
    date_stamp,
    generate_pad_id,
    now,
    round_up_length,
    secure_random_bytes,
    validate_scope,
)

log = logging.getLogger("numstation.manager")

# ============================================================
#  CONFIGURATION
# ============================================================

DEFAULT_PAD_COUNT   = 500
DEFAULT_PAD_LENGTH  = 500         # bytes per pad, before rounding
MAX_COLLISIONS      = 999         # highest -NNN suffix tried for one date
UNSCOPED_PREFIX     = "one_time_pad"

_PAD_FILE_PATTERNS = (
    re.compile(r'^(one_time_pad|[\w-]+)[_-]\d{4}-\d{2}-\d{2}(-\d{3})?\.json$'),
    re.compile(r'^one_time_pad_\d+\.json$'),
    re.compile(r'^[\w-]+_\d+\.json$'),
)
_DATED_NAME_RE = re.compile(r'^(?P<stem>.+[_-]\d{4}-\d{2}-\d{2})(?:-(?P<counter>\d{3}))?\.json$')


def is_pad_filename(name: str) -> bool:
    return any(p.match(name) for p in _PAD_FILE_PATTERNS)


def pad_sort_key(name: str) -> Tuple[str, int, str]:
    """
    Sort key giving oldest-first order.  Plain lexicographic order would put
    'x-2024-01-02-001.json' before 'x-2024-01-02.json' ('-' < '.'), so the
    counter is compared numerically with the un-suffixed file as 0.
    """
    m = _DATED_NAME_RE.match(name)
    if m:
        return (m.group("stem"), int(m.group("counter") or 0), name)
    return (os.path.splitext(name)[0], 0, name)


def _scope_dir(root_dir: str, scope: Optional[str]) -> str:
    if not scope:
        return str(root_dir)
    if not validate_scope(scope):
        raise ValueError(f"Invalid agent name: {scope!r}")
    return os.path.join(str(root_dir), scope)


# ============================================================
#  GENERATION
# ============================================================

class PadGenerator:
    """
    Creates new pad files full of CSPRNG key material.

    The clock and random source are injected so callers (and tests) control
    time and entropy explicitly.
    """

    def __init__(self, root_dir: str, clock: Clock = now,
                 random_bytes: RandomBytes = secure_random_bytes,
                 max_collisions: int = MAX_COLLISIONS) -> None:
        self.root_dir       = str(root_dir)
        self.clock          = clock
        self.random_bytes   = random_bytes
        self.max_collisions = max_collisions

    def generate(self, count: int, length: int,
                 scope: Optional[str] = None) -> Tuple[PadStore, str]:
        """Generate `count` pads of `length` bytes (rounded up to a multiple
        of 5) and write them to a new, never-overwritten file."""
        if not isinstance(count, int) or count <= 0:
            raise ValueError(f"Pad count must be a positive integer, got {count!r}")
        if not isinstance(length, int) or length <= 0:
            raise ValueError(f"Pad length must be a positive integer, got {length!r}")

        rounded = round_up_length(length)
        if rounded != length:
            log.debug("Pad length %d rounded up to %d", length, rounded)

        directory = _scope_dir(self.root_dir, scope)
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as e:
            raise PersistenceError(directory, str(e)) from e

        store = PadStore(generate_pad_id(self.clock), self._generate_entries(count, rounded))
        base  = f"{scope or UNSCOPED_PREFIX}-{date_stamp(self.clock)}"
        path  = self._write_new(store, directory, base)
        log.info("Created one-time pad: %s (%d pads of %d bytes, fingerprint %s)",
                 path, count, rounded, store.fingerprint())
        return store, path

    def _generate_entries(self, count: int, length: int) -> Dict[int, PadEntry]:
        entries = {}
        for i in range(count):
            key = self.random_bytes(length)
            if len(key) != length:
                raise ValueError(f"Random source returned {len(key)} bytes, expected {length}")
            entries[i] = PadEntry(key)
        return entries

    def _candidate_names(self, base: str):
        yield f"{base}.json"
        for counter in range(1, self.max_collisions + 1):
            yield f"{base}-{counter:03d}.json"

    def _write_new(self, store: PadStore, directory: str, base: str) -> str:
        for name in self._candidate_names(base):
            path = os.path.join(directory, name)
            if os.path.exists(path):
                continue
            try:
                store.create(path)
            except FileExistsError:
                # Appeared between the check and the write; try the next name.
                continue
            return path
        raise TooManyCollisionsError(base, self.max_collisions)


def generate_pads(root_dir: str, count: int = DEFAULT_PAD_COUNT,
                  length: int = DEFAULT_PAD_LENGTH, scope: Optional[str] = None,
                  clock: Clock = now,
                  random_bytes: RandomBytes = secure_random_bytes) -> Tuple[PadStore, str]:
    return PadGenerator(root_dir, clock, random_bytes).generate(count, length, scope)


# ============================================================
#  LOOKUP
# ============================================================

@dataclass(frozen=True)
class LocatorResult:
    store_path: str
    entry_index: int
    store_id: str


class PadLocator:
    """Finds the oldest eligible pad under a pad root directory."""

    def __init__(self, root_dir: str) -> None:
        self.root_dir = str(root_dir)

    def search_dir(self, scope: Optional[str] = None) -> str:
        return _scope_dir(self.root_dir, scope)

    def candidates(self, scope: Optional[str] = None) -> List[str]:
        """Pad file paths in the search directory, oldest first."""
        directory = self.search_dir(scope)
        names = [n for n in os.listdir(directory)
                 if is_pad_filename(n) and os.path.isfile(os.path.join(directory, n))]
        return [os.path.join(directory, n) for n in sorted(names, key=pad_sort_key)]

    def find(self, scope: Optional[str] = None, min_length: Optional[int] = None,
             require_unconsumed: bool = True) -> LocatorResult:
        """
        Return the first eligible pad, scanning files oldest first.

        Files are ordered by name, except that within one date the
        un-suffixed file sorts before its -001, -002 ... siblings (see
        pad_sort_key). Malformed files are skipped; a file that cannot be
        read at all raises PersistenceError.
        """
        directory = self.search_dir(scope)
        if not os.path.isdir(directory):
            raise DirectoryNotFoundError(directory, scope)

        paths = self.candidates(scope)
        if not paths:
            raise NoPadFilesError(directory, scope)
        log.debug("Searching %d pad files in %s (min_length=%s, require_unconsumed=%s)",
                  len(paths), directory, min_length, require_unconsumed)

        for path in paths:
            try:
                store = PadStore.load(path)
            except MalformedStoreError as e:
                log.warning("Skipping unreadable pad file: %s", e)
                continue

            if not store.entries:
                continue
            if require_unconsumed and store.unconsumed_count == 0:
                continue

            for index, entry in store.entries.items():
                if require_unconsumed and entry.consumed:
                    continue
                if min_length is not None and len(entry.key) < min_length:
                    continue
                log.debug("Selected pad %d in %s", index, path)
                return LocatorResult(path, index, store.id)

        raise NoEligiblePadError(directory, scope, require_unconsumed, min_length)

    def examine(self, scope: Optional[str] = None) -> List[Dict]:
        """Inventory of every pad file in the search directory."""
        directory = self.search_dir(scope)
        if not os.path.isdir(directory):
            log.warning("Pads directory does not exist: %s", directory)
            return []
        paths = self.candidates(scope)
        if not paths:
            log.info("No pad files found in %s", directory)
        return [self._examine_file(p) for p in paths]

    @staticmethod
    def _examine_file(path: str) -> Dict:
        filename = os.path.basename(path)
        try:
            store = PadStore.load(path)
        except (MalformedStoreError, PersistenceError) as e:
            log.error("Failed to examine pad file %s: %s", path, e)
            return {"filename": filename, "error": str(e)}
        if not store.entries:
            return {"filename": filename, "error": "No pads found in file"}

        total      = len(store)
        unconsumed = store.unconsumed_count
        return {
            "filename":           filename,
            "pad_id":             store.id,
            "max_message_length": store.key_length,
            "total_pads":         total,
            "unconsumed_pads":    unconsumed,
            "consumed_pads":      total - unconsumed,
            "fingerprint":        store.fingerprint(),
        }


def locate_pad(root_dir: str, scope: Optional[str] = None,
               min_length: Optional[int] = None,
               require_unconsumed: bool = True) -> LocatorResult:
    return PadLocator(root_dir).find(scope, min_length, require_unconsumed)


def examine_pads(root_dir: str, scope: Optional[str] = None) -> List[Dict]:
    return PadLocator(root_dir).examine(scope)
