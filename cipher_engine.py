"""
cipher_engine.py — One-time-pad encryption for the Number Station.

Encrypt:
  1. Check the message fits the pad (MessageTooLongError, nothing changes).
  2. Mark the pad consumed (AlreadyConsumedError on reuse).
  3. Save the pad file.  If the save fails the consume is rolled back in
     memory and PersistenceError propagates: no ciphertext is released for
     a pad that is not durably marked used.
  4. XOR the message against the first len(message) bytes of the pad.

Decrypt is read-only: it does not look at, or change, the consumed flag.
A pad used for encryption stays valid for decrypting that message.
"""

import logging
from typing import Union

from pad_store import PadStore, MessageTooLongError, PersistenceError
from pad_utils import (
    GROUP_SIZE,
    Clock,
    epoch_seconds,
    group_hex,
    hex_to_bytes,
    now,
    xor_bytes,
)

log = logging.getLogger("numstation.cipher")


def format_ciphertext(ciphertext: bytes, group_size: int = GROUP_SIZE) -> str:
    """Lowercase hex in groups of `group_size` characters."""
    return group_hex(ciphertext.hex(), group_size)


class CipherEngine:
    def __init__(self, clock: Clock = now, group_size: int = GROUP_SIZE) -> None:
        self.clock      = clock
        self.group_size = group_size

    def encrypt(self, plaintext: bytes, store: PadStore, index: int) -> bytes:
        entry = store.entry(index)
        log.debug("message length: %d, pad length: %d", len(plaintext), len(entry.key))
        if len(plaintext) > len(entry.key):
            err = MessageTooLongError(len(plaintext), len(entry.key), index)
            log.error("%s", err)
            raise err

        previous = store.mark_consumed(index, epoch_seconds(self.clock))
        try:
            store.save()
        except PersistenceError:
            store.restore(index, previous)
            log.error("Pad %s was not marked consumed; encryption abandoned", index)
            raise
        log.info("Pad %s in %s consumed", index, store.path)
        return xor_bytes(plaintext, entry.key)

    def decrypt(self, ciphertext: Union[bytes, str], store: PadStore, index: int) -> bytes:
        """Accepts raw ciphertext bytes or (optionally grouped) hex text."""
        if isinstance(ciphertext, str):
            ciphertext = hex_to_bytes(ciphertext)
        entry = store.entry(index)
        if len(ciphertext) > len(entry.key):
            err = MessageTooLongError(len(ciphertext), len(entry.key), index)
            log.error("%s Unable to continue decryption.", err)
            raise err
        return xor_bytes(ciphertext, entry.key)

    def encrypt_message(self, message: str, store: PadStore, index: int) -> str:
        ciphertext = self.encrypt(message.encode("utf-8"), store, index)
        return format_ciphertext(ciphertext, self.group_size)

    def decrypt_message(self, text: str, store: PadStore, index: int) -> str:
        return self.decrypt(text, store, index).decode("utf-8", errors="replace")


# ─────────────────────────────────────────────────────────────────────────────
# File-level entry points
# ─────────────────────────────────────────────────────────────────────────────

def encrypt_with_pad(pad_path: str, index: int, message: str,
                     clock: Clock = now) -> str:
    """Load `pad_path`, encrypt `message` with pad `index`, return grouped hex."""
    store = PadStore.load(pad_path)
    return CipherEngine(clock).encrypt_message(message, store, index)


def decrypt_with_pad(pad_path: str, index: int, text: str) -> str:
    store = PadStore.load(pad_path)
    return CipherEngine().decrypt_message(text, store, index)
