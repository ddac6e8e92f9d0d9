#!/usr/bin/env python3
"""
station.py — Number Station operator tool.

Usage:
  numstation make-pad --scope Abyss --count 20 --length 250
  numstation examine --scope Abyss
  numstation find --scope Abyss --min-length 120
  numstation encrypt --file message.txt --scope Abyss
  numstation encrypt --text "MEET AT DAWN" --pad pads/Abyss/Abyss-2024-01-02.json --index 0
  numstation decrypt --file Abyss_Abyss-2024-01-02_pad0_encrypted.txt \
                     --pad pads/Abyss/Abyss-2024-01-02.json --index 0

Configuration (lowest to highest precedence):
  built-in defaults → <home>/conf.json → NUMSTATION_* environment → flags

  conf.json:
    {"pads_dir": "~/number_station/pads",
     "logging": {"level": "INFO"},
     "pad_count": 500, "pad_length": 500}
"""

import os
import re
import sys
import json
import logging
import argparse
from typing import Dict, List, Optional

from cipher_engine import CipherEngine
from pad_manager import (
    DEFAULT_PAD_COUNT,
    DEFAULT_PAD_LENGTH,
    PadGenerator,
    PadLocator,
)
from pad_store import PadError, PadStore
from pad_utils import validate_scope

# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────

DEFAULT_HOME      = os.path.expanduser("~/number_station")
CONFIG_FILENAME   = "conf.json"
DEFAULT_LOG_LEVEL = "INFO"
LOG_FORMAT        = "%(asctime)s [STATION] %(levelname)s %(message)s"

# Levels as written by the original Ruby tool's conf.json (Logger::DEBUG = 0 …)
_NUMERIC_LEVELS = {
    0: logging.DEBUG,
    1: logging.INFO,
    2: logging.WARNING,
    3: logging.ERROR,
    4: logging.CRITICAL,
}

_ENCRYPTED_NAME_RE = re.compile(r'^(.+?)_(.+?)_pad(\d+)_encrypted\.txt$')
_DATED_STEM_RE     = re.compile(r'^([\w-]+?)-\d{4}-\d{2}-\d{2}(-\d{3})?$')

log = logging.getLogger("numstation.station")


def default_config(home: Optional[str] = None) -> Dict:
    home = home or os.environ.get("NUMSTATION_HOME", DEFAULT_HOME)
    return {
        "home":       home,
        "pads_dir":   os.path.join(home, "pads"),
        "logging":    {"level": DEFAULT_LOG_LEVEL},
        "pad_count":  DEFAULT_PAD_COUNT,
        "pad_length": DEFAULT_PAD_LENGTH,
    }


def load_config(path: Optional[str] = None,
                environ: Optional[Dict[str, str]] = None) -> Dict:
    """
    Build the effective configuration dict.  A missing config file is not an
    error; a malformed one is reported and the defaults are used.
    """
    environ = os.environ if environ is None else environ
    config  = default_config(environ.get("NUMSTATION_HOME", DEFAULT_HOME))
    path    = path or os.path.join(config["home"], CONFIG_FILENAME)

    if os.path.exists(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("top level is not an object")
        except (OSError, ValueError) as e:
            print(f"Ignoring unreadable config {path}: {e}", file=sys.stderr)
        else:
            for key in ("pads_dir", "pad_count", "pad_length"):
                if key in data:
                    config[key] = data[key]
            if isinstance(data.get("logging"), dict) and "level" in data["logging"]:
                config["logging"]["level"] = data["logging"]["level"]

    if environ.get("NUMSTATION_PADS_DIR"):
        config["pads_dir"] = environ["NUMSTATION_PADS_DIR"]
    if environ.get("NUMSTATION_LOG_LEVEL"):
        config["logging"]["level"] = environ["NUMSTATION_LOG_LEVEL"]

    config["pads_dir"] = os.path.expanduser(str(config["pads_dir"]))
    return config


def parse_log_level(level) -> int:
    """Accept 'DEBUG'/'info' style names or the Ruby-style integers 0-4."""
    if isinstance(level, int):
        return _NUMERIC_LEVELS.get(level, logging.INFO)
    text = str(level).strip()
    if text.isdigit():
        return _NUMERIC_LEVELS.get(int(text), logging.INFO)
    value = logging.getLevelName(text.upper())
    return value if isinstance(value, int) else logging.INFO


def setup_logging(level) -> None:
    logging.basicConfig(level=parse_log_level(level), format=LOG_FORMAT)


# ─────────────────────────────────────────────────────────────────────────────
# Message file naming
# ─────────────────────────────────────────────────────────────────────────────

def agent_from_pad_path(pad_path: str, pads_dir: Optional[str] = None) -> Optional[str]:
    """
    Work out which agent a pad belongs to: its directory under the pad root,
    otherwise the '<agent>-YYYY-MM-DD' prefix of its filename.
    """
    full = os.path.abspath(pad_path)
    if pads_dir:
        root = os.path.abspath(pads_dir)
        parent = os.path.dirname(full)
        if os.path.dirname(parent) == root and validate_scope(os.path.basename(parent)):
            return os.path.basename(parent)

    stem = os.path.splitext(os.path.basename(full))[0]
    m = _DATED_STEM_RE.match(stem)
    if m and m.group(1) != "one_time_pad":
        return m.group(1)
    return None


def encrypted_filename(pad_path: str, index: int, agent: Optional[str] = None) -> str:
    stem = os.path.splitext(os.path.basename(pad_path))[0]
    if agent:
        return f"{agent}_{stem}_pad{index}_encrypted.txt"
    return f"{stem}_pad{index}_encrypted.txt"


def decrypted_filename(encrypted_name: Optional[str], pad_id: str, index: int) -> str:
    if encrypted_name:
        m = _ENCRYPTED_NAME_RE.match(os.path.basename(encrypted_name))
        if m:
            return f"{m.group(1)}_{m.group(2)}_pad{m.group(3)}_decrypted.txt"
    return f"{pad_id}_pad{index}_decrypted.txt"


def _write_output(directory: str, filename: str, content: str) -> str:
    path = os.path.join(directory, filename)
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
    log.info("Writing message to file %s", path)
    return path


def _read_message(args) -> str:
    if args.file:
        with open(args.file, "r", encoding="utf-8") as f:
            return f.read()
    return args.text


# ─────────────────────────────────────────────────────────────────────────────
# Commands
# ─────────────────────────────────────────────────────────────────────────────

def cmd_make_pad(args, config: Dict) -> int:
    count  = args.count if args.count is not None else int(config["pad_count"])
    length = args.length if args.length is not None else int(config["pad_length"])
    store, path = PadGenerator(config["pads_dir"]).generate(count, length, args.scope)
    print(f"Pad file     : {path}")
    print(f"Pad id       : {store.id}")
    print(f"Pads         : {len(store)} × {store.key_length} bytes")
    print(f"Fingerprint  : {store.fingerprint()}")
    return 0


def cmd_examine(args, config: Dict) -> int:
    reports = PadLocator(config["pads_dir"]).examine(args.scope)
    if not reports:
        print("No pad files found.")
        return 0
    for r in reports:
        if "error" in r:
            print(f"{r['filename']}: ERROR {r['error']}")
            continue
        print(f"{r['filename']}: id={r['pad_id']} max_len={r['max_message_length']} "
              f"unconsumed={r['unconsumed_pads']}/{r['total_pads']} "
              f"fingerprint={r['fingerprint']}")
    return 0


def cmd_find(args, config: Dict) -> int:
    result = PadLocator(config["pads_dir"]).find(
        args.scope, args.min_length, not args.include_consumed)
    print(f"{result.store_path} pad {result.entry_index} (id {result.store_id})")
    return 0


def cmd_encrypt(args, config: Dict) -> int:
    message = _read_message(args)
    if args.pad:
        if args.index is None:
            raise ValueError("--index is required with --pad")
        pad_path, index = args.pad, args.index
    else:
        result = PadLocator(config["pads_dir"]).find(
            args.scope, len(message.encode("utf-8")), True)
        pad_path, index = result.store_path, result.entry_index
        log.info("Using pad %d from %s", index, pad_path)

    store     = PadStore.load(pad_path)
    formatted = CipherEngine().encrypt_message(message, store, index)

    # Ciphertext reaches stdout before any file write.
    print(formatted, flush=True)
    if args.file:
        agent = args.scope or agent_from_pad_path(pad_path, config["pads_dir"])
        _write_output(args.output_dir, encrypted_filename(pad_path, index, agent), formatted)
    return 0


def cmd_decrypt(args, config: Dict) -> int:
    text  = _read_message(args)
    store = PadStore.load(args.pad)
    plain = CipherEngine().decrypt_message(text, store, args.index)

    if args.file:
        _write_output(args.output_dir,
                      decrypted_filename(args.file, store.id, args.index), plain)
    print(plain)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="numstation",
                                description="Number Station one-time pad tool")
    p.add_argument("--config",    help="Path to conf.json")
    p.add_argument("--pads-dir",  help="Pad root directory (overrides config)")
    p.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR or 0-4")
    sub = p.add_subparsers(dest="command", required=True)

    mk = sub.add_parser("make-pad", help="Generate a new pad file")
    mk.add_argument("--scope",  help="Agent name (pads go to <pads-dir>/<agent>)")
    mk.add_argument("--count",  type=int, help="Number of pads")
    mk.add_argument("--length", type=int, help="Bytes per pad (rounded up to a multiple of 5)")
    mk.set_defaults(func=cmd_make_pad)

    ex = sub.add_parser("examine", help="Summarise pad files")
    ex.add_argument("--scope")
    ex.set_defaults(func=cmd_examine)

    fd = sub.add_parser("find", help="Show the next available pad")
    fd.add_argument("--scope")
    fd.add_argument("--min-length", type=int)
    fd.add_argument("--include-consumed", action="store_true")
    fd.set_defaults(func=cmd_find)

    for name, func in (("encrypt", cmd_encrypt), ("decrypt", cmd_decrypt)):
        sp = sub.add_parser(name, help=f"{name.capitalize()} a message")
        src = sp.add_mutually_exclusive_group(required=True)
        src.add_argument("--file", help="Read the message from a file")
        src.add_argument("--text", help="Message given on the command line")
        sp.add_argument("--pad",   required=(name == "decrypt"), help="Pad file path")
        sp.add_argument("--index", type=int, required=(name == "decrypt"), help="Pad number")
        sp.add_argument("--output-dir", default=".", help="Where message files are written")
        if name == "encrypt":
            sp.add_argument("--scope", help="Agent whose next free pad is used")
        sp.set_defaults(func=func)
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args   = build_parser().parse_args(argv)
    config = load_config(args.config)
    if args.pads_dir:
        config["pads_dir"] = os.path.expanduser(args.pads_dir)
    setup_logging(args.log_level or config["logging"]["level"])
    log.debug("Using pad directory %s", config["pads_dir"])

    try:
        return args.func(args, config)
    except (PadError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
