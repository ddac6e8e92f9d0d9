"""
tests/test_station.py

Contract:
- Configuration layers: defaults, conf.json, environment.
- The command line drives generate → encrypt → decrypt end to end and
  reports pad errors with exit status 1.
"""

import json
import logging
import os

import pytest

import station
from pad_store import PadStore


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    home = tmp_path / "home"
    monkeypatch.setenv("NUMSTATION_HOME", str(home))
    monkeypatch.delenv("NUMSTATION_PADS_DIR", raising=False)
    monkeypatch.delenv("NUMSTATION_LOG_LEVEL", raising=False)
    monkeypatch.chdir(tmp_path)
    return home


# ── Configuration ────────────────────────────────────────────────────────────

def test_defaults_without_config_file(isolated_home):
    config = station.load_config()
    assert config["pads_dir"] == str(isolated_home / "pads")
    assert config["pad_count"] == station.DEFAULT_PAD_COUNT
    assert config["logging"]["level"] == "INFO"


def test_config_file_and_environment(tmp_path):
    conf = tmp_path / "conf.json"
    conf.write_text(json.dumps({"pads_dir": "/srv/pads", "pad_length": 250,
                                "logging": {"level": 0}}))

    config = station.load_config(str(conf), environ={})
    assert config["pads_dir"] == "/srv/pads"
    assert config["pad_length"] == 250
    assert config["logging"]["level"] == 0

    config = station.load_config(str(conf), environ={"NUMSTATION_PADS_DIR": "/other",
                                                     "NUMSTATION_LOG_LEVEL": "ERROR"})
    assert config["pads_dir"] == "/other"
    assert config["logging"]["level"] == "ERROR"


def test_malformed_config_falls_back_to_defaults(tmp_path, capsys):
    conf = tmp_path / "conf.json"
    conf.write_text("{not json")
    config = station.load_config(str(conf), environ={})
    assert config["pad_length"] == station.DEFAULT_PAD_LENGTH
    assert "Ignoring unreadable config" in capsys.readouterr().err


@pytest.mark.parametrize("value,level", [
    (0, logging.DEBUG), ("1", logging.INFO), ("warning", logging.WARNING),
    ("ERROR", logging.ERROR), ("nonsense", logging.INFO),
])
def test_parse_log_level(value, level):
    assert station.parse_log_level(value) == level


# ── Message file naming ──────────────────────────────────────────────────────

def test_agent_from_pad_path(tmp_path):
    pads = tmp_path / "pads"
    assert station.agent_from_pad_path(str(pads / "Abyss" / "x_1.json"), str(pads)) == "Abyss"
    assert station.agent_from_pad_path("/elsewhere/Raven-2024-01-02-003.json") == "Raven"
    assert station.agent_from_pad_path("/elsewhere/one_time_pad-2024-01-02.json") is None
    assert station.agent_from_pad_path("/elsewhere/one_time_pad_04213.json") is None


def test_message_filenames():
    enc = station.encrypted_filename("/p/Abyss/Abyss-2026-01-12-001.json", 2, "Abyss")
    assert enc == "Abyss_Abyss-2026-01-12-001_pad2_encrypted.txt"
    assert station.encrypted_filename("/p/one_time_pad_1.json", 0) == "one_time_pad_1_pad0_encrypted.txt"

    assert station.decrypted_filename(enc, "id", 2) == "Abyss_Abyss-2026-01-12-001_pad2_decrypted.txt"
    assert station.decrypted_filename("message.txt", "1704-99", 4) == "1704-99_pad4_decrypted.txt"
    assert station.decrypted_filename(None, "1704-99", 4) == "1704-99_pad4_decrypted.txt"


# ── Command line ─────────────────────────────────────────────────────────────

def test_cli_round_trip(tmp_path, capsys):
    pads = str(tmp_path / "pads")
    assert station.main(["--pads-dir", pads, "make-pad", "--scope", "Abyss",
                         "--count", "3", "--length", "18"]) == 0
    out = capsys.readouterr().out
    assert "3 × 20 bytes" in out

    assert station.main(["--pads-dir", pads, "encrypt", "--text", "MEET AT DAWN",
                         "--scope", "Abyss"]) == 0
    ciphertext = capsys.readouterr().out.strip()

    pad_file = os.path.join(pads, "Abyss", os.listdir(os.path.join(pads, "Abyss"))[0])
    assert PadStore.load(pad_file).entry(0).consumed is True

    assert station.main(["--pads-dir", pads, "decrypt", "--text", ciphertext,
                         "--pad", pad_file, "--index", "0"]) == 0
    assert capsys.readouterr().out.strip() == "MEET AT DAWN"

    assert station.main(["--pads-dir", pads, "find", "--scope", "Abyss"]) == 0
    assert f"{pad_file} pad 1" in capsys.readouterr().out


def test_cli_encrypt_and_decrypt_files(tmp_path, capsys):
    pads = tmp_path / "pads"
    station.main(["--pads-dir", str(pads), "make-pad", "--scope", "Raven",
                  "--count", "2", "--length", "50"])
    message = tmp_path / "message.txt"
    message.write_text("THE EAGLE HAS LANDED")
    out_dir = tmp_path / "out"
    out_dir.mkdir()

    assert station.main(["--pads-dir", str(pads), "encrypt", "--file", str(message),
                         "--scope", "Raven", "--output-dir", str(out_dir)]) == 0
    [enc_name] = os.listdir(out_dir)
    assert enc_name.startswith("Raven_Raven-") and enc_name.endswith("_pad0_encrypted.txt")

    pad_file = os.path.join(str(pads), "Raven", os.listdir(pads / "Raven")[0])
    assert station.main(["--pads-dir", str(pads), "decrypt", "--file", str(out_dir / enc_name),
                         "--pad", pad_file, "--index", "0",
                         "--output-dir", str(out_dir)]) == 0
    dec_name = enc_name.replace("_encrypted.txt", "_decrypted.txt")
    assert (out_dir / dec_name).read_text() == "THE EAGLE HAS LANDED"


def test_cli_reports_errors(tmp_path, capsys):
    pads = str(tmp_path / "pads")
    assert station.main(["--pads-dir", pads, "find", "--scope", "Nobody"]) == 1
    assert "does not exist" in capsys.readouterr().err

    station.main(["--pads-dir", pads, "make-pad", "--count", "1", "--length", "5"])
    capsys.readouterr()
    assert station.main(["--pads-dir", pads, "encrypt", "--text", "far too long for it"]) == 1
    assert "No available (unconsumed) pads found" in capsys.readouterr().err


def test_cli_refuses_reused_pad(tmp_path, capsys):
    pads = str(tmp_path / "pads")
    station.main(["--pads-dir", pads, "make-pad", "--count", "1", "--length", "10"])
    pad_file = os.path.join(pads, os.listdir(pads)[0])
    args = ["--pads-dir", pads, "encrypt", "--text", "hi", "--pad", pad_file, "--index", "0"]

    assert station.main(args) == 0
    capsys.readouterr()
    assert station.main(args) == 1
    assert "already been consumed" in capsys.readouterr().err


def test_cli_examine(tmp_path, capsys):
    pads = str(tmp_path / "pads")
    station.main(["--pads-dir", pads, "make-pad", "--count", "4", "--length", "10"])
    capsys.readouterr()
    assert station.main(["--pads-dir", pads, "examine"]) == 0
    assert "unconsumed=4/4" in capsys.readouterr().out


def test_cli_prints_ciphertext_when_output_dir_is_unwritable(tmp_path, capsys):
    pads = str(tmp_path / "pads")
    station.main(["--pads-dir", pads, "make-pad", "--count", "1", "--length", "20"])
    capsys.readouterr()
    message = tmp_path / "message.txt"
    message.write_text("HOLD POSITION")
    blocker = tmp_path / "not_a_dir"
    blocker.write_text("")

    assert station.main(["--pads-dir", pads, "encrypt", "--file", str(message),
                         "--output-dir", str(blocker)]) == 1
    captured = capsys.readouterr()
    ciphertext = captured.out.strip()
    assert ciphertext
    assert "Error:" in captured.err

    pad_file = os.path.join(pads, os.listdir(pads)[0])
    assert station.main(["--pads-dir", pads, "decrypt", "--text", ciphertext,
                         "--pad", pad_file, "--index", "0"]) == 0
    assert capsys.readouterr().out.strip() == "HOLD POSITION"
