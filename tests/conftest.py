import json

import pytest


@pytest.fixture
def write_pad_file():
    """Write a pad file in the current format.

    consumed: list of bools, one per pad; key_length: bytes per pad.
    """
    def _write(path, consumed, key_length=10, pad_id="1704196800-1234", key_byte=0xAB):
        path.parent.mkdir(parents=True, exist_ok=True)
        pads = {}
        for i, used in enumerate(consumed):
            pads[str(i)] = {
                "key":        bytes([key_byte]).hex() * key_length,
                "epoch_date": 1704196800 if used else None,
                "consumed":   used,
            }
        path.write_text(json.dumps({"id": pad_id, "pads": pads}))
        return path
    return _write
