"""Test the specification table and payload field resolution.

Run from the repo root:
    python3 tests/test_specification.py
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "python"))

import json
import struct
import tempfile
from fractions import Fraction

import pytest

from vbuscsv.errors import SpecificationError
from vbuscsv.framing import Frame
from vbuscsv.specification import (
    FieldDescriptor, PacketSpec, SpecificationTable, default_table,
)


def make_frame(payload, source=1, destination=2, command=0x0100):
    return Frame(destination, source, 0x10, command, payload, 0)


def make_test_table():
    return SpecificationTable([
        PacketSpec(1, 2, 0x0100, "test device", (
            FieldDescriptor("speed", 0, 2, False, Fraction(1, 10), "rpm"),
            FieldDescriptor("temp", 2, 2, True, Fraction(1, 10), "°C"),
            FieldDescriptor("offset", 4, 3, True),
            FieldDescriptor("counter", 7, 4, False, Fraction(1000), "Wh"),
        )),
    ])


def test_resolve_fields():
    """Little-endian extraction, sign extension and scaling."""
    print("test_resolve_fields...", end="")

    payload = struct.pack("<Hh", 100, -25) + (-2).to_bytes(3, "little", signed=True) \
        + struct.pack("<I", 7)
    resolved = make_test_table().resolve(make_frame(payload))

    assert resolved.recognized
    assert resolved.spec.name == "test device"
    assert [f.label for f in resolved.fields] == ["speed", "temp", "offset", "counter"]

    speed, temp, offset, counter = resolved.fields
    assert speed.raw_value == 100
    assert speed.scaled_value == 10.0
    assert speed.unit_label == "rpm"
    assert temp.raw_value == -25
    assert temp.scaled_value == -2.5
    assert offset.raw_value == -2
    assert offset.scaled_value == -2.0
    assert counter.scaled_value == 7000.0

    print(" OK")


def test_resolve_unsigned_high_bit():
    print("test_resolve_unsigned_high_bit...", end="")

    payload = struct.pack("<HH", 0xFFFE, 0xFFFE)
    speed, temp = make_test_table().resolve(make_frame(payload)).fields
    assert speed.raw_value == 0xFFFE
    assert temp.raw_value == -2

    print(" OK")


def test_short_payload_skips_fields():
    """Descriptors past the payload end are skipped, not an error."""
    print("test_short_payload_skips_fields...", end="")

    resolved = make_test_table().resolve(make_frame(struct.pack("<Hh", 1, 2)))
    assert [f.label for f in resolved.fields] == ["speed", "temp"]

    resolved = make_test_table().resolve(make_frame(b"\x01"))
    assert resolved.recognized
    assert resolved.fields == []

    print(" OK")


def test_unrecognized_command():
    print("test_unrecognized_command...", end="")

    table = make_test_table()
    frame = make_frame(b"\x01\x02\x03\x04", command=0x0200)
    resolved = table.resolve(frame)
    assert not resolved.recognized
    assert resolved.fields == []
    assert resolved.frame.payload == b"\x01\x02\x03\x04"

    # Same command, other device pair
    assert not table.resolve(make_frame(b"\x00" * 4, source=3)).recognized

    print(" OK")


def test_precision():
    print("test_precision...", end="")

    def precision(scale):
        return FieldDescriptor("x", 0, 1, scale_factor=scale).precision

    assert precision(Fraction(1)) == 0
    assert precision(Fraction(1000)) == 0
    assert precision(Fraction(1, 10)) == 1
    assert precision(Fraction(1, 100)) == 2
    assert precision(Fraction(1, 8)) == 3
    assert precision(Fraction(1, 3)) == 6
    assert precision(0.1) == 1  # floats go through their decimal repr
    assert FieldDescriptor("x", 0, 1, scale_factor=0.1).scale_factor == Fraction(1, 10)

    print(" OK")


def test_descriptor_validation():
    print("test_descriptor_validation...", end="")

    with pytest.raises(SpecificationError):
        FieldDescriptor("x", 0, 5)
    with pytest.raises(SpecificationError):
        FieldDescriptor("x", 0, 0)
    with pytest.raises(SpecificationError):
        FieldDescriptor("x", -1, 1)
    with pytest.raises(SpecificationError):
        SpecificationTable([PacketSpec(1, 2, 3, "a"), PacketSpec(1, 2, 3, "b")])

    print(" OK")


def test_table_dict_roundtrip():
    print("test_table_dict_roundtrip...", end="")

    table = make_test_table()
    data = table.to_dict()
    assert data["packets"][0]["source"] == "0x0001"
    assert data["packets"][0]["fields"][0]["scale"] == "1/10"

    table2 = SpecificationTable.from_dict(json.loads(json.dumps(data)))
    assert len(table2) == 1
    assert list(table2)[0] == list(table)[0]

    print(" OK")


def test_table_load_json():
    """Substitute tables load from JSON with hex or integer ids."""
    print("test_table_load_json...", end="")

    doc = {"packets": [{
        "source": "0x7E11", "destination": 16, "command": "0x0100",
        "name": "custom",
        "fields": [{"label": "flow", "offset": 0, "width": 2,
                    "scale": "0.5", "unit": "l/h"}],
    }]}

    with tempfile.NamedTemporaryFile("w", suffix=".json", delete=False,
                                     encoding="utf-8") as f:
        json.dump(doc, f)
        tmppath = f.name

    try:
        table = SpecificationTable.load(tmppath)
        spec = table.lookup(0x7E11, 0x0010, 0x0100)
        assert spec is not None
        assert spec.fields[0].scale_factor == Fraction(1, 2)
        assert not spec.fields[0].is_signed
    finally:
        os.unlink(tmppath)

    with pytest.raises(SpecificationError):
        SpecificationTable.from_dict({"packets": [{"source": 1}]})
    with pytest.raises(SpecificationError):
        SpecificationTable.from_dict({"packets": [{
            "source": 1, "destination": 2, "command": 3,
            "fields": [{"label": "x", "offset": 0, "width": 1, "scale": "abc"}],
        }]})

    print(" OK")


def test_builtin_table():
    print("test_builtin_table...", end="")

    table = default_table()
    spec = table.lookup(0x4221, 0x0010, 0x0100)
    assert spec is not None
    assert spec.name == "DeltaSol BS Plus"

    payload = bytearray(28)
    struct.pack_into("<hhhh", payload, 0, 250, -50, 600, 0)
    payload[8] = 100
    struct.pack_into("<H", payload, 26, 210)
    resolved = table.resolve(make_frame(bytes(payload), source=0x4221,
                                        destination=0x0010))
    values = {f.label: f.scaled_value for f in resolved.fields}
    assert values["Temperature sensor 1"] == 25.0
    assert values["Temperature sensor 2"] == -5.0
    assert values["Pump speed relay 1"] == 100.0
    assert values["Version"] == 2.1

    # Every built-in descriptor has a unique label within its packet
    for p in table:
        labels = [d.label for d in p.fields]
        assert len(labels) == len(set(labels)), p.name

    print(" OK")


if __name__ == "__main__":
    print("vbuscsv specification tests")
    print("===========================\n")

    test_resolve_fields()
    test_resolve_unsigned_high_bit()
    test_short_payload_skips_fields()
    test_unrecognized_command()
    test_precision()
    test_descriptor_validation()
    test_table_dict_roundtrip()
    test_table_load_json()
    test_builtin_table()

    print("\nAll tests passed.")
