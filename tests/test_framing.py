"""Test frame synchronisation, septet coding and checksum validation.

Run from the repo root:
    python3 tests/test_framing.py
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "python"))

import random
import struct

import pytest

from vbuscsv.errors import MalformedSeptetGroup, Truncated
from vbuscsv.framing import (
    SYNC, FrameSynchronizer, build_frame, checksum, decode_septets,
    encode_septets, iter_frames,
)
from vbuscsv.reservoir import ByteReservoir


def test_reservoir_cursor():
    """peek/consume/seek/compact keep absolute positions."""
    print("test_reservoir_cursor...", end="")

    r = ByteReservoir(b"\x01\x02\x03")
    assert r.peek(2) == b"\x01\x02"
    assert r.position() == 0
    assert r.consume(2) == b"\x01\x02"
    assert r.position() == 2
    assert r.remaining() == 1

    with pytest.raises(Truncated):
        r.consume(2)
    assert r.position() == 2  # failed consume does not move

    r.compact()
    r.feed(b"\xAA\x05")
    assert r.position() == 2
    assert r.find(0xAA) == 3
    r.seek(3)
    assert r.consume(2) == b"\xAA\x05"
    assert not r.remaining()

    with pytest.raises(ValueError):
        r.seek(0)  # compacted away

    print(" OK")


def test_checksum():
    print("test_checksum...", end="")

    assert checksum(b"") == 0x7F
    assert checksum(b"\x01\x02") == 0x7C
    assert checksum(b"\x7F\x01") == 0x7F
    # 7-bit result never collides with the sync byte
    assert all(checksum(bytes([a, b])) < 0x80
               for a in range(0, 128, 7) for b in range(0, 128, 5))

    print(" OK")


def test_septet_coding():
    print("test_septet_coding...", end="")

    assert decode_septets(bytes([0x01, 0x7F, 0x00, 0x55]), 0b0101, 4) == \
        bytes([0x81, 0x7F, 0x80, 0x55])
    assert encode_septets(bytes([0x81, 0x7F, 0x80, 0x55])) == \
        (bytes([0x01, 0x7F, 0x00, 0x55]), 0b0101)

    with pytest.raises(MalformedSeptetGroup):
        decode_septets(bytes(4), 0x10, 4)
    with pytest.raises(MalformedSeptetGroup):
        decode_septets(bytes(3), 0x00, 4)

    print(" OK")


def test_frame_roundtrip():
    """A payload with high bits survives encode -> decode unchanged."""
    print("test_frame_roundtrip...", end="")

    payload = bytes(range(0, 256, 17))  # 16 bytes, half with high bit set
    data = build_frame(0x0010, 0x4221, 0x0100, payload)

    assert data[0] == SYNC
    assert all(b < 0x80 for b in data[1:])
    assert len(data) == 10 + 4 * 6

    frames = list(iter_frames(data))
    assert len(frames) == 1
    f = frames[0]
    assert f.destination_id == 0x0010
    assert f.source_id == 0x4221
    assert f.protocol_version == 0x10
    assert f.command_id == 0x0100
    assert f.payload == payload
    assert f.frame_offset == 0
    assert f.pair == (0x4221, 0x0010)

    print(" OK")


def test_frame_padding():
    print("test_frame_padding...", end="")

    frames = list(iter_frames(build_frame(2, 1, 0x0100, b"\xFF" * 5)))
    assert frames[0].payload == b"\xFF" * 5 + b"\x00" * 3

    empty = list(iter_frames(build_frame(2, 1, 0x0100)))
    assert empty[0].payload == b""

    with pytest.raises(ValueError):
        build_frame(0x0080, 1, 0x0100)  # address byte not 7-bit clean

    print(" OK")


def test_datagram_roundtrip():
    """Protocol 0x20 carries one 6-byte group checked together with the header."""
    print("test_datagram_roundtrip...", end="")

    payload = struct.pack("<HI", 0x1234, 0x89ABCDEF)
    data = build_frame(0x7E11, 0x0020, 0x0500, payload, protocol=0x20)
    assert len(data) == 16

    frames = list(iter_frames(data))
    assert len(frames) == 1
    assert frames[0].protocol_version == 0x20
    assert frames[0].payload == payload

    corrupt = bytearray(data)
    corrupt[6] ^= 0x01  # command byte, covered by the group checksum
    sync = FrameSynchronizer(ByteReservoir(bytes(corrupt)))
    assert list(sync.frames()) == []
    assert sync.rejected["checksum"] == 1

    print(" OK")


def test_reject_header_checksum():
    print("test_reject_header_checksum...", end="")

    data = bytearray(build_frame(2, 1, 0x0100, b"\x01\x02\x03\x04"))
    data[9] ^= 0x01
    sync = FrameSynchronizer(ByteReservoir(bytes(data)))
    assert list(sync.frames()) == []
    assert sync.rejected["checksum"] == 1
    assert sync.corrupted == 1
    assert not sync.truncated

    print(" OK")


def test_reject_payload_checksum():
    print("test_reject_payload_checksum...", end="")

    good = build_frame(2, 1, 0x0100, b"\x01\x02\x03\x04")
    bad = bytearray(good)
    bad[10] ^= 0x01
    sync = FrameSynchronizer(ByteReservoir(bytes(bad) + good))
    frames = list(sync.frames())
    assert len(frames) == 1
    assert frames[0].frame_offset == len(bad)
    assert sync.rejected["checksum"] == 1

    print(" OK")


def test_reject_malformed_septet():
    print("test_reject_malformed_septet...", end="")

    data = bytearray(build_frame(2, 1, 0x0100, b"\x01\x02\x03\x04"))
    data[14] = 0x10  # bit beyond the 4-byte group
    data[15] = checksum(bytes(data[10:15]))
    sync = FrameSynchronizer(ByteReservoir(bytes(data)))
    assert list(sync.frames()) == []
    assert sync.rejected["septet"] == 1

    print(" OK")


def test_reject_length_mismatch():
    """A frame cut short by the next sync byte is rejected, the next one kept."""
    print("test_reject_length_mismatch...", end="")

    first = build_frame(2, 1, 0x0100, bytes(8))  # declares two groups
    second = build_frame(2, 1, 0x0101, b"\x05\x06\x07\x08")
    data = first[:16] + second

    sync = FrameSynchronizer(ByteReservoir(data))
    frames = list(sync.frames())
    assert len(frames) == 1
    assert frames[0].command_id == 0x0101
    assert frames[0].frame_offset == 16
    assert sync.rejected["length"] == 1
    assert not sync.truncated

    print(" OK")


def test_reject_unknown_protocol():
    print("test_reject_unknown_protocol...", end="")

    header = struct.pack("<HHBH", 2, 1, 0x30, 0x0100)
    good = build_frame(2, 1, 0x0100, b"\x01\x02\x03\x04")
    data = bytes([SYNC]) + header + bytes([0x01, 0x02]) + good

    sync = FrameSynchronizer(ByteReservoir(data))
    frames = list(sync.frames())
    assert len(frames) == 1
    assert sync.rejected["protocol"] == 1

    print(" OK")


def test_truncated_tail():
    print("test_truncated_tail...", end="")

    f1 = build_frame(2, 1, 0x0100, b"\x01\x02\x03\x04")
    f2 = build_frame(2, 1, 0x0100, b"\x05\x06\x07\x08")
    sync = FrameSynchronizer(ByteReservoir(f1 + f2[:-3]))
    frames = list(sync.frames(final=True))
    assert len(frames) == 1
    assert sync.truncated
    assert sync.corrupted == 0

    print(" OK")


def test_resync_with_noise():
    """N frames with noise between them decode to exactly N frames."""
    print("test_resync_with_noise...", end="")

    rng = random.Random(1234)
    n = 25
    data = bytearray()
    false_syncs = 0
    for i in range(n):
        noise = bytes([SYNC]) + bytes(rng.randrange(256)
                                      for _ in range(rng.randrange(0, 12)))
        false_syncs += noise.count(SYNC)
        data += noise
        data += build_frame(2, 1, 0x0100, struct.pack("<HH", i, 1000 + i))

    sync = FrameSynchronizer(ByteReservoir(bytes(data)))
    frames = list(sync.frames())
    assert len(frames) == n
    assert [struct.unpack("<H", f.payload[:2])[0] for f in frames] == list(range(n))
    assert sync.corrupted >= false_syncs
    assert not sync.truncated

    print(" OK")


def test_streamed_fragments():
    """Feeding one byte at a time yields the same frames as one buffer."""
    print("test_streamed_fragments...", end="")

    data = b"\x00\x13" + b"".join(
        build_frame(2, 1, 0x0100 + i, bytes(range(i, i + 8)))
        for i in range(4))

    sync = FrameSynchronizer()
    frames = []
    for b in data:
        sync.feed(bytes([b]))
        frames.extend(sync.frames(final=False))
    frames.extend(sync.frames(final=True))

    assert [f.command_id for f in frames] == [0x0100, 0x0101, 0x0102, 0x0103]
    assert frames == list(iter_frames(data))
    assert sync.bytes_skipped == 2
    assert not sync.truncated

    print(" OK")


if __name__ == "__main__":
    print("vbuscsv framing tests")
    print("=====================\n")

    test_reservoir_cursor()
    test_checksum()
    test_septet_coding()
    test_frame_roundtrip()
    test_frame_padding()
    test_datagram_roundtrip()
    test_reject_header_checksum()
    test_reject_payload_checksum()
    test_reject_malformed_septet()
    test_reject_length_mismatch()
    test_reject_unknown_protocol()
    test_truncated_tail()
    test_resync_with_noise()
    test_streamed_fragments()

    print("\nAll tests passed.")
