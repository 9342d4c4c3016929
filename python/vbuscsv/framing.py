"""Frame synchronisation, septet decoding and checksum validation.

Wire format of one frame:
  [sync 0xAA]
  [destination u16][source u16][protocol u8][command u16]   7-bit clean, LE
  protocol 0x10:
    [frame_count u8][header_checksum u8]
    ([data × 4][septet][checksum]) × frame_count
  protocol 0x20:
    ([data × 6][septet][checksum])                          checksum covers header

Every byte after the sync byte is below 0x80.  The high bits of the data
bytes travel in the septet byte of their group, bit k for data byte k.
"""

from __future__ import annotations

import logging
import struct
from collections import Counter
from dataclasses import dataclass
from typing import Iterator

from .errors import (
    ChecksumMismatch, FrameRejected, HeaderLengthMismatch,
    MalformedSeptetGroup, Truncated, UnsupportedProtocol,
)
from .reservoir import ByteReservoir

logger = logging.getLogger(__name__)

SYNC = 0xAA

# Wire format constants
BASE_HEADER_FMT = "<HHBH"
BASE_HEADER_SIZE = struct.calcsize(BASE_HEADER_FMT)  # 7


@dataclass(frozen=True)
class ProtocolLayout:
    version: int
    group_size: int
    counted: bool  # header carries frame_count + header checksum


LAYOUTS = {
    0x10: ProtocolLayout(0x10, 4, True),
    0x20: ProtocolLayout(0x20, 6, False),
}


@dataclass(frozen=True)
class Frame:
    destination_id: int
    source_id: int
    protocol_version: int
    command_id: int
    payload: bytes
    frame_offset: int

    @property
    def pair(self) -> tuple[int, int]:
        """(source_id, destination_id) device pair key."""
        return self.source_id, self.destination_id


# ---------------------------------------------------------------------------
# Byte level helpers
# ---------------------------------------------------------------------------

def checksum(data: bytes) -> int:
    """7-bit complement of the byte sum."""
    return (0x7F - sum(data)) & 0x7F


def decode_septets(data: bytes, septet: int, group_size: int) -> bytes:
    """Restore the high bits of one group of 7-bit data bytes."""
    if len(data) != group_size:
        raise MalformedSeptetGroup(
            f"group holds {len(data)} bytes, expected {group_size}")
    if septet >> group_size:
        raise MalformedSeptetGroup(
            f"septet 0x{septet:02X} sets bits beyond group size {group_size}")
    return bytes((b & 0x7F) | (((septet >> k) & 0x01) << 7)
                 for k, b in enumerate(data))


def encode_septets(data: bytes) -> tuple[bytes, int]:
    """Split a group into 7-bit data bytes and the septet carrying high bits."""
    septet = 0
    for k, b in enumerate(data):
        if b & 0x80:
            septet |= 1 << k
    return bytes(b & 0x7F for b in data), septet


def _check_clean(data: bytes, what: str) -> None:
    for b in data:
        if b & 0x80:
            raise HeaderLengthMismatch(
                f"byte 0x{b:02X} inside {what}, frame shorter than declared")


def build_frame(destination: int, source: int, command: int,
                payload: bytes = b"", protocol: int = 0x10) -> bytes:
    """Encode one frame as it appears on the wire.

    Protocol 0x10 payloads are zero-padded to a whole number of groups.
    """
    layout = LAYOUTS.get(protocol)
    if layout is None:
        raise ValueError(f"unsupported protocol version 0x{protocol:02X}")

    header = struct.pack(BASE_HEADER_FMT, destination, source, protocol, command)
    if any(b & 0x80 for b in header):
        raise ValueError("addresses and command must be 7-bit clean per byte")

    size = layout.group_size
    if layout.counted:
        padded = payload + bytes(-len(payload) % size)
        frame_count = len(padded) // size
        if frame_count > 0x7F:
            raise ValueError(f"payload too large: {len(payload)} bytes")
        header += bytes([frame_count])
        out = bytearray([SYNC]) + header + bytes([checksum(header)])
        covered = b""
    else:
        if len(payload) != size:
            raise ValueError(
                f"protocol 0x{protocol:02X} carries exactly {size} bytes")
        padded = payload
        out = bytearray([SYNC]) + header
        covered = header

    for i in range(0, len(padded), size):
        data, septet = encode_septets(padded[i:i + size])
        group = data + bytes([septet])
        out += group + bytes([checksum(covered + group)])
        covered = b""
    return bytes(out)


# ---------------------------------------------------------------------------
# Synchroniser
# ---------------------------------------------------------------------------

class FrameSynchronizer:
    """Scans a reservoir for frames and recovers from corrupt regions.

    A rejected frame costs one byte: scanning resumes right after the sync
    byte that started it, so a real frame hidden behind a false sync is
    never lost.
    """

    def __init__(self, reservoir: ByteReservoir | None = None):
        self.reservoir = reservoir if reservoir is not None else ByteReservoir()
        self.frames_seen: int = 0
        self.bytes_skipped: int = 0
        self.truncated: bool = False
        self.rejected: Counter[str] = Counter()

    @property
    def corrupted(self) -> int:
        return sum(self.rejected.values())

    def feed(self, data: bytes) -> None:
        self.reservoir.feed(data)

    def frames(self, final: bool = True) -> Iterator[Frame]:
        """Yield every complete frame currently in the reservoir.

        With final=False a frame cut at the end of the buffer stays buffered
        until more bytes are fed.  With final=True it is discarded and the
        stream is flagged as truncated.
        """
        r = self.reservoir
        while True:
            start = r.find(SYNC)
            if start is None:
                self.bytes_skipped += r.remaining()
                r.skip(r.remaining())
                r.compact()
                return

            self.bytes_skipped += start - r.position()
            r.seek(start)
            try:
                frame = self._read_frame(start)
            except Truncated as exc:
                r.seek(start + 1)
                tail = r.peek(r.remaining())
                if any(b & 0x80 for b in tail):
                    # A later sync byte proves this frame was cut short
                    self._reject(HeaderLengthMismatch(
                        "frame interrupted by sync byte", start), start)
                    continue
                if not final:
                    r.seek(start)
                    r.compact()
                    return
                self.truncated = True
                logger.debug("stream ends inside frame at offset %d (%s)",
                             start, exc)
                r.skip(r.remaining())
                r.compact()
                return
            except FrameRejected as exc:
                self._reject(exc, start)
                r.seek(start + 1)
                continue

            self.frames_seen += 1
            yield frame

    def _reject(self, exc: FrameRejected, offset: int) -> None:
        exc.offset = offset
        self.rejected[exc.reason] += 1
        logger.debug("rejected frame at offset %d: %s", offset, exc)

    def _read_frame(self, start: int) -> Frame:
        r = self.reservoir
        r.consume(1)

        base = r.consume(BASE_HEADER_SIZE)
        _check_clean(base, "header")
        destination, source, version, command = struct.unpack(
            BASE_HEADER_FMT, base)

        layout = LAYOUTS.get(version)
        if layout is None:
            raise UnsupportedProtocol(
                f"unknown protocol version 0x{version:02X}")

        if layout.counted:
            tail = r.consume(2)
            _check_clean(tail, "header")
            frame_count, header_crc = tail
            if checksum(base + tail[:1]) != header_crc:
                raise ChecksumMismatch("header checksum mismatch")
            groups = frame_count
            covered = b""
        else:
            groups = 1
            covered = base

        payload = bytearray()
        for i in range(groups):
            chunk = r.consume(layout.group_size + 2)
            _check_clean(chunk, "payload")
            group, crc = chunk[:-1], chunk[-1]
            if checksum(covered + group) != crc:
                raise ChecksumMismatch(f"checksum mismatch in group {i}")
            payload += decode_septets(group[:-1], group[-1], layout.group_size)
            covered = b""

        return Frame(destination, source, version, command,
                     bytes(payload), start)


def iter_frames(data: bytes) -> Iterator[Frame]:
    """Decode every valid frame of a complete recording."""
    sync = FrameSynchronizer(ByteReservoir(data))
    yield from sync.frames(final=True)
