"""Exception types raised while decoding recordings."""

from __future__ import annotations


class DecodeError(ValueError):
    """Base class for everything the decoder can reject."""


class FrameRejected(DecodeError):
    """A single frame is invalid.  Never fatal for the stream."""

    reason = "rejected"

    def __init__(self, message: str, offset: int | None = None):
        super().__init__(message)
        self.offset = offset


class ChecksumMismatch(FrameRejected):
    reason = "checksum"


class MalformedSeptetGroup(FrameRejected):
    reason = "septet"


class HeaderLengthMismatch(FrameRejected):
    reason = "length"


class UnsupportedProtocol(FrameRejected):
    reason = "protocol"


class Truncated(DecodeError):
    """More bytes were requested than remain in the reservoir."""

    def __init__(self, requested: int, available: int):
        super().__init__(f"requested {requested} bytes, {available} available")
        self.requested = requested
        self.available = available


class SchemaFrozenError(DecodeError):
    """A frozen device pair schema received a field it does not have."""


class SpecificationError(ValueError):
    """A specification table could not be parsed."""


class SinkWriteFailure(OSError):
    """The output sink refused a write."""
