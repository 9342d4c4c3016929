"""vbuscsv - datalogger recording decoder and CSV converter."""

from .errors import (
    DecodeError, FrameRejected, ChecksumMismatch, MalformedSeptetGroup,
    HeaderLengthMismatch, UnsupportedProtocol, Truncated,
    SchemaFrozenError, SpecificationError, SinkWriteFailure,
)
from .reservoir import ByteReservoir
from .framing import Frame, FrameSynchronizer, build_frame, iter_frames
from .specification import (
    FieldDescriptor, PacketSpec, ResolvedField, ResolvedFrame,
    SpecificationTable, default_table,
)
from .assembler import (
    Column, Schema, Record, RecordAssembler, Phase,
    RepeatedCommandBoundary, LeadCommandBoundary, FrameBoundary,
)
from .writer import TableFormat, TableWriter
from .session import DecodeConfig, DecodeSummary, DecodeSession, MemorySinks

__all__ = [
    "DecodeError", "FrameRejected", "ChecksumMismatch", "MalformedSeptetGroup",
    "HeaderLengthMismatch", "UnsupportedProtocol", "Truncated",
    "SchemaFrozenError", "SpecificationError", "SinkWriteFailure",
    "ByteReservoir",
    "Frame", "FrameSynchronizer", "build_frame", "iter_frames",
    "FieldDescriptor", "PacketSpec", "ResolvedField", "ResolvedFrame",
    "SpecificationTable", "default_table",
    "Column", "Schema", "Record", "RecordAssembler", "Phase",
    "RepeatedCommandBoundary", "LeadCommandBoundary", "FrameBoundary",
    "TableFormat", "TableWriter",
    "DecodeConfig", "DecodeSummary", "DecodeSession", "MemorySinks",
]
