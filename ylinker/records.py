"""Low-level reading of OMF object records."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

PARAGRAPH = 16


class LinkError(Exception):
    """Raised when linking cannot continue."""


class RecordType(IntEnum):
    """OMF record type codes understood by the linker."""

    THEADR = 0x80
    COMMNT = 0x88
    MODEND = 0x8A
    EXTDEF = 0x8C
    PUBDEF = 0x90
    LNAMES = 0x96
    SEGDEF = 0x98
    FIXUPP = 0x9C
    LEDATA = 0xA0
    LIDATA = 0xA2
    LIBHDR = 0xF0
    LIBEND = 0xF1
    LIBDEP = 0xF2


class RecordReader:
    """Sequential little-endian reader over the bytes of an object file."""

    def __init__(self, data, offset=0):
        self.data = bytes(data)
        self.position = 0
        self.seek(offset)

    def at_end(self):
        """True when no more bytes are left to read."""
        return self.position >= len(self.data)

    def tell(self):
        return self.position

    def seek(self, offset):
        """Move to an absolute offset; fails if the data is too short."""
        if offset < 0 or offset > len(self.data):
            raise LinkError(f"Could not seek to position {offset}, file too short.")
        self.position = offset

    def read_u8(self):
        if self.at_end():
            raise LinkError("Unexpected end of file.")
        value = self.data[self.position]
        self.position += 1
        return value

    def read_u16(self):
        low = self.read_u8()
        high = self.read_u8()
        return low | (high << 8)

    def read_name(self):
        """Read a length-prefixed string."""
        length = self.read_u8()
        end = self.position + length
        if end > len(self.data):
            raise LinkError("Unexpected end of file.")
        raw = self.data[self.position:end]
        self.position = end
        return raw.decode("latin-1")

    def skip(self, count):
        """Move forward by count bytes, stopping at the end of the data."""
        if count < 0:
            raise LinkError(f"Cannot skip a negative count of {count} bytes.")
        self.position = min(self.position + count, len(self.data))

    def read_header(self):
        """Return (record type, record length), or None at end of data."""
        if self.at_end():
            return None
        record_type = self.read_u8()
        if self.at_end():
            return None
        return record_type, self.read_u16()

    def skip_to_paragraph(self):
        """Skip padding up to the next 16-byte boundary."""
        if self.at_end():
            return
        remaining = PARAGRAPH - self.position % PARAGRAPH
        if remaining != PARAGRAPH:
            self.skip(remaining)


@dataclass(frozen=True)
class FixupLocation:
    """Where a fixup is to be written within the preceding data record."""

    locat: int
    ref_type: int
    offset: int

    @property
    def is_fixup(self):
        return bool(self.locat & 0x80)

    @property
    def segment_relative(self):
        return bool(self.locat & 0x40)


@dataclass(frozen=True)
class FixupTarget:
    """Frame and target description of a fixup."""

    frame_method: int
    target_method: int
    frame: int
    target: int
    offset: int


def _read_index(reader, what, value):
    if value >= 0x80:
        if value != 0x80:
            raise LinkError(f"rd_fix_target: unhandled extended {what} of 0x{value:x}.")
        return reader.read_u8(), 1
    return value, 0


def read_fixup_location(reader, length):
    """Read a fixup location; return it with the bytes left in the record."""
    locat = reader.read_u8()
    ref_type = (locat & 0x3C) >> 2
    offset = reader.read_u8() + ((locat & 0x03) << 8)
    return FixupLocation(locat, ref_type, offset), length - 2


def read_fixup_target(reader, length):
    """Read fix-data and its indexes; return the target with bytes left."""
    methods = reader.read_u8()
    frame_method = methods >> 4
    target_method = methods & 0x0F
    length -= 1
    if frame_method not in (0x00, 0x02):
        raise LinkError(
            f"rd_fix_target: unhandled frame method 0x{frame_method:x} (0x{methods:x})"
        )
    frame, extra = _read_index(reader, "frame", reader.read_u8())
    length -= 1 + extra
    target, extra = _read_index(reader, "target", reader.read_u8())
    length -= 1 + extra
    if target_method in (0x00, 0x02):
        offset = reader.read_u16()
        length -= 2
    elif target_method in (0x04, 0x06):
        offset = 0
    else:
        raise LinkError(f"rd_fix_target: unhandled target method {target_method:x}.")
    return FixupTarget(frame_method, target_method, frame, target, offset), length