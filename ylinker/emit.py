"""Fourth pass: copy module data into an executable image and apply fixups."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

from ylinker.records import (
    LinkError,
    RecordReader,
    RecordType,
    read_fixup_location,
    read_fixup_target,
)
from ylinker.scan import NOT_PRESENT, SEGMENT_COUNT, Segment, SegmentContext

EXE_HEADER_LENGTH = 512
MAX_RELOCATIONS = 8
EXTERNAL_BUFFER_SIZE = 1536
MAX_ITERATED_BLOCK = 128
RELOCATION_TABLE_OFFSET = 0x1E


@dataclass
class ExeImage:
    """The bytes of an executable under construction; grows as it is written."""

    data: bytearray = field(default_factory=bytearray)

    def write_bytes(self, position, data):
        """Write data at position, zero-filling any gap before it."""
        if position < 0:
            raise LinkError(f"Cannot write at negative position {position}.")
        end = position + len(data)
        if end > len(self.data):
            self.data.extend(bytes(end - len(self.data)))
        self.data[position:end] = data

    def write_u16(self, position, value):
        """Write a little-endian 16-bit word at position."""
        self.write_bytes(position, (value & 0xFFFF).to_bytes(2, "little"))

    def __bytes__(self):
        return bytes(self.data)

    def __len__(self):
        return len(self.data)


def word_checksum(data):
    """Complement of the sum of the little-endian words of data.

    A trailing odd byte does not take part in the sum.
    """
    even = bytes(data[: len(data) & ~1])
    total = sum(word for (word,) in struct.iter_unpack("<H", even))
    return ~total & 0xFFFF


def exe_header(state, relocations, checksum):
    """The MZ header fields followed by the relocation table."""
    if state.start_address is None:
        raise LinkError("No start address specified.")
    if len(relocations) > MAX_RELOCATIONS:
        raise LinkError(f"max of {MAX_RELOCATIONS} relocations.")
    lengths = state.segment_lengths
    total = sum(lengths.values())
    last_block = total % 512
    block_count = total // 512 + 1 + (1 if last_block else 0)
    stack_segment = lengths[Segment.CODE] // 16 + lengths[Segment.DATA] // 16
    fields = (
        last_block,
        block_count,
        0x0004,
        0x0020,
        0x0000,
        0xFFFF,
        stack_segment,
        lengths[Segment.STACK],
        checksum,
        state.start_address,
        0x0000,
        RELOCATION_TABLE_OFFSET,
        0x0000,
        0x0001,
    )
    header = bytearray(b"MZ")
    header += struct.pack("<14H", *(value & 0xFFFF for value in fields))
    for relocation in relocations:
        header += struct.pack("<HH", relocation & 0xFFFF, 0)
    return bytes(header)


def _read_file(path):
    try:
        with open(path, "rb") as handle:
            return handle.read()
    except OSError as exc:
        raise LinkError(f"Could not open {path}.") from exc


class _ModuleLinker:
    """Copies one module's data into the image and applies its fixups."""

    def __init__(self, state, module_index, data, image, relocations, log):
        self.state = state
        self.module = state.modules[module_index]
        self.reader = RecordReader(data, self.module.header_offset)
        self.image = image
        self.relocations = relocations
        self.log = log
        lengths = state.segment_lengths
        self.code_base = EXE_HEADER_LENGTH + self.module.code_origin
        self.data_base = (
            EXE_HEADER_LENGTH + lengths[Segment.CODE] + self.module.data_origin
        )
        self.stack_base = (
            EXE_HEADER_LENGTH + lengths[Segment.CODE] + lengths[Segment.DATA]
        )
        self.segments = SegmentContext()
        self.externals = []
        self._external_bytes = 0
        self.current = None
        self.current_offset = 0

    def _log(self, text):
        if self.log is not None:
            self.log.write(text)

    def run(self):
        while True:
            header = self.reader.read_header()
            if header is None:
                raise LinkError("P4_DoMod: Unexpected file termination.")
            record_type, length = header
            if record_type == RecordType.LNAMES:
                self.segments.read_lnames(self.reader, length)
            elif record_type == RecordType.SEGDEF:
                self.segments.read_segdef(self.reader, length)
            elif record_type == RecordType.EXTDEF:
                self._extdef(length)
            elif record_type == RecordType.LEDATA:
                self._ledata(length)
            elif record_type == RecordType.LIDATA:
                self._lidata(length)
            elif record_type == RecordType.FIXUPP:
                self._fixupp(length)
                self.current = None
            elif record_type == RecordType.MODEND:
                return
            elif record_type in (
                RecordType.THEADR,
                RecordType.PUBDEF,
                RecordType.COMMNT,
            ):
                self.reader.skip(length)
            else:
                raise LinkError(f"P4_DoMod: Unknown record of type {record_type}.")

    def _read_bytes(self, count):
        start = self.reader.tell()
        end = start + count
        if count < 0 or end > len(self.reader.data):
            raise LinkError("Unexpected end of file.")
        self.reader.seek(end)
        return self.reader.data[start:end]

    def _extdef(self, length):
        self._log("  EXTDEF\n")
        while length > 1:
            name = self.reader.read_name()
            self.reader.read_u8()  # definition type
            length -= len(name) + 2
            if name and self._external_bytes + len(name) >= EXTERNAL_BUFFER_SIZE:
                raise LinkError(
                    f"{name} at 0x{self._external_bytes:x} exceeded names length "
                    f"of 0x{EXTERNAL_BUFFER_SIZE:x}."
                )
            self._external_bytes += len(name) + 1
            self.externals.append(name)
        self.reader.read_u8()  # checksum

    def _base(self, segment):
        if segment is Segment.CODE:
            return self.code_base
        if segment is Segment.DATA:
            return self.data_base
        if segment is Segment.STACK:
            return self.stack_base
        raise LinkError(f"P4_XXDATA: Local SegType of {NOT_PRESENT}, must be 0 or 1. ")

    def _data_start(self, record, length):
        index = self.reader.read_u8()
        offset = self.reader.read_u16()
        self._log(f"  {record} SegIdx={index:x} Offs={offset:x} Len={length:x}\n")
        if index == 0 or index > SEGMENT_COUNT:
            raise LinkError(
                f"P4_{record}: segType of {index}, must be between 1 and 3."
            )
        self.current = self.segments.local_segment(index)
        self.current_offset = offset
        return self._base(self.current) + offset

    def _ledata(self, length):
        length -= 4
        position = self._data_start("LEDATA", length)
        self.image.write_bytes(position, self._read_bytes(length))
        self.reader.read_u8()  # checksum

    def _lidata(self, length):
        length -= 4
        position = self._data_start("LIDATA", length)
        out = bytearray()
        while length > 1:
            repeat = self.reader.read_u16()
            count = self.reader.read_u16()
            length -= 4
            self._log(f"    Repeat={repeat:x} Blocks={count:x}\n")
            if count == 0:
                length = self._iterated(repeat, length, out)
            elif count == 1:
                repeat = self.reader.read_u16()
                count = self.reader.read_u16()
                length -= 4
                if count == 0:
                    length = self._iterated(repeat, length, out)
            else:
                raise LinkError(f"P4_LIDATA: Block Count of {count}, must be 0. ")
        self.image.write_bytes(position, bytes(out))
        self.reader.read_u8()  # checksum

    def _iterated(self, repeat, length, out):
        count = self.reader.read_u8()
        length -= 1 + count
        if count > MAX_ITERATED_BLOCK:
            raise LinkError(
                f"P4_LIINNER: Block Size of {count}, must be 128 or less. "
            )
        out += self._read_bytes(count) * repeat
        return length

    def _fixupp(self, length):
        self._log("  FIXUPP\n")
        while length > 1:
            location, length = read_fixup_location(self.reader, length)
            if not location.is_fixup:
                raise LinkError(
                    f"P4_FIXUPP: must be fixup, not thread (locat={location.locat:x})."
                )
            if location.ref_type not in (1, 2):
                raise LinkError(
                    f"P4_FIXUPP: unhandled reference type {location.ref_type:x}."
                )
            target, length = read_fixup_target(self.reader, length)
            if target.frame_method == 0x00:
                if target.target_method not in (4, 0):
                    raise LinkError(
                        f"P4_FIXUPP: Unhandled target type {target.target_method} in seg."
                    )
                self._check_match(target)
                self._fix_segment(location, target)
            else:
                self._check_match(target)
                if target.target_method not in (6, 2):
                    raise LinkError(
                        f"P4_FIXUPP: Unhandled target type {target.target_method} in ext."
                    )
                self._fix_external(location, target)
        self.reader.read_u8()  # checksum

    @staticmethod
    def _check_match(target):
        if target.frame != target.target:
            raise LinkError(
                f"P4_FIXUPP: Segment frame {target.frame:x} and target "
                f"{target.target:x} must match."
            )

    def _where(self, location):
        return self.code_base + location.offset + self.current_offset

    def _write(self, where, value):
        self._log(f"    WRITE 0x{value & 0xFFFF:x} at 0x{where:x}\n")
        self.image.write_u16(where, value)

    def _fix_segment(self, location, target):
        index = target.frame
        self._log(f"Tgt=Seg{index}+0x{target.offset:x}\n")
        if not 1 <= index <= SEGMENT_COUNT:
            raise LinkError(
                f"P4_XXDATA: Local SegType of {(index - 1) & 0xFF}, must be 0 or 1. "
            )
        where = self._where(location)
        if not location.segment_relative:
            current = NOT_PRESENT if self.current is None else int(self.current)
            if index - 1 != current:
                raise LinkError(
                    f"P4_FixSeg: IP-rel, seg {index - 1} must equal seg {current}."
                )
            if location.ref_type != 1:
                raise LinkError(
                    "P4_FixSeg: Unhandled segment base ref in IP-relative fixupp."
                )
            self._write(
                where,
                target.offset - self.current_offset - location.offset - 2,
            )
            return
        segment = self.segments.local_segment(index)
        lengths = self.state.segment_lengths
        if location.ref_type == 1:
            if segment is Segment.CODE:
                base = self.module.code_origin
            elif segment is Segment.DATA:
                base = self.module.data_origin
            else:
                raise LinkError(
                    f"P4_FixSeg: Unhandled relative seg base index {index - 1}."
                )
            self._write(where, base + target.offset)
            return
        if segment is Segment.CODE:
            base = 0
        elif segment is Segment.DATA:
            base = lengths[Segment.CODE] // 16
        elif segment is Segment.STACK:
            base = (lengths[Segment.CODE] + lengths[Segment.DATA]) // 16
        else:
            raise LinkError(
                f"P4_FixSeg: Unhandled logical segment base index {index - 1}, "
                f"{NOT_PRESENT}"
            )
        self._write(where, base)
        if len(self.relocations) >= MAX_RELOCATIONS:
            raise LinkError(f"max of {MAX_RELOCATIONS} relocations.")
        self.relocations.append(where - EXE_HEADER_LENGTH)

    def _fix_external(self, location, target):
        index = target.frame
        if location.ref_type != 1:
            raise LinkError(f"P4_FixExt: Unhandled ref type {location.ref_type}.")
        if self.current is not Segment.CODE:
            raise LinkError("P4_FixExt: Segment type must be CODE")
        if index > len(self.externals):
            raise LinkError(
                f"P4_FixExt: Ext index of {index} is greater than ext count "
                f"of {len(self.externals)}."
            )
        if index == 0:
            raise LinkError(f"P4_FixExt: Could not find ext index {index}.")
        name = self.externals[index - 1]
        symbol = self.state.find_public(name, True)
        if symbol is None:
            raise LinkError(f"P4_FixExt: No pubdef defined matching extdef {name}.")
        modules = self.state.modules
        if symbol.module >= len(modules) or not modules[symbol.module].included:
            raise LinkError(f"P4_FixExt: Unincluded pubdef matches {name}.")
        owner = modules[symbol.module]
        if symbol.segment is Segment.CODE:
            origin = owner.code_origin
        elif symbol.segment is Segment.DATA:
            origin = owner.data_origin
        else:
            segment = NOT_PRESENT if symbol.segment is None else int(symbol.segment)
            raise LinkError(f"P4_FixExt: Ext is in unhandled seg of index {segment:x}")
        self._log(
            f"Tgt=Ext{index:x} ({name}; Seg=0x{int(symbol.segment):x} "
            f"Mod={owner.name}+0x{symbol.address:x})\n"
        )
        where = self._where(location)
        value = origin + symbol.address + target.offset
        if not location.segment_relative:
            if symbol.segment is not Segment.CODE:
                raise LinkError(
                    f"P4_FixExt: IP-Rel fixupps must resolve to CODE segment ({name})"
                )
            value -= where + 2 - EXE_HEADER_LENGTH
        self._write(where, value)


def link_module(state, module_index, data, image, relocations, log=None):
    """Copy module_index's data from its file bytes into image, applying fixups.

    Segment-base fixups append their image offsets to relocations.
    """
    _ModuleLinker(state, module_index, data, image, relocations, log).run()


def link_executable(state, output_path, log=None):
    """Link every included module into an MZ executable at output_path.

    Returns the bytes that were written.
    """
    if log is not None:
        log.write("Pass 4:\n")
    image = ExeImage()
    relocations = []
    for index, module in enumerate(state.modules):
        if not module.included:
            continue
        path = state.paths[module.file_index]
        if log is not None:
            log.write(
                f"Linking {module.name} ({path}) CODE=0x{module.code_origin:x} "
                f"DATA=0x{module.data_origin:x} \n"
            )
        link_module(state, index, _read_file(path), image, relocations, log)
    image.write_bytes(0, exe_header(state, relocations, 0))
    checksum = word_checksum(bytes(image))
    if log is not None:
        log.write(f"Checksum={checksum:x}\n")
    image.write_bytes(0, exe_header(state, relocations, checksum))
    result = bytes(image)
    try:
        with open(output_path, "wb") as handle:
            handle.write(result)
    except OSError as exc:
        raise LinkError(f"Could not open {output_path}.") from exc
    return result