"""First pass: collect modules, segments and public symbols from object files."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum

from ylinker.records import LinkError, RecordReader, RecordType, read_fixup_target

MAX_MODULES = 128
MAX_PUBLICS = 640
MAX_LOCAL_NAMES = 4
SEGMENT_COUNT = 3
MAX_FILE_INDEX = 0xFF
NOT_PRESENT = 0xFF


class Segment(IntEnum):
    """The three segments a linked program is made of."""

    CODE = 0
    DATA = 1
    STACK = 2


_LOCAL_NAMES = {
    "": None,
    "CODE": Segment.CODE,
    "DATA": Segment.DATA,
    "STACK": Segment.STACK,
}

_SKIPPED_RECORDS = frozenset(
    {
        RecordType.COMMNT,
        RecordType.EXTDEF,
        RecordType.FIXUPP,
        RecordType.LEDATA,
        RecordType.LIDATA,
        RecordType.LIBDEP,
    }
)


def _fold(name):
    """Upper-case ASCII letters only, as the linker compares names."""
    return name.encode("latin-1").upper()


@dataclass
class ModuleInfo:
    """An object module found in an input file."""

    name: str
    file_index: int
    header_offset: int
    in_library: bool = False
    code_length: int = 0
    data_length: int = 0
    code_origin: int = 0
    data_origin: int = 0
    has_start: bool = False
    has_stack: bool = False
    included: bool = False


@dataclass(frozen=True)
class PublicSymbol:
    """A public name, the module defining it and its place in that module."""

    name: str
    module: int
    segment: Segment | None
    address: int


class SegmentContext:
    """Local names and segment definitions of the module being read."""

    def __init__(self):
        self.names: list[Segment | None] = [None] * MAX_LOCAL_NAMES
        self.segments: list[Segment] = []

    def reset(self):
        """Forget the segments defined so far."""
        self.segments = []

    def read_lnames(self, reader, length):
        """Read an LNAMES record body, including its checksum."""
        names = []
        while length > 1:
            if len(names) == MAX_LOCAL_NAMES:
                raise LinkError(
                    f"Error: P1_LNAMES max of {MAX_LOCAL_NAMES} local names."
                )
            name = reader.read_name()
            length -= len(name) + 1
            try:
                names.append(_LOCAL_NAMES[name])
            except KeyError:
                raise LinkError(
                    f"Error: P1_LNAMES does not handle name {name}."
                ) from None
        self.names = names + [None] * (MAX_LOCAL_NAMES - len(names))
        reader.read_u8()

    def _local_name(self, index):
        if not 1 <= index <= len(self.names):
            raise LinkError(f"SEGDEF: local name index {index} out of range.")
        return self.names[index - 1]

    def read_segdef(self, reader, length):
        """Read a SEGDEF record body; return (segment, segment length)."""
        attributes = reader.read_u8()
        if attributes & 0xE0 != 0x60:
            raise LinkError("SEGDEF: Unknown segment attribute field (must be 0x60).")
        combine = attributes & 0x1C
        if combine not in (0x08, 0x14):
            raise LinkError(
                f"SEGDEF: Unknown combine {combine:x} (req: 0x08 or 0x14)."
            )
        if attributes & 0x02:
            raise LinkError("SEGDEF: Attribute may not be big (flag 0x02).")
        if attributes & 0x01:
            raise LinkError("SEGDEF: Attribute must be 16-bit addressing (flag 0x01).")
        segment_length = reader.read_u16()
        name_index = reader.read_u8()
        class_index = reader.read_u8()
        reader.read_u8()  # overlay name, ignored
        reader.read_u8()  # checksum
        segment = self._local_name(name_index)
        class_name = self._local_name(class_index)
        if class_name is not None:
            raise LinkError(f"SEGDEF: ClassName must be null; LNAME == {class_name:x}")
        if segment is None:
            raise LinkError(f"SEGDEF: Linker does not handle LNAME of {NOT_PRESENT:x}")
        if len(self.segments) == SEGMENT_COUNT:
            raise LinkError(f"SEGDEF: max of {SEGMENT_COUNT} segments per module.")
        self.segments.append(segment)
        return segment, segment_length

    def local_segment(self, index):
        """Segment for a 1-based local segment index, or None if not defined."""
        if not 1 <= index <= SEGMENT_COUNT:
            raise LinkError(
                f"Segment index of {index}, must be between 1 and {SEGMENT_COUNT}."
            )
        if index > len(self.segments):
            return None
        return self.segments[index - 1]


@dataclass
class LinkState:
    """Everything the linker knows about its inputs."""

    paths: list[str] = field(default_factory=list)
    modules: list[ModuleInfo] = field(default_factory=list)
    publics: list[PublicSymbol] = field(default_factory=list)
    segment_lengths: dict[Segment, int] = field(
        default_factory=lambda: {segment: 0 for segment in Segment}
    )
    start_address: int | None = None
    in_library: bool = False

    def _is_included(self, module_index):
        return module_index < len(self.modules) and self.modules[module_index].included

    def find_public(self, name, include_all):
        """Find a public symbol by name, ignoring ASCII case.

        Unless include_all is true, a symbol whose module is not included
        is not returned. Returns None when no symbol is found.
        """
        wanted = _fold(name)
        for symbol in self.publics:
            if _fold(symbol.name) == wanted:
                if include_all or self._is_included(symbol.module):
                    return symbol
                return None
        return None

    def _defined(self, name):
        wanted = _fold(name)
        return next((s for s in self.publics if _fold(s.name) == wanted), None)

    def align_segments(self, amount):
        """Round every segment length up to a multiple of amount."""
        for segment, length in self.segment_lengths.items():
            excess = length % amount
            if excess:
                self.segment_lengths[segment] = length + amount - excess


class _FileScan:
    """Reads the records of one input file into the link state."""

    def __init__(self, state, file_index, data):
        self.state = state
        self.file_index = file_index
        self.reader = RecordReader(data)
        self.segments = SegmentContext()
        self.module: ModuleInfo | None = None

    @property
    def path(self):
        if self.file_index < len(self.state.paths):
            return self.state.paths[self.file_index]
        return f"file {self.file_index}"

    def _current(self, record):
        if self.module is None:
            raise LinkError(f"{record}: record outside of a module in {self.path}.")
        return self.module

    def run(self):
        while (header := self.reader.read_header()) is not None:
            record_type, length = header
            if not self._record(record_type, length):
                break

    def _record(self, record_type, length):
        """Handle one record; return False when reading the file must stop."""
        if record_type == RecordType.THEADR:
            self._theadr()
            self.segments.reset()
        elif record_type == RecordType.MODEND:
            self._modend(length)
        elif record_type == RecordType.LNAMES:
            self.segments.read_lnames(self.reader, length)
        elif record_type == RecordType.PUBDEF:
            self._pubdef(length)
        elif record_type == RecordType.SEGDEF:
            self._segdef(length)
        elif record_type == RecordType.LIBHDR:
            self._libhdr(length)
        elif record_type == RecordType.LIBEND:
            if not self.state.in_library:
                raise LinkError("LIBEND: not a library!")
            self.reader.skip(length)
            self.state.in_library = False
            return False
        elif record_type in _SKIPPED_RECORDS:
            self.reader.skip(length)
        else:
            raise LinkError(
                f"P1_DoRecord: Unknown record type {record_type:x} in {self.path}. Exiting."
            )
        return True

    def _theadr(self):
        if len(self.state.modules) == MAX_MODULES:
            raise LinkError(f"Error: max of {MAX_MODULES} object modules.")
        position = self.reader.tell()
        if position > 0xFFFF:
            raise LinkError("Could not load module from file; file larger than 65kb.")
        name = self.reader.read_name()
        if self.file_index > MAX_FILE_INDEX:
            raise LinkError(
                "AddModule: MDAT_FLG cannot store file index greater than 255."
            )
        self.module = ModuleInfo(
            name=name,
            file_index=self.file_index,
            header_offset=position - 3,
            in_library=self.state.in_library,
        )
        self.reader.read_u8()  # checksum

    def _modend(self, length):
        module = self._current("MODEND")
        module_type = self.reader.read_u8()
        if module_type & 0x40:
            target, _ = read_fixup_target(self.reader, length - 1)
            module.has_start = True
            self.state.start_address = target.offset
        if not module.in_library:
            module.included = True
        self.reader.read_u8()  # checksum
        self.reader.skip_to_paragraph()
        self.state.modules.append(module)
        self.module = None

    def _pubdef(self, length):
        module = self._current("PUBDEF")
        module_index = len(self.state.modules)
        if self.reader.read_u8() != 0:
            raise LinkError("PUBDEF: BaseGroup must be 0.")
        base_segment = self.reader.read_u8()
        if base_segment == 0:
            raise LinkError("P1_PUBDEF: BaseSegment must be nonzero.")
        length -= 2
        while length > 1:
            name = self.reader.read_name()
            if len(self.state.publics) >= MAX_PUBLICS:
                raise LinkError(
                    f"Could not add {name} to pubdefs, max of {MAX_PUBLICS}."
                )
            existing = self.state._defined(name)
            if existing is not None:
                other = (
                    self.state.modules[existing.module].name
                    if existing.module < len(self.state.modules)
                    else module.name
                )
                raise LinkError(
                    f"Duplicate pubdef of '{name}' in modules {other} and "
                    f"{module.name}. Duplicate pubdefs not allowed."
                )
            offset = self.reader.read_u16()
            if self.reader.read_u8() != 0:
                raise LinkError("PUBDEF: Type is not 0. ")
            self.state.publics.append(
                PublicSymbol(
                    name=name,
                    module=module_index,
                    segment=self.segments.local_segment(base_segment),
                    address=offset,
                )
            )
            length -= len(name) + 4
        self.reader.read_u8()  # checksum

    def _segdef(self, length):
        module = self._current("SEGDEF")
        segment, segment_length = self.segments.read_segdef(self.reader, length)
        if segment is Segment.CODE:
            module.code_length = segment_length
        elif segment is Segment.DATA:
            module.data_length = segment_length
        else:
            module.has_stack = True
            self.state.segment_lengths[Segment.STACK] += segment_length

    def _libhdr(self, length):
        self.reader.read_u16()  # dictionary offset, low
        self.reader.read_u16()  # dictionary offset, high
        self.reader.read_u16()  # dictionary block count
        self.reader.read_u8()  # flags
        self.reader.skip(length - 8)
        self.reader.read_u8()  # checksum
        self.state.in_library = True


def scan_file(state, file_index, data):
    """Read the modules, segments and publics of one input file into state."""
    _FileScan(state, file_index, data).run()


def scan_inputs(paths, log=None):
    """Scan every input file in order and return the resulting LinkState."""
    state = LinkState(paths=list(paths))
    if log is not None:
        log.write("Pass 1:\n")
    for file_index, path in enumerate(state.paths):
        try:
            with open(path, "rb") as handle:
                data = handle.read()
        except OSError as exc:
            raise LinkError(f"Could not open {path}.") from exc
        if log is not None:
            log.write(f"  Reading {path}\n")
        scan_file(state, file_index, data)
    return state