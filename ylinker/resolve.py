"""Resolving external references and laying out the segments of a program."""

from __future__ import annotations

from ylinker.records import LinkError, RecordReader, RecordType
from ylinker.scan import Segment

EXTERNAL_BUFFER_SIZE = 1536
SEGMENT_ALIGNMENT = 2
PARAGRAPH_ALIGNMENT = 16


def _read_file(path):
    try:
        with open(path, "rb") as handle:
            return handle.read()
    except OSError as exc:
        raise LinkError(f"Could not open {path}.") from exc


def _fold(name):
    return name.encode("latin-1").upper()


def _read_extdef(reader, length):
    names = []
    while length > 1:
        name = reader.read_name()
        def_type = reader.read_u8()
        length -= len(name) + 2
        if def_type != 0:
            raise LinkError(f"EXTDEF: Type of {name} is {def_type}, must by type 0. ")
        names.append(name)
    reader.read_u8()  # checksum
    return names


def module_externals(data, offset=0):
    """Return the external names declared by the module starting at offset."""
    reader = RecordReader(data, offset)
    names = []
    while (header := reader.read_header()) is not None:
        record_type, length = header
        if record_type == RecordType.EXTDEF:
            names.extend(_read_extdef(reader, length))
        elif record_type == RecordType.MODEND:
            break
        else:
            reader.skip(length)
    return names


class _PendingNames:
    """Unresolved external names, bounded like the linker's name buffer."""

    def __init__(self):
        self.names = []
        self._keys = set()
        self._used = 0

    def __contains__(self, name):
        return _fold(name) in self._keys

    def __len__(self):
        return len(self.names)

    def __iter__(self):
        return iter(self.names)

    def add(self, name):
        if name and self._used + len(name) >= EXTERNAL_BUFFER_SIZE:
            raise LinkError(
                f"{name} at 0x{self._used:x} exceeded names length "
                f"of 0x{EXTERNAL_BUFFER_SIZE:x}."
            )
        self._used += len(name) + 1
        self.names.append(name)
        self._keys.add(_fold(name))


def _module_included(state, index):
    return index < len(state.modules) and state.modules[index].included


def resolve_externals(state, log=None):
    """Include library modules until every external name is resolved.

    Returns the indexes of the modules that were pulled in, in order.
    """
    if log is not None:
        log.write("Pass 2: Match all extdefs to pubdefs.\n")
    pulled_in = []
    while True:
        pending = _PendingNames()
        if log is not None:
            log.write("  Resolving EXTDEFS in ")
        for module in state.modules:
            if not module.included:
                continue
            if log is not None:
                log.write(f"{module.name}, ")
            data = _read_file(state.paths[module.file_index])
            for name in module_externals(data, module.header_offset):
                if name in pending:
                    continue
                symbol = state.find_public(name, True)
                if symbol is None:
                    raise LinkError(f"P2_EXTDEF: No pubdef matches {name}.")
                if not _module_included(state, symbol.module):
                    pending.add(name)
        if log is not None:
            log.write(f"\n  {len(pending)} unresolved.\n")
        if not pending:
            return pulled_in
        for name in pending:
            symbol = state.find_public(name, True)
            if symbol is None or symbol.module >= len(state.modules):
                raise LinkError(f"P2_Resolve: Could not resolve pubdef for {name}.")
            module = state.modules[symbol.module]
            if not module.included:
                module.included = True
                pulled_in.append(symbol.module)


def layout_segments(state, log=None):
    """Assign code and data origins to included modules and size the segments."""
    if log is not None:
        log.write("Pass 3: Setting segment origins.\n")
    lengths = state.segment_lengths
    for module in state.modules:
        if module.included:
            module.code_origin = lengths[Segment.CODE]
            lengths[Segment.CODE] += module.code_length
            module.data_origin = lengths[Segment.DATA]
            lengths[Segment.DATA] += module.data_length
            if module.has_start and state.start_address is not None:
                state.start_address += module.code_origin
        state.align_segments(SEGMENT_ALIGNMENT)
    state.align_segments(PARAGRAPH_ALIGNMENT)
    if log is not None:
        log.write(
            f"  CODE={lengths[Segment.CODE]:x}\n  DATA={lengths[Segment.DATA]:x}\n"
        )