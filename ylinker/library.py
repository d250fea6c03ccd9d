"""Building library files out of object modules."""

from __future__ import annotations

from ylinker.records import LinkError, RecordReader, RecordType

LIBRARY_ALIGNMENT = 16
_RECORD_LENGTH = 0x000D


def _read_file(path):
    try:
        with open(path, "rb") as handle:
            return handle.read()
    except OSError as exc:
        raise LinkError(f"Could not open {path}.") from exc


def _empty_record(record_type):
    return (
        bytes([record_type])
        + _RECORD_LENGTH.to_bytes(2, "little")
        + bytes(_RECORD_LENGTH)
    )


def library_header():
    """The LIBHDR record that opens a library without a dictionary."""
    return _empty_record(RecordType.LIBHDR)


def library_end():
    """The LIBEND record that closes a library."""
    return _empty_record(RecordType.LIBEND)


def copy_module(data, offset, out):
    """Copy the module starting at offset to the binary stream out.

    After the MODEND record, out is padded with zeros to a 16-byte boundary.
    """
    reader = RecordReader(data, offset)
    while True:
        header = reader.read_header()
        if header is None:
            raise LinkError("Unexpected EOF in file.")
        record_type, length = header
        start = reader.tell()
        if start + length > len(reader.data):
            raise LinkError("Unexpected EOF in file.")
        body = reader.data[start:start + length]
        reader.skip(length)
        out.write(bytes([record_type]) + length.to_bytes(2, "little") + body)
        if record_type == RecordType.MODEND:
            remaining = LIBRARY_ALIGNMENT - out.tell() % LIBRARY_ALIGNMENT
            if remaining != LIBRARY_ALIGNMENT:
                out.write(bytes(remaining))
            return


def build_library(state, output_path, log=None):
    """Write every included module of state into a library file."""
    if log is not None:
        log.write("Pass 2: Build library file.\n")
    try:
        handle = open(output_path, "wb")
    except OSError as exc:
        raise LinkError(f"Could not open {output_path}.") from exc
    with handle:
        handle.write(library_header())
        for module in state.modules:
            if not module.included:
                continue
            path = state.paths[module.file_index]
            if log is not None:
                log.write(f"Adding {module.name} ({path}) to library... \n")
            copy_module(_read_file(path), module.header_offset, handle)
        handle.write(library_end())