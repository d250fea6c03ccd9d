"""Command-line entry point of the linker."""

from __future__ import annotations

import os
import sys
from contextlib import ExitStack

from ylinker.emit import link_executable
from ylinker.library import build_library
from ylinker.options import DEFAULT_OUTPUT, VERSION, parse_args, read_library_list
from ylinker.records import LinkError
from ylinker.resolve import layout_segments, resolve_externals
from ylinker.scan import Segment, scan_inputs


def _remove(path):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        raise LinkError(f"Could not remove {path}.") from exc


def _open_log(path):
    try:
        return open(path, "w", encoding="latin-1")
    except OSError as exc:
        raise LinkError(f"Could not open {path}.") from exc


def _link(argv):
    options = parse_args(argv)
    output_path = options.output_path
    if output_path is None:
        print(f"  No -e parameter. Output file will be {DEFAULT_OUTPUT}.")
        output_path = DEFAULT_OUTPUT
    _remove(output_path)
    paths = list(options.object_paths)
    with ExitStack() as stack:
        log = None
        if options.debug_path is not None:
            _remove(options.debug_path)
            log = stack.enter_context(_open_log(options.debug_path))
        if options.is_library():
            paths.extend(read_library_list(options.library_list_path))
        print("  Pass 1")
        state = scan_inputs(paths, log)
        if options.is_library():
            print("  Pass 2 (Library file)")
            build_library(state, output_path, log)
            return
        print("  Pass 2")
        resolve_externals(state, log)
        print("  Pass 3")
        layout_segments(state, log)
        print("  Pass 4")
        link_executable(state, output_path, log)
        if log is not None:
            lengths = state.segment_lengths
            log.write(
                f"Code: {lengths[Segment.CODE]} b Data: {lengths[Segment.DATA]} b, "
                f"Stack: {lengths[Segment.STACK]} b\n"
            )


def main(argv=None):
    """Run the linker; return 0 on success and 1 when linking fails."""
    print(VERSION)
    if argv is None:
        argv = sys.argv[1:]
    try:
        _link(list(argv))
    except LinkError as exc:
        print(f"  Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())