"""Command-line options of the linker."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from ylinker.records import LinkError

VERSION = "Ypsilon Link, Version 1.0.1"
DEFAULT_OUTPUT = "out.exe"
MAX_FILES = 96


@dataclass
class LinkOptions:
    """Paths given on the command line."""

    output_path: str | None = None
    debug_path: str | None = None
    library_list_path: str | None = None
    object_paths: list[str] = field(default_factory=list)

    def is_library(self):
        """True when a library file is being built."""
        return self.library_list_path is not None


def parse_args(argv):
    """Parse arguments (without the program name) into LinkOptions."""
    if not argv:
        raise LinkError("No arguments passed.")
    options = LinkOptions()
    for arg in argv:
        if arg.startswith("-"):
            if len(arg) < 3 or arg[2] != "=":
                raise LinkError(f"Missing '=' in option {arg}")
            letter, value = arg[1], arg[3:]
            if letter == "e":
                options.output_path = value
            elif letter == "d":
                options.debug_path = value
            elif letter == "l":
                options.library_list_path = value
            else:
                raise LinkError(f"Could not parse option {arg}")
            continue
        for path in arg.split(","):
            if len(options.object_paths) == MAX_FILES:
                raise LinkError(f"max of {MAX_FILES} input files.")
            options.object_paths.append(path)
    return options


def read_library_list(path):
    """Read the object file paths listed one per line in a library list file."""
    try:
        with open(path, "r", encoding="latin-1", newline="") as handle:
            text = handle.read()
    except OSError as exc:
        raise LinkError(f"Could not open {path}.") from exc
    return [line for line in re.split(r"[\r\n]", text) if line]