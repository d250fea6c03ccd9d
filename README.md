# ylinker

`ylinker` is a small linker for 16-bit OMF object modules of the kind that
simple small-model compilers and assemblers emit. It does one of two things:

* link object modules, plus any library modules they need, into a DOS MZ
  executable;
* pack object modules into an OMF library file.

## Installation

```
pip install .
```

This installs the `ylink` command.

## Usage

Link object files into an executable:

```
ylink -e=prog.exe main.obj,util.obj
```

Object files can be given as separate arguments or joined with commas. At
least one argument is required.

Options take the form `-x=value`:

| Option       | Meaning                                                      |
|--------------|--------------------------------------------------------------|
| `-e=FILE`    | Output file. Without it the output is written to `out.exe`.  |
| `-d=FILE`    | Write a trace of each pass to `FILE`.                        |
| `-l=FILE`    | `FILE` lists object files, one per line; build a library.    |

An existing output file (and debug file) is removed before linking starts.

When `-l` is given, the object files named on the command line and those in
the list file are written to the output file as a library instead of being
linked into an executable:

```
ylink -l=modules.txt -e=runtime.lib
```

A library produced this way can be given as an input when linking. Modules
read from a library are only included in the executable when they are needed
to resolve an external reference; modules from plain object files are always
included.

The command prints its version and the pass it is working on. Any problem
with the input is printed to standard error as `  Error: ...` and the command
exits with status 1.

## How the executable is laid out

Segments must be named `CODE`, `DATA` or `STACK`. The code of all included
modules comes first, in input order, then their data, then the stack; each
module's code and data are aligned to 2 bytes and the segment totals to 16
bytes. The executable has a 512-byte MZ header, including its word checksum
and a table of segment-base relocations. Public names are matched without
regard to ASCII case, and a name defined twice is an error. One module must
give a start address in its MODEND record.

The record types read are THEADR, LNAMES, SEGDEF, PUBDEF, EXTDEF, LEDATA,
LIDATA, FIXUPP, COMMNT and MODEND, plus LIBHDR and LIBEND in libraries
(LIBDEP records are skipped).

## Limits and what it does not do

* At most 96 object files on the command line, 128 modules, 640 public
  names, 4 local names per module, 3 segments per module and 8 relocations.
* Libraries are written without a dictionary or dependency records, and
  any that follow LIBEND in an input library are not read.
* FIXUPP THREAD subrecords, group definitions, frame methods other than
  segment and external index, and LIDATA blocks nested more than one level
  deep are rejected.
* Only 16-bit, non-"big" segments with public or stack combine types and an
  empty class name are accepted.

## Using it from Python

```python
from ylinker.cli import main

exit_code = main(["-e=prog.exe", "main.obj"])
```

The passes are also available on their own:

```python
from ylinker.scan import scan_inputs
from ylinker.resolve import resolve_externals, layout_segments
from ylinker.emit import link_executable
from ylinker.library import build_library

state = scan_inputs(["main.obj", "runtime.lib"])
resolve_externals(state)          # returns the indexes of library modules pulled in
layout_segments(state)
image = link_executable(state, "prog.exe")   # returns the bytes written
```

Each of these takes an optional `log` argument, any object with a `write`
method, which receives the trace that `-d` writes. Errors are raised as
`ylinker.records.LinkError`.