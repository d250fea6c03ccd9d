import io

import pytest

from ylinker.library import build_library, copy_module, library_end, library_header
from ylinker.records import LinkError
from ylinker.scan import scan_inputs

THEADR, MODEND, PUBDEF, LNAMES, SEGDEF, LEDATA = 0x80, 0x8A, 0x90, 0x96, 0x98, 0xA0


def record(kind, body=b""):
    body = bytes(body)
    return bytes([kind]) + (len(body) + 1).to_bytes(2, "little") + body + b"\x00"


def lname(text):
    return bytes([len(text)]) + text.encode("latin-1")


def module(name, publics=(), code=b"\x90\x90\x90"):
    parts = [
        record(THEADR, lname(name)),
        record(LNAMES, lname("") + lname("CODE") + lname("DATA")),
        record(SEGDEF, bytes([0x68]) + len(code).to_bytes(2, "little") + bytes([2, 1, 1])),
    ]
    if publics:
        body = b"\x00\x01" + b"".join(lname(p) + b"\x00\x00\x00" for p in publics)
        parts.append(record(PUBDEF, body))
    parts.append(record(LEDATA, b"\x01\x00\x00" + code))
    parts.append(record(MODEND, b"\x00"))
    return b"".join(parts)


def assemble(*modules):
    out = bytearray()
    for mod in modules:
        out += mod
        out += bytes(-len(out) % 16)
    return bytes(out)


def test_library_header_bytes():
    assert library_header() == bytes([0xF0, 0x0D, 0x00]) + bytes(13)


def test_library_end_bytes():
    assert library_end() == bytes([0xF1, 0x0D, 0x00]) + bytes(13)


def test_copy_module_copies_and_pads():
    mod = module("alpha", publics=["alpha"])
    out = io.BytesIO()
    copy_module(assemble(mod), 0, out)
    result = out.getvalue()
    assert result.startswith(mod)
    assert len(result) % 16 == 0
    assert set(result[len(mod):]) <= {0}


def test_copy_module_pads_relative_to_output_position():
    out = io.BytesIO()
    out.write(b"abc")
    copy_module(assemble(module("alpha")), 0, out)
    assert out.tell() % 16 == 0
    assert out.getvalue()[:3] == b"abc"


def test_copy_module_stops_after_first_module():
    first = module("first")
    second = module("second")
    out = io.BytesIO()
    copy_module(assemble(first, second), 0, out)
    assert b"second" not in out.getvalue()


def test_copy_module_without_modend_raises():
    data = record(THEADR, lname("m")) + record(LEDATA, b"\x01\x00\x00\x90")
    with pytest.raises(LinkError, match="Unexpected EOF"):
        copy_module(data, 0, io.BytesIO())


def test_copy_module_truncated_record_raises():
    data = record(THEADR, lname("m"))[:-2]
    with pytest.raises(LinkError, match="Unexpected EOF"):
        copy_module(data, 0, io.BytesIO())


def test_build_library_round_trip(tmp_path):
    first = tmp_path / "a.obj"
    first.write_bytes(assemble(module("alpha", publics=["fa"])))
    second = tmp_path / "b.obj"
    second.write_bytes(assemble(module("beta", publics=["fb"]), module("gamma", publics=["fc"])))
    state = scan_inputs([str(first), str(second)])
    output = tmp_path / "out.lib"
    log = io.StringIO()
    build_library(state, str(output), log)
    data = output.read_bytes()
    assert data.startswith(library_header())
    assert data.endswith(library_end())
    rescanned = scan_inputs([str(output)])
    assert [m.name for m in rescanned.modules] == ["alpha", "beta", "gamma"]
    assert all(m.in_library and not m.included for m in rescanned.modules)
    assert [p.name for p in rescanned.publics] == ["fa", "fb", "fc"]
    assert log.getvalue().startswith("Pass 2: Build library file.\n")
    assert f"Adding beta ({second}) to library... \n" in log.getvalue()


def test_build_library_leaves_out_excluded_modules(tmp_path):
    source = tmp_path / "a.obj"
    source.write_bytes(assemble(module("alpha"), module("beta")))
    state = scan_inputs([str(source)])
    state.modules[1].included = False
    output = tmp_path / "out.lib"
    build_library(state, str(output))
    rescanned = scan_inputs([str(output)])
    assert [m.name for m in rescanned.modules] == ["alpha"]


def test_build_library_unwritable_output(tmp_path):
    state = scan_inputs([])
    with pytest.raises(LinkError, match="Could not open"):
        build_library(state, str(tmp_path / "missing" / "out.lib"))