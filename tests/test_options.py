import pytest

from ylinker.options import MAX_FILES, LinkOptions, parse_args, read_library_list
from ylinker.records import LinkError


def test_object_list_split_on_commas():
    options = parse_args(["a.obj,b.obj", "c.obj"])
    assert options.object_paths == ["a.obj", "b.obj", "c.obj"]
    assert options.output_path is None
    assert not options.is_library()


def test_all_options():
    options = parse_args(["-e=prog.exe", "-d=debug.txt", "-l=list.txt", "x.obj"])
    assert options.output_path == "prog.exe"
    assert options.debug_path == "debug.txt"
    assert options.library_list_path == "list.txt"
    assert options.is_library()
    assert options.object_paths == ["x.obj"]


def test_no_arguments():
    with pytest.raises(LinkError):
        parse_args([])


@pytest.mark.parametrize("arg", ["-e", "-eprog.exe", "-"])
def test_missing_equals(arg):
    with pytest.raises(LinkError, match="Missing '='"):
        parse_args([arg])


def test_unknown_option():
    with pytest.raises(LinkError, match="Could not parse option"):
        parse_args(["-z=1"])


def test_file_limit():
    paths = ",".join(f"f{i}.obj" for i in range(MAX_FILES))
    assert len(parse_args([paths]).object_paths) == MAX_FILES
    with pytest.raises(LinkError):
        parse_args([paths + ",extra.obj"])


def test_is_library_default():
    assert LinkOptions().is_library() is False


def test_read_library_list(tmp_path):
    listing = tmp_path / "list.txt"
    listing.write_bytes(b"one.obj\r\ntwo.obj\nthree.obj\n")
    assert read_library_list(str(listing)) == ["one.obj", "two.obj", "three.obj"]


def test_read_library_list_missing(tmp_path):
    with pytest.raises(LinkError, match="Could not open"):
        read_library_list(str(tmp_path / "absent.txt"))