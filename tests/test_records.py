import pytest

from ylinker.records import (
    FixupLocation,
    LinkError,
    RecordReader,
    RecordType,
    read_fixup_location,
    read_fixup_target,
)


def test_record_type_codes():
    assert RecordType(0x80) is RecordType.THEADR
    assert RecordType.MODEND == 0x8A
    assert RecordType.LIBEND == 0xF1


def test_read_u16_is_little_endian():
    reader = RecordReader(b"\x34\x12")
    assert reader.read_u16() == 0x1234
    assert reader.at_end()


def test_read_past_end_raises():
    reader = RecordReader(b"\x01")
    reader.read_u8()
    with pytest.raises(LinkError):
        reader.read_u8()


def test_read_name_roundtrip():
    reader = RecordReader(b"\x04CODE\x05")
    assert reader.read_name() == "CODE"
    assert reader.read_u8() == 5


def test_read_header_and_skip():
    data = bytes([RecordType.COMMNT, 3, 0, 9, 9, 9, RecordType.MODEND, 2, 0, 0, 0])
    reader = RecordReader(data)
    assert reader.read_header() == (RecordType.COMMNT, 3)
    reader.skip(3)
    assert reader.read_header() == (RecordType.MODEND, 2)
    reader.skip(2)
    assert reader.read_header() is None


def test_seek_beyond_data_raises():
    with pytest.raises(LinkError):
        RecordReader(b"abc", 10)
    reader = RecordReader(b"abc", 1)
    assert reader.tell() == 1


def test_skip_to_paragraph():
    reader = RecordReader(bytes(40), 5)
    reader.skip_to_paragraph()
    assert reader.tell() == 16
    reader.skip_to_paragraph()
    assert reader.tell() == 16


def test_skip_clamps_to_end():
    reader = RecordReader(bytes(4))
    reader.skip(100)
    assert reader.at_end()
    assert reader.tell() == 4


def test_fixup_location_decoding():
    reader = RecordReader(bytes([0xC4 | 0x01, 0x10]))
    location, remaining = read_fixup_location(reader, 10)
    assert location == FixupLocation(0xC5, 1, 0x110)
    assert location.is_fixup
    assert location.segment_relative
    assert remaining == 8


def test_fixup_location_self_relative():
    reader = RecordReader(bytes([0x84, 0x02]))
    location, _ = read_fixup_location(reader, 2)
    assert not location.segment_relative
    assert location.ref_type == 1


def test_fixup_target_with_offset():
    reader = RecordReader(bytes([0x00, 0x01, 0x01, 0x34, 0x12]))
    target, remaining = read_fixup_target(reader, 10)
    assert (target.frame_method, target.target_method) == (0, 0)
    assert (target.frame, target.target) == (1, 1)
    assert target.offset == 0x1234
    assert remaining == 5


def test_fixup_target_external_without_offset():
    reader = RecordReader(bytes([0x26, 0x02, 0x02]))
    target, remaining = read_fixup_target(reader, 3)
    assert target.frame_method == 2
    assert target.target_method == 6
    assert target.offset == 0
    assert remaining == 0


def test_fixup_target_escaped_index():
    reader = RecordReader(bytes([0x24, 0x80, 0x07, 0x80, 0x07]))
    target, remaining = read_fixup_target(reader, 5)
    assert (target.frame, target.target) == (7, 7)
    assert remaining == 0


@pytest.mark.parametrize(
    "data",
    [
        bytes([0x10, 0x01, 0x01]),
        bytes([0x00, 0x81, 0x01]),
        bytes([0x00, 0x01, 0x82]),
        bytes([0x05, 0x01, 0x01]),
    ],
)
def test_fixup_target_errors(data):
    with pytest.raises(LinkError):
        read_fixup_target(RecordReader(data), len(data))