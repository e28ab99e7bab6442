import io
import struct
from datetime import datetime, timezone

import pytest

from decompkit import formats, pef
from decompkit.binfile import Arch, Perm


def _container(sections, arch=b"pwpc", stamp=0, name_offset=-1):
    """Build a container; ``sections`` holds (kind, addr, data) tuples."""
    header_len = 40 + 28 * len(sections)
    headers = b""
    body = b""
    for kind, addr, data in sections:
        offset = header_len + len(body)
        headers += struct.pack(
            ">iIIIIIBBBx",
            name_offset, addr, len(data), len(data), len(data), offset, kind, 1, 4,
        )
        body += data
    head = struct.pack(
        ">4s4s4sIIIIIHHI",
        b"Joy!", b"peff", arch, 1, stamp, 0, 0, 0, len(sections), len(sections), 0,
    )
    return head + headers + body


def _pad16(blob):
    rem = len(blob) % 16
    return blob + bytes(16 - rem if rem else 0)


def test_parse_perm_kinds():
    assert pef.parse_perm(pef.KIND_CODE) == Perm.R | Perm.X
    assert pef.parse_perm(pef.KIND_UNPACKED_DATA) == Perm.R | Perm.W
    assert pef.parse_perm(pef.KIND_PATTERN_INITIALIZED_DATA) == Perm.R | Perm.W
    assert pef.parse_perm(pef.KIND_CONSTANT) == Perm.R
    assert pef.parse_perm(pef.KIND_LOADER) == Perm(0)
    assert pef.parse_perm(pef.KIND_EXECUTABLE_DATA) == Perm.R | Perm.W | Perm.X


def test_new_file_header_fields():
    blob = _container([(pef.KIND_CODE, 0x1000, b"\x4e\x80\x00\x20")])
    f = pef.new_file(blob)
    assert len(f.containers) == 1
    hdr = f.containers[0].header
    assert hdr.tag1 == "Joy!"
    assert hdr.tag2 == "peff"
    assert hdr.architecture == "pwpc"
    assert hdr.section_count == 1
    assert hdr.date_time_stamp == datetime(1904, 1, 1, tzinfo=timezone.utc)


def test_section_data_round_trip():
    payload = b"\x4e\x80\x00\x20"
    f = pef.new_file(_container([(pef.KIND_CODE, 0x1000, payload)]))
    sect = f.containers[0].sections[0]
    assert sect.data() == payload
    assert sect.header.default_address == 0x1000
    assert sect.header.packed_size == len(payload)


def test_parse_builds_sorted_sections():
    code = b"\x60\x00\x00\x00" * 2
    data = b"hello"
    blob = _container([
        (pef.KIND_UNPACKED_DATA, 0x2000, data),
        (pef.KIND_CODE, 0x1000, code),
    ])
    file = pef.parse(io.BytesIO(blob))
    assert file.arch == Arch.POWERPC_32
    assert [s.addr for s in file.sections] == [0x1000, 0x2000]
    assert file.sections[0].data == code
    assert file.sections[0].perm == Perm.R | Perm.X
    assert file.sections[1].data == data
    assert file.sections[1].perm == Perm.R | Perm.W
    assert file.code(0x1000) == code
    assert file.data(0x2001) == data[1:]


def test_section_offset_points_at_contents():
    blob = _container([(pef.KIND_CONSTANT, 0x3000, b"abc")])
    file = pef.parse(blob)
    sect = file.sections[0]
    assert blob[sect.offset:sect.offset + 3] == b"abc"


def test_two_containers_are_aligned():
    first = _container([(pef.KIND_CODE, 0x1000, b"\x01\x02\x03\x04")])
    second = _container([(pef.KIND_CODE, 0x5000, b"\x05\x06\x07\x08")])
    blob = _pad16(first) + second
    f = pef.new_file(blob)
    assert len(f.containers) == 2
    assert f.containers[0].offset == 0
    assert f.containers[1].offset % 16 == 0
    assert f.containers[1].offset >= len(first)
    file = pef.parse(blob)
    assert [s.data for s in file.sections] == [b"\x01\x02\x03\x04", b"\x05\x06\x07\x08"]
    second_sect = file.sections[1]
    assert blob[second_sect.offset:second_sect.offset + 4] == b"\x05\x06\x07\x08"


def test_empty_input_has_no_containers():
    assert pef.new_file(b"").containers == []
    file = pef.parse(b"")
    assert file.arch is None
    assert file.sections == []


def test_trailing_short_bytes_are_ignored():
    blob = _pad16(_container([(pef.KIND_CODE, 0x1000, b"\x00" * 4)])) + b"Joy!"
    assert len(pef.new_file(blob).containers) == 1


def test_unsupported_architecture():
    blob = _container([(pef.KIND_CODE, 0x1000, b"\x00" * 4)], arch=b"m68k")
    with pytest.raises(pef.PefError):
        pef.parse(blob)


def test_named_section_not_supported():
    blob = _container([(pef.KIND_CODE, 0x1000, b"\x00" * 4)], name_offset=0)
    with pytest.raises(pef.PefError):
        pef.new_file(blob)


def test_truncated_section_contents():
    blob = _container([(pef.KIND_CODE, 0x1000, b"\x00" * 8)])
    with pytest.raises(pef.PefError):
        pef.parse(blob[:-4])


def test_registered_format_and_parse_file(tmp_path):
    blob = _container([(pef.KIND_CODE, 0x1000, b"\x4e\x80\x00\x20")])
    assert formats.parse(blob).arch == Arch.POWERPC_32
    path = tmp_path / "app.pef"
    path.write_bytes(blob)
    file = pef.parse_file(path)
    assert file.sections[0].data == b"\x4e\x80\x00\x20"