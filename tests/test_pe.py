import struct

import pytest

from decompkit import formats, pe
from decompkit.binfile import Arch, Perm

IMAGE_BASE = 0x400000
IMAGE_BASE_64 = 0x140000000
TEXT_RVA = 0x1000
IDATA_RVA = 0x2000
INT_RVA = IDATA_RVA + 0x40
IAT_RVA = IDATA_RVA + 0x60
DLL_NAME_RVA = IDATA_RVA + 0x80
HINT_NAME_RVA = IDATA_RVA + 0xA0
TEXT_CODE = bytes([0x55, 0x89, 0xE5, 0xC3]) + bytes(12)
SECT_FMT = "<8sIIIIIIHHI"


def _idata(pe64):
    fmt = "<Q" if pe64 else "<I"
    size = struct.calcsize(fmt)
    buf = bytearray(0x100)
    struct.pack_into("<5I", buf, 0, INT_RVA, 0, 0, DLL_NAME_RVA, IAT_RVA)
    for base in (0x40, 0x60):
        for i, value in enumerate([HINT_NAME_RVA, 0x80000005, 0]):
            struct.pack_into(fmt, buf, base + i * size, value)
    name = b"KERNEL32.dll\x00"
    buf[0x80:0x80 + len(name)] = name
    struct.pack_into("<H", buf, 0xA0, 1)
    func = b"ExitProcess\x00"
    buf[0xA2:0xA2 + len(func)] = func
    return bytes(buf)


def build_pe(machine=0x14C, pe64=False, import_size=40, image_base=None):
    if image_base is None:
        image_base = IMAGE_BASE_64 if pe64 else IMAGE_BASE
    ptr_size = 8 if pe64 else 4
    opt_size = 240 if pe64 else 224
    dos = bytearray(0x40)
    dos[0:2] = b"MZ"
    struct.pack_into("<I", dos, 0x3C, 0x40)
    coff = struct.pack("<HHIIIHH", machine, 2, 0, 0, 0, opt_size, 0x0102)
    opt = bytearray(opt_size)
    if pe64:
        struct.pack_into("<H", opt, 0, 0x20B)
        struct.pack_into("<I", opt, 16, TEXT_RVA)
        struct.pack_into("<Q", opt, 24, image_base)
        struct.pack_into("<I", opt, 108, 16)
        dirs_off = 112
    else:
        struct.pack_into("<H", opt, 0, 0x10B)
        struct.pack_into("<I", opt, 16, TEXT_RVA)
        struct.pack_into("<I", opt, 28, image_base)
        struct.pack_into("<I", opt, 92, 16)
        dirs_off = 96
    if import_size:
        struct.pack_into("<II", opt, dirs_off + 8 * 1, IDATA_RVA, import_size)
        struct.pack_into("<II", opt, dirs_off + 8 * 12, IAT_RVA, 3 * ptr_size)
    sects = struct.pack(
        SECT_FMT, b".text", 0x10, TEXT_RVA, 0x200, 0x200, 0, 0, 0, 0, 0x60000020
    ) + struct.pack(
        SECT_FMT, b".idata", 0x100, IDATA_RVA, 0x100, 0x400, 0, 0, 0, 0, 0xC0000040
    )
    headers = bytes(dos) + b"PE\x00\x00" + coff + bytes(opt) + sects
    image = bytearray(0x500)
    image[:len(headers)] = headers
    image[0x200:0x200 + len(TEXT_CODE)] = TEXT_CODE
    image[0x400:0x500] = _idata(pe64)
    return bytes(image)


def test_parse_32bit_header_and_entry():
    f = pe.parse(build_pe())
    assert f.arch is Arch.X86_32
    assert f.entry == IMAGE_BASE + TEXT_RVA


def test_sections_sorted_with_permissions():
    f = pe.parse(build_pe())
    assert [s.name for s in f.sections] == [".text", ".idata"]
    text, idata = f.sections
    assert text.addr == IMAGE_BASE + TEXT_RVA
    assert text.perm == Perm.R | Perm.X
    assert idata.perm == Perm.R | Perm.W
    assert text.offset == 0x200


def test_section_padding_is_dropped():
    text = pe.parse(build_pe()).sections[0]
    assert text.data == TEXT_CODE
    assert text.file_size == 0x200
    assert text.mem_size == len(TEXT_CODE)


def test_imports_32bit():
    f = pe.parse(build_pe())
    assert f.imports == {
        IMAGE_BASE + IAT_RVA: "ExitProcess",
        IMAGE_BASE + IAT_RVA + 4: "KERNEL32_ordinal_5",
    }
    assert f.exports == {}


def test_imports_64bit():
    f = pe.parse(build_pe(machine=0x8664, pe64=True))
    assert f.arch is Arch.X86_64
    assert f.entry == IMAGE_BASE_64 + TEXT_RVA
    assert f.imports == {
        IMAGE_BASE_64 + IAT_RVA: "ExitProcess",
        IMAGE_BASE_64 + IAT_RVA + 8: "KERNEL32_ordinal_5",
    }


def test_powerpc_machine():
    assert pe.parse(build_pe(machine=0x1F0)).arch is Arch.POWERPC_32


def test_code_at_entry():
    f = pe.parse(build_pe())
    assert f.code(f.entry) == TEXT_CODE


def test_no_import_table():
    f = pe.parse(build_pe(import_size=0))
    assert f.imports == {}
    assert len(f.sections) == 2


def test_unterminated_import_table():
    with pytest.raises(pe.PEError):
        pe.parse(build_pe(import_size=20))


def test_unknown_machine():
    with pytest.raises(pe.PEError):
        pe.parse(build_pe(machine=0x1C0))


def test_bad_magic():
    with pytest.raises(pe.PEError):
        pe.parse(b"XX" + bytes(0x100))


def test_bad_signature():
    data = bytearray(build_pe())
    data[0x40:0x44] = b"NOPE"
    with pytest.raises(pe.PEError):
        pe.parse(bytes(data))


def test_registered_format_and_parse_file(tmp_path):
    path = tmp_path / "a.exe"
    path.write_bytes(build_pe())
    via_registry = formats.parse_file(path)
    direct = pe.parse_file(path)
    assert via_registry.imports == direct.imports
    assert direct.arch is Arch.X86_32


@pytest.mark.parametrize(
    "chars, perm",
    [
        (0x60000020, Perm.R | Perm.X),
        (0xC0000040, Perm.R | Perm.W),
        (0xE0000020, Perm.R | Perm.W | Perm.X),
        (0, Perm(0)),
    ],
)
def test_parse_perm(chars, perm):
    assert pe.parse_perm(chars) == perm


def test_parse_string():
    assert pe.parse_string(b"KERNEL32.dll\x00junk") == "KERNEL32.dll"
    with pytest.raises(pe.PEError):
        pe.parse_string(b"abc")