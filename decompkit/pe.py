"""Access to PE (Portable Executable) files."""

from __future__ import annotations

import logging
import os
import struct
from dataclasses import astuple, dataclass
from itertools import count
from typing import Any, BinaryIO, List, Tuple, Union

from decompkit.address import UINT64_MAX, Address
from decompkit.binfile import Arch, File, Perm, Section, sort_sections
from decompkit.formats import register_format

log = logging.getLogger(__name__)

MAGIC = b"MZ"

IMAGE_FILE_MACHINE_I386 = 0x14C
IMAGE_FILE_MACHINE_AMD64 = 0x8664
IMAGE_FILE_MACHINE_POWERPC = 0x1F0

_MACHINES = {
    IMAGE_FILE_MACHINE_I386: Arch.X86_32,
    IMAGE_FILE_MACHINE_AMD64: Arch.X86_64,
    IMAGE_FILE_MACHINE_POWERPC: Arch.POWERPC_32,
}

_OPT_MAGIC_32 = 0x10B
_OPT_MAGIC_64 = 0x20B

# Data directory indices.
_IMPORT_TABLE_INDEX = 1
_IMPORT_ADDRESS_TABLE_INDEX = 12
_MAX_DATA_DIRS = 16

# Set in an import name table entry that encodes an ordinal.
_ORDINAL_FLAG = 0x80000000

# Section characteristics.
_CHAR_R = 0x40000000
_CHAR_W = 0x80000000
_CHAR_X = 0x20000000

_IMPORT_DESC = struct.Struct("<5I")
_SECTION_HEADER = struct.Struct("<8sIIIIIIHHI")


class PEError(ValueError):
    """Raised for malformed or unsupported PE files."""


@dataclass(frozen=True)
class _ImportDesc:
    import_name_table_rva: int
    date: int
    forward_chain: int
    dll_name_rva: int
    import_address_table_rva: int

    def is_zero(self) -> bool:
        return not any(astuple(self))


@dataclass
class _Headers:
    machine: int
    entry: int
    image_base: int
    data_dirs: List[Tuple[int, int]]
    sections: List[Section]


def parse_perm(characteristics: int) -> Perm:
    """Return the access permissions represented by PE section characteristics."""
    perm = Perm(0)
    if characteristics & _CHAR_R:
        perm |= Perm.R
    if characteristics & _CHAR_W:
        perm |= Perm.W
    if characteristics & _CHAR_X:
        perm |= Perm.X
    return perm


def parse_string(data: bytes) -> str:
    """Return the NULL-terminated string at the start of ``data``."""
    pos = data.find(b"\x00")
    if pos == -1:
        dump = " ".join(f"{b:02X}" for b in data)
        raise PEError(f"unable to locate NULL-terminated string in {dump}")
    return data[:pos].decode("latin-1")


def _trim_ext(path: str) -> str:
    sep = max(path.rfind("/"), path.rfind(os.sep))
    dot = path.rfind(".")
    return path[:dot] if dot > sep else path


def _unpack(fmt: str, buf: bytes, off: int) -> Tuple[int, ...]:
    size = struct.calcsize(fmt)
    if off < 0 or off + size > len(buf):
        raise PEError("unexpected EOF")
    return struct.unpack_from(fmt, buf, off)


def _read_all(r: Union[BinaryIO, bytes, bytearray, memoryview, Any]) -> bytes:
    if isinstance(r, (bytes, bytearray, memoryview)):
        return bytes(r)
    r.seek(0)
    return r.read()


def _parse_headers(buf: bytes) -> _Headers:
    if len(buf) < 0x40 or buf[:2] != MAGIC:
        raise PEError("invalid PE DOS header")
    (pe_off,) = _unpack("<I", buf, 0x3C)
    if buf[pe_off:pe_off + 4] != b"PE\x00\x00":
        raise PEError("invalid PE file signature")
    machine, nsects, _, _, _, opt_size, _ = _unpack("<HHIIIHH", buf, pe_off + 4)
    opt_off = pe_off + 24
    if opt_size == 0:
        raise PEError("support for PE files without optional header not yet implemented")
    (magic,) = _unpack("<H", buf, opt_off)
    if magic == _OPT_MAGIC_32:
        (entry_rva,) = _unpack("<I", buf, opt_off + 16)
        (image_base,) = _unpack("<I", buf, opt_off + 28)
        (ndirs,) = _unpack("<I", buf, opt_off + 92)
        dirs_off = opt_off + 96
        entry = (image_base + entry_rva) & 0xFFFFFFFF
    elif magic == _OPT_MAGIC_64:
        (entry_rva,) = _unpack("<I", buf, opt_off + 16)
        (image_base,) = _unpack("<Q", buf, opt_off + 24)
        (ndirs,) = _unpack("<I", buf, opt_off + 108)
        dirs_off = opt_off + 112
        entry = (image_base + entry_rva) & UINT64_MAX
    else:
        raise PEError(f"support for optional header magic 0x{magic:X} not yet implemented")
    ndirs = min(ndirs, _MAX_DATA_DIRS)
    data_dirs = [_unpack("<II", buf, dirs_off + 8 * i) for i in range(ndirs)]
    data_dirs += [(0, 0)] * (_MAX_DATA_DIRS - ndirs)

    sections = []
    sect_off = opt_off + opt_size
    for i in range(nsects):
        off = sect_off + i * _SECTION_HEADER.size
        if off + _SECTION_HEADER.size > len(buf):
            raise PEError("unexpected EOF in section headers")
        (name, vsize, vaddr, raw_size, raw_ptr, _, _, _, _,
         chars) = _SECTION_HEADER.unpack_from(buf, off)
        raw = buf[raw_ptr:raw_ptr + raw_size]
        if len(raw) < raw_size:
            raise PEError(f"unexpected EOF reading section {name!r}")
        # Drop section alignment padding.
        data = raw[:vsize] if len(raw) > vsize else raw
        sections.append(
            Section(
                name=name.rstrip(b"\x00").decode("latin-1"),
                addr=Address((image_base + vaddr) & UINT64_MAX),
                offset=raw_ptr,
                data=data,
                file_size=len(raw),
                mem_size=vsize,
                perm=parse_perm(chars),
            )
        )
    return _Headers(machine, entry, image_base, data_dirs, sections)


def _read_uintptr(file: File, addr: int) -> Tuple[int, int]:
    bits = file.arch.bit_size()
    size = bits // 8
    data = file.data(addr)
    if len(data) < size:
        raise PEError(
            f"data length too short; expected >= {size} bytes, got {len(data)}"
        )
    fmt = "<I" if size == 4 else "<Q"
    return struct.unpack_from(fmt, data)[0], size


def _import_descs(data: bytes) -> List[_ImportDesc]:
    descs = []
    for off in count(0, _IMPORT_DESC.size):
        chunk = data[off:off + _IMPORT_DESC.size]
        if len(chunk) < _IMPORT_DESC.size:
            raise PEError("unexpected EOF in import table")
        desc = _ImportDesc(*_IMPORT_DESC.unpack(chunk))
        if desc.is_zero():
            return descs
        descs.append(desc)
    return descs


def _parse_imports(file: File, image_base: int, it_rva: int, it_size: int) -> None:
    def at(rva: int) -> Address:
        return Address((image_base + rva) & UINT64_MAX)

    data = file.data(at(it_rva))[:it_size]
    for desc in _import_descs(data):
        dll_name = parse_string(file.data(at(desc.dll_name_rva)))
        log.debug("dll name: %s", dll_name)
        in_addr = int(at(desc.import_name_table_rva))
        ia_addr = int(at(desc.import_address_table_rva))
        while True:
            name_rva, n = _read_uintptr(file, in_addr)
            if name_rva == 0:
                break
            imp_addr = Address(ia_addr)
            in_addr += n
            ia_addr += n
            if name_rva & _ORDINAL_FLAG:
                ordinal = name_rva & ~_ORDINAL_FLAG
                file.imports[imp_addr] = f"{_trim_ext(dll_name)}_ordinal_{ordinal}"
                continue
            hint_name = file.data(at(name_rva))
            if len(hint_name) < 2:
                raise PEError("unexpected EOF in import hint/name entry")
            file.imports[imp_addr] = parse_string(hint_name[2:])


def parse(r: Union[BinaryIO, bytes, bytearray, Any]) -> File:
    """Parse a PE executable from a seekable binary reader or bytes."""
    hdrs = _parse_headers(_read_all(r))
    arch = _MACHINES.get(hdrs.machine)
    if arch is None:
        raise PEError(
            f"support for machine architecture 0x{hdrs.machine:X} not yet implemented"
        )
    file = File(
        arch=arch,
        entry=Address(hdrs.entry),
        sections=sort_sections(hdrs.sections),
    )

    iat_rva, iat_size = hdrs.data_dirs[_IMPORT_ADDRESS_TABLE_INDEX]
    if iat_size:
        iat = file.data(Address((hdrs.image_base + iat_rva) & UINT64_MAX))[:iat_size]
        log.debug("iat: %s", iat.hex())

    it_rva, it_size = hdrs.data_dirs[_IMPORT_TABLE_INDEX]
    if it_size:
        _parse_imports(file, hdrs.image_base, it_rva, it_size)
    return file


def parse_file(path) -> File:
    """Parse the PE executable stored at ``path``."""
    with open(path, "rb") as f:
        return parse(f)


register_format("pe", MAGIC, parse)