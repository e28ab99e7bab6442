"""Access to Executable and Linkable Format (ELF) files."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, BinaryIO, Iterator, List, Optional, Tuple, Union

from decompkit.address import UINT64_MAX, Address
from decompkit.binfile import Arch, File, Perm, Section, sort_sections
from decompkit.formats import register_format

MAGIC = b"\x7fELF"

# Section header types.
SHT_NOBITS = 8
SHT_DYNSYM = 11

# Section header flags.
SHF_WRITE = 0x1
SHF_EXECINSTR = 0x4

# Program header types and flags.
PT_LOAD = 1
PF_X = 0x1
PF_W = 0x2
PF_R = 0x4

# Machine types.
EM_386 = 3
EM_PPC = 20
EM_X86_64 = 62

_MACHINES = {
    EM_386: Arch.X86_32,
    EM_X86_64: Arch.X86_64,
    EM_PPC: Arch.POWERPC_32,
}

# Length of the 32- and 64-bit indirect JMP instruction of a PLT entry.
_JMP_LEN = 6

# Section header index of symbols not associated with a specific section.
_SHN_UNDEF = 0


class ElfError(ValueError):
    """Raised for malformed or unsupported ELF files."""


class SymType(IntEnum):
    """Symbol type."""

    NONE = 0
    OBJECT = 1
    FUNC = 2
    SECTION = 3
    FILE = 4
    COMMON = 5
    OS0 = 10
    OS1 = 11
    OS2 = 12
    PROC0 = 13
    PROC1 = 14
    PROC2 = 15

    def __str__(self) -> str:
        return _SYM_TYPE_NAMES[self]


_SYM_TYPE_NAMES = {
    SymType.NONE: "none",
    SymType.OBJECT: "object",
    SymType.FUNC: "function",
    SymType.SECTION: "section",
    SymType.FILE: "file",
    SymType.COMMON: "common",
    SymType.OS0: "OS 0",
    SymType.OS1: "OS 1",
    SymType.OS2: "OS 2",
    SymType.PROC0: "processor 0",
    SymType.PROC1: "processor 1",
    SymType.PROC2: "processor 2",
}


class SymBind(IntEnum):
    """Symbol binding."""

    LOCAL = 0
    GLOBAL = 1
    WEAK = 2
    OS0 = 10
    OS1 = 11
    OS2 = 12
    PROC0 = 13
    PROC1 = 14
    PROC2 = 15

    def __str__(self) -> str:
        return _SYM_BIND_NAMES[self]


_SYM_BIND_NAMES = {
    SymBind.LOCAL: "local",
    SymBind.GLOBAL: "global",
    SymBind.WEAK: "weak",
    SymBind.OS0: "OS 0",
    SymBind.OS1: "OS 1",
    SymBind.OS2: "OS 2",
    SymBind.PROC0: "processor 0",
    SymBind.PROC1: "processor 1",
    SymBind.PROC2: "processor 2",
}


class SymVisibility(IntEnum):
    """Symbol visibility."""

    DEFAULT = 0
    INTERNAL = 1
    HIDDEN = 2
    PROTECTED = 3

    def __str__(self) -> str:
        return self.name.lower()


def parse_sect_flags(flags: int) -> Perm:
    """Return the access permissions represented by section header flags."""
    perm = Perm(0)
    if flags & SHF_WRITE:
        perm |= Perm.W
    if flags & SHF_EXECINSTR:
        perm |= Perm.X
    return perm


def parse_prog_flags(flags: int) -> Perm:
    """Return the access permissions represented by program header flags."""
    perm = Perm(0)
    if flags & PF_R:
        perm |= Perm.R
    if flags & PF_W:
        perm |= Perm.W
    if flags & PF_X:
        perm |= Perm.X
    return perm


def parse_string(data: bytes) -> str:
    """Return the NULL-terminated string at the start of ``data``."""
    pos = data.find(b"\x00")
    if pos == -1:
        dump = " ".join(f"{b:02X}" for b in data)
        raise ElfError(f"unable to locate NULL-terminated string in {dump}")
    return data[:pos].decode("latin-1")


def _get_string(table: bytes, start: int) -> Optional[str]:
    if start < 0 or start >= len(table):
        return None
    end = table.find(b"\x00", start)
    if end == -1:
        return None
    return table[start:end].decode("latin-1")


def _records(data: bytes, fmt: str) -> Iterator[Tuple[int, ...]]:
    size = struct.calcsize(fmt)
    for off in range(0, len(data), size):
        chunk = data[off:off + size]
        if len(chunk) < size:
            raise ElfError("unexpected EOF")
        yield struct.unpack(fmt, chunk)


@dataclass
class _SectHeader:
    name: str
    type: int
    flags: int
    addr: int
    offset: int
    size: int
    link: int


@dataclass
class _ProgHeader:
    type: int
    flags: int
    offset: int
    vaddr: int
    filesz: int
    memsz: int


class _Image:
    """Headers of an ELF file held in memory."""

    def __init__(self, buf: bytes):
        self.buf = buf
        if len(buf) < 16 or buf[:4] != MAGIC:
            raise ElfError("bad magic number")
        if buf[4] == 1:
            self.bits = 32
        elif buf[4] == 2:
            self.bits = 64
        else:
            raise ElfError(f"unknown ELF class {buf[4]}")
        if buf[5] == 1:
            self.endian = "<"
        elif buf[5] == 2:
            self.endian = ">"
        else:
            raise ElfError(f"unknown ELF data encoding {buf[5]}")
        if buf[6] != 1:
            raise ElfError(f"unknown ELF version {buf[6]}")
        if self.bits == 32:
            fields = self._unpack("HHIIIIIHHHHHH", 16)
        else:
            fields = self._unpack("HHIQQQIHHHHHH", 16)
        (_, self.machine, _, self.entry, phoff, shoff, _, _,
         phentsize, phnum, shentsize, shnum, shstrndx) = fields
        self.progs = self._parse_progs(phoff, phentsize, phnum)
        self.sections = self._parse_sections(shoff, shentsize, shnum, shstrndx)

    def _unpack(self, fmt: str, off: int) -> Tuple[int, ...]:
        full = self.endian + fmt
        size = struct.calcsize(full)
        if off < 0 or off + size > len(self.buf):
            raise ElfError("unexpected EOF")
        return struct.unpack_from(full, self.buf, off)

    def _parse_progs(self, phoff: int, entsize: int, count: int) -> List[_ProgHeader]:
        fmt = "IIIIIIII" if self.bits == 32 else "IIQQQQQQ"
        if count and entsize < struct.calcsize(self.endian + fmt):
            raise ElfError(f"invalid ELF phentsize {entsize}")
        progs = []
        for i in range(count):
            rec = self._unpack(fmt, phoff + i * entsize)
            if self.bits == 32:
                ptype, off, vaddr, _, filesz, memsz, flags, _ = rec
            else:
                ptype, flags, off, vaddr, _, filesz, memsz, _ = rec
            progs.append(_ProgHeader(ptype, flags, off, vaddr, filesz, memsz))
        return progs

    def _parse_sections(
        self, shoff: int, entsize: int, count: int, shstrndx: int
    ) -> List[_SectHeader]:
        fmt = "IIIIIIIIII" if self.bits == 32 else "IIQQQQIIQQ"
        if count == 0:
            return []
        if entsize < struct.calcsize(self.endian + fmt):
            raise ElfError(f"invalid ELF shentsize {entsize}")
        if shstrndx >= count:
            raise ElfError(f"invalid ELF shstrndx {shstrndx}")
        raw = []
        for i in range(count):
            name, stype, flags, addr, off, size, link, *_ = self._unpack(
                fmt, shoff + i * entsize
            )
            raw.append((name, _SectHeader("", stype, flags, addr, off, size, link)))
        shstrtab = self.section_data(raw[shstrndx][1])
        sections = []
        for name_idx, sh in raw:
            name = _get_string(shstrtab, name_idx)
            if name is None:
                raise ElfError(f"bad section name index {name_idx}")
            sh.name = name
            sections.append(sh)
        return sections

    def section_data(self, sh: _SectHeader) -> bytes:
        if sh.type == SHT_NOBITS:
            return bytes(sh.size)
        end = sh.offset + sh.size
        if end > len(self.buf):
            raise ElfError(f"unexpected EOF reading section {sh.name!r}")
        return self.buf[sh.offset:end]

    def prog_data(self, prog: _ProgHeader) -> bytes:
        return self.buf[prog.offset:prog.offset + prog.filesz]

    def section(self, name: str) -> Optional[_SectHeader]:
        return next((s for s in self.sections if s.name == name), None)

    def dynamic_symbol_names(self) -> List[str]:
        sh = next((s for s in self.sections if s.type == SHT_DYNSYM), None)
        if sh is None:
            raise ElfError("no symbol section")
        data = self.section_data(sh)
        fmt = self.endian + ("IIIBBH" if self.bits == 32 else "IBBHQQ")
        entsize = struct.calcsize(fmt)
        if not data:
            raise ElfError("symbol section is empty")
        if len(data) % entsize:
            raise ElfError("length of symbol section is not a multiple of SymSize")
        if sh.link <= 0 or sh.link >= len(self.sections):
            raise ElfError("section has invalid string table link")
        strdata = self.section_data(self.sections[sh.link])
        return [
            _get_string(strdata, name_idx) or ""
            for name_idx, *_ in struct.iter_unpack(fmt, data[entsize:])
        ]


def _bit_size(arch: Optional[Arch]) -> int:
    if arch is None:
        raise ElfError("support for machine architecture 0 not yet implemented")
    return arch.bit_size()


def _read_all(r: Union[BinaryIO, bytes, bytearray, memoryview, Any]) -> bytes:
    if isinstance(r, (bytes, bytearray, memoryview)):
        return bytes(r)
    r.seek(0)
    return r.read()


def _parse_imports(image: _Image, file: File) -> None:
    gotplt = image.section(".got.plt")
    if gotplt is None:
        return
    data = image.section_data(gotplt)
    names = image.dynamic_symbol_names()
    bits = _bit_size(file.arch)
    if bits == 32:
        skip, fmt = 4 * 3, "<I"
    elif bits == 64:
        skip, fmt = 8 * 3, "<Q"
    else:
        raise ElfError(f"support for CPU bit size {bits} not yet implemented")
    if len(data) < skip:
        raise ElfError(".got.plt section too short")
    # Each entry points to the resolver stub directly after the PLT jump.
    for name, (value,) in zip(names, _records(data[skip:], fmt)):
        file.imports[Address((value - _JMP_LEN) & UINT64_MAX)] = name


def _parse_exports(image: _Image, file: File) -> None:
    symtab = image.section(".symtab")
    strtab = image.section(".strtab")
    if symtab is None or strtab is None:
        return
    symdata = image.section_data(symtab)
    strdata = image.section_data(strtab)
    bits = _bit_size(file.arch)
    if bits == 32:
        records = (
            (name, value, info, shndx)
            for name, value, _, info, _, shndx in _records(symdata, "<IIIBBH")
        )
    elif bits == 64:
        records = (
            (name, value, info, shndx)
            for name, info, _, shndx, value, _ in _records(symdata, "<IBBHQQ")
        )
    else:
        raise ElfError(f"support for CPU bit size {bits} not yet implemented")
    for name_idx, value, info, shndx in records:
        name = parse_string(strdata[name_idx:])
        if info & 0x0F == SymType.FUNC and shndx != _SHN_UNDEF:
            file.exports[Address(value)] = name


def parse(r: Union[BinaryIO, bytes, bytearray, Any]) -> File:
    """Parse an ELF executable from a seekable binary reader or bytes."""
    image = _Image(_read_all(r))
    file = File(arch=_MACHINES.get(image.machine), entry=Address(image.entry))

    sections = []
    for sh in image.sections:
        if sh.type == SHT_NOBITS:
            data = b""
        else:
            data = image.section_data(sh)
            if not data:
                continue
        sections.append(
            Section(
                name=sh.name,
                addr=Address(sh.addr),
                offset=sh.offset,
                data=data,
                file_size=sh.size,
                mem_size=sh.size,
                perm=parse_sect_flags(sh.flags),
            )
        )
    sections = sort_sections(sections)

    segments = sort_sections(
        Section(
            addr=Address(prog.vaddr),
            offset=prog.offset,
            data=image.prog_data(prog),
            file_size=prog.filesz,
            mem_size=prog.memsz,
            perm=parse_prog_flags(prog.flags),
        )
        for prog in image.progs
        if prog.type == PT_LOAD
    )

    # Sections without permissions inherit those of an enclosing segment.
    for sect in sections:
        for seg in segments:
            if seg.addr <= sect.addr < seg.addr + len(seg.data) and not sect.perm:
                sect.perm = seg.perm

    file.sections = sort_sections(sections + segments)
    _parse_imports(image, file)
    _parse_exports(image, file)
    return file


def parse_file(path) -> File:
    """Parse the ELF executable stored at ``path``."""
    with open(path, "rb") as f:
        return parse(f)


register_format("elf", MAGIC, parse)