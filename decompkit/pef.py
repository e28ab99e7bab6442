"""Access to PEF (Preferred Executable Format) files."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, BinaryIO, List, Tuple, Union

from decompkit.address import Address
from decompkit.binfile import Arch, File, Perm, Section, sort_sections
from decompkit.formats import register_format

MAGIC = b"Joy!peff"

# Section kinds.
KIND_CODE = 0
KIND_UNPACKED_DATA = 1
KIND_PATTERN_INITIALIZED_DATA = 2
KIND_CONSTANT = 3
KIND_LOADER = 4
KIND_DEBUG = 5
KIND_EXECUTABLE_DATA = 6
KIND_EXCEPTION = 7
KIND_TRACEBACK = 8

_CONTAINER_HEADER = struct.Struct(">4s4s4sIIIIIHHI")
_SECTION_HEADER = struct.Struct(">iIIIIIBBBx")
_LOADER_HEADER = struct.Struct(">iIiIiIIIIIIIII")

# Containers that are not file-mapped are aligned to 16 bytes.
_CONTAINER_ALIGN = 16

# Timestamps count seconds from the Macintosh epoch.
_MAC_EPOCH = datetime(1904, 1, 1, tzinfo=timezone.utc)

_ARCHS = {"pwpc": Arch.POWERPC_32}


class PefError(ValueError):
    """Raised for malformed or unsupported PEF files."""


class _Truncated(Exception):
    """Input ends before the next container is complete."""


@dataclass
class ContainerHeader:
    """Header of a PEF container."""

    tag1: str
    tag2: str
    architecture: str
    format_version: int
    date_time_stamp: datetime
    old_def_version: int
    old_imp_version: int
    current_version: int
    section_count: int
    inst_section_count: int


@dataclass
class SectionHeader:
    """Header of a PEF section."""

    name_offset: int
    default_address: int
    total_size: int
    unpacked_size: int
    packed_size: int
    container_offset: int
    section_kind: int
    share_kind: int
    alignment: int


@dataclass
class PefSection:
    """A PEF section together with the container bytes it refers to."""

    header: SectionHeader
    _container: bytes = field(repr=False, default=b"")

    def data(self) -> bytes:
        """Return the packed contents of the section."""
        start = self.header.container_offset
        size = self.header.packed_size
        chunk = self._container[start:start + size]
        if len(chunk) < size:
            raise PefError(
                f"unexpected EOF reading section at container offset 0x{start:X}"
            )
        return chunk


@dataclass
class Container:
    """A PEF container."""

    header: ContainerHeader
    offset: int = 0
    sections: List[PefSection] = field(default_factory=list)


@dataclass
class PefFile:
    """A PEF file made of one or more containers."""

    containers: List[Container] = field(default_factory=list)


def parse_perm(kind: int) -> Perm:
    """Return the access permissions represented by a PEF section kind."""
    perm = Perm(0)
    if kind in (KIND_CODE, KIND_UNPACKED_DATA, KIND_PATTERN_INITIALIZED_DATA,
                KIND_CONSTANT, KIND_EXECUTABLE_DATA):
        perm |= Perm.R
    if kind in (KIND_UNPACKED_DATA, KIND_PATTERN_INITIALIZED_DATA,
                KIND_EXECUTABLE_DATA):
        perm |= Perm.W
    if kind in (KIND_CODE, KIND_EXECUTABLE_DATA):
        perm |= Perm.X
    return perm


def _read_all(r: Union[BinaryIO, bytes, bytearray, memoryview, Any]) -> bytes:
    if isinstance(r, (bytes, bytearray, memoryview)):
        return bytes(r)
    r.seek(0)
    return r.read()


def _parse_container_header(buf: bytes) -> ContainerHeader:
    if len(buf) < _CONTAINER_HEADER.size:
        raise _Truncated
    (tag1, tag2, arch, fmt_version, stamp, old_def, old_imp, current,
     count, inst_count, _) = _CONTAINER_HEADER.unpack_from(buf)
    return ContainerHeader(
        tag1=tag1.decode("latin-1"),
        tag2=tag2.decode("latin-1"),
        architecture=arch.decode("latin-1"),
        format_version=fmt_version,
        date_time_stamp=_MAC_EPOCH + timedelta(seconds=stamp),
        old_def_version=old_def,
        old_imp_version=old_imp,
        current_version=current,
        section_count=count,
        inst_section_count=inst_count,
    )


def _parse_section_header(buf: bytes, off: int) -> SectionHeader:
    if off + _SECTION_HEADER.size > len(buf):
        raise _Truncated
    hdr = SectionHeader(*_SECTION_HEADER.unpack_from(buf, off))
    if hdr.name_offset != -1:
        raise PefError("support for section name table not yet implemented")
    return hdr


def _check_loader_section(sect: PefSection) -> None:
    start = sect.header.container_offset
    end = start + min(sect.header.packed_size, _LOADER_HEADER.size)
    chunk = sect._container[start:end]
    if len(chunk) < _LOADER_HEADER.size:
        raise _Truncated
    _LOADER_HEADER.unpack(chunk)


def _parse_container(buf: bytes) -> Tuple[Container, int]:
    """Parse the container at the start of ``buf``; return it and its length."""
    header = _parse_container_header(buf)
    container = Container(header=header)
    offset = _CONTAINER_HEADER.size
    for _ in range(header.section_count):
        sect_hdr = _parse_section_header(buf, offset)
        offset += _SECTION_HEADER.size
        container.sections.append(PefSection(sect_hdr, buf))
    for sect in container.sections:
        if sect.header.section_kind == KIND_LOADER:
            _check_loader_section(sect)
    for sect in container.sections:
        offset = max(offset, sect.header.container_offset + sect.header.packed_size)
    rem = offset % _CONTAINER_ALIGN
    if rem:
        offset += _CONTAINER_ALIGN - rem
    return container, offset


def new_file(r: Union[BinaryIO, bytes, bytearray, Any]) -> PefFile:
    """Read the PEF containers from a seekable binary reader or bytes."""
    buf = _read_all(r)
    pef = PefFile()
    offset = 0
    while True:
        try:
            container, size = _parse_container(buf[offset:])
        except _Truncated:
            break
        container.offset = offset
        pef.containers.append(container)
        offset += size
    return pef


def parse(r: Union[BinaryIO, bytes, bytearray, Any]) -> File:
    """Parse a PEF executable from a seekable binary reader or bytes."""
    pef = new_file(r)
    file = File()
    for container in pef.containers:
        name = container.header.architecture
        arch = _ARCHS.get(name)
        if arch is None:
            raise PefError(f"support for machine architecture {name!r} not yet implemented")
        if file.arch is not None and arch != file.arch:
            raise PefError(
                "support for multiple machine architectures not yet implemented; "
                f"prev {file.arch!s}, new {arch!s}"
            )
        file.arch = arch

    sections = []
    for container in pef.containers:
        for sect in container.sections:
            hdr = sect.header
            sections.append(
                Section(
                    addr=Address(hdr.default_address),
                    offset=container.offset + hdr.container_offset,
                    data=sect.data(),
                    file_size=hdr.packed_size,
                    mem_size=hdr.total_size,
                    perm=parse_perm(hdr.section_kind),
                )
            )
    file.sections = sort_sections(sections)
    return file


def parse_file(path) -> File:
    """Parse the PEF executable stored at ``path``."""
    with open(path, "rb") as f:
        return parse(f)


register_format("pef", MAGIC, parse)