"""Uniform representation of binary executables."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum, IntFlag
from typing import Dict, Iterable, List, Optional

from decompkit.address import Address


class Arch(IntEnum):
    """Machine architecture of an executable."""

    X86_32 = 1
    X86_64 = 2
    MIPS_32 = 3
    ARM_32 = 4
    ARM_64 = 5
    POWERPC_32 = 6
    POWERPC_64BE = 7
    POWERPC_64LE = 8

    @property
    def label(self) -> str:
        """Textual name of the architecture."""
        return _ARCH_LABELS[self]

    def __str__(self) -> str:
        return self.label

    def __format__(self, spec: str) -> str:
        return format(str(self), spec)

    @classmethod
    def from_string(cls, s: str) -> Optional["Arch"]:
        """Return the architecture named ``s``; ``None`` for an empty string."""
        if not s:
            return None
        for arch, label in _ARCH_LABELS.items():
            if label == s:
                return arch
        valid = ", ".join(f'"{label}"' for label in _ARCH_LABELS.values())
        raise ValueError(
            f"unable to locate Arch enum corresponding to {s!r}; "
            f"valid Arch enums are: {valid}"
        )

    def bit_size(self) -> int:
        """Return the bit size of the architecture."""
        return _BIT_SIZE[self]


_ARCH_LABELS = {
    Arch.X86_32: "x86_32",
    Arch.X86_64: "x86_64",
    Arch.MIPS_32: "MIPS_32",
    Arch.ARM_32: "ARM_32",
    Arch.ARM_64: "ARM_64",
    Arch.POWERPC_32: "PowerPC_32",
    Arch.POWERPC_64BE: "PowerPC_64 big endian",
    Arch.POWERPC_64LE: "PowerPC_64 little endian",
}

_BIT_SIZE = {
    Arch.X86_32: 32,
    Arch.MIPS_32: 32,
    Arch.POWERPC_32: 32,
    Arch.ARM_32: 32,
    Arch.ARM_64: 64,
    Arch.X86_64: 64,
    Arch.POWERPC_64BE: 64,
    Arch.POWERPC_64LE: 64,
}


class Perm(IntFlag):
    """Memory access permissions of a section or segment."""

    X = 0x1
    W = 0x2
    R = 0x4

    def __str__(self) -> str:
        return (
            ("r" if self & Perm.R else "-")
            + ("w" if self & Perm.W else "-")
            + ("x" if self & Perm.X else "-")
        )

    def __format__(self, spec: str) -> str:
        return format(str(self), spec)


@dataclass
class Section:
    """A continuous section (or segment) of memory."""

    name: str = ""
    addr: Address = Address(0)
    offset: int = 0
    data: bytes = b""
    file_size: int = 0
    mem_size: int = 0
    perm: Perm = Perm(0)

    def _contains(self, addr: int) -> bool:
        return self.addr <= addr < self.addr + len(self.data)


@dataclass
class File:
    """A binary executable."""

    arch: Optional[Arch] = None
    entry: Address = Address(0)
    sections: List[Section] = field(default_factory=list)
    imports: Dict[Address, str] = field(default_factory=dict)
    exports: Dict[Address, str] = field(default_factory=dict)

    def code(self, addr: int) -> bytes:
        """Return the executable bytes starting at ``addr``."""
        for sect in self.sections:
            if not Perm(sect.perm) & Perm.X:
                continue
            if sect._contains(addr):
                return bytes(sect.data[addr - sect.addr:])
        raise LookupError(f"unable to locate code at address {Address(addr)}")

    def data(self, addr: int) -> bytes:
        """Return the bytes starting at ``addr``."""
        for sect in self.sections:
            if sect._contains(addr):
                return bytes(sect.data[addr - sect.addr:])
        raise LookupError(f"unable to locate data at address {Address(addr)}")


def sort_sections(sections: Iterable[Section]) -> List[Section]:
    """Return sections by ascending address, longer first, then by name."""
    return sorted(sections, key=lambda s: (s.addr, -len(s.data), s.name))