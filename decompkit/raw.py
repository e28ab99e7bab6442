"""Access to raw binary executables."""

from __future__ import annotations

from typing import Any, BinaryIO, Union

from decompkit.address import Address
from decompkit.binfile import Arch, File, Perm, Section


def parse(r: Union[BinaryIO, bytes, bytearray, Any], arch: Arch) -> File:
    """Load a raw executable as one readable, writable, executable segment.

    The entry point and base address are both 0; set ``file.entry`` and
    ``file.sections[0].addr`` to change them.
    """
    if isinstance(r, (bytes, bytearray, memoryview)):
        data = bytes(r)
    else:
        data = r.read()
    segment = Section(
        addr=Address(0),
        data=data,
        file_size=len(data),
        mem_size=len(data),
        perm=Perm.R | Perm.W | Perm.X,
    )
    return File(arch=arch, sections=[segment])


def parse_file(path, arch: Arch) -> File:
    """Load the raw executable stored at ``path``."""
    with open(path, "rb") as f:
        return parse(f, arch)