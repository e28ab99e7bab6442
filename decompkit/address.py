"""Virtual addresses and 64-bit unsigned integers in decimal or hexadecimal notation."""

from __future__ import annotations

import bisect
import re
from typing import Sequence

UINT64_MAX = (1 << 64) - 1
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1

_DIGITS = {
    10: re.compile(r"[0-9]+"),
    16: re.compile(r"[0-9a-fA-F]+"),
}


def parse_uint64(s: str) -> "Uint64":
    """Parse ``s`` in base 10, or base 16 when prefixed with ``0x`` or ``0X``.

    A signed value is accepted as a fallback and wrapped to 64 bits.
    """
    text = s
    base = 10
    if text.startswith(("0x", "0X")):
        text = text[2:]
        base = 16
    digits = _DIGITS[base]
    if digits.fullmatch(text):
        value = int(text, base)
        if value <= UINT64_MAX:
            return Uint64(value)
    elif text and text[0] in "+-" and digits.fullmatch(text[1:]):
        value = int(text[1:], base)
        if text[0] == "-":
            value = -value
        if _INT64_MIN <= value <= _INT64_MAX:
            return Uint64(value & UINT64_MAX)
    raise ValueError(f"invalid 64-bit integer {s!r}")


class _HexInt(int):
    """A 64-bit unsigned integer shown in hexadecimal."""

    def __new__(cls, value: int = 0):
        number = int.__new__(cls, value)
        if not 0 <= int(number) <= UINT64_MAX:
            raise ValueError(f"{cls.__name__} out of range: {int(number)}")
        return number

    def __str__(self) -> str:
        return f"0x{int(self):X}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self})"

    def __format__(self, spec: str) -> str:
        if not spec:
            return str(self)
        return format(int(self), spec)


class Uint64(_HexInt):
    """A 64-bit unsigned integer, written in decimal or hexadecimal."""

    @classmethod
    def parse(cls, s: str) -> "Uint64":
        """Return the value represented by ``s``."""
        return cls(parse_uint64(s))


class Address(_HexInt):
    """A virtual address, written in decimal or hexadecimal."""

    @classmethod
    def parse(cls, s: str) -> "Address":
        """Return the address represented by ``s``."""
        return cls(parse_uint64(s))


def insert_addr(addrs: Sequence[int], addr: int) -> list:
    """Return a sorted copy of ``addrs`` with ``addr`` inserted unless present.

    ``addrs`` must be sorted in ascending order.
    """
    index = bisect.bisect_left(addrs, addr)
    if index < len(addrs) and addrs[index] == addr:
        return list(addrs)
    return [*addrs[:index], addr, *addrs[index:]]