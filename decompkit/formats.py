"""Registry of binary executable formats, identified by magic prefixes."""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, List, Union

from decompkit.binfile import File

log = logging.getLogger(__name__)

Parser = Callable[[BinaryIO], File]


class UnknownFormatError(ValueError):
    """Raised when no registered format matches the input."""


@dataclass(frozen=True)
class _Format:
    name: str
    magic: bytes
    parse: Parser


_formats: List[_Format] = []


def _as_bytes(magic: Union[str, bytes]) -> bytes:
    if isinstance(magic, str):
        return magic.encode("latin-1")
    return bytes(magic)


def register_format(name: str, magic: Union[str, bytes], parse: Parser) -> None:
    """Register a format; ``?`` in ``magic`` matches any one byte."""
    _formats.append(_Format(name, _as_bytes(magic), parse))


def match(magic: Union[str, bytes], buf: bytes) -> bool:
    """Report whether ``magic`` matches ``buf``, with ``?`` as a wildcard."""
    pattern = _as_bytes(magic)
    if len(pattern) != len(buf):
        return False
    wildcard = ord("?")
    return all(m == wildcard or m == b for m, b in zip(pattern, buf))


def parse(r: Union[BinaryIO, bytes, bytearray, Any]) -> File:
    """Parse a binary executable from a seekable binary reader or bytes."""
    if isinstance(r, (bytes, bytearray, memoryview)):
        r = io.BytesIO(bytes(r))
    for fmt in _formats:
        r.seek(0)
        buf = r.read(len(fmt.magic))
        if len(buf) < len(fmt.magic):
            log.warning(
                "skip %r format (read %d of %d bytes required for magic identification)",
                fmt.name,
                len(buf),
                len(fmt.magic),
            )
            continue
        if match(fmt.magic, buf):
            r.seek(0)
            return fmt.parse(r)
    raise UnknownFormatError(
        "unknown binary executable format;\n"
        "tip: remember to register a file format\n"
        "\ttip: try loading as raw binary executable"
    )


def parse_file(path) -> File:
    """Parse the binary executable stored at ``path``."""
    with open(path, "rb") as f:
        return parse(f)