"""Convert function signatures to empty C headers (*.json -> *.h)."""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass
from typing import Dict, List, Optional, TextIO

from decompkit.address import Address

_HEADER = (
    "#include <stdint.h> // int8_t, ...\n"
    "#include <stdarg.h> // va_list\n"
    "#if __WORDSIZE == 64\n"
    "\ttypedef uint64_t size_t;\n"
    "#else\n"
    "\ttypedef uint32_t size_t;\n"
    "#endif\n"
    "\n"
    '#include "types.h"\n'
    "\n"
)


@dataclass
class FuncSig:
    """A named function signature as stored in JSON."""

    name: str = ""
    sig: str = ""


@dataclass
class Signature:
    """A function signature at a given address."""

    addr: Address
    sig: str


def load_sigs(json_path) -> Dict[Address, FuncSig]:
    """Load a JSON object mapping addresses to ``{"name", "sig"}`` records."""
    with open(json_path, encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError(f"expected JSON object in {str(json_path)!r}")
    sigs: Dict[Address, FuncSig] = {}
    for key, value in raw.items():
        if not isinstance(value, dict):
            raise ValueError(f"expected JSON object for function signature at {key!r}")
        sigs[Address.parse(key)] = FuncSig(
            name=str(value.get("name", "")),
            sig=str(value.get("sig", "")),
        )
    return sigs


def _signatures(sigs: Dict[Address, FuncSig]) -> List[Signature]:
    return [
        Signature(addr, fs.sig or f"void {fs.name}() /* signature missing */")
        for addr, fs in sorted(sigs.items())
    ]


def convert(w: TextIO, json_path) -> None:
    """Write a C header with empty bodies for the signatures in ``json_path``."""
    sigs = load_sigs(json_path)
    w.write(_HEADER)
    for signature in _signatures(sigs):
        w.write(f"\n// {signature.addr}\n{signature.sig} {{}}\n")
    w.write("\n")


def main(argv: Optional[List[str]] = None) -> int:
    """Run the command line tool."""
    parser = argparse.ArgumentParser(
        prog="sigs2h",
        description="Convert function signatures to empty C headers (*.json -> *.h).",
    )
    parser.add_argument("-o", dest="output", default="", help="output path")
    parser.add_argument("json_path", metavar="FILE.json")
    args = parser.parse_args(argv)
    try:
        if args.output:
            with open(args.output, "w", encoding="utf-8") as out:
                convert(out, args.json_path)
        else:
            convert(sys.stdout, args.json_path)
    except (OSError, ValueError) as exc:
        print(f"sigs2h: {exc}", file=sys.stderr)
        return 1
    return 0