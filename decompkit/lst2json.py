"""Extract information for decomp from IDA assembly listings (*.lst -> *.json)."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import re
import sys
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from decompkit.address import Address, Uint64
from decompkit.sigs2h import FuncSig

log = logging.getLogger(__name__)

_BANNER = "=" * 15 + " S U B R O U T I N E " + "=" * 39
_SEPARATOR = "; " + "-" * 75

# Functions (and basic blocks).
REG_FUNC = r"[\n](:?[.]text|ROM)[:]([0-9a-fA-F]+)[\t ;#]+" + re.escape(_BANNER)
# Basic blocks.
REG_FALLTHROUGH = (
    r"[ \t]+(loop|loope|loopne|ja|jb|jbe|jecxz|jg|jge|jl|jle|jnb|jns|jnz|jp|js|jz)"
    r"[ \t]+[^\n]*\n[.]text[:]00([0-9a-fA-F]+)"
)
REG_TARGET = r"[.]text[:]00([0-9a-fA-F]+)[ \t][$@_a-zA-Z][$@_a-zA-Z0-9]+:"
# Instructions.
REG_INST = r"[\n](:?[.]text|ROM)[:]([0-9a-fA-F]+)[ \t]*[ ]{7}[a-z]"
REG_TEXT_DATA = (
    r"[\n](:?[.]text|ROM)[:]([0-9a-fA-F]+)[ \t]*[ ]{7}"
    r"(?:db|dw|dd|dq|align|assume|include|public)[ ]"
)
# Data.
REG_JUMP_TABLE = r"[a-zA-Z]+[:]00([0-9a-fA-F]+)[^\n]*;[ \t]jump[ \t]table"
REG_INDIRECT_TABLE = r"[a-zA-Z]+[:]00([0-9a-fA-F]+)[^\n]*;[ \t]indirect[ \t]table"
REG_JUMP_PAST_DATA = (
    r"[ \t]+jmp[ \t]+[^\n]*\n[.][a-zA-Z]+[a-zA-Z]+[:]00([0-9a-fA-F]+)[ \t]+"
    + re.escape(_SEPARATOR)
    + r"[\n][.][a-zA-Z]+[:]00([0-9a-fA-F]+)[ \t]+"
)
REG_ALIGN = (
    re.escape(_SEPARATOR) + r"[\n][.][a-zA-Z]+[:]00([0-9a-fA-F]+)[ \t]+align[ \t]+"
)

_RE_FUNC_SIG = re.compile(
    r"(;[ \t]*([^\n]+))?[\n][.]text[:]00([0-9a-fA-F]+)[ \t]+([a-zA-Z0-9_?@$]+)"
    r"[ \t]+proc[ \t]near"
)
_RE_IMPORT = re.compile(
    r"([.]idata[:]00[0-9a-fA-F]+[ \t];[ \t]*([^\n]+))?[\n][.]idata[:]00([0-9a-fA-F]+)"
    r"[ \t]+extrn[ \t]+([a-zA-Z0-9_?@$]+)"
)
_RE_FUNC_CHUNK = re.compile(
    r"[.]text[:]00([0-9a-fA-F]+)[ \t];[ \t]FUNCTION[ \t]CHUNK[ \t]AT[ \t]"
    r"[.]text[:]00([0-9a-fA-F]+)"
)
_RE_LOC = re.compile(r"loc_([0-9a-fA-F]+)")
_RE_HEX = re.compile(r"[0-9a-fA-F]+")

_JSON_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}

Text = Union[str, bytes, bytearray]


def _as_text(text: Text) -> str:
    if isinstance(text, (bytes, bytearray)):
        return bytes(text).decode("utf-8", errors="replace")
    return text


def _hex_addr(s: Optional[str]) -> Address:
    if s is None or not _RE_HEX.fullmatch(s):
        raise ValueError(f"invalid hexadecimal address {s!r}")
    return Address(int(s, 16))


def locate_addrs(text: Text, pattern: Union[str, "re.Pattern[str]"]) -> Set[Address]:
    """Return the addresses captured by the last group of each match of ``pattern``."""
    regex = re.compile(pattern)
    addrs: Set[Address] = set()
    for m in regex.finditer(_as_text(text)):
        s = m.group(regex.groups) if regex.groups else m.group(0)
        addrs.add(_hex_addr(s))
    return addrs


def _locate_sigs(regex: "re.Pattern[str]", text: Text) -> Dict[Address, FuncSig]:
    sigs: Dict[Address, FuncSig] = {}
    for m in regex.finditer(_as_text(text)):
        sigs[_hex_addr(m.group(3))] = FuncSig(name=m.group(4), sig=m.group(2) or "")
    return sigs


def locate_func_sigs(text: Text) -> Dict[Address, FuncSig]:
    """Return the function signatures of the listing, keyed by function address."""
    return _locate_sigs(_RE_FUNC_SIG, text)


def locate_imports(text: Text) -> Dict[Address, FuncSig]:
    """Return the imports of the listing, keyed by import address."""
    return _locate_sigs(_RE_IMPORT, text)


def locate_func_chunks(text: Text) -> Dict[Address, Set[Address]]:
    """Map each function chunk address to the addresses of its parent functions."""
    chunks: Dict[Address, Set[Address]] = {}
    for m in _RE_FUNC_CHUNK.finditer(_as_text(text)):
        parent = Address.parse("0x" + m.group(1))
        chunk = Address.parse("0x" + m.group(2))
        chunks.setdefault(chunk, set()).add(parent)
    return chunks


def locate_targets(
    text: Text, table_addrs: Iterable[int]
) -> Dict[Address, List[Address]]:
    """Return the distinct targets of each jump table, in listing order."""
    source = _as_text(text)
    tables: Dict[Address, List[Address]] = {}
    for table_addr in table_addrs:
        table_addr = Address(table_addr)
        regex = re.compile(
            r"[.][a-zA-Z]+[:]00"
            + f"{int(table_addr):06X}"
            + r"[^\n]*? dd (([^\n]*?offset[ \t]loc_([0-9a-fA-F]+))+)"
        )
        seen: Set[Address] = set()
        for m in regex.finditer(source):
            for loc in _RE_LOC.finditer(m.group(1)):
                target = Address.parse("0x" + loc.group(1))
                if target in seen:
                    continue
                tables.setdefault(table_addr, []).append(target)
                seen.add(target)
    return tables


def _to_json(value: Any) -> Any:
    if isinstance(value, (Address, Uint64)):
        return str(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {k: _to_json(v) for k, v in dataclasses.asdict(value).items()}
    if isinstance(value, dict):
        items = ((str(_to_json(k)), _to_json(v)) for k, v in value.items())
        return dict(sorted(items))
    if isinstance(value, (set, frozenset)):
        return {key: True for key in sorted(str(_to_json(k)) for k in value)}
    if isinstance(value, (list, tuple)):
        return [_to_json(v) for v in value]
    return value


def store_json(path, value: Any) -> None:
    """Write ``value`` as tab-indented JSON followed by a newline."""
    encoded = json.dumps(_to_json(value), indent="\t", ensure_ascii=False)
    for char, escape in _JSON_ESCAPES.items():
        encoded = encoded.replace(char, escape)
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(encoded + "\n")


def _sorted_or_none(addrs: Iterable[Address]) -> Optional[List[Address]]:
    result = sorted(addrs)
    return result or None


def extract(lst_path, out_dir=".") -> None:
    """Extract addresses, tables, signatures, imports and chunks into JSON files."""
    with open(lst_path, "rb") as f:
        text = f.read().decode("utf-8", errors="replace")

    funcs = locate_addrs(text, REG_FUNC)
    func_addrs = sorted(funcs)

    # Each function address is also the address of its entry basic block.
    blocks = set(funcs)
    blocks |= locate_addrs(text, REG_FALLTHROUGH)
    blocks |= locate_addrs(text, REG_TARGET)
    block_addrs = sorted(blocks)

    # Data directives are not instructions, unless at a function or block start.
    insts = locate_addrs(text, REG_INST)
    insts -= locate_addrs(text, REG_TEXT_DATA) - blocks
    inst_addrs = sorted(insts)

    table_addrs = locate_addrs(text, REG_JUMP_TABLE)
    other_data = (
        locate_addrs(text, REG_INDIRECT_TABLE)
        | locate_addrs(text, REG_JUMP_PAST_DATA)
        | locate_addrs(text, REG_ALIGN)
    )
    data_addrs = sorted([*table_addrs, *other_data])

    tables = locate_targets(text, table_addrs)
    sigs = locate_func_sigs(text)
    for func_addr in func_addrs:
        if func_addr not in sigs:
            log.warning(
                "WARNING: unable to locate function signature for function at %s",
                func_addr,
            )
    imports = locate_imports(text)
    chunks = locate_func_chunks(text)

    outputs = {
        "funcs.json": func_addrs or None,
        "blocks.json": block_addrs or None,
        "insts.json": inst_addrs or None,
        "data.json": data_addrs or None,
        "tables.json": tables,
        "sigs.json": sigs,
        "imports.json": imports,
        "chunks.json": chunks,
    }
    for name, value in outputs.items():
        store_json(os.path.join(out_dir, name), value)


def main(argv: Optional[List[str]] = None) -> int:
    """Run the command line tool."""
    parser = argparse.ArgumentParser(
        prog="lst2json",
        description="Extract information for decomp from IDA assembly listings "
        "(*.lst -> *.json).",
    )
    parser.add_argument("lst_path", metavar="FILE.lst")
    args = parser.parse_args(argv)
    if not log.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("lst2json: %(message)s"))
        log.addHandler(handler)
    try:
        extract(args.lst_path, ".")
    except (OSError, ValueError) as exc:
        print(f"lst2json: {exc}", file=sys.stderr)
        return 1
    return 0