"""Fix the syntax of IDA generated C header files (*.h -> *.h)."""

from __future__ import annotations

import argparse
import logging
import re
import subprocess
import sys
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterable, List, Optional, Tuple

log = logging.getLogger(__name__)

_CLANG_CMD = [
    "clang",
    "-m32",
    "-x",
    "c-header",
    "-Wno-return-type",
    "-Wno-invalid-noreturn",
    "-ferror-limit=0",
    "-o",
    "-",
    "-",
]

_RE_ENUM_SIZE_SPEC = re.compile(r"(enum [a-zA-Z0-9_$]+) : [a-zA-Z0-9_$]+")
_RE_EMPTY_ENUM = re.compile(r"enum [a-zA-Z0-9_$]+\n\{\n\};\n")
_RE_ALIGN = re.compile(r"__declspec\(align\([0-9]+\)\) ")
# A "#277 *This" reference inside a struct stands for the struct itself.
_RE_BROKEN_TYPE_REF = re.compile(
    r"struct ([a-zA-Z0-9_$]+)\n\{\n[^\n#]+(#[0-9]+) \*This[^\n]+"
)
_RE_PRAGMA_PACK = re.compile(r"#pragma pack\([^)]+\)")
_RE_DUP_TYPE_DEF = re.compile(
    r"\n(struct|union) ([a-zA-Z0-9_$]+)::[^\n]+\n\{[\s\S]+?;\n\n"
)
_RE_TYPE_NAMESPACE = re.compile(r"([a-zA-Z0-9_$]+::)+([a-zA-Z0-9_$]+) ")
_RE_TYPEDEF_ENUM = re.compile(r"enum ([a-zA-Z0-9_$]+)\n\{[^}]*\};")
_RE_TYPEDEF_STRUCT = re.compile(r"struct ([a-zA-Z0-9_$]+)\n\{[\s\S]*?\n\};")

_RE_ERROR = re.compile(r"<stdin>:([0-9]+):([0-9]+): (error: [^\n]+)")


class ErrorKind(IntEnum):
    """Categories of Clang errors that can be fixed automatically."""

    STRUCT_TAG_MISSING = 1
    ENUM_TAG_MISSING = 2
    UNION_TAG_MISSING = 3
    BYTE_TYPE_NAME = 4
    PARAM_NAME_MISSING = 5


_MESSAGE_KINDS = [
    ("error: must use 'struct' tag to refer to type", ErrorKind.STRUCT_TAG_MISSING),
    ("error: must use 'enum' tag to refer to type", ErrorKind.ENUM_TAG_MISSING),
    ("error: must use 'union' tag to refer to type", ErrorKind.UNION_TAG_MISSING),
    ("error: unknown type name '_BYTE'; did you mean 'BYTE'", ErrorKind.BYTE_TYPE_NAME),
    ("error: parameter name omitted", ErrorKind.PARAM_NAME_MISSING),
]

_TAG_INSERTS = {
    ErrorKind.STRUCT_TAG_MISSING: "struct ",
    ErrorKind.ENUM_TAG_MISSING: "enum ",
    ErrorKind.UNION_TAG_MISSING: "union ",
}


@dataclass(frozen=True)
class ClangError:
    """An error reported by Clang, with zero-based line and column."""

    line: int
    col: int
    kind: ErrorKind


class _FixFailed(RuntimeError):
    """Raised when the header cannot be fixed; ``text`` holds the partial result."""

    def __init__(self, message: str, text: str):
        super().__init__(message)
        self.text = text


def preprocess(text: str) -> str:
    """Fix simple syntax errors in an IDA generated C header."""
    text = _RE_ENUM_SIZE_SPEC.sub(r"\1", text)
    text = _RE_EMPTY_ENUM.sub("", text)
    text = _RE_ALIGN.sub("", text)
    text = text.replace("struct __unaligned ", "struct ")
    while True:
        m = _RE_BROKEN_TYPE_REF.search(text)
        if m is None:
            break
        text = text.replace(m.group(2) + " ", m.group(1) + " ")
    text = _RE_PRAGMA_PACK.sub("", text)
    text = _RE_DUP_TYPE_DEF.sub("\n", text)
    text = _RE_TYPE_NAMESPACE.sub(r"\2", text)
    text = _RE_TYPEDEF_ENUM.sub(r"\g<0>\n\ntypedef enum \1 \1;\n", text)
    text = _RE_TYPEDEF_STRUCT.sub(r"\g<0>\n\ntypedef struct \1 \1;\n", text)
    text = text.replace(" __noreturn ", " __attribute__((noreturn)) ")
    text = text.replace("type_info::`scalar deleting destructor'", "type_info_delete")
    text = text.replace("type_info::~type_info", "type_info_create")
    return text


def parse_errors(errbuf: str) -> List[ClangError]:
    """Parse the fixable errors out of Clang's diagnostic output."""
    errors = []
    for line in errbuf.split("\n"):
        if not (line.startswith("<stdin>:") and " error: " in line):
            continue
        m = _RE_ERROR.search(line)
        if m is None:
            raise ValueError(f"unable to locate Clang error in line `{line}`")
        msg = m.group(3)
        kind = next((k for prefix, k in _MESSAGE_KINDS if msg.startswith(prefix)), None)
        if kind is None:
            continue
        errors.append(ClangError(int(m.group(1)) - 1, int(m.group(2)) - 1, kind))
    return errors


def replace(text: str, errors: Iterable[ClangError]) -> Tuple[str, bool]:
    """Apply fixes for ``errors``, at most one per line.

    Returns the new text and whether any fix was made.
    """
    lines = text.split("\n")
    fixed_lines = set()
    for e in errors:
        i = e.line
        if i in fixed_lines:
            continue
        line = lines[i]
        col = e.col
        if e.kind in _TAG_INSERTS:
            line = line[:col] + _TAG_INSERTS[e.kind] + line[col:]
        elif e.kind == ErrorKind.BYTE_TYPE_NAME:
            line = line[:col] + line[col + 1:]
        elif e.kind == ErrorKind.PARAM_NAME_MISSING:
            line = line[:col] + f" a{col}" + line[col:]
        else:
            raise ValueError(f"support for Clang error kind {e.kind} not yet implemented")
        log.debug("replacement made at line %d: %s", i, ErrorKind(e.kind).name)
        lines[i] = line
        fixed_lines.add(i)
    return "\n".join(lines), bool(fixed_lines)


def fix(text: str) -> str:
    """Repeatedly compile ``text`` with Clang and repair the reported errors.

    Raises ``RuntimeError`` (with the partially fixed text in ``.text``) when
    Clang still fails and no further fix applies.
    """
    while True:
        try:
            result = subprocess.run(
                _CLANG_CMD,
                input=text,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as exc:
            raise _FixFailed(f"clang error: {exc}", text) from exc
        if result.returncode == 0:
            return text
        errbuf = result.stderr or ""
        try:
            errors = parse_errors(errbuf)
        except ValueError as exc:
            raise _FixFailed(str(exc), text) from exc
        text, fixed = replace(text, errors)
        if not fixed:
            raise _FixFailed(
                f"clang error: exit status {result.returncode}: {errbuf}", text
            )
        # Keep runaway loops interruptible if fixes introduce new errors.
        time.sleep(0.001)


def main(argv: Optional[List[str]] = None) -> int:
    """Run the command line tool."""
    parser = argparse.ArgumentParser(
        prog="hfix",
        description="Fix the syntax of IDA generated C header files (*.h -> *.h).",
        allow_abbrev=False,
    )
    parser.add_argument("-o", dest="output", default="", help="output path")
    parser.add_argument(
        "-partial", action="store_true", help="store partially fixed header files"
    )
    parser.add_argument(
        "-pre", action="store_true", help="store preprocessed header files"
    )
    parser.add_argument("-q", dest="quiet", action="store_true",
                        help="suppress non-error messages")
    parser.add_argument("h_path", metavar="FILE.h")
    args = parser.parse_args(argv)

    if args.quiet:
        log.setLevel(logging.WARNING)
    else:
        log.setLevel(logging.DEBUG)
        if not log.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(logging.Formatter("hfix: %(message)s"))
            log.addHandler(handler)

    try:
        with open(args.h_path, encoding="utf-8", newline="") as f:
            text = f.read()
        text = preprocess(text)
        if args.pre:
            with open("pre.h", "w", encoding="utf-8", newline="") as f:
                f.write(text)
        try:
            text = fix(text)
        except _FixFailed as exc:
            if args.partial:
                with open("partial.h", "w", encoding="utf-8", newline="") as f:
                    f.write(exc.text)
            print(f"hfix: {exc}", file=sys.stderr)
            return 1
        if args.output:
            with open(args.output, "w", encoding="utf-8", newline="") as f:
                f.write(text)
        else:
            sys.stdout.write(text)
    except OSError as exc:
        print(f"hfix: {exc}", file=sys.stderr)
        return 1
    return 0