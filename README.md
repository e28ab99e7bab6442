# decompkit

A small toolkit for decompilation work. It loads binary executables into one
uniform model (architecture, entry point, sections with permissions, imports
and exports) and ships a few command-line helpers for working with IDA
listings, C headers and Graphviz files.

## Installation

```
pip install .
```

To run the test suite:

```
pip install .[test]
pytest
```

## Loading executables

Supported formats are ELF (`decompkit.elf`), PE (`decompkit.pe`), PEF, the
Preferred Executable Format (`decompkit.pef`), and raw binaries
(`decompkit.raw`). Each format module has `parse`, which takes a seekable
binary stream or bytes, and `parse_file`, which takes a path. Every one of
them returns a `decompkit.binfile.File`:

```python
from decompkit import pe, raw
from decompkit.binfile import Arch

exe = pe.parse_file("game.exe")
print(exe.arch, exe.entry)
for sect in exe.sections:
    print(sect.name, sect.addr, sect.perm)   # e.g. .text 0x401000 r-x

code = exe.code(exe.entry)        # bytes from the entry point onwards
blob = raw.parse_file("dump.bin", Arch.from_string("x86_32"))
blob.entry = 0x100                # raw files start with entry and base at 0
```

What each loader fills in:

- **ELF**: architecture (x86_32, x86_64, PowerPC_32), entry point, sections
  and `PT_LOAD` segments, imports read from `.got.plt` together with the
  dynamic symbols, and exported functions from `.symtab`.
- **PE**: architecture (x86_32, x86_64, PowerPC_32), entry point, sections
  (alignment padding dropped) and imports by name or by ordinal, the latter
  named `<dll>_ordinal_<n>`. Exports are not read.
- **PEF**: architecture (`pwpc` only), sections of every container.
  Containers whose sections have names are rejected with `PefError`.
- **raw**: one readable, writable, executable segment holding the whole file.

Malformed input raises `ElfError`, `PEError` or `PefError`, all subclasses
of `ValueError`. `File.code` and `File.data` raise `LookupError` for an
address outside the sections; `File.code` looks only in executable sections.

Sections are kept sorted by address, longer sections first at equal
addresses, then by name (`decompkit.binfile.sort_sections`). Permissions are
`decompkit.binfile.Perm` flags and print as `rwx`-style strings.

### Identifying the format

`decompkit.formats` identifies a file by its magic header and hands it to
the parser registered for it. Importing `decompkit.elf`, `decompkit.pe` or
`decompkit.pef` registers that format; `register_format` adds your own
(`?` in the magic matches any byte):

```python
from decompkit import elf, pe, pef  # register the formats
from decompkit.formats import parse_file, UnknownFormatError

try:
    exe = parse_file("a.out")
except UnknownFormatError:
    ...
```

### Addresses

`decompkit.address.Address` and `Uint64` are integers that print in
hexadecimal and parse decimal or `0x`-prefixed text (negative 64-bit values
wrap around):

```python
from decompkit.address import Address, insert_addr, parse_uint64

addr = Address.parse("0x401000")
addrs = insert_addr([0x1000, 0x3000], Address(0x2000))   # sorted, no duplicates
parse_uint64("-1")                                       # 0xFFFFFFFFFFFFFFFF
```

## Command-line tools

`lst2json FILE.lst` extracts function, basic block, instruction and data
addresses, jump table targets, function signatures, imports and function
chunks from an IDA assembly listing and writes them as JSON files in the
current directory (`funcs.json`, `blocks.json`, `insts.json`, `data.json`,
`tables.json`, `sigs.json`, `imports.json`, `chunks.json`). The same work is
available as `decompkit.lst2json.extract(lst_path, out_dir)`.

`sigs2h [-o OUTPUT] sigs.json` turns a JSON file of function signatures
(as written by `lst2json`) into a C header of empty function definitions,
ordered by address. Entries without a signature become
`void name() /* signature missing */`.

`hfix [-o OUTPUT] [-pre] [-partial] [-q] FILE.h` repairs the syntax of IDA
generated C headers. It applies textual fixes first and then repeatedly runs
`clang` on the header, fixing the errors it reports (missing
`struct`/`enum`/`union` tags, `_BYTE` type names, omitted parameter names)
until the header compiles. `-pre` writes the preprocessed header to `pre.h`,
`-partial` writes the partially fixed header to `partial.h` when fixing
fails, and `-q` silences the log of replacements. `clang` must be on the
`PATH`.

`dot2png [-f] FILE.dot...` renders Graphviz DOT files to PNG images next to
them, skipping images that are newer than their DOT file unless `-f` is
given. Graphviz `dot` must be on the `PATH`.

## What it does not do

decompkit loads executables and prepares metadata; it does not decode
machine instructions. There is no disassembler, no control flow graph
recovery, no generation of assembly listings or DOT graphs from a binary,
and no lifting to LLVM IR or C. The tools here work on files produced
elsewhere (IDA listings, C headers, DOT files).