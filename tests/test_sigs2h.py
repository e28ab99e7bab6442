import io
import json

import pytest

from decompkit.address import Address
from decompkit.sigs2h import FuncSig, convert, load_sigs, main


def _write(tmp_path, obj):
    path = tmp_path / "sigs.json"
    path.write_text(json.dumps(obj), encoding="utf-8")
    return path


def test_load_sigs(tmp_path):
    path = _write(tmp_path, {
        "0x401000": {"name": "start", "sig": "int start(void)"},
        "4198416": {"name": "helper"},
    })
    sigs = load_sigs(path)
    assert sigs[Address(0x401000)] == FuncSig("start", "int start(void)")
    assert sigs[Address(4198416)] == FuncSig("helper", "")


def test_load_sigs_bad_key(tmp_path):
    path = _write(tmp_path, {"nope": {"name": "x", "sig": ""}})
    with pytest.raises(ValueError):
        load_sigs(path)


def test_load_sigs_not_object(tmp_path):
    path = _write(tmp_path, [1, 2])
    with pytest.raises(ValueError):
        load_sigs(path)


def test_convert_header_and_order(tmp_path):
    path = _write(tmp_path, {
        "0x402000": {"name": "b", "sig": "void b(int x)"},
        "0x401000": {"name": "a", "sig": "int a(void)"},
    })
    out = io.StringIO()
    convert(out, path)
    text = out.getvalue()
    assert text.startswith("#include <stdint.h> // int8_t, ...\n")
    assert '#include "types.h"\n' in text
    assert text.index("// 0x401000") < text.index("// 0x402000")
    assert "\n// 0x401000\nint a(void) {}\n" in text
    assert text.endswith("\n// 0x402000\nvoid b(int x) {}\n\n")


def test_convert_missing_signature(tmp_path):
    path = _write(tmp_path, {"0x10": {"name": "foo", "sig": ""}})
    out = io.StringIO()
    convert(out, path)
    assert "void foo() /* signature missing */ {}" in out.getvalue()


def test_convert_empty(tmp_path):
    path = _write(tmp_path, {})
    out = io.StringIO()
    convert(out, path)
    text = out.getvalue()
    assert "//" in text
    assert "{}" not in text
    assert text.endswith('#include "types.h"\n\n\n')


def test_main_writes_output_file(tmp_path):
    path = _write(tmp_path, {"0x401000": {"name": "a", "sig": "int a(void)"}})
    out_path = tmp_path / "out.h"
    assert main([str(path), "-o", str(out_path)]) == 0
    expected = io.StringIO()
    convert(expected, path)
    assert out_path.read_text(encoding="utf-8") == expected.getvalue()


def test_main_missing_input(tmp_path):
    assert main([str(tmp_path / "absent.json")]) == 1


def test_main_requires_argument():
    with pytest.raises(SystemExit):
        main([])