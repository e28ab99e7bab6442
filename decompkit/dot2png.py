"""Convert DOT files to PNG images."""

from __future__ import annotations

import argparse
import os
import subprocess
import sys
from typing import List, Optional


def _trim_ext(path: str) -> str:
    sep = max(path.rfind("/"), path.rfind(os.sep))
    dot = path.rfind(".")
    return path[:dot] if dot > sep else path


def png_path_for(dot_path) -> str:
    """Return the PNG path that belongs to ``dot_path``."""
    return _trim_ext(os.fspath(dot_path)) + ".png"


def convert(dot_path, force: bool = False) -> bool:
    """Render ``dot_path`` to PNG with Graphviz.

    Unless ``force`` is set, an existing PNG newer than the DOT file is kept.
    Returns whether an image was created.
    """
    dot_path = os.fspath(dot_path)
    png_path = png_path_for(dot_path)
    if not force:
        dot_stat = os.stat(dot_path)
        try:
            png_stat = os.stat(png_path)
        except FileNotFoundError:
            pass
        else:
            if dot_stat.st_mtime_ns < png_stat.st_mtime_ns:
                return False
    print(f'Creating: "{png_path}"', file=sys.stderr)
    subprocess.run(["dot", "-Tpng", "-o", png_path, dot_path], check=True)
    return True


def main(argv: Optional[List[str]] = None) -> int:
    """Run the command line tool."""
    parser = argparse.ArgumentParser(
        prog="dot2png", description="Convert DOT files to PNG images."
    )
    parser.add_argument(
        "-f", dest="force", action="store_true", help="force overwrite existing images"
    )
    parser.add_argument("dot_paths", metavar="FILE.dot", nargs="*")
    args = parser.parse_args(argv)
    for dot_path in args.dot_paths:
        try:
            convert(dot_path, args.force)
        except (OSError, subprocess.CalledProcessError) as exc:
            print(f"dot2png: {exc}", file=sys.stderr)
            return 1
    return 0