"""
Asset post-processing for the client bundle.

Runs as its own process so the pipeline can treat it like any other stage:

    python -m perseus_cli.build.assets minify dist/pkg
    python -m perseus_cli.build.assets compress dist/pkg
"""

from __future__ import annotations

import argparse
import gzip
import io
import sys
from pathlib import Path
from typing import Optional

COMPRESSIBLE_SUFFIXES = (".js", ".wasm", ".css", ".html", ".json", ".svg")


# =============================================================================
# Minification
# =============================================================================


def minify_js(source: str) -> str:
    """Conservative line-level JS minification.

    Drops blank lines, full-line ``//`` comments, and block comments that
    start a line, and strips indentation. Newlines are kept so automatic
    semicolon insertion is unaffected; template literals pass through
    untouched.
    """
    out: list[str] = []
    in_template = False
    in_comment = False

    for line in source.splitlines():
        if in_template:
            out.append(line)
            if _backticks(line) % 2 == 1:
                in_template = False
            continue

        code = line.lstrip()
        if in_comment:
            if "*/" not in code:
                continue
            in_comment = False
            code = code.split("*/", 1)[1].lstrip()
        elif code.startswith("/*"):
            if "*/" not in code[2:]:
                in_comment = True
                continue
            code = code[2:].split("*/", 1)[1].lstrip()

        if not code.strip() or code.startswith("//"):
            continue
        if _backticks(code) % 2 == 1:
            # Trailing whitespace after an opening backtick is part of the string
            out.append(code)
            in_template = True
        else:
            out.append(code.rstrip())

    return "\n".join(out) + "\n" if out else ""


def _backticks(line: str) -> int:
    count = 0
    escaped = False
    for ch in line:
        if escaped:
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == "`":
            count += 1
    return count


def minify_tree(root: Path) -> int:
    """Minify every .js file under ``root`` in place. Returns files rewritten."""
    rewritten = 0
    for path in sorted(root.rglob("*.js")):
        if path.name.endswith(".min.js"):
            continue
        original = path.read_text(encoding="utf-8")
        minified = minify_js(original)
        if minified != original:
            path.write_text(minified, encoding="utf-8")
            rewritten += 1
    return rewritten


# =============================================================================
# Compression
# =============================================================================


def gzip_bytes(data: bytes) -> bytes:
    """Gzip with a zeroed header mtime and no file name, so output is stable."""
    buf = io.BytesIO()
    with gzip.GzipFile(filename="", mode="wb", fileobj=buf, compresslevel=9, mtime=0) as gz:
        gz.write(data)
    return buf.getvalue()


def compress_tree(root: Path, suffixes: tuple[str, ...] = COMPRESSIBLE_SUFFIXES) -> int:
    """Write a ``.gz`` sibling for each compressible file. Returns files written."""
    written = 0
    for path in sorted(root.rglob("*")):
        if not path.is_file() or path.suffix not in suffixes:
            continue
        target = path.with_name(path.name + ".gz")
        target.write_bytes(gzip_bytes(path.read_bytes()))
        written += 1
    return written


# =============================================================================
# Entry Point
# =============================================================================


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="perseus-assets")
    parser.add_argument("action", choices=["minify", "compress"])
    parser.add_argument("root", type=Path)
    args = parser.parse_args(argv)

    if not args.root.is_dir():
        print(f"Not a directory: {args.root}", file=sys.stderr)
        return 1

    if args.action == "minify":
        count = minify_tree(args.root)
        print(f"Minified {count} file(s)")
    else:
        count = compress_tree(args.root)
        print(f"Compressed {count} file(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
