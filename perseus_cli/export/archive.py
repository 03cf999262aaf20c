"""
Deterministic archive creation.

Unchanged input trees produce byte-identical archives:
  - entries sorted byte-wise by their POSIX relative path
  - mtime, uid and gid zeroed, owner names empty
  - modes normalized to 0644 (0755 for executables)
  - gzip header mtime 0 and no embedded file name
"""

from __future__ import annotations

import gzip
import io
import tarfile
from pathlib import Path
from typing import Optional

from perseus_cli.core.errors import ExportError


def collect_files(root: Path) -> list[Path]:
    """All regular files under ``root`` in archive order. Symlinks are skipped."""
    files = [p for p in root.rglob("*") if p.is_file() and not p.is_symlink()]
    return sorted(files, key=lambda p: p.relative_to(root).as_posix().encode("utf-8"))


def _tarinfo(name: str, path: Path, size: int) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name=name)
    info.size = size
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    info.mode = 0o755 if path.stat().st_mode & 0o111 else 0o644
    info.type = tarfile.REGTYPE
    return info


def create_archive(root: Path, output: Path, prefix: Optional[str] = None) -> Path:
    """Write ``root`` to ``output`` as a deterministic ``.tar.gz``.

    ``prefix`` nests every entry under a top-level directory name.
    """
    if not root.is_dir():
        raise ExportError(f"Cannot archive missing directory: {root}")

    output = output.resolve()
    files = [f for f in collect_files(root) if f.resolve() != output]

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for path in files:
            rel = path.relative_to(root).as_posix()
            name = f"{prefix}/{rel}" if prefix else rel
            data = path.read_bytes()
            tar.addfile(_tarinfo(name, path, len(data)), io.BytesIO(data))

    try:
        output.parent.mkdir(parents=True, exist_ok=True)
        with output.open("wb") as raw:
            with gzip.GzipFile(filename="", mode="wb", fileobj=raw, compresslevel=9, mtime=0) as gz:
                gz.write(buf.getvalue())
    except OSError as e:
        raise ExportError(f"Could not write archive {output}: {e}") from e
    return output
