"""
Tests for deterministic archive creation.
"""

from __future__ import annotations

import os
import sys
import tarfile
from pathlib import Path

import pytest

from perseus_cli.core.errors import ExportError
from perseus_cli.export.archive import collect_files, create_archive


def make_tree(root: Path) -> Path:
    (root / "blog" / "first").mkdir(parents=True)
    (root / "index.html").write_text("<html></html>")
    (root / "blog" / "first" / "index.html").write_text("<p>first</p>")
    (root / "Zeta.txt").write_text("z")
    (root / "alpha.txt").write_text("a")
    return root


@pytest.mark.evergreen
class TestCreateArchive:
    """Unchanged trees produce byte-identical archives."""

    def test_identical_bytes_despite_new_mtimes(self, tmp_path: Path) -> None:
        tree = make_tree(tmp_path / "site")
        first = create_archive(tree, tmp_path / "one.tar.gz").read_bytes()

        for path in collect_files(tree):
            os.utime(path, (1_000_000, 1_000_000))
        second = create_archive(tree, tmp_path / "two.tar.gz").read_bytes()

        assert first == second

    def test_entries_sorted_bytewise(self, tmp_path: Path) -> None:
        tree = make_tree(tmp_path / "site")
        archive = create_archive(tree, tmp_path / "site.tar.gz")

        with tarfile.open(archive) as tar:
            names = tar.getnames()

        assert names == ["Zeta.txt", "alpha.txt", "blog/first/index.html", "index.html"]

    def test_metadata_is_normalized(self, tmp_path: Path) -> None:
        tree = make_tree(tmp_path / "site")
        archive = create_archive(tree, tmp_path / "site.tar.gz")

        with tarfile.open(archive) as tar:
            for member in tar.getmembers():
                assert member.mtime == 0
                assert member.uid == member.gid == 0
                assert member.uname == member.gname == ""
                assert member.mode == 0o644

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permission bits")
    def test_executables_keep_exec_bit(self, tmp_path: Path) -> None:
        tree = make_tree(tmp_path / "site")
        server = tree / "server"
        server.write_text("#!/bin/sh\n")
        server.chmod(0o700)

        archive = create_archive(tree, tmp_path / "site.tar.gz")

        with tarfile.open(archive) as tar:
            assert tar.getmember("server").mode == 0o755

    def test_prefix(self, tmp_path: Path) -> None:
        tree = make_tree(tmp_path / "site")
        archive = create_archive(tree, tmp_path / "site.tar.gz", prefix="pkg")
        with tarfile.open(archive) as tar:
            assert all(n.startswith("pkg/") for n in tar.getnames())

    def test_output_inside_tree_is_excluded(self, tmp_path: Path) -> None:
        tree = make_tree(tmp_path / "site")
        inside = tree / "site.tar.gz"
        create_archive(tree, inside)
        create_archive(tree, inside)
        with tarfile.open(inside) as tar:
            assert "site.tar.gz" not in tar.getnames()

    def test_missing_root(self, tmp_path: Path) -> None:
        with pytest.raises(ExportError, match="missing directory"):
            create_archive(tmp_path / "nope", tmp_path / "out.tar.gz")
