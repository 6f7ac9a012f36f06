"""Tests for file system helpers."""

import os
import stat
from pathlib import Path

import pytest

from workspool.utils.file_utils import directory_size, format_bytes, remove_directory


class TestFormatBytes:
    """Test human readable sizes."""

    @pytest.mark.parametrize(
        "size,expected",
        [
            (0, "0.00 B"),
            (512, "512.00 B"),
            (1536, "1.50 KB"),
            (5 * 1024 * 1024, "5.00 MB"),
            (3 * 1024**3, "3.00 GB"),
            (2 * 1024**4, "2.00 TB"),
        ],
    )
    def test_format_bytes(self, size: int, expected: str):
        """Test units and precision."""
        assert format_bytes(size) == expected


class TestDirectorySize:
    """Test directory measurement."""

    def test_sums_regular_files(self, tmp_path: Path):
        """Test nested files are counted."""
        (tmp_path / "a.txt").write_bytes(b"x" * 100)
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "b.txt").write_bytes(b"y" * 50)
        assert directory_size(tmp_path) == 150

    def test_ignores_symlinks(self, tmp_path: Path):
        """Test symlinked files are not followed."""
        target = tmp_path / "outside.bin"
        target.write_bytes(b"z" * 1000)
        measured = tmp_path / "measured"
        measured.mkdir()
        (measured / "link").symlink_to(target)
        assert directory_size(measured) == 0

    def test_missing_directory(self, tmp_path: Path):
        """Test a missing directory measures zero."""
        assert directory_size(tmp_path / "missing") == 0


class TestRemoveDirectory:
    """Test tree removal."""

    def test_removes_tree(self, tmp_path: Path):
        """Test a nested tree is removed."""
        tree = tmp_path / "tree"
        (tree / "a" / "b").mkdir(parents=True)
        (tree / "a" / "b" / "file").write_text("data")
        assert remove_directory(tree) is True
        assert not tree.exists()

    def test_missing_path(self, tmp_path: Path):
        """Test removing a missing path reports nothing removed."""
        assert remove_directory(tmp_path / "missing") is False

    def test_symlink_is_unlinked_not_followed(self, tmp_path: Path):
        """Test the target of a symlink survives."""
        target = tmp_path / "target"
        target.mkdir()
        (target / "keep").write_text("keep")
        link = tmp_path / "link"
        link.symlink_to(target)

        assert remove_directory(link) is True
        assert not link.exists()
        assert (target / "keep").exists()

    def test_read_only_files(self, tmp_path: Path):
        """Test read-only pack files like the ones git writes are removed."""
        tree = tmp_path / "tree"
        tree.mkdir()
        pack = tree / "pack.idx"
        pack.write_text("pack")
        os.chmod(pack, stat.S_IRUSR)
        assert remove_directory(tree) is True
        assert not tree.exists()
