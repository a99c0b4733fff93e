"""
Unit tests for filesystem utilities.

Tests archive extraction, staging and directory replacement.
"""

import io
import tarfile

import pytest

from crossprov.core.exceptions import CorruptArchive, WriteFailure
from crossprov.core.filesystem import (
    detect_archive_format,
    ensure_writable_directory,
    extract_archive,
    is_empty_directory,
    make_staging_directory,
    replace_directory,
    safe_rmtree,
)
from tests.utils.archives import (
    build_tar_with_links,
    CLANG_FILES,
    build_tar,
    build_tar_xz,
    build_tar_zst,
    build_zip,
)


class TestDetectArchiveFormat:
    """Test detect_archive_format function."""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("cctools.tar.zst", "tar.zst"),
            ("https://host/public/build/clang-dist-toolchain.tar.xz", "tar.xz"),
            ("sdk.TGZ", "tar.gz"),
            ("x.tar.bz2", "tar.bz2"),
            ("plain.tar", "tar"),
            ("bundle.zip", "zip"),
            ("https://host/a.tar.xz?token=1", "tar.xz"),
            ("README", None),
        ],
    )
    def test_formats(self, name, expected):
        assert detect_archive_format(name) == expected


class TestExtractArchive:
    """Test extract_archive function."""

    def test_extract_tar_zst(self, write_file, tmp_path):
        archive = write_file("cctools.tar.zst", build_tar_zst(CLANG_FILES))
        destination = tmp_path / "out"

        extract_archive(archive, destination, "tar.zst")

        assert (destination / "bin" / "clang").read_bytes() == CLANG_FILES["bin/clang"]
        assert not archive.exists()
        # The intermediate .tar is cleaned up too
        assert list(tmp_path.glob("*.tar")) == []

    def test_extract_tar_xz_keeps_executable_bit(self, write_file, tmp_path):
        archive = write_file("clang.tar.xz", build_tar_xz(CLANG_FILES))
        destination = tmp_path / "out"

        extract_archive(archive, destination, "tar.xz")

        clang = destination / "bin" / "clang"
        assert clang.exists()
        assert clang.stat().st_mode & 0o100

    def test_extract_zip(self, write_file, tmp_path):
        archive = write_file("bundle.zip", build_zip({"a/b.txt": b"hi"}))

        extract_archive(archive, tmp_path / "out")

        assert (tmp_path / "out" / "a" / "b.txt").read_bytes() == b"hi"

    def test_format_inferred_from_name(self, write_file, tmp_path):
        archive = write_file("clang.tar.xz", build_tar_xz(CLANG_FILES))
        extract_archive(archive, tmp_path / "out")
        assert (tmp_path / "out" / "bin" / "clang").exists()

    def test_keep_archive(self, write_file, tmp_path):
        archive = write_file("clang.tar.xz", build_tar_xz(CLANG_FILES))
        extract_archive(archive, tmp_path / "out", remove_archive=False)
        assert archive.exists()

    def test_corrupt_zstd(self, write_file, tmp_path):
        archive = write_file("bad.tar.zst", b"definitely not zstd")

        with pytest.raises(CorruptArchive, match="bad.tar.zst"):
            extract_archive(archive, tmp_path / "out", "tar.zst", artifact="cctools")

        # A failed extraction keeps the archive for inspection
        assert archive.exists()

    def test_corrupt_xz(self, write_file, tmp_path):
        archive = write_file("bad.tar.xz", b"\xfd7zXZ\x00garbage")
        with pytest.raises(CorruptArchive):
            extract_archive(archive, tmp_path / "out", "tar.xz")

    def test_truncated_archive(self, write_file, tmp_path):
        data = build_tar_xz({"bin/clang": b"x" * 100000})
        archive = write_file("short.tar.xz", data[: len(data) // 2])
        with pytest.raises(CorruptArchive):
            extract_archive(archive, tmp_path / "out", "tar.xz")

    def test_unsupported_format(self, write_file, tmp_path):
        archive = write_file("a.rar", b"")
        with pytest.raises(CorruptArchive, match="Unsupported archive format"):
            extract_archive(archive, tmp_path / "out", "rar")

    def test_missing_archive(self, tmp_path):
        with pytest.raises(CorruptArchive, match="not found"):
            extract_archive(tmp_path / "missing.tar.xz", tmp_path / "out")

    def test_directory_traversal_rejected(self, write_file, tmp_path):
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            info = tarfile.TarInfo("../escape.txt")
            info.size = 1
            tar.addfile(info, io.BytesIO(b"x"))
        archive = write_file("evil.tar", buffer.getvalue())

        with pytest.raises(CorruptArchive, match="escapes"):
            extract_archive(archive, tmp_path / "out", "tar")

        assert not (tmp_path / "escape.txt").exists()

    def test_unwritable_destination(self, write_file, tmp_path):
        archive = write_file("clang.tar", build_tar(CLANG_FILES))
        blocker = write_file("blocker", b"")

        with pytest.raises(WriteFailure):
            extract_archive(archive, blocker / "out", "tar")


class TestArchiveLinks:
    """Symlink and hard link members must not lead outside the destination."""

    @pytest.fixture
    def outside(self, tmp_path):
        path = tmp_path / "outside"
        path.mkdir()
        return path

    def test_symlink_then_write_through_it(self, write_file, tmp_path, outside):
        archive = write_file(
            "evil.tar.xz",
            build_tar_with_links(
                [("lib", "symlink", str(outside)), ("lib/evil.txt", "file", b"owned")],
                mode="w:xz",
            ),
        )

        with pytest.raises(CorruptArchive, match="links outside"):
            extract_archive(archive, tmp_path / "out", "tar.xz")

        assert not (outside / "evil.txt").exists()

    def test_relative_symlink_escape(self, write_file, tmp_path, outside):
        archive = write_file(
            "evil.tar",
            build_tar_with_links(
                [("bin/up", "symlink", "../../outside"), ("bin/up/evil.txt", "file", b"x")]
            ),
        )

        with pytest.raises(CorruptArchive):
            extract_archive(archive, tmp_path / "out", "tar")

        assert list(outside.iterdir()) == []

    def test_hardlink_outside(self, write_file, tmp_path, outside):
        (outside / "secret").write_text("secret")
        archive = write_file(
            "evil.tar", build_tar_with_links([("secret", "hardlink", "../outside/secret")])
        )

        with pytest.raises(CorruptArchive, match="links outside"):
            extract_archive(archive, tmp_path / "out", "tar")

    def test_link_chain_resolving_outside(self, write_file, tmp_path):
        # 'up' looks harmless until 'here' turns it into a parent reference
        archive = write_file(
            "evil.tar",
            build_tar_with_links([("up", "symlink", "here/.."), ("here", "symlink", ".")]),
        )

        with pytest.raises(CorruptArchive):
            extract_archive(archive, tmp_path / "out", "tar")

        assert not (tmp_path / "out" / "up").is_symlink()

    def test_internal_links_kept(self, write_file, tmp_path):
        archive = write_file(
            "clang.tar",
            build_tar_with_links(
                [
                    ("bin/clang", "file", b"clang"),
                    ("bin/clang++", "symlink", "clang"),
                    ("bin/cc", "hardlink", "bin/clang"),
                ]
            ),
        )

        out = extract_archive(archive, tmp_path / "out", "tar")

        assert (out / "bin" / "clang++").is_symlink()
        assert (out / "bin" / "clang++").read_bytes() == b"clang"
        assert (out / "bin" / "cc").read_bytes() == b"clang"


class TestDirectories:
    """Test staging and replacement helpers."""

    def test_is_empty_directory(self, tmp_path):
        assert is_empty_directory(tmp_path)
        (tmp_path / "f").write_text("x")
        assert not is_empty_directory(tmp_path)
        assert not is_empty_directory(tmp_path / "missing")

    def test_ensure_writable_directory_creates(self, tmp_path):
        path = ensure_writable_directory(tmp_path / "a" / "b")
        assert path.is_dir()

    def test_ensure_writable_directory_on_file(self, write_file):
        blocker = write_file("blocker", b"")
        with pytest.raises(WriteFailure):
            ensure_writable_directory(blocker)

    def test_staging_directory_is_sibling(self, tmp_path):
        destination = tmp_path / "root" / "clang"
        staging = make_staging_directory(destination)

        assert staging.parent == destination.parent
        assert staging.name.startswith(".clang-staging-")

    def test_replace_directory_replaces_previous(self, tmp_path):
        old = tmp_path / "clang"
        (old / "old").mkdir(parents=True)
        new = tmp_path / "new"
        (new / "bin").mkdir(parents=True)

        replace_directory(new, old)

        assert (old / "bin").is_dir()
        assert not (old / "old").exists()
        assert not new.exists()
        assert sorted(p.name for p in tmp_path.iterdir()) == ["clang"]

    def test_replace_directory_into_missing(self, tmp_path):
        new = tmp_path / "new"
        new.mkdir()
        replace_directory(new, tmp_path / "clang")
        assert (tmp_path / "clang").is_dir()

    def test_safe_rmtree(self, tmp_path):
        target = tmp_path / "tree"
        (target / "sub").mkdir(parents=True)
        (target / "sub" / "f").write_text("x")
        (target / "sub" / "f").chmod(0o444)

        safe_rmtree(target)

        assert not target.exists()

    def test_safe_rmtree_missing(self, tmp_path):
        safe_rmtree(tmp_path / "missing")
        with pytest.raises(FileNotFoundError):
            safe_rmtree(tmp_path / "missing", missing_ok=False)
