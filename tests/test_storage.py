from __future__ import annotations

from pathlib import Path

import pytest

from dualtftp.errors import NotFound, StorageError
from dualtftp.storage import FileStorage, PartialFile, open_local_file, sanitize_filename


class TestSanitizeFilename:
    @pytest.mark.parametrize(
        "filename, expected",
        (
            ("report.txt", "report.txt"),
            ("../../etc/passwd", "passwd"),
            ("/abs/path/report.txt", "report.txt"),
            ("..\\..\\boot.ini", "boot.ini"),
            ("src/Retrieve Files/report.txt", "report.txt"),
        ),
    )
    def test_base_name_only(self, filename: str, expected: str) -> None:
        assert sanitize_filename(filename) == expected

    @pytest.mark.parametrize("filename", ("", ".", "..", "dir/", "a/.."))
    def test_empty_names__raise(self, filename: str) -> None:
        with pytest.raises(StorageError):
            sanitize_filename(filename)


class TestFileStorage:
    def test_creates_root(self, tmp_path: Path) -> None:
        storage = FileStorage(tmp_path / "nested" / "root")
        assert storage.root_dir.is_dir()

    def test_open_for_read_missing__raises_not_found(self, tmp_path: Path) -> None:
        with pytest.raises(NotFound, match=r".*missing.txt.*"):
            FileStorage(tmp_path).open_for_read("missing.txt")

    def test_write_then_read(self, tmp_path: Path) -> None:
        storage = FileStorage(tmp_path)
        with storage.open_for_write("../escape.bin") as fh:
            fh.write(b"\x00\x01")

        assert (tmp_path / "escape.bin").read_bytes() == b"\x00\x01"
        assert not (tmp_path.parent / "escape.bin").exists()
        with storage.open_for_read("escape.bin") as fh:
            assert fh.read() == b"\x00\x01"

    def test_open_for_write_failure__raises_storage_error(self, tmp_path: Path) -> None:
        (tmp_path / "occupied").mkdir()
        with pytest.raises(StorageError):
            FileStorage(tmp_path).open_for_write("occupied")

    def test_discard(self, tmp_path: Path) -> None:
        storage = FileStorage(tmp_path)
        (tmp_path / "partial.bin").write_bytes(b"x")
        storage.discard("partial.bin")
        storage.discard("partial.bin")
        assert not (tmp_path / "partial.bin").exists()

    def test_root_below_a_regular_file__raises_storage_error(
        self, tmp_path: Path
    ) -> None:
        (tmp_path / "afile").write_bytes(b"")
        with pytest.raises(StorageError):
            FileStorage(tmp_path / "afile" / "root")


class TestOpenLocalFile:
    def test_missing__raises_not_found(self, tmp_path: Path) -> None:
        with pytest.raises(NotFound):
            open_local_file(tmp_path / "missing.bin")

    def test_below_a_regular_file__raises_storage_error(self, tmp_path: Path) -> None:
        (tmp_path / "afile").write_bytes(b"")
        with pytest.raises(StorageError):
            open_local_file(tmp_path / "afile" / "in.bin")


class TestPartialFile:
    def test_clean_exit__replaces_target(self, tmp_path: Path) -> None:
        target = tmp_path / "out.bin"
        target.write_bytes(b"old")

        with PartialFile(target) as fh:
            fh.write(b"new")
            assert target.read_bytes() == b"old"

        assert target.read_bytes() == b"new"
        assert list(tmp_path.iterdir()) == [target]

    def test_exception__target_untouched(self, tmp_path: Path) -> None:
        target = tmp_path / "out.bin"
        target.write_bytes(b"old")

        with pytest.raises(RuntimeError):
            with PartialFile(target) as fh:
                fh.write(b"half")
                raise RuntimeError("transfer failed")

        assert target.read_bytes() == b"old"
        assert list(tmp_path.iterdir()) == [target]

    def test_exception__nothing_created(self, tmp_path: Path) -> None:
        with pytest.raises(RuntimeError):
            with PartialFile(tmp_path / "out.bin"):
                raise RuntimeError("transfer failed")

        assert list(tmp_path.iterdir()) == []

    def test_no_overwrite__raises(self, tmp_path: Path) -> None:
        target = tmp_path / "out.bin"
        target.write_bytes(b"old")

        with pytest.raises(StorageError, match="already exists"):
            with PartialFile(target, overwrite=False):
                pass

        assert target.read_bytes() == b"old"

    def test_missing_directory__raises_storage_error(self, tmp_path: Path) -> None:
        with pytest.raises(StorageError):
            with PartialFile(tmp_path / "absent" / "out.bin"):
                pass
