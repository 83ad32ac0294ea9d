from __future__ import annotations

import logging
import ntpath
import os
import posixpath
import uuid
from pathlib import Path
from typing import BinaryIO, Optional

from .errors import NotFound, StorageError
from .util.io import PathLike, to_path

logger = logging.getLogger(__name__)


def sanitize_filename(filename: str) -> str:
    """Reduce a requested name to its base name, dropping any directory part
    in either path style."""
    name = ntpath.basename(posixpath.basename(filename.replace("\x00", "")))
    if name in ("", ".", ".."):
        raise StorageError(f"Invalid filename {filename!r}")
    return name


class FileStorage:
    """Files living directly under one root directory.

    Requested names never reach outside the root: only their base name is
    used.
    """

    __slots__ = ("_root_dir",)

    def __init__(self, root_dir: PathLike) -> None:
        self._root_dir = to_path(root_dir).resolve()
        try:
            self._root_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(
                f"Cannot create storage root {self._root_dir}: {e.strerror}"
            ) from e

    @property
    def root_dir(self) -> Path:
        return self._root_dir

    def path_for(self, filename: str) -> Path:
        full_filepath = self._root_dir / sanitize_filename(filename)
        if full_filepath.parent != self._root_dir:
            raise StorageError(f"Filepath '{filename}' transcends root")
        return full_filepath

    def open_for_read(self, filename: str) -> BinaryIO:
        filepath = self.path_for(filename)
        try:
            return filepath.open("rb")
        except FileNotFoundError:
            raise NotFound(f"File not found: {filepath.name}") from None
        except OSError as e:
            raise StorageError(f"Cannot read {filepath.name}: {e.strerror}") from e

    def open_for_write(self, filename: str) -> BinaryIO:
        filepath = self.path_for(filename)
        try:
            return filepath.open("wb")
        except OSError as e:
            raise StorageError(f"Cannot write {filepath.name}: {e.strerror}") from e

    def discard(self, filename: str) -> None:
        """Remove a file left behind by a failed receive."""
        filepath = self.path_for(filename)
        logger.debug("Discarding %s", filepath)
        filepath.unlink(missing_ok=True)


def open_local_file(filepath: Path) -> BinaryIO:
    """Open a client-side file for sending."""
    try:
        return filepath.open("rb")
    except FileNotFoundError:
        raise NotFound(f"File not found: {filepath}") from None
    except OSError as e:
        raise StorageError(f"Cannot read {filepath}: {e.strerror}") from e


class PartialFile:
    """Context manager receiving into a hidden file beside ``filepath``.

    The file is moved onto ``filepath`` when the block exits cleanly and
    removed when it raises, so an existing file is only replaced by a
    complete one. With ``overwrite`` False an existing file is an error.
    """

    def __init__(self, filepath: Path, overwrite: bool = True) -> None:
        self.filepath = filepath
        self.overwrite = overwrite
        self.temp_path: Optional[Path] = None
        self._fh: Optional[BinaryIO] = None

    def __enter__(self) -> BinaryIO:
        if not self.filepath.name:
            raise StorageError(f"Not a file path: {self.filepath}")
        if not self.overwrite and self.filepath.exists():
            raise StorageError(f"File already exists: {self.filepath}")
        self.temp_path = self.filepath.with_name(
            f".{self.filepath.name}.{uuid.uuid4().hex[:8]}.part"
        )
        try:
            self._fh = self.temp_path.open("xb")
        except OSError as e:
            raise StorageError(f"Cannot write {self.filepath}: {e.strerror}") from e
        return self._fh

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self._fh.close()
        if exc_type is not None:
            logger.debug("Discarding %s", self.temp_path)
            self.temp_path.unlink(missing_ok=True)
            return

        try:
            os.replace(self.temp_path, self.filepath)
        except OSError as e:
            self.temp_path.unlink(missing_ok=True)
            raise StorageError(f"Cannot write {self.filepath}: {e.strerror}") from e
