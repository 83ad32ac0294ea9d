import os
import pathlib
import sys
from typing import Union

PathLike = Union[str, os.PathLike]


def to_path(pathlike: PathLike) -> pathlib.Path:
    return pathlib.Path(pathlike)


def user_data_directory(
    vendor: str,
    application: str,
) -> pathlib.Path:
    if sys.platform == "win32":
        # %APPDATA%\vendor\application
        base = os.environ.get("APPDATA") or pathlib.Path.home() / "AppData" / "Roaming"
        return pathlib.Path(base) / vendor / application

    base = os.environ.get("XDG_DATA_HOME") or pathlib.Path.home() / ".local" / "share"
    return pathlib.Path(base) / application
