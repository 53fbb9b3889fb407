"""File I/O shared by the storage classes.

Data for a user lives under ``<data_dir>/users/user-data/<user_id>/``. Blocking
file operations run in a worker thread so callers on the event loop only
suspend.
"""

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from pagelens.config import Settings, get_settings

logger = logging.getLogger(__name__)


def _write_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _read_bytes(path: Path) -> bytes | None:
    try:
        return path.read_bytes()
    except FileNotFoundError:
        return None


def _append_line(path: Path, line: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as fh:
        fh.write(line.rstrip("\n") + "\n")


def _list_files(directory: Path, suffix: str) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.iterdir() if p.is_file() and p.name.endswith(suffix))


def _dir_size(directory: Path) -> int:
    if not directory.is_dir():
        return 0
    return sum(p.stat().st_size for p in directory.iterdir() if p.is_file())


class BaseStorage:
    """Base class for file-backed storage."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    def user_data_path(self, user_id: str) -> Path:
        return self.settings.user_data_path(user_id)

    async def read_bytes(self, path: Path) -> bytes | None:
        return await asyncio.to_thread(_read_bytes, path)

    async def write_bytes(self, path: Path, data: bytes) -> None:
        await asyncio.to_thread(_write_atomic, path, data)

    async def read_text(self, path: Path) -> str | None:
        data = await self.read_bytes(path)
        return data.decode("utf-8") if data is not None else None

    async def write_text(self, path: Path, text: str) -> None:
        await self.write_bytes(path, text.encode("utf-8"))

    async def read_json(self, path: Path, default: Any = None) -> Any:
        text = await self.read_text(path)
        if text is None:
            return default
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            logger.error(f"Corrupt JSON file {path}: {e}")
            return default

    async def write_json(self, path: Path, data: Any) -> None:
        await self.write_text(path, json.dumps(data, indent=2))

    async def append_line(self, path: Path, line: str) -> None:
        await asyncio.to_thread(_append_line, path, line)

    async def list_files(self, directory: Path, suffix: str) -> list[Path]:
        return await asyncio.to_thread(_list_files, directory, suffix)

    async def delete_file(self, path: Path) -> None:
        await asyncio.to_thread(path.unlink, True)

    async def directory_size(self, directory: Path) -> int:
        return await asyncio.to_thread(_dir_size, directory)
