"""JSON-file storage on the local disk.

A key like ``["part", "msg_1", "prt_a"]`` maps to one file::

    {data_root}/{prefix}/storage/part/msg_1/prt_a.json

(``{prefix}/`` is omitted when no prefix is configured).  File I/O runs in
anyio's thread pool; every write replaces the target file atomically, and
read-modify-write cycles on one key are serialized by a per-key lock.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import tempfile
from functools import partial
from pathlib import Path
from typing import Any

from anyio import to_thread

from keelson.agent_runtime.store.base import Key, Mutator, NotFoundError

_SUFFIX = ".json"


class LocalStorage:
    """Local filesystem implementation of the Storage protocol."""

    def __init__(self, data_root: str | Path, prefix: str | None = None) -> None:
        base = Path(data_root)
        if prefix:
            base = base / prefix
        self._base = base / "storage"
        self._locks: dict[tuple[str, ...], asyncio.Lock] = {}

    def _path(self, key: Key) -> Path:
        if not key:
            msg = "Storage key must not be empty"
            raise ValueError(msg)
        return self._base.joinpath(*key[:-1], f"{key[-1]}{_SUFFIX}")

    def _lock(self, key: Key) -> asyncio.Lock:
        return self._locks.setdefault(tuple(key), asyncio.Lock())

    # -- Read ------------------------------------------------------------------

    async def read(self, key: Key) -> dict[str, Any]:
        path = self._path(key)
        try:
            raw = await to_thread.run_sync(partial(_read_file, path))
        except FileNotFoundError as exc:
            raise NotFoundError(key) from exc
        return json.loads(raw)

    # -- Write -----------------------------------------------------------------

    async def write(self, key: Key, data: dict[str, Any]) -> None:
        path = self._path(key)
        payload = json.dumps(data, indent=2)
        async with self._lock(key):
            await to_thread.run_sync(partial(_atomic_write, path, payload))

    async def update(self, key: Key, mutator: Mutator) -> dict[str, Any]:
        path = self._path(key)
        async with self._lock(key):
            try:
                raw = await to_thread.run_sync(partial(_read_file, path))
            except FileNotFoundError as exc:
                raise NotFoundError(key) from exc
            data = json.loads(raw)
            result = mutator(data)
            if result is not None:
                data = result
            await to_thread.run_sync(partial(_atomic_write, path, json.dumps(data, indent=2)))
        return data

    # -- Utilities -------------------------------------------------------------

    async def list(self, prefix: Key) -> list[list[str]]:
        root = self._base.joinpath(*prefix)
        files = await to_thread.run_sync(partial(_list_files, root))
        keys = [[*prefix, *path.relative_to(root).with_suffix("").parts] for path in files]
        return sorted(keys)

    async def remove(self, key: Key) -> None:
        path = self._path(key)
        async with self._lock(key):
            await to_thread.run_sync(partial(_unlink, path))
        self._locks.pop(tuple(key), None)


# -- Sync helpers (run in thread pool) -----------------------------------------


def _atomic_write(path: Path, data: str) -> None:
    """Write to a temp file in the target directory, then rename over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise


def _read_file(path: Path) -> str:
    return path.read_text(encoding="utf-8")


def _list_files(root: Path) -> list[Path]:
    if not root.is_dir():
        return []
    return [path for path in root.rglob(f"*{_SUFFIX}") if path.is_file()]


def _unlink(path: Path) -> None:
    with contextlib.suppress(FileNotFoundError):
        path.unlink()
