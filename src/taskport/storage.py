"""Pluggable persistence backends for task state.

Every durable write in the engine goes through a :class:`StateBackend`. The
file backend stages a full document and atomically replaces the prior file
under an exclusive lock; the memory backend keeps the same contract in
process so store-level tests run without touching disk.
"""

from __future__ import annotations

import shutil
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from copy import deepcopy
from pathlib import Path
from typing import Any, Iterator, Optional

from .io_utils import FileLock, _append_line, _atomic_write_json, _load_json


class StateBackend(ABC):
    @abstractmethod
    def read_json(self, path: Path) -> Optional[dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def write_json(self, path: Path, data: dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def append_line(self, path: Path, line: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def read_lines(self, path: Path) -> list[str]:
        raise NotImplementedError

    @abstractmethod
    def lock(self, path: Path) -> Any:
        """Return a context manager holding an exclusive lock named by *path*."""
        raise NotImplementedError

    @abstractmethod
    def exists(self, path: Path) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list_dir(self, path: Path) -> list[str]:
        raise NotImplementedError

    @abstractmethod
    def remove_tree(self, path: Path) -> None:
        raise NotImplementedError


class FileStateBackend(StateBackend):
    def read_json(self, path: Path) -> Optional[dict[str, Any]]:
        return _load_json(path)

    def write_json(self, path: Path, data: dict[str, Any]) -> None:
        _atomic_write_json(path, data)

    def append_line(self, path: Path, line: str) -> None:
        _append_line(path, line)

    def read_lines(self, path: Path) -> list[str]:
        if not path.exists():
            return []
        try:
            return path.read_text(encoding="utf-8").splitlines()
        except OSError:
            return []

    def lock(self, path: Path) -> FileLock:
        return FileLock(path)

    def exists(self, path: Path) -> bool:
        return path.exists()

    def list_dir(self, path: Path) -> list[str]:
        if not path.is_dir():
            return []
        return sorted(child.name for child in path.iterdir())

    def remove_tree(self, path: Path) -> None:
        if path.is_dir():
            shutil.rmtree(path, ignore_errors=True)
        elif path.exists():
            path.unlink(missing_ok=True)


class MemoryStateBackend(StateBackend):
    """In-process backend with the same atomicity guarantees as the file backend."""

    def __init__(self) -> None:
        self._docs: dict[str, dict[str, Any]] = {}
        self._lines: dict[str, list[str]] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def read_json(self, path: Path) -> Optional[dict[str, Any]]:
        with self._guard:
            doc = self._docs.get(str(path))
            return deepcopy(doc) if doc is not None else None

    def write_json(self, path: Path, data: dict[str, Any]) -> None:
        with self._guard:
            self._docs[str(path)] = deepcopy(data)

    def append_line(self, path: Path, line: str) -> None:
        with self._guard:
            self._lines.setdefault(str(path), []).append(line.rstrip("\n"))

    def read_lines(self, path: Path) -> list[str]:
        with self._guard:
            return list(self._lines.get(str(path), []))

    @contextmanager
    def lock(self, path: Path) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(str(path), threading.RLock())
        with lock:
            yield

    def _keys(self) -> list[str]:
        return list(self._docs) + list(self._lines)

    def exists(self, path: Path) -> bool:
        key = str(path)
        prefix = key.rstrip("/") + "/"
        with self._guard:
            return any(k == key or k.startswith(prefix) for k in self._keys())

    def list_dir(self, path: Path) -> list[str]:
        prefix = str(path).rstrip("/") + "/"
        names: set[str] = set()
        with self._guard:
            for key in self._keys():
                if key.startswith(prefix):
                    names.add(key[len(prefix):].split("/", 1)[0])
        return sorted(names)

    def remove_tree(self, path: Path) -> None:
        key = str(path)
        prefix = key.rstrip("/") + "/"
        with self._guard:
            for store in (self._docs, self._lines):
                for k in list(store):
                    if k == key or k.startswith(prefix):
                        del store[k]
