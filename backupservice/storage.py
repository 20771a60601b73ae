"""Storage access: reading, writing and removing backup files."""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class NameValidator:
    """Accepts only paths ending with a given suffix."""

    def __init__(self, suffix: str):
        self.suffix = suffix

    def run(self, path: str) -> None:
        """Raise ValueError if ``path`` is rejected by the filter."""
        if not self.suffix or path.endswith(self.suffix):
            return
        raise ValueError(f"skipped by filter '{self.suffix}'")


@dataclass
class LocalStorage:
    """Files under a directory of the local file system."""

    path: str


class _Accessor(Protocol):
    def supports(self, storage: Any) -> bool: ...

    def list_files(self, storage: Any, path: str, validator: NameValidator | None,
                   start_scan_from: str | None) -> list[str]: ...

    def read(self, storage: Any, path: str) -> bytes: ...

    def write(self, storage: Any, path: str, content: bytes) -> None: ...

    def remove(self, storage: Any, path: str) -> None: ...


def _full_path(storage: LocalStorage, path: str) -> Path:
    return Path(storage.path) / path.lstrip("/")


class LocalStorageAccessor:
    """Accessor for :class:`LocalStorage`."""

    def supports(self, storage: Any) -> bool:
        return isinstance(storage, LocalStorage)

    def list_files(self, storage: LocalStorage, path: str, validator: NameValidator | None,
                   start_scan_from: str | None = None) -> list[str]:
        """Keys of all files below ``path`` accepted by ``validator``, sorted.

        ``start_scan_from`` is an object-store listing hint and has no effect here.
        """
        root = _full_path(storage, path)
        if not root.exists():
            raise FileNotFoundError(f"directory {root} does not exist")
        base = Path(storage.path)
        candidates = [root] if root.is_file() else sorted(p for p in root.rglob("*") if p.is_file())
        keys = []
        for file in candidates:
            key = file.relative_to(base).as_posix()
            if validator is not None:
                try:
                    validator.run(key)
                except ValueError:
                    continue
            keys.append(key)
        return keys

    def read(self, storage: LocalStorage, path: str) -> bytes:
        return _full_path(storage, path).read_bytes()

    def write(self, storage: LocalStorage, path: str, content: bytes) -> None:
        target = _full_path(storage, path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)

    def remove(self, storage: LocalStorage, path: str) -> None:
        target = _full_path(storage, path)
        if target.is_dir():
            shutil.rmtree(target)
        elif target.exists():
            target.unlink()


_accessors: list[_Accessor] = []


def register_accessor(accessor: _Accessor) -> None:
    """Add an accessor to the registry."""
    _accessors.append(accessor)


def get_accessor(storage: Any) -> _Accessor:
    """Return the accessor supporting ``storage``."""
    for accessor in _accessors:
        if accessor.supports(storage):
            return accessor
    raise TypeError(f"unsupported storage type {type(storage).__name__}")


def _unix_millis(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - _EPOCH) // timedelta(milliseconds=1)


def read_file(storage: Any, path: str) -> bytes:
    """Read one file from storage."""
    return get_accessor(storage).read(storage, path)


def read_files(storage: Any, path: str, suffix: str, from_time: datetime | None) -> list[bytes]:
    """Read every file below ``path`` whose name ends with ``suffix``."""
    start_scan_from = None
    if from_time is not None:
        start_scan_from = str(_unix_millis(from_time) - 1)  # -1 keeps the bound inclusive
    accessor = get_accessor(storage)
    validator = NameValidator(suffix) if suffix else None
    return [accessor.read(storage, key)
            for key in accessor.list_files(storage, path, validator, start_scan_from)]


def write_file(storage: Any, path: str, content: bytes) -> None:
    """Write ``content`` to a file in storage."""
    get_accessor(storage).write(storage, path, content)


def delete_folder(storage: Any, path: str) -> None:
    """Remove a folder and everything in it."""
    get_accessor(storage).remove(storage, path)


register_accessor(LocalStorageAccessor())