"""EndowmentStore protocol and two backends.

Stores give the service optimistic concurrency per endowment id: a save
names the version it read, and fails with ``ConcurrentModification`` if
someone else saved in between. A successful save bumps ``version``.
"""

from __future__ import annotations

import copy
import json
import os
import re
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

from loguru import logger

from ..core.exceptions import ConcurrentModification, EndowmentNotFound, FileIOError
from ..core.utils.file_io import safe_write
from .models import Endowment
from .normalize import endowment_to_document, load_endowment

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@runtime_checkable
class EndowmentStore(Protocol):
    """Protocol for persisting endowment aggregates (endowment + tranches)."""

    def get(self, endowment_id: str) -> Endowment:
        """Return a private copy of the stored endowment.

        Raises:
            EndowmentNotFound: no such id.
        """
        ...

    def save(self, endowment: Endowment, expected_version: int | None) -> Endowment:
        """Persist *endowment* if the stored version still equals *expected_version*.

        Args:
            endowment: The aggregate to store.
            expected_version: Version the caller read, or None to create.

        Returns:
            The stored copy, with its new version.

        Raises:
            ConcurrentModification: stored version differs (or, for a
                create, the id already exists).
        """
        ...

    def list_ids(self) -> list[str]:
        """Return all stored endowment ids, sorted."""
        ...

    def delete(self, endowment_id: str) -> bool:
        """Remove an endowment. Returns False if it did not exist."""
        ...


def _check_version(endowment_id: str, stored: int | None, expected: int | None) -> None:
    if expected is None and stored is not None:
        raise ConcurrentModification(f"endowment {endowment_id} already exists (version {stored})")
    if expected is not None and stored != expected:
        found = "missing" if stored is None else f"at version {stored}"
        raise ConcurrentModification(f"endowment {endowment_id} is {found}, expected version {expected}")


class InMemoryEndowmentStore:
    """Dict-backed store, for tests and single-process use."""

    def __init__(self) -> None:
        self._items: dict[str, Endowment] = {}
        self._lock = threading.Lock()

    def get(self, endowment_id: str) -> Endowment:
        with self._lock:
            if endowment_id not in self._items:
                raise EndowmentNotFound(f"endowment '{endowment_id}' not found")
            return copy.deepcopy(self._items[endowment_id])

    def save(self, endowment: Endowment, expected_version: int | None) -> Endowment:
        with self._lock:
            current = self._items.get(endowment.id)
            _check_version(endowment.id, current.version if current else None, expected_version)
            stored = copy.deepcopy(endowment)
            stored.version = (expected_version or 0) + 1
            self._items[endowment.id] = stored
            return copy.deepcopy(stored)

    def list_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._items)

    def delete(self, endowment_id: str) -> bool:
        with self._lock:
            return self._items.pop(endowment_id, None) is not None


class JsonFileEndowmentStore:
    """One JSON document per endowment under a directory.

    Writes go through a temp file and an atomic replace. A process-local
    lock serializes the version check and write; separate processes
    sharing the directory need an external lock.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory).expanduser()
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, endowment_id: str) -> Path:
        if not _SAFE_ID.match(endowment_id):
            raise EndowmentNotFound(f"endowment id {endowment_id!r} is not a valid store key")
        return self.directory / f"{endowment_id}.json"

    def _read(self, path: Path) -> Endowment | None:
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as f:
                document = json.load(f)
        except json.JSONDecodeError as e:
            raise FileIOError(f"Corrupt endowment document {path}: {e}") from e
        return load_endowment(document)

    def get(self, endowment_id: str) -> Endowment:
        with self._lock:
            endowment = self._read(self._path(endowment_id))
        if endowment is None:
            raise EndowmentNotFound(f"endowment '{endowment_id}' not found")
        return endowment

    def save(self, endowment: Endowment, expected_version: int | None) -> Endowment:
        path = self._path(endowment.id)
        with self._lock:
            current = self._read(path)
            _check_version(endowment.id, current.version if current else None, expected_version)
            stored = copy.deepcopy(endowment)
            stored.version = (expected_version or 0) + 1
            safe_write(str(path), json.dumps(endowment_to_document(stored), indent=2) + "\n")
        logger.debug(f"Saved endowment {stored.id} at version {stored.version} to {path}")
        return stored

    def list_ids(self) -> list[str]:
        return sorted(p.stem for p in self.directory.glob("*.json"))

    def delete(self, endowment_id: str) -> bool:
        path = self._path(endowment_id)
        with self._lock:
            if not path.exists():
                return False
            os.remove(path)
        return True
