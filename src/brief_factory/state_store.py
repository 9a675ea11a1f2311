from __future__ import annotations

import asyncio
import copy
import fcntl
import json
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Mapping, Protocol

from .errors import DocumentNotFoundError
from .models import ExecutionLogEntry

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"
_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


class DocumentStore(Protocol):
    """Persistence collaborator for documents and execution logs."""

    async def get(self, document_id: str) -> dict[str, Any]:
        ...

    async def put(self, document_id: str, partial_update: Mapping[str, Any]) -> None:
        ...

    async def append_execution_log(self, entry: ExecutionLogEntry) -> None:
        ...

    async def list_execution_logs(self, document_id: str) -> list[ExecutionLogEntry]:
        ...


class InMemoryDocumentStore:
    """Process-local store used by tests and the offline CLI mode."""

    def __init__(self) -> None:
        self._documents: dict[str, dict[str, Any]] = {}
        self._logs: list[ExecutionLogEntry] = []
        self._lock = asyncio.Lock()

    async def get(self, document_id: str) -> dict[str, Any]:
        async with self._lock:
            if document_id not in self._documents:
                raise DocumentNotFoundError(document_id)
            return copy.deepcopy(self._documents[document_id])

    async def put(self, document_id: str, partial_update: Mapping[str, Any]) -> None:
        async with self._lock:
            current = self._documents.setdefault(document_id, {"id": document_id})
            current.update(copy.deepcopy(dict(partial_update)))

    async def append_execution_log(self, entry: ExecutionLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)

    async def list_execution_logs(self, document_id: str) -> list[ExecutionLogEntry]:
        async with self._lock:
            return [entry for entry in self._logs if entry.document_id == document_id]


# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive lock on a ``.lock`` sidecar of *path*.

    The sidecar keeps the lock handle stable while the data file itself is
    swapped out with ``os.replace``.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write via a same-directory temp file and ``os.replace`` so readers never see a torn file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _validate_id(document_id: str) -> str:
    if not _SAFE_ID_RE.match(document_id):
        raise ValueError(f"Invalid document id for file storage: {document_id!r}")
    return document_id


class FileDocumentStore:
    """JSON-on-disk store.

    Layout::

        <root>/documents/<document_id>.json
        <root>/execution_logs/<document_id>.jsonl

    Blocking file I/O runs in worker threads so callers on the event loop
    only suspend, never block.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.documents_dir = self.root / "documents"
        self.logs_dir = self.root / "execution_logs"

    def _document_path(self, document_id: str) -> Path:
        return self.documents_dir / f"{_validate_id(document_id)}.json"

    def _log_path(self, document_id: str | None) -> Path:
        name = _validate_id(document_id) if document_id else "_unassigned"
        return self.logs_dir / f"{name}.jsonl"

    def _read_document(self, document_id: str) -> dict[str, Any]:
        path = self._document_path(document_id)
        if not path.is_file():
            raise DocumentNotFoundError(document_id)
        text = path.read_text(encoding="utf-8")
        if not text.strip():
            raise ValueError(f"Document file at {path} is empty")
        payload = json.loads(text)
        if not isinstance(payload, dict):
            raise ValueError(f"Document file at {path} does not hold a JSON object")
        return payload

    def _put_sync(self, document_id: str, partial_update: Mapping[str, Any]) -> None:
        path = self._document_path(document_id)
        with _locked_file(path):
            try:
                current = self._read_document(document_id)
            except DocumentNotFoundError:
                current = {"id": document_id}
            current.update(dict(partial_update))
            _atomic_write_text(path, json.dumps(current, indent=2, sort_keys=True, default=str))

    def _append_log_sync(self, entry: ExecutionLogEntry) -> None:
        path = self._log_path(entry.document_id)
        with _locked_file(path):
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(entry.model_dump_json() + "\n")

    def _list_logs_sync(self, document_id: str) -> list[ExecutionLogEntry]:
        path = self._log_path(document_id)
        if not path.is_file():
            return []
        entries: list[ExecutionLogEntry] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if line.strip():
                entries.append(ExecutionLogEntry.model_validate_json(line))
        return entries

    async def get(self, document_id: str) -> dict[str, Any]:
        return await asyncio.to_thread(self._read_document, document_id)

    async def put(self, document_id: str, partial_update: Mapping[str, Any]) -> None:
        await asyncio.to_thread(self._put_sync, document_id, partial_update)
        logger.debug("Persisted %d field(s) for document %s", len(partial_update), document_id)

    async def append_execution_log(self, entry: ExecutionLogEntry) -> None:
        await asyncio.to_thread(self._append_log_sync, entry)

    async def list_execution_logs(self, document_id: str) -> list[ExecutionLogEntry]:
        return await asyncio.to_thread(self._list_logs_sync, document_id)
