"""
BlobStore - the shared mailbox between initiator and executor.

The remote store only offers put/get/list/delete of named byte blobs:
no ordering, no transactions, no compare-and-swap, and `list` may lag
behind recent writes. Everything in discburn is built on that contract.

Storage backends:
- In-memory (for testing)
- File-based (local directory or a synced cloud folder such as OneDrive)

Object layout (see JobPaths):
    pending/<jobId>.json
    jobs/<jobId>/manifest.json
    jobs/<jobId>/manifest.unreadable-<hash>.json
    status/<jobId>.json
    completed/<jobId>.json
    archive/<YYYY-MM-DD>/<jobId>.json
    signals/outbound.json
    signals/inbound.json
    commands/<jobId>-cancel.json
    admin/audit.json
"""

import hashlib
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Any, Optional

from discburn.errors import ParseError, StoreUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlobInfo:
    """Listing entry: full object name plus metadata."""
    name: str
    size: int = 0
    modified: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def stem(self) -> str:
        """Object name without directories or extension."""
        return PurePosixPath(self.name).stem


def _normalize(path: str) -> str:
    """Normalize an object name and refuse anything escaping the namespace."""
    parts = []
    for part in path.replace("\\", "/").split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            raise ValueError(f"Object path escapes namespace: {path!r}")
        parts.append(part)
    if not parts:
        raise ValueError("Object path is empty")
    return "/".join(parts)


class BlobStore(ABC):
    """
    Abstract base class for the remote object store.

    Implementations raise StoreUnavailable for I/O failures so the
    executor can skip a tick instead of crashing.
    """

    @abstractmethod
    def put(self, path: str, data: bytes) -> None:
        """Write (or overwrite) an object."""
        pass

    @abstractmethod
    def get(self, path: str) -> Optional[bytes]:
        """Read an object, or None if it does not exist."""
        pass

    @abstractmethod
    def list(self, prefix: str) -> list[BlobInfo]:
        """List objects whose name starts with `prefix`, sorted by name."""
        pass

    @abstractmethod
    def delete(self, path: str) -> bool:
        """Delete an object. Returns False if it did not exist."""
        pass

    def put_json(self, path: str, value: Any) -> None:
        self.put(path, json.dumps(value, indent=2).encode("utf-8"))

    def get_json(self, path: str) -> Optional[Any]:
        """Read and decode a JSON object; ParseError if it is corrupt."""
        raw = self.get(path)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ParseError(f"{path}: not valid JSON: {e}")


class InMemoryBlobStore(BlobStore):
    """
    In-memory implementation of BlobStore for testing.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self):
        self._objects: dict[str, tuple[bytes, float]] = {}

    def put(self, path: str, data: bytes) -> None:
        self._objects[_normalize(path)] = (bytes(data), time.time())

    def get(self, path: str) -> Optional[bytes]:
        entry = self._objects.get(_normalize(path))
        return entry[0] if entry else None

    def list(self, prefix: str) -> list[BlobInfo]:
        prefix = prefix.lstrip("/")
        return [
            BlobInfo(name=name, size=len(data), modified=modified)
            for name, (data, modified) in sorted(self._objects.items())
            if name.startswith(prefix)
        ]

    def delete(self, path: str) -> bool:
        return self._objects.pop(_normalize(path), None) is not None

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        self._objects.clear()


class FileBlobStore(BlobStore):
    """
    File-based implementation of BlobStore.

    Objects are plain files under `root`; pointing `root` at a synced
    cloud folder gives the relay behaviour of the remote store. Writes go
    through a temporary file and a rename so readers never see a torn
    object.
    """

    def __init__(self, root: Path | str):
        self._root = Path(root).expanduser()
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreUnavailable(f"Cannot create store root {self._root}: {e}")

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, path: str) -> Path:
        return self._root.joinpath(*_normalize(path).split("/"))

    def put(self, path: str, data: bytes) -> None:
        target = self._path(path)
        tmp = target.with_name(f".{target.name}.tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "wb") as f:
                f.write(data)
            os.replace(tmp, target)
        except OSError as e:
            raise StoreUnavailable(f"Write failed for {path}: {e}", path=path)

    def get(self, path: str) -> Optional[bytes]:
        target = self._path(path)
        try:
            with open(target, "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StoreUnavailable(f"Read failed for {path}: {e}", path=path)

    def list(self, prefix: str) -> list[BlobInfo]:
        prefix = prefix.lstrip("/")
        # Walk only the directory part of the prefix.
        base_dir = prefix.rsplit("/", 1)[0] if "/" in prefix else ""
        start = self._root.joinpath(*base_dir.split("/")) if base_dir else self._root
        if not start.exists():
            return []

        entries = []
        try:
            for file_path in start.rglob("*"):
                if not file_path.is_file() or file_path.name.startswith("."):
                    continue
                name = file_path.relative_to(self._root).as_posix()
                if not name.startswith(prefix):
                    continue
                stat = file_path.stat()
                entries.append(BlobInfo(name=name, size=stat.st_size, modified=stat.st_mtime))
        except OSError as e:
            raise StoreUnavailable(f"List failed for {prefix}: {e}", path=prefix)
        return sorted(entries, key=lambda b: b.name)

    def delete(self, path: str) -> bool:
        target = self._path(path)
        try:
            target.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StoreUnavailable(f"Delete failed for {path}: {e}", path=path)


class JobPaths:
    """Object names used under the job namespace."""

    PENDING_PREFIX = "pending/"
    SIGNALS_OUTBOUND = "signals/outbound.json"
    SIGNALS_INBOUND = "signals/inbound.json"
    AUDIT_LOG = "admin/audit.json"

    @staticmethod
    def pending(job_id: str) -> str:
        return f"pending/{job_id}.json"

    @staticmethod
    def manifest(job_id: str) -> str:
        return f"jobs/{job_id}/manifest.json"

    @staticmethod
    def status(job_id: str) -> str:
        return f"status/{job_id}.json"

    @staticmethod
    def completed(job_id: str) -> str:
        return f"completed/{job_id}.json"

    @staticmethod
    def archive(job_id: str, when: datetime) -> str:
        return f"archive/{when.strftime('%Y-%m-%d')}/{job_id}.json"

    @staticmethod
    def cancel_marker(job_id: str) -> str:
        return f"commands/{job_id}-cancel.json"

    @staticmethod
    def unreadable_manifest(job_id: str, tag: str) -> str:
        return f"jobs/{job_id}/manifest.unreadable-{tag}.json"


def set_aside_manifest(store: BlobStore, job_id: str, raw: bytes) -> str:
    """
    Keep a copy of an unreadable manifest before it is rebuilt.

    Copies are named by content hash, so reading the same damaged blob
    twice leaves one copy.

    Returns:
        Name of the copy
    """
    path = JobPaths.unreadable_manifest(job_id, hashlib.sha256(raw).hexdigest()[:16])
    if store.get(path) is None:
        store.put(path, raw)
        logger.warning(f"Kept unreadable manifest of {job_id} as {path}")
    return path
