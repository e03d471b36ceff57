"""
Content mirror: durable blob copy of every synced source file.

Keys are slash-separated paths ("governance/agreements/charter.md"). Each
object carries a small string metadata dict (commit id, sync timestamp,
content hash). Two implementations share one interface:

  FileContentMirror    objects under <root>/objects/<key>, metadata under
                       <root>/meta/<key>.json, written atomically
  MemoryContentMirror  dict-backed, for tests
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass
class MirrorObject:
    """A stored blob and its metadata."""

    key: str
    data: bytes
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.data.decode("utf-8")


class ContentMirror(Protocol):
    def put(self, key: str, data: bytes | str, metadata: dict[str, str] | None = None) -> None: ...

    def get(self, key: str) -> MirrorObject | None: ...

    def delete(self, key: str) -> None: ...


def _as_bytes(data: bytes | str) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else data


def _validate_key(key: str) -> PurePosixPath:
    path = PurePosixPath(key)
    if not key or path.is_absolute() or ".." in path.parts:
        raise ValueError(f"Invalid mirror key: {key!r}")
    return path


class FileContentMirror:
    """Filesystem-backed mirror. put/delete are idempotent and atomic per object."""

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.objects_dir = self.root / "objects"
        self.meta_dir = self.root / "meta"

    def _paths(self, key: str) -> tuple[Path, Path]:
        rel = _validate_key(key)
        return self.objects_dir.joinpath(*rel.parts), self.meta_dir.joinpath(*rel.parts[:-1], rel.name + ".json")

    @staticmethod
    def _write_atomic(target: Path, payload: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
            os.replace(tmp, target)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def put(self, key: str, data: bytes | str, metadata: dict[str, str] | None = None) -> None:
        obj_path, meta_path = self._paths(key)
        # Metadata last: a reader that finds metadata always finds the object.
        self._write_atomic(obj_path, _as_bytes(data))
        self._write_atomic(meta_path, json.dumps(metadata or {}, sort_keys=True).encode("utf-8"))
        logger.debug("Mirrored %s", key)

    def get(self, key: str) -> MirrorObject | None:
        obj_path, meta_path = self._paths(key)
        if not obj_path.exists():
            return None
        metadata: dict[str, str] = {}
        if meta_path.exists():
            metadata = json.loads(meta_path.read_text(encoding="utf-8"))
        return MirrorObject(key=key, data=obj_path.read_bytes(), metadata=metadata)

    def delete(self, key: str) -> None:
        obj_path, meta_path = self._paths(key)
        obj_path.unlink(missing_ok=True)
        meta_path.unlink(missing_ok=True)
        logger.debug("Deleted mirror object %s", key)


class MemoryContentMirror:
    """In-process mirror."""

    def __init__(self) -> None:
        self._objects: dict[str, MirrorObject] = {}
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes | str, metadata: dict[str, str] | None = None) -> None:
        _validate_key(key)
        with self._lock:
            self._objects[key] = MirrorObject(key=key, data=_as_bytes(data), metadata=dict(metadata or {}))

    def get(self, key: str) -> MirrorObject | None:
        with self._lock:
            return self._objects.get(key)

    def delete(self, key: str) -> None:
        with self._lock:
            self._objects.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._objects)
