"""Offset store: persists per-file read positions to survive restarts.

Offsets are keyed by ``(source_id, file_path)``. Each entry remembers the inode
it belongs to and an epoch that increments whenever the file is truncated or
replaced in place, so an offset may only move backwards by starting a new
epoch. Updates are linearized under one lock; a stale update never regresses a
committed position.
"""

import json
import logging
import os
import threading

from lognorm.models import Offset

logger = logging.getLogger(__name__)


def _key(source_id: str, file_path: str) -> str:
    return f"{source_id}\t{file_path}"


class OffsetStore:
    def __init__(self, path: str):
        self._path = path
        self._lock = threading.Lock()
        self._data: dict[str, Offset] = {}
        self._dirty = False
        self._load()

    @property
    def path(self) -> str:
        return self._path

    def _load(self):
        if not os.path.exists(self._path):
            return
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            for entry in raw.get("offsets", []):
                offset = Offset(
                    source_id=entry["source_id"],
                    file_path=entry["file_path"],
                    byte_position=int(entry["offset"]),
                    inode=int(entry.get("inode", 0)),
                    epoch=int(entry.get("epoch", 0)),
                )
                self._data[_key(offset.source_id, offset.file_path)] = offset
            logger.info("Loaded offset store from %s (%d entries)", self._path, len(self._data))
        except (json.JSONDecodeError, OSError, KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning("Failed to load offset store %s, starting empty: %s", self._path, e)
            self._data = {}

    def save(self) -> bool:
        """Atomic write: write to tmp file then replace. Returns True if anything was written."""
        with self._lock:
            if not self._dirty:
                return False
            payload = {
                "offsets": [
                    {
                        "source_id": o.source_id,
                        "file_path": o.file_path,
                        "offset": o.byte_position,
                        "inode": o.inode,
                        "epoch": o.epoch,
                    }
                    for o in self._data.values()
                ]
            }
            os.makedirs(os.path.dirname(self._path) or ".", exist_ok=True)
            tmp_path = self._path + ".tmp"
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._path)
            self._dirty = False
            return True

    def get(self, source_id: str, file_path: str) -> Offset | None:
        with self._lock:
            return self._data.get(_key(source_id, file_path))

    def find_by_inode(self, source_id: str, inode: int, exclude_path: str | None = None) -> Offset | None:
        """Find a stored offset of ``source_id`` for the same file under a different path."""
        with self._lock:
            for offset in self._data.values():
                if offset.source_id == source_id and offset.inode == inode \
                        and offset.file_path != exclude_path:
                    return offset
        return None

    def advance(self, offset: Offset) -> bool:
        """Record a new committed position. Returns False if it would regress."""
        key = _key(offset.source_id, offset.file_path)
        with self._lock:
            current = self._data.get(key)
            if current is not None:
                if offset.epoch < current.epoch:
                    return False
                if offset.epoch == current.epoch and offset.byte_position <= current.byte_position:
                    return False
            self._data[key] = offset
            self._dirty = True
            return True

    def reset(self, source_id: str, file_path: str, inode: int, epoch: int):
        """Start a new epoch at position 0 (truncation or in-place rotation)."""
        key = _key(source_id, file_path)
        with self._lock:
            current = self._data.get(key)
            if current is not None and epoch <= current.epoch:
                return
            self._data[key] = Offset(source_id, file_path, 0, inode, epoch)
            self._dirty = True

    def entries(self) -> list[Offset]:
        with self._lock:
            return list(self._data.values())
