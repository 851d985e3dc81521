"""File tailing: one thread per watched file, one watcher per source.

FileTailer follows a single path:
- resumes from the committed offset (or EOF / 0 when none is stored)
- detects truncation (file shorter than the read position) and restarts at 0
- detects rotation (path now names another inode): drains the old handle
  first, then follows the new file from 0
- buffers partial trailing lines until the newline arrives

SourceWatcher expands a source's glob patterns, starts a tailer per match and
rescans periodically (and on watchdog file-created events) so files created
by rotation are picked up.
"""

import fnmatch
import glob
import logging
import os
import queue
import threading
from datetime import datetime, timezone

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from lognorm.errors import FileRotationAnomaly
from lognorm.metrics import PipelineMetrics
from lognorm.models import RawRecord, SourceSpec
from lognorm.offsets import OffsetStore

logger = logging.getLogger(__name__)

READ_CHUNK = 64 * 1024


class InodeLedger:
    """Tracks which inodes of a source are being tailed, and where released ones stopped.

    Lets a rotated file that reappears under a new name (``syslog`` ->
    ``syslog.1``) continue from where the previous tailer left off instead of
    being read twice.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._active: dict[int, str] = {}
        self._released: dict[int, int] = {}

    def claim(self, inode: int, path: str) -> bool:
        with self._lock:
            owner = self._active.get(inode)
            if owner is not None and owner != path:
                return False
            self._active[inode] = path
            return True

    def release(self, inode: int, path: str, position: int):
        with self._lock:
            if self._active.get(inode) == path:
                del self._active[inode]
            self._released[inode] = position

    def take_released(self, inode: int) -> int | None:
        with self._lock:
            return self._released.pop(inode, None)

    def owner(self, inode: int) -> str | None:
        with self._lock:
            return self._active.get(inode)


class FileTailer(threading.Thread):
    def __init__(
        self,
        source_id: str,
        path: str,
        out_queue: queue.Queue,
        offsets: OffsetStore,
        stop_event: threading.Event,
        ledger: InodeLedger | None = None,
        poll_interval: float = 0.25,
        start_at_end: bool = False,
        metrics: PipelineMetrics | None = None,
    ):
        super().__init__(daemon=True, name=f"tailer-{source_id}-{os.path.basename(path)}")
        self.source_id = source_id
        self.path = path
        self._queue = out_queue
        self._offsets = offsets
        self._stop_event = stop_event
        self._retire = threading.Event()
        self._ledger = ledger or InodeLedger()
        self._poll_interval = poll_interval
        self._start_at_end = start_at_end
        self._metrics = metrics
        self.opened = threading.Event()

        self._fh = None
        self._inode: int | None = None
        self._epoch = 0
        self._position = 0
        self._partial = b""

    @property
    def position(self) -> int:
        return self._position

    @property
    def retired(self) -> bool:
        return self._retire.is_set()

    @property
    def waiting_for_file(self) -> bool:
        return self._fh is None

    def retire(self):
        """Stop following this path once the current content is drained."""
        self._retire.set()

    def _stopping(self) -> bool:
        return self._stop_event.is_set() or self._retire.is_set()

    def run(self):
        try:
            while not self._stopping():
                if self._fh is None:
                    if not self._open(initial=not self.opened.is_set()):
                        self.opened.set()
                        self._stop_event.wait(self._poll_interval)
                        continue
                    self.opened.set()

                if self._check_rotation() or self._check_truncation():
                    continue

                if not self._read_available():
                    self._stop_event.wait(self._poll_interval)
        finally:
            self.opened.set()
            self._close()

    # ------------------------------------------------------------------
    # Opening and start position
    # ------------------------------------------------------------------

    def _open(self, initial: bool) -> bool:
        try:
            fh = open(self.path, "rb")
        except FileNotFoundError:
            logger.debug("Waiting for %s to appear", self.path)
            return False
        except OSError as e:
            logger.error("Cannot open file source=%s file=%s reason=%s", self.source_id, self.path, e)
            return False

        stat = os.fstat(fh.fileno())
        if not self._ledger.claim(stat.st_ino, self.path):
            logger.debug("Inode %d of %s is still tailed under %s, deferring",
                         stat.st_ino, self.path, self._ledger.owner(stat.st_ino))
            fh.close()
            return False

        if self._inode is not None:
            # replacement of a file we already followed: new content, new epoch
            self._ledger.take_released(stat.st_ino)
            position, epoch = 0, self._epoch + 1
        else:
            position, epoch = self._start_position(stat.st_ino, stat.st_size, initial)

        fh.seek(position)
        self._fh = fh
        self._inode = stat.st_ino
        self._epoch = epoch
        self._position = position
        self._partial = b""
        logger.info("Tailing source=%s file=%s from offset %d (inode=%d, epoch=%d)",
                    self.source_id, self.path, position, stat.st_ino, epoch)
        return True

    def _start_position(self, inode: int, size: int, initial: bool) -> tuple[int, int]:
        stored = self._offsets.get(self.source_id, self.path)
        next_epoch = stored.epoch + 1 if stored else 0

        if stored is not None and stored.inode == inode:
            if size < stored.byte_position:
                self._anomaly("truncated while stopped (size %d < offset %d)" % (size, stored.byte_position))
                self._offsets.reset(self.source_id, self.path, inode, next_epoch)
                return 0, next_epoch
            return stored.byte_position, stored.epoch

        released = self._ledger.take_released(inode)
        if released is not None and released <= size:
            logger.info("Continuing rotated file source=%s file=%s at offset %d",
                        self.source_id, self.path, released)
            return released, next_epoch

        moved = self._offsets.find_by_inode(self.source_id, inode, exclude_path=self.path)
        if moved is not None and moved.byte_position <= size:
            logger.info("Resuming renamed file source=%s file=%s (was %s) at offset %d",
                        self.source_id, self.path, moved.file_path, moved.byte_position)
            return moved.byte_position, next_epoch

        if stored is not None:
            self._anomaly("replaced while stopped (inode %d -> %d)" % (stored.inode, inode))
            return 0, next_epoch

        if initial and self._start_at_end:
            return size, 0
        return 0, 0

    def _anomaly(self, reason: str):
        err = FileRotationAnomaly(self.source_id, self.path, reason)
        logger.warning("Rotation anomaly source=%s file=%s reason=%s",
                       err.source_id, err.file_path, err.reason)

    def _close(self):
        if self._fh is not None:
            self._fh.close()
            self._fh = None
            if self._inode is not None:
                self._ledger.release(self._inode, self.path, self._position)

    # ------------------------------------------------------------------
    # Rotation / truncation
    # ------------------------------------------------------------------

    def _check_rotation(self) -> bool:
        """Detect rotation or deletion. Returns True if the handle was switched."""
        try:
            current_inode = os.stat(self.path).st_ino
        except FileNotFoundError:
            current_inode = None

        if current_inode == self._inode:
            return False

        if current_inode is None:
            logger.info("File removed source=%s file=%s, draining", self.source_id, self.path)
        else:
            self._anomaly("rotated (inode %d -> %d)" % (self._inode, current_inode))
        self._drain_old_handle()
        self._close()
        return True

    def _drain_old_handle(self):
        while self._read_available():
            if self._stop_event.is_set():
                return
        if self._partial:
            # the rotated file will never be appended to again
            self._emit(self._partial, self._position, self._position + len(self._partial))
            self._position += len(self._partial)
            self._partial = b""

    def _check_truncation(self) -> bool:
        try:
            size = os.fstat(self._fh.fileno()).st_size
        except OSError:
            return False
        if size >= self._position + len(self._partial):
            return False
        self._anomaly("truncated (size %d < offset %d)" % (size, self._position))
        self._epoch += 1
        self._offsets.reset(self.source_id, self.path, self._inode, self._epoch)
        self._fh.seek(0)
        self._position = 0
        self._partial = b""
        return True

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def _read_available(self) -> bool:
        """Read what is available and emit complete lines. Returns True if bytes were read."""
        try:
            chunk = self._fh.read(READ_CHUNK)
        except OSError as e:
            logger.error("Read failed source=%s file=%s reason=%s", self.source_id, self.path, e)
            return False
        if not chunk:
            return False

        data = self._partial + chunk
        lines = data.split(b"\n")
        self._partial = lines.pop()

        for line in lines:
            start = self._position
            self._position = start + len(line) + 1
            if not self._emit(line, start, self._position):
                return False
        return True

    def _emit(self, line: bytes, start: int, end: int) -> bool:
        text = line.decode("utf-8", errors="replace").rstrip("\r")
        if not text.strip():
            return True
        record = RawRecord(
            source_id=self.source_id,
            file_path=self.path,
            offset=start,
            raw_text=text,
            ingest_time=datetime.now(timezone.utc),
            next_offset=end,
            inode=self._inode or 0,
            epoch=self._epoch,
        )
        # block while the source queue is full: backpressure, never drop
        while not self._stop_event.is_set():
            try:
                self._queue.put(record, timeout=self._poll_interval)
                if self._metrics:
                    self._metrics.line_read(self.source_id)
                return True
            except queue.Full:
                continue
        return False


class _ScanTrigger(FileSystemEventHandler):
    def __init__(self, watcher: "SourceWatcher"):
        super().__init__()
        self._watcher = watcher

    def on_created(self, event):
        if not event.is_directory and self._watcher.matches(event.src_path):
            self._watcher.scan()

    def on_moved(self, event):
        if not event.is_directory and self._watcher.matches(event.dest_path):
            self._watcher.scan()


class SourceWatcher:
    """Expands a source's include patterns and keeps one FileTailer per matched file."""

    def __init__(
        self,
        source: SourceSpec,
        out_queue: queue.Queue,
        offsets: OffsetStore,
        stop_event: threading.Event,
        poll_interval: float = 0.25,
        read_from: str = "end",
        metrics: PipelineMetrics | None = None,
    ):
        self.source = source
        self._queue = out_queue
        self._offsets = offsets
        self._stop_event = stop_event
        self._poll_interval = poll_interval
        self._read_from = source.read_from or read_from
        self._metrics = metrics
        self._ledger = InodeLedger()
        self._lock = threading.Lock()
        self._tailers: dict[str, FileTailer] = {}
        self._initial_scan_done = False

    @property
    def tailers(self) -> dict[str, FileTailer]:
        with self._lock:
            return dict(self._tailers)

    def matches(self, path: str) -> bool:
        path = os.path.abspath(path)
        included = False
        for pattern in self.source.include_patterns:
            if pattern.endswith(os.sep):
                # directory pattern: any file directly inside it
                included = fnmatch.fnmatch(os.path.dirname(path), os.path.abspath(pattern))
            else:
                included = fnmatch.fnmatch(path, os.path.abspath(pattern))
            if included:
                break
        return included and not self._excluded(path)

    def _excluded(self, path: str) -> bool:
        name = os.path.basename(path)
        return any(fnmatch.fnmatch(name, p) or fnmatch.fnmatch(path, p)
                   for p in self.source.exclude_patterns)

    def expand(self) -> list[str]:
        """Resolve include patterns to a sorted list of regular files."""
        found: set[str] = set()
        for pattern in self.source.include_patterns:
            for match in glob.glob(pattern, recursive=True):
                if os.path.isdir(match):
                    # a bare directory pattern means the files directly inside it
                    candidates = [os.path.join(match, n) for n in os.listdir(match)]
                else:
                    candidates = [match]
                for path in candidates:
                    if os.path.isfile(path) and not self._excluded(path):
                        found.add(os.path.abspath(path))
        return sorted(found)

    def scan(self) -> list[FileTailer]:
        """Start tailers for new matches, restart dead ones, retire vanished ones."""
        if self._stop_event.is_set():
            return []
        started: list[FileTailer] = []
        with self._lock:
            initial = not self._initial_scan_done
            self._initial_scan_done = True
            try:
                paths = self.expand()
            except OSError as e:
                logger.error("Glob expansion failed source=%s reason=%s", self.source.id, e)
                return []

            for path in paths:
                tailer = self._tailers.get(path)
                if tailer is not None and (tailer.is_alive() or tailer.retired):
                    continue
                if tailer is not None:
                    logger.error("Tailer died source=%s file=%s, restarting", self.source.id, path)
                try:
                    inode = os.stat(path).st_ino
                except FileNotFoundError:
                    continue
                owner = self._ledger.owner(inode)
                if owner is not None and owner != path:
                    continue   # still being drained under its previous name
                tailer = FileTailer(
                    self.source.id,
                    path,
                    self._queue,
                    self._offsets,
                    self._stop_event,
                    ledger=self._ledger,
                    poll_interval=self._poll_interval,
                    start_at_end=initial and self._read_from == "end",
                    metrics=self._metrics,
                )
                self._tailers[path] = tailer
                tailer.start()
                started.append(tailer)

            current = set(paths)
            for path, tailer in list(self._tailers.items()):
                if path in current:
                    continue
                if tailer.waiting_for_file or not tailer.is_alive():
                    tailer.retire()
                    del self._tailers[path]
        return started

    def wait_opened(self, timeout: float) -> bool:
        for tailer in self.tailers.values():
            if not tailer.opened.wait(timeout):
                return False
        return True

    def watch_roots(self) -> dict[str, bool]:
        """Existing directories worth a watchdog observer, mapped to recursive-ness."""
        roots: dict[str, bool] = {}
        for pattern in self.source.include_patterns:
            if pattern.endswith(os.sep):
                head = os.path.abspath(pattern)
            else:
                head = os.path.dirname(os.path.abspath(pattern)) or os.sep
            recursive = glob.has_magic(head)
            while glob.has_magic(head):
                head = os.path.dirname(head)
            if os.path.isdir(head):
                roots[head] = roots.get(head, False) or recursive
        return roots

    def schedule(self, observer: Observer):
        handler = _ScanTrigger(self)
        for root, recursive in self.watch_roots().items():
            observer.schedule(handler, root, recursive=recursive)
            logger.info("Watching directory %s for source %s", root, self.source.id)

    def join(self, timeout: float = 5.0):
        for tailer in self.tailers.values():
            tailer.retire()
            tailer.join(timeout=timeout)
