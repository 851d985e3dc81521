"""Router: fans normalized records out to sinks and tracks their acknowledgement.

A line counts as delivered only once every sink subscribed to its source has
acknowledged it. AckTracker keeps deliveries of one file in file order and
commits the longest completed prefix to the offset store, so a slow or failing
sink holds the offset back instead of letting it skip a line.
"""

import logging
import queue
import threading
from collections import deque
from typing import Iterable

from lognorm.metrics import PipelineMetrics
from lognorm.models import Offset, RawRecord
from lognorm.normalizer import Normalizer
from lognorm.offsets import OffsetStore
from lognorm.topology import Topology

logger = logging.getLogger(__name__)


class Delivery:
    """One raw line in flight to ``expected`` sink acknowledgements."""

    def __init__(self, raw: RawRecord, expected: int, tracker: "AckTracker"):
        self.raw = raw
        self._pending = expected
        self._tracker = tracker
        self._lock = threading.Lock()

    @property
    def complete(self) -> bool:
        with self._lock:
            return self._pending <= 0

    def ack(self) -> bool:
        """Acknowledge one sink. Returns True if the tracker committed a new offset."""
        with self._lock:
            self._pending -= 1
            done = self._pending == 0
        if done:
            return self._tracker.on_complete()
        return False


class AckTracker:
    """In-order commit of completed deliveries for one (source, file)."""

    def __init__(self, source_id: str, file_path: str, offsets: OffsetStore,
                 metrics: PipelineMetrics | None = None):
        self.source_id = source_id
        self.file_path = file_path
        self._offsets = offsets
        self._metrics = metrics
        self._lock = threading.Lock()
        self._inflight: deque[Delivery] = deque()

    def register(self, delivery: Delivery):
        with self._lock:
            self._inflight.append(delivery)

    @property
    def inflight(self) -> int:
        with self._lock:
            return len(self._inflight)

    def on_complete(self) -> bool:
        with self._lock:
            last = None
            while self._inflight and self._inflight[0].complete:
                last = self._inflight.popleft()
            if last is None:
                return False
            advanced = self._offsets.advance(Offset(
                source_id=self.source_id,
                file_path=self.file_path,
                byte_position=last.raw.next_offset,
                inode=last.raw.inode,
                epoch=last.raw.epoch,
            ))
        if advanced and self._metrics:
            self._metrics.offset_committed()
        return advanced


class Router:
    def __init__(
        self,
        topology: Topology,
        sink_queues: dict[str, queue.Queue],
        offsets: OffsetStore,
        normalizer: Normalizer,
        stop_event: threading.Event,
        metrics: PipelineMetrics | None = None,
        put_timeout: float = 0.25,
    ):
        self._topology = topology
        self._sink_queues = sink_queues
        self._offsets = offsets
        self._normalizer = normalizer
        self._stop_event = stop_event
        self._metrics = metrics
        self._put_timeout = put_timeout
        self._trackers: dict[tuple[str, str], AckTracker] = {}
        self._lock = threading.Lock()

    def tracker(self, source_id: str, file_path: str) -> AckTracker:
        key = (source_id, file_path)
        with self._lock:
            tracker = self._trackers.get(key)
            if tracker is None:
                tracker = AckTracker(source_id, file_path, self._offsets, self._metrics)
                self._trackers[key] = tracker
            return tracker

    def dispatch(self, raw: RawRecord) -> bool:
        """Normalize ``raw`` for every route of its source and enqueue it to each sink.

        Blocks while a sink queue is full. Returns False if a hard stop
        interrupted the dispatch (the line stays unacknowledged).
        """
        routes = self._topology.routes.get(raw.source_id, ())
        # normalize before registering so a failure never leaves a stuck delivery
        records = [(self._normalizer.normalize(raw, route.chain), route.sink_ids) for route in routes]
        expected = sum(len(sink_ids) for _, sink_ids in records)
        tracker = self.tracker(raw.source_id, raw.file_path)
        delivery = Delivery(raw, expected, tracker)
        tracker.register(delivery)
        if expected == 0:
            tracker.on_complete()
            return True

        for record, sink_ids in records:
            for sink_id in sink_ids:
                if not self._put(sink_id, (record, delivery)):
                    return False
        return True

    def _put(self, sink_id: str, item) -> bool:
        q = self._sink_queues[sink_id]
        while not self._stop_event.is_set():
            try:
                q.put(item, timeout=self._put_timeout)
                return True
            except queue.Full:
                continue
        return False

    def acknowledge(self, deliveries: Iterable[Delivery]) -> int:
        """Acknowledge a sink batch, then checkpoint the offset store once."""
        advanced = 0
        for delivery in deliveries:
            if delivery.ack():
                advanced += 1
        if advanced:
            try:
                self._offsets.save()
            except OSError as e:
                # committed in memory; the supervisor's periodic checkpoint retries
                logger.error("Offset checkpoint failed file=%s reason=%s", self._offsets.path, e)
        return advanced

    def pending(self) -> int:
        with self._lock:
            trackers = list(self._trackers.values())
        return sum(t.inflight for t in trackers)


class SourceWorker(threading.Thread):
    """Drains one source queue in order into the router."""

    def __init__(self, source_id: str, in_queue: queue.Queue, router: Router,
                 stop_event: threading.Event, poll_interval: float = 0.25):
        super().__init__(daemon=True, name=f"worker-{source_id}")
        self.source_id = source_id
        self._queue = in_queue
        self._router = router
        self._stop_event = stop_event
        self._draining = threading.Event()
        self._poll_interval = poll_interval

    def request_drain(self):
        self._draining.set()

    def run(self):
        while not self._stop_event.is_set():
            try:
                raw = self._queue.get(timeout=self._poll_interval)
            except queue.Empty:
                if self._draining.is_set():
                    break
                continue
            if not self._router.dispatch(raw):
                break
        logger.debug("Source worker %s exiting", self.source_id)
