"""Pipeline supervisor: wires sources -> transforms -> sinks and runs the workers.

State machine::

    LOADING -> STARTING -> RUNNING <-> DEGRADED
                              \\          /
                               DRAINING -> STOPPED

LOADING ends once the topology validated (a ConfigError stops everything
before a worker exists). STARTING ends once every tailer opened its initial
file. A sink that exhausts its retries moves the pipeline to DEGRADED; only
the sources feeding that sink stall, through backpressure. ``stop()`` drains:
tailers stop reading, queued lines are flushed to sinks, offsets are
checkpointed, then STOPPED.
"""

import logging
import queue
import threading
import time
from enum import Enum

from watchdog.observers import Observer

from lognorm.config import Settings
from lognorm.errors import PersistentIOError
from lognorm.metrics import PipelineMetrics
from lognorm.normalizer import Normalizer
from lognorm.offsets import OffsetStore
from lognorm.router import Router, SourceWorker
from lognorm.sink import SinkWriter
from lognorm.tailer import SourceWatcher
from lognorm.topology import Topology, load_topology

logger = logging.getLogger(__name__)


class PipelineState(Enum):
    LOADING = "loading"
    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    DRAINING = "draining"
    STOPPED = "stopped"


class PipelineSupervisor:
    def __init__(self, config: dict | Topology, settings: Settings | None = None,
                 metrics: PipelineMetrics | None = None):
        self._settings = settings or Settings()
        self._metrics = metrics or PipelineMetrics()
        self._state = PipelineState.LOADING
        self._state_cond = threading.Condition()
        self._lock = threading.Lock()
        self._failing_sinks: set[str] = set()

        self.topology = config if isinstance(config, Topology) else load_topology(config)

        self._stop_reading = threading.Event()
        self._halt = threading.Event()
        self.offsets: OffsetStore | None = None
        self.router: Router | None = None
        self._source_queues: dict[str, queue.Queue] = {}
        self._sink_queues: dict[str, queue.Queue] = {}
        self._watchers: dict[str, SourceWatcher] = {}
        self._workers: dict[str, SourceWorker] = {}
        self._sinks: dict[str, SinkWriter] = {}
        self._observer: Observer | None = None
        self._supervise_thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> PipelineState:
        with self._state_cond:
            return self._state

    @property
    def metrics(self) -> PipelineMetrics:
        return self._metrics

    @property
    def failing_sinks(self) -> set[str]:
        with self._lock:
            return set(self._failing_sinks)

    def _set_state(self, new: PipelineState):
        with self._state_cond:
            old = self._state
            if old == new:
                return
            self._state = new
            self._state_cond.notify_all()
        logger.info("Pipeline state %s -> %s", old.value, new.value)

    def wait_for_state(self, state: PipelineState, timeout: float | None = None) -> bool:
        with self._state_cond:
            return self._state_cond.wait_for(lambda: self._state == state, timeout=timeout)

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def start(self):
        if self.state != PipelineState.LOADING:
            raise RuntimeError(f"cannot start pipeline in state {self.state.value}")
        self._set_state(PipelineState.STARTING)
        s = self._settings

        self.offsets = OffsetStore(s.offsets_file)
        for sink_id in self.topology.sinks:
            self._sink_queues[sink_id] = queue.Queue(maxsize=s.queue_size)
        for source_id in self.topology.sources:
            self._source_queues[source_id] = queue.Queue(maxsize=s.queue_size)

        self.router = Router(
            self.topology, self._sink_queues, self.offsets,
            Normalizer(metrics=self._metrics), self._halt,
            metrics=self._metrics, put_timeout=s.poll_interval,
        )

        for sink_id in self.topology.sinks:
            self._start_sink(sink_id)
        for source_id in self.topology.sources:
            self._start_worker(source_id)

        for source_id, source in self.topology.sources.items():
            watcher = SourceWatcher(
                source, self._source_queues[source_id], self.offsets, self._stop_reading,
                poll_interval=s.poll_interval, read_from=s.read_from, metrics=self._metrics,
            )
            self._watchers[source_id] = watcher
            started = watcher.scan()
            logger.info("Source %s: %d file(s) matched", source_id, len(started))

        if s.use_watchdog:
            self._observer = Observer()
            for watcher in self._watchers.values():
                watcher.schedule(self._observer)
            self._observer.start()

        open_timeout = max(5.0, s.poll_interval * 20)
        for source_id, watcher in self._watchers.items():
            if not watcher.wait_opened(open_timeout):
                logger.warning("Source %s: some files did not open within %.1fs", source_id, open_timeout)

        self._supervise_thread = threading.Thread(target=self._supervise, daemon=True, name="supervisor")
        self._supervise_thread.start()

        # sink health callbacks hold the same lock, so no failure slips in between
        with self._lock:
            degraded = bool(self._failing_sinks)
            self._set_state(PipelineState.DEGRADED if degraded else PipelineState.RUNNING)

    def _start_sink(self, sink_id: str):
        s = self._settings
        writer = SinkWriter(
            self.topology.sinks[sink_id],
            self._sink_queues[sink_id],
            on_ack=self.router.acknowledge,
            stop_event=self._halt,
            batch_size=s.batch_size,
            flush_interval=s.flush_interval,
            max_retries=s.max_retries,
            retry_base_delay=s.retry_base_delay,
            retry_max_delay=s.retry_max_delay,
            on_failure=self._on_sink_failure,
            on_recovery=self._on_sink_recovery,
            metrics=self._metrics,
        )
        self._sinks[sink_id] = writer
        writer.start()

    def _start_worker(self, source_id: str):
        worker = SourceWorker(source_id, self._source_queues[source_id], self.router,
                              self._halt, poll_interval=self._settings.poll_interval)
        self._workers[source_id] = worker
        worker.start()

    # ------------------------------------------------------------------
    # Sink health
    # ------------------------------------------------------------------

    def _on_sink_failure(self, err: PersistentIOError):
        affected = sorted(self.topology.sources_for_sink(err.sink_id))
        logger.error("Branch degraded sink=%s sources=%s reason=%s",
                     err.sink_id, ",".join(affected), err.reason)
        with self._lock:
            self._failing_sinks.add(err.sink_id)
            # during STARTING the flag is picked up once startup completes
            if self.state == PipelineState.RUNNING:
                self._set_state(PipelineState.DEGRADED)

    def _on_sink_recovery(self, sink_id: str):
        with self._lock:
            self._failing_sinks.discard(sink_id)
            if not self._failing_sinks and self.state == PipelineState.DEGRADED:
                self._set_state(PipelineState.RUNNING)

    # ------------------------------------------------------------------
    # Supervision loop
    # ------------------------------------------------------------------

    def _supervise(self):
        s = self._settings
        tick = max(0.05, min(s.rescan_interval, s.checkpoint_interval, 1.0))
        last_scan = last_checkpoint = time.monotonic()
        while not self._stop_reading.wait(tick):
            now = time.monotonic()
            if now - last_scan >= s.rescan_interval:
                for watcher in self._watchers.values():
                    watcher.scan()
                last_scan = now
            if now - last_checkpoint >= s.checkpoint_interval:
                self._checkpoint()
                last_checkpoint = now
            self._restart_dead_stages()

    def _restart_dead_stages(self):
        for source_id, worker in list(self._workers.items()):
            if not worker.is_alive() and not self._stop_reading.is_set():
                logger.error("Source worker %s died, restarting", source_id)
                self._start_worker(source_id)
        for sink_id, writer in list(self._sinks.items()):
            if not writer.is_alive() and not self._stop_reading.is_set():
                logger.error("Sink writer %s died, restarting", sink_id)
                self._start_sink(sink_id)

    def _checkpoint(self):
        try:
            self.offsets.save()
        except OSError as e:
            logger.error("Offset checkpoint failed file=%s reason=%s", self._settings.offsets_file, e)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def stop(self, drain: bool = True):
        """Stop the pipeline. ``drain=False`` discards everything not yet written."""
        if self.state in (PipelineState.LOADING, PipelineState.STOPPED):
            self._set_state(PipelineState.STOPPED)
            return
        self._set_state(PipelineState.DRAINING)
        deadline = time.monotonic() + self._settings.drain_timeout

        self._stop_reading.set()
        if not drain:
            self._halt.set()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
        for watcher in self._watchers.values():
            watcher.join(timeout=5)
        if self._supervise_thread is not None:
            self._supervise_thread.join(timeout=5)

        if drain:
            for worker in self._workers.values():
                worker.request_drain()
            for worker in self._workers.values():
                worker.join(timeout=max(0.0, deadline - time.monotonic()))
            for writer in self._sinks.values():
                writer.request_drain()
            for writer in self._sinks.values():
                writer.join(timeout=max(0.0, deadline - time.monotonic()))
            stragglers = [t.name for t in list(self._workers.values()) + list(self._sinks.values())
                          if t.is_alive()]
            if stragglers:
                logger.warning("Drain timed out, abandoning unflushed data in: %s", ", ".join(stragglers))

        self._halt.set()
        for thread in list(self._workers.values()) + list(self._sinks.values()):
            thread.join(timeout=5)

        self._checkpoint()
        logger.info("Stats: %s", self._metrics.snapshot())
        self._set_state(PipelineState.STOPPED)

    def run_forever(self, shutdown_event: threading.Event):
        """Start, block until ``shutdown_event`` is set, then drain and stop."""
        self.start()
        try:
            shutdown_event.wait()
        finally:
            self.stop(drain=True)
