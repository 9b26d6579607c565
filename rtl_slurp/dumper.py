"""Dumper: batches readings from the tailers and writes them to InfluxDB.

A batch is flushed when it reaches ``flush_point_count`` points or when
``flush_time_trigger`` seconds have passed since the last successful flush.
Failed writes are retried with a capped linear backoff until they succeed
or the dumper is stopped.
"""

import enum
import logging
import queue
import threading
import time
from dataclasses import dataclass, field

from rtl_slurp.config import InfluxConfig, MetadataFieldSet
from rtl_slurp.errors import DecodeError, SinkError
from rtl_slurp.logs import VERBOSE
from rtl_slurp.point import Point

logger = logging.getLogger(__name__)

# Consecutive failures per backoff step.
FAILURES_PER_STEP = 10

_STOP = object()


class FlushResult(enum.Enum):
    FLUSHED = "flushed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class Batch:
    database: str
    precision: str
    points: list[Point] = field(default_factory=list)
    last_flush: float = 0.0


class Dumper:
    def __init__(self, config: InfluxConfig, in_queue: queue.Queue, sink,
                 field_sets: dict[str, dict[str, MetadataFieldSet]] | None = None,
                 clock=time.monotonic):
        self._config = config
        self._queue = in_queue
        self._sink = sink
        self._field_sets = field_sets or {}
        self._clock = clock
        self._cancel = threading.Event()
        self._thread: threading.Thread | None = None
        self._batch = Batch(config.database, config.precision, last_flush=clock())
        self._next_tick = clock() + config.flush_tick_seconds
        self._lock = threading.Lock()
        self._points_flushed = 0
        self._flushes = 0
        self._failed_attempts = 0

    @property
    def batch(self) -> Batch:
        return self._batch

    @property
    def points_flushed(self) -> int:
        with self._lock:
            return self._points_flushed

    @property
    def flushes(self) -> int:
        with self._lock:
            return self._flushes

    @property
    def failed_attempts(self) -> int:
        with self._lock:
            return self._failed_attempts

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Ping the sink and start the delivery thread.

        Raises SinkError if the sink is unreachable.
        """
        self._sink.ping()
        self._cancel = threading.Event()
        now = self._clock()
        self._batch = Batch(self._config.database, self._config.precision, last_flush=now)
        self._next_tick = now + self._config.flush_tick_seconds
        self._thread = threading.Thread(target=self._run, name="dumper", daemon=True)
        self._thread.start()
        logger.info("Dumper started, writing to database %s", self._config.database)

    def stop(self, timeout: float | None = None) -> bool:
        """Cancel the loop, wake it, and join. Returns True if the thread exited."""
        self._cancel.set()
        try:
            self._queue.put_nowait(_STOP)
        except queue.Full:
            # The loop checks for cancellation after every item.
            logger.debug("Queue full, dumper will see the stop on its next item")
        if self._thread is None:
            return True
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.error("Dumper did not stop within %.1fs", timeout or 0.0)
            return False
        logger.info("Dumper has stopped")
        return True

    def _run(self):
        try:
            self._loop()
        except Exception:
            logger.exception("Dumper crashed with %d points pending", len(self._batch.points))

    def _loop(self):
        while True:
            if self._cancel.is_set():
                self._drain_and_flush()
                return

            timeout = max(0.0, self._next_tick - self._clock())
            try:
                item = self._queue.get(timeout=timeout)
            except queue.Empty:
                result = self._on_tick()
            else:
                if item is _STOP:
                    continue
                result = self._on_reading(item)

            if result is FlushResult.CANCELLED:
                logger.info("Flush cancelled by shutdown, %d points lost",
                            len(self._batch.points) + self._queue.qsize())
                return

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _build_point(self, reading) -> Point | None:
        try:
            return reading.to_point(self._field_sets.get(reading.MODEL_NAME))
        except (DecodeError, ValueError) as e:
            logger.warning("Dropping %s reading: %s", getattr(reading, "MODEL_NAME", "?"), e)
            return None

    def _flush_due(self) -> bool:
        return self._clock() - self._batch.last_flush >= self._config.flush_time_trigger

    def _on_reading(self, reading) -> FlushResult | None:
        point = self._build_point(reading)
        if point is None:
            return None
        self._batch.points.append(point)
        if len(self._batch.points) >= self._config.flush_point_count or self._flush_due():
            return self.flush_until_cancel()
        return None

    def _on_tick(self) -> FlushResult | None:
        self._next_tick = self._clock() + self._config.flush_tick_seconds
        if self._batch.points and self._flush_due():
            logger.log(VERBOSE, "Flush timer fired with %d points", len(self._batch.points))
            return self.flush_until_cancel()
        return None

    def _drain_and_flush(self):
        drained = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is _STOP:
                continue
            point = self._build_point(item)
            if point is not None:
                self._batch.points.append(point)
                drained += 1
        logger.info("Stop received, drained %d queued readings", drained)

        if not self._batch.points:
            return
        count = len(self._batch.points)
        if self.try_flush() is FlushResult.FAILED:
            logger.error("Final flush failed, %d points lost", count)

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    def flush(self):
        """Write the whole batch. Raises SinkError and keeps the batch on failure."""
        batch = self._batch
        if not batch.points:
            batch.last_flush = self._clock()
            return
        self._sink.write(batch.points, batch.database, batch.precision)
        count = len(batch.points)
        batch.points = []
        batch.last_flush = self._clock()
        with self._lock:
            self._points_flushed += count
            self._flushes += 1
        logger.log(VERBOSE, "Flushed %d points to %s", count, batch.database)

    def try_flush(self) -> FlushResult:
        try:
            self.flush()
        except SinkError as e:
            with self._lock:
                self._failed_attempts += 1
            logger.error("Flush of %d points failed: %s", len(self._batch.points), e)
            return FlushResult.FAILED
        return FlushResult.FLUSHED

    def flush_until_cancel(self) -> FlushResult:
        """Retry the flush until it succeeds or the dumper is stopped."""
        failures = 0
        while True:
            try:
                self.flush()
            except SinkError as e:
                failures += 1
                with self._lock:
                    self._failed_attempts += 1
                delay = self._backoff(failures)
                logger.warning("Flush attempt %d failed, retrying in %.1fs: %s",
                               failures, delay, e)
                if self._pause(delay):
                    return FlushResult.CANCELLED
                continue
            if failures:
                logger.info("Flush succeeded after %d failed attempts", failures)
            return FlushResult.FLUSHED

    def _backoff(self, failures: int) -> float:
        steps = failures // FAILURES_PER_STEP
        return min(steps * self._config.retry_step_seconds, self._config.retry_max_wait)

    def _pause(self, seconds: float) -> bool:
        """Wait between attempts. Returns True if cancelled."""
        return self._cancel.wait(seconds)
