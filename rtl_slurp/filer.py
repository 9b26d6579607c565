"""Filer: finds rtl_433 log files, maps them to tracked files, and owns their tailers.

Files are matched to known tracked files by filesystem identity (device +
inode), so a log renamed by rotation keeps its committed offset.
"""

import logging
import os
import queue
import re
import threading
import time
import uuid

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from rtl_slurp.config import Config
from rtl_slurp.devices import decode_reading
from rtl_slurp.errors import MetadataStoreError, WatchDirectoryError
from rtl_slurp.logs import VERBOSE
from rtl_slurp.tracked_file import (
    METADATA_NAME_LENGTH,
    METADATA_SUFFIX,
    TrackedFile,
    file_identity,
)

logger = logging.getLogger(__name__)


def rotation_pattern(expected: str) -> re.Pattern:
    """Regex accepting *expected* and its numbered rotations.

    For ``rtl_433.log`` that is ``rtl_433.log``, ``rtl_433.log.<N>`` and
    ``rtl_433.<N>.log``.
    """
    base, ext = os.path.splitext(expected)
    alternatives = [re.escape(expected) + r"(?:\.[1-9][0-9]*)?"]
    if ext:
        alternatives.append(re.escape(base) + r"\.[1-9][0-9]*" + re.escape(ext))
    return re.compile("|".join(f"(?:{alt})" for alt in alternatives))


def validate_log_file_name(expected: str, found: str) -> bool:
    return rotation_pattern(expected).fullmatch(found) is not None


class _RescanHandler(FileSystemEventHandler):
    """Wakes the reconcile loop when a matching file appears or is renamed."""

    def __init__(self, pattern: re.Pattern, wake: threading.Event):
        super().__init__()
        self._pattern = pattern
        self._wake = wake

    def _check(self, path: str):
        if self._pattern.fullmatch(os.path.basename(path)):
            logger.debug("Filesystem event for %s, rescanning", path)
            self._wake.set()

    def on_created(self, event):
        if not event.is_directory:
            self._check(event.src_path)

    def on_moved(self, event):
        if not event.is_directory:
            self._check(event.dest_path)


class Filer:
    def __init__(self, config: Config, out_queue: queue.Queue, decoder=decode_reading):
        self._config = config
        self._queue = out_queue
        self._decoder = decoder
        self._pattern = rotation_pattern(config.data_file_name)
        self._files: dict[str, TrackedFile] = {}
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._wake = threading.Event()
        self._thread: threading.Thread | None = None
        self._observer = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def files(self) -> dict[str, TrackedFile]:
        with self._lock:
            return dict(self._files)

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def load_known_files(self) -> int:
        """Load every persisted metadata record. Returns how many were loaded.

        Raises MetadataStoreError if the metadata directory cannot be read.
        Individual bad records are logged and skipped.
        """
        metadata_dir = self._config.metadata_dir
        try:
            os.makedirs(metadata_dir, exist_ok=True)
            entries = sorted(os.scandir(metadata_dir), key=lambda e: e.name)
        except OSError as e:
            raise MetadataStoreError(f"failed to read metadata directory {metadata_dir}: {e}") from e

        loaded = 0
        for entry in entries:
            name = entry.name
            if len(name) != METADATA_NAME_LENGTH or not name.endswith(METADATA_SUFFIX):
                logger.info("Metadata load ignoring %s", name)
                continue
            try:
                tracking_id = str(uuid.UUID(name[:36]))
            except ValueError:
                logger.info("Metadata file name is not a tracking id: %s", name)
                continue
            try:
                if entry.is_dir():
                    continue
                with open(entry.path, "rb") as f:
                    raw = f.read()
            except OSError as e:
                logger.warning("Failed to read metadata %s: %s", entry.path, e)
                continue

            try:
                tracked = TrackedFile.from_metadata(raw, entry.path)
            except ValueError as e:
                logger.warning("Failed to load metadata from %s: %s", name, e)
                continue
            if tracked.tracking_id != tracking_id:
                logger.warning("Metadata %s holds tracking id %s, skipping", name, tracked.tracking_id)
                continue

            with self._lock:
                self._files[tracking_id] = tracked
            loaded += 1
        return loaded

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def _find_by_identity(self, identity: tuple[int, int]) -> TrackedFile | None:
        for tracked in self._files.values():
            if tracked.identity == identity:
                return tracked
        return None

    def _start(self, tracked: TrackedFile):
        tracked.start_tailing(
            self._queue,
            self._decoder,
            self._config.slurp_sleep_seconds,
            self._config.read_chunk_size,
        )

    def scan_and_reconcile(self) -> int:
        """Match files in the watched directory against tracked files.

        Returns the number of candidate log files seen. Raises
        WatchDirectoryError if the directory cannot be listed.
        """
        directory = self._config.data_file_dir
        logger.log(VERBOSE, "Searching %s for log files", directory)
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError as e:
            raise WatchDirectoryError(f"failed to read directory {directory}: {e}") from e

        seen: set[str] = set()
        for entry in entries:
            if not self._pattern.fullmatch(entry.name):
                logger.debug("%s does not match expected name %s",
                             entry.name, self._config.data_file_name)
                continue
            try:
                if entry.is_dir():
                    logger.log(VERBOSE, "%s is a directory, ignoring", entry.name)
                    continue
                stat = entry.stat()
            except OSError as e:
                logger.log(VERBOSE, "Failed to stat %s, ignoring: %s", entry.name, e)
                continue

            identity = file_identity(stat)
            path = os.path.join(directory, entry.name)

            with self._lock:
                tracked = self._find_by_identity(identity)

            if tracked is not None:
                tracked.set_found(True)
                if tracked.set_path(path):
                    logger.info("Known file %s now at %s", tracked.tracking_id, path)
                    try:
                        tracked.save()
                    except OSError as e:
                        logger.error("Failed to save metadata %s: %s", tracked.metadata_path, e)
                else:
                    logger.log(VERBOSE, "File %s already known, marking found", entry.name)
            else:
                tracked = TrackedFile.new(path, identity, self._config.metadata_dir)
                tracked.set_found(True)
                logger.info("Found new file %s with inode %d", entry.name, identity[1])
                try:
                    tracked.save()
                except OSError as e:
                    logger.error("Failed to save metadata to %s, not tailing: %s",
                                 tracked.metadata_path, e)
                    continue
                with self._lock:
                    self._files[tracked.tracking_id] = tracked

            seen.add(tracked.tracking_id)
            if not self._cancel.is_set():
                self._start(tracked)

        with self._lock:
            missing = [t for tid, t in self._files.items() if tid not in seen]
        for tracked in missing:
            tracked.set_found(False)
        return len(seen)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Load metadata, scan once, then rescan on a fixed interval.

        Raises MetadataStoreError if the metadata store is unreadable.
        """
        if self._running:
            return
        logger.info("Starting filer")
        self._cancel = threading.Event()
        self._wake = threading.Event()

        count = self.load_known_files()
        logger.info("Filer found %d log metadata files", count)

        try:
            self.scan_and_reconcile()
        except WatchDirectoryError as e:
            logger.error("Failed to find any log files: %s", e)

        self._start_observer()
        self._thread = threading.Thread(target=self._run, name="filer", daemon=True)
        self._thread.start()
        self._running = True

    def _start_observer(self):
        if not self._config.watch_events:
            return
        directory = self._config.data_file_dir
        observer = Observer()
        try:
            observer.schedule(_RescanHandler(self._pattern, self._wake), directory, recursive=False)
            observer.start()
        except OSError as e:
            logger.warning("Filesystem events unavailable for %s, relying on periodic scans: %s",
                           directory, e)
            return
        self._observer = observer

    def _run(self):
        interval = self._config.log_file_check_seconds
        while not self._cancel.is_set():
            self._wake.wait(interval)
            self._wake.clear()
            if self._cancel.is_set():
                break
            try:
                self.scan_and_reconcile()
                logger.log(VERBOSE, "Log file search complete")
            except WatchDirectoryError as e:
                logger.error("Failed to find any log files: %s", e)

    def stop(self) -> bool:
        """Stop the reconcile loop and every tailer, waiting at most the configured time.

        Returns True if everything reported stopped before the deadline.
        """
        max_wait = self._config.filer_shutdown_max_wait
        deadline = time.monotonic() + max_wait
        logger.info("Cancel received, stopping all file tailers")

        self._cancel.set()
        self._wake.set()

        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=max(0.0, deadline - time.monotonic()))
            self._observer = None

        stopped = True
        if self._thread is not None:
            self._thread.join(timeout=max(0.0, deadline - time.monotonic()))
            stopped = not self._thread.is_alive()

        with self._lock:
            files = list(self._files.values())
        for tracked in files:
            tracked.request_stop()
        for tracked in files:
            remaining = max(0.0, deadline - time.monotonic())
            if not tracked.stop_tailing(min(remaining, self._config.slurper_shutdown_max_wait)):
                stopped = False

        self._running = False
        if not stopped:
            logger.error("Exceeded filer_shutdown_max_wait of %.1fs, forcing shutdown now", max_wait)
        logger.info("Filer has stopped")
        return stopped
