"""TrackedFile: one rtl_433 log file, its committed offset, and its tailing thread.

Metadata is persisted as one JSON file per tracked file with atomic writes
(tmp + os.replace). The tailing thread re-reads from the committed offset on
every pass and commits after each record it hands downstream.
"""

import enum
import json
import logging
import os
import queue
import tempfile
import threading
import uuid

import jsonschema

from rtl_slurp.errors import DecodeError
from rtl_slurp.logs import VERBOSE
from rtl_slurp.splitter import RecordSplitter

logger = logging.getLogger(__name__)

METADATA_SUFFIX = ".meta"
# A UUID4 string is always 36 characters.
METADATA_NAME_LENGTH = 36 + len(METADATA_SUFFIX)

METADATA_SCHEMA = {
    "type": "object",
    "properties": {
        "tracking_id": {"type": "string", "minLength": 36, "maxLength": 36},
        "device": {"type": "integer", "minimum": 0},
        "inode": {"type": "integer", "minimum": 0},
        "offset": {"type": "integer", "minimum": 0},
        "path": {"type": "string"},
    },
    "required": ["tracking_id", "device", "inode", "offset", "path"],
}

_validator = jsonschema.Draft202012Validator(METADATA_SCHEMA)

# How long a blocked push waits before re-checking cancellation.
PUSH_POLL_SECONDS = 0.5


class TailState(enum.Enum):
    IDLE = "idle"
    OPENING = "opening"
    TAILING = "tailing"
    STOPPING = "stopping"
    STOPPED = "stopped"


def metadata_path_for(metadata_dir: str, tracking_id: str) -> str:
    return os.path.join(metadata_dir, tracking_id + METADATA_SUFFIX)


def file_identity(stat_result) -> tuple[int, int]:
    return stat_result.st_dev, stat_result.st_ino


class TrackedFile:
    def __init__(self, tracking_id: str, path: str, identity: tuple[int, int],
                 offset: int, metadata_path: str):
        self.tracking_id = tracking_id
        self.identity = identity
        self.metadata_path = metadata_path
        self._path = path
        self._offset = offset
        self._lock = threading.Lock()
        self._found = False
        self._tailing = False
        self._state = TailState.IDLE
        self._cancel = threading.Event()
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Construction and persistence
    # ------------------------------------------------------------------

    @classmethod
    def new(cls, path: str, identity: tuple[int, int], metadata_dir: str) -> "TrackedFile":
        """A freshly discovered file at offset 0 with a new tracking id."""
        tracking_id = str(uuid.uuid4())
        return cls(tracking_id, path, identity, 0,
                   metadata_path_for(metadata_dir, tracking_id))

    @classmethod
    def from_metadata(cls, raw: bytes | str, metadata_path: str) -> "TrackedFile":
        """Rebuild a tracked file from its persisted JSON record.

        Raises ValueError if the record is not valid JSON or fails the schema.
        """
        data = json.loads(raw)
        errors = [e.message for e in _validator.iter_errors(data)]
        if errors:
            raise ValueError("; ".join(errors))
        uuid.UUID(data["tracking_id"])
        return cls(
            tracking_id=data["tracking_id"],
            path=data["path"],
            identity=(data["device"], data["inode"]),
            offset=data["offset"],
            metadata_path=metadata_path,
        )

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "tracking_id": self.tracking_id,
                "device": self.identity[0],
                "inode": self.identity[1],
                "offset": self._offset,
                "path": self._path,
            }

    def save(self):
        """Atomic write of the metadata record: tmp file then replace."""
        data = self.to_dict()
        directory = os.path.dirname(self.metadata_path) or "."
        fd, tmp = tempfile.mkstemp(dir=directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp, self.metadata_path)
        except Exception:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    # ------------------------------------------------------------------
    # Guarded state
    # ------------------------------------------------------------------

    @property
    def path(self) -> str:
        with self._lock:
            return self._path

    def set_path(self, path: str) -> bool:
        """Record a new path for the file. Returns True if it changed."""
        with self._lock:
            if path == self._path:
                return False
            self._path = path
            return True

    @property
    def offset(self) -> int:
        with self._lock:
            return self._offset

    @property
    def found(self) -> bool:
        with self._lock:
            return self._found

    def set_found(self, found: bool):
        with self._lock:
            self._found = found

    @property
    def tailing(self) -> bool:
        with self._lock:
            return self._tailing

    @property
    def state(self) -> TailState:
        with self._lock:
            return self._state

    def commit(self, consumed: int):
        """Advance the committed offset and persist it."""
        if consumed < 0:
            raise ValueError("offset can only move forward")
        with self._lock:
            self._offset += consumed
        try:
            self.save()
        except OSError as e:
            logger.error("Failed to save metadata %s: %s", self.metadata_path, e)

    # ------------------------------------------------------------------
    # Tailing lifecycle
    # ------------------------------------------------------------------

    def start_tailing(self, out_queue: queue.Queue, decoder, sleep_seconds: float,
                      chunk_size: int = 4096) -> bool:
        """Start the tailing thread. A no-op returning False if already tailing."""
        with self._lock:
            if self._tailing:
                logger.log(VERBOSE, "Tailer already running for %s", self._path)
                return False
            self._tailing = True
            self._state = TailState.OPENING
            self._cancel = threading.Event()
            self._stopped = threading.Event()
            cancel, stopped = self._cancel, self._stopped
            path, offset = self._path, self._offset

        self._thread = threading.Thread(
            target=self._run,
            args=(out_queue, decoder, sleep_seconds, chunk_size, cancel, stopped),
            name=f"tail-{self.tracking_id[:8]}",
            daemon=True,
        )
        self._thread.start()
        logger.log(VERBOSE, "Starting tailer for %s at offset %d", path, offset)
        return True

    def request_stop(self):
        """Signal the tailing thread to stop without waiting for it."""
        with self._lock:
            if not self._tailing:
                return
            if self._state is TailState.TAILING:
                self._state = TailState.STOPPING
            cancel = self._cancel
        cancel.set()

    def wait_stopped(self, max_wait: float) -> bool:
        with self._lock:
            if not self._tailing:
                return True
            stopped = self._stopped
        return stopped.wait(max_wait)

    def stop_tailing(self, max_wait: float) -> bool:
        """Stop tailing, blocking up to *max_wait* seconds.

        Returns False if the thread had not reported stopped in time; the
        caller carries on regardless.
        """
        if not self.tailing:
            return True
        self.request_stop()
        if self.wait_stopped(max_wait):
            logger.log(VERBOSE, "Tailer for %s has stopped", self.path)
            return True
        logger.log(VERBOSE, "Forcing stop of tailer for %s after %.1fs", self.path, max_wait)
        return False

    def _run(self, out_queue, decoder, sleep_seconds, chunk_size, cancel, stopped):
        try:
            self._tail(out_queue, decoder, sleep_seconds, chunk_size, cancel)
        except Exception:
            logger.exception("Tailer for %s crashed", self.path)
        finally:
            with self._lock:
                self._state = TailState.STOPPED
                self._tailing = False
            stopped.set()

    def _tail(self, out_queue, decoder, sleep_seconds, chunk_size, cancel):
        path = self.path
        try:
            f = open(path, "rb")
        except OSError as e:
            logger.error("Failed to open %s: %s", path, e)
            return

        with f:
            try:
                identity = file_identity(os.fstat(f.fileno()))
            except OSError as e:
                logger.error("Failed to stat %s: %s", path, e)
                return
            if identity != self.identity:
                logger.error("Identity of %s changed (%s != %s), not tailing",
                             path, identity, self.identity)
                return

            with self._lock:
                if self._state is TailState.OPENING:
                    self._state = TailState.TAILING
            logger.info("Opened %s, tailing from offset %d", path, self.offset)

            splitter = RecordSplitter()
            shrunk = False
            while not cancel.is_set():
                try:
                    size = os.fstat(f.fileno()).st_size
                    f.seek(self.offset)
                except OSError as e:
                    logger.error("Failed to seek %s: %s", path, e)
                    return
                # Same identity, fewer bytes: truncated in place (copytruncate).
                # The offset stays put; reading resumes once the file regrows past it.
                if size < self.offset:
                    if not shrunk:
                        logger.warning("%s shrank to %d bytes, below committed offset %d",
                                       path, size, self.offset)
                    shrunk = True
                else:
                    shrunk = False
                splitter.reset()

                while not cancel.is_set():
                    chunk = f.read(chunk_size)
                    lines = splitter.feed(chunk) if chunk else splitter.flush()
                    for line, consumed in lines:
                        if not self._deliver(line, out_queue, decoder, cancel):
                            return
                        self.commit(consumed)
                    if not chunk:
                        break

                if cancel.wait(sleep_seconds):
                    break

        logger.log(VERBOSE, "Stop received for tailer on %s", path)

    def _deliver(self, line: bytes, out_queue, decoder, cancel) -> bool:
        """Decode *line* and push it downstream.

        Returns False only when cancelled before the push completed; the
        record is then left uncommitted.
        """
        try:
            reading = decoder(line)
        except DecodeError as e:
            logger.warning("Skipping record in %s: %s", self.path, e)
            return True
        except Exception:
            logger.exception("Decoder failed on a record in %s, skipping it", self.path)
            return True

        while not cancel.is_set():
            try:
                out_queue.put(reading, timeout=PUSH_POLL_SECONDS)
                return True
            except queue.Full:
                continue
        return False

    def __repr__(self):
        return (f"TrackedFile(id={self.tracking_id}, path={self.path!r}, "
                f"identity={self.identity}, offset={self.offset})")
