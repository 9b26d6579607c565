"""Tests for tracked files: metadata persistence and the tailing thread."""

import json
import logging
import os
import queue
import time
import uuid

import pytest

from rtl_slurp.devices import decode_reading
from rtl_slurp.errors import DecodeError
from rtl_slurp.tracked_file import (
    METADATA_NAME_LENGTH,
    TailState,
    TrackedFile,
    file_identity,
)

SLEEP = 0.05


def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def _make_tracked(tmp_path, content=b""):
    log = tmp_path / "rtl_433.log"
    log.write_bytes(content)
    meta = tmp_path / "meta"
    meta.mkdir(exist_ok=True)
    return TrackedFile.new(str(log), file_identity(os.stat(log)), str(meta)), log


def _identity_decoder(line: bytes) -> bytes:
    return line


def _drain(q: queue.Queue, count: int, timeout=3.0) -> list:
    return [q.get(timeout=timeout) for _ in range(count)]


class TestMetadata:
    def test_new_file_starts_at_zero(self, tmp_path):
        tracked, _ = _make_tracked(tmp_path)
        assert tracked.offset == 0
        assert uuid.UUID(tracked.tracking_id)
        assert len(os.path.basename(tracked.metadata_path)) == METADATA_NAME_LENGTH
        assert tracked.state is TailState.IDLE

    def test_save_and_load(self, tmp_path):
        tracked, log = _make_tracked(tmp_path)
        tracked.commit(42)
        with open(tracked.metadata_path, "rb") as f:
            loaded = TrackedFile.from_metadata(f.read(), tracked.metadata_path)
        assert loaded.tracking_id == tracked.tracking_id
        assert loaded.identity == tracked.identity
        assert loaded.offset == 42
        assert loaded.path == str(log)

    def test_save_leaves_no_temp_files(self, tmp_path):
        tracked, _ = _make_tracked(tmp_path)
        tracked.save()
        tracked.save()
        assert os.listdir(os.path.dirname(tracked.metadata_path)) == [
            os.path.basename(tracked.metadata_path)
        ]

    def test_invalid_json(self):
        with pytest.raises(ValueError):
            TrackedFile.from_metadata(b"{not json", "x.meta")

    def test_missing_field(self):
        raw = json.dumps({"tracking_id": str(uuid.uuid4()), "device": 1, "inode": 2, "path": "a"})
        with pytest.raises(ValueError):
            TrackedFile.from_metadata(raw, "x.meta")

    def test_negative_offset(self):
        raw = json.dumps({"tracking_id": str(uuid.uuid4()), "device": 1, "inode": 2,
                          "offset": -1, "path": "a"})
        with pytest.raises(ValueError):
            TrackedFile.from_metadata(raw, "x.meta")

    def test_bad_tracking_id(self):
        raw = json.dumps({"tracking_id": "z" * 36, "device": 1, "inode": 2,
                          "offset": 0, "path": "a"})
        with pytest.raises(ValueError):
            TrackedFile.from_metadata(raw, "x.meta")

    def test_commit_only_forward(self, tmp_path):
        tracked, _ = _make_tracked(tmp_path)
        with pytest.raises(ValueError):
            tracked.commit(-1)

    def test_set_path(self, tmp_path):
        tracked, log = _make_tracked(tmp_path)
        assert tracked.set_path(str(log)) is False
        assert tracked.set_path(str(log) + ".1") is True
        assert tracked.path == str(log) + ".1"


class TestTailing:
    def test_reads_and_commits(self, tmp_path):
        content = b'{"a":1}\n{"b":2}\r\n'
        tracked, _ = _make_tracked(tmp_path, content)
        q = queue.Queue()
        assert tracked.start_tailing(q, _identity_decoder, SLEEP) is True
        try:
            assert _drain(q, 2) == [b'{"a":1}', b'{"b":2}']
            assert _wait_for(lambda: tracked.offset == len(content))
        finally:
            assert tracked.stop_tailing(2.0) is True
        assert tracked.tailing is False
        assert tracked.state is TailState.STOPPED

        with open(tracked.metadata_path) as f:
            assert json.load(f)["offset"] == len(content)

    def test_picks_up_appended_lines(self, tmp_path):
        tracked, log = _make_tracked(tmp_path, b"one\n")
        q = queue.Queue()
        tracked.start_tailing(q, _identity_decoder, SLEEP, chunk_size=3)
        try:
            assert _drain(q, 1) == [b"one"]
            with open(log, "ab") as f:
                f.write(b"two\nthree\n")
            assert _drain(q, 2) == [b"two", b"three"]
            assert _wait_for(lambda: tracked.offset == 14)
        finally:
            tracked.stop_tailing(2.0)

    def test_partial_line_waits_for_terminator(self, tmp_path):
        tracked, log = _make_tracked(tmp_path, b"par")
        q = queue.Queue()
        tracked.start_tailing(q, _identity_decoder, SLEEP)
        try:
            time.sleep(0.2)
            assert q.empty()
            assert tracked.offset == 0
            with open(log, "ab") as f:
                f.write(b"tial\n")
            assert _drain(q, 1) == [b"partial"]
            assert _wait_for(lambda: tracked.offset == 8)
        finally:
            tracked.stop_tailing(2.0)

    def test_resumes_from_committed_offset(self, tmp_path):
        tracked, _ = _make_tracked(tmp_path, b"old\nnew\n")
        tracked.commit(4)
        q = queue.Queue()
        tracked.start_tailing(q, _identity_decoder, SLEEP)
        try:
            assert _drain(q, 1) == [b"new"]
            time.sleep(0.15)
            assert q.empty()
        finally:
            tracked.stop_tailing(2.0)

    def test_start_is_idempotent(self, tmp_path):
        tracked, _ = _make_tracked(tmp_path, b"once\n")
        q = queue.Queue()
        assert tracked.start_tailing(q, _identity_decoder, SLEEP) is True
        assert tracked.start_tailing(q, _identity_decoder, SLEEP) is False
        try:
            assert _drain(q, 1) == [b"once"]
            time.sleep(0.2)
            assert q.empty()
            assert tracked.offset == 5
        finally:
            tracked.stop_tailing(2.0)

    def test_restart_after_stop(self, tmp_path):
        tracked, log = _make_tracked(tmp_path, b"a\n")
        q = queue.Queue()
        tracked.start_tailing(q, _identity_decoder, SLEEP)
        assert _drain(q, 1) == [b"a"]
        assert tracked.stop_tailing(2.0) is True

        with open(log, "ab") as f:
            f.write(b"b\n")
        assert tracked.start_tailing(q, _identity_decoder, SLEEP) is True
        try:
            assert _drain(q, 1) == [b"b"]
        finally:
            tracked.stop_tailing(2.0)

    def test_identity_mismatch_not_tailed(self, tmp_path):
        log = tmp_path / "rtl_433.log"
        log.write_bytes(b"line\n")
        st = os.stat(log)
        tracked = TrackedFile.new(str(log), (st.st_dev, st.st_ino + 1), str(tmp_path))
        tracked.commit(2)
        q = queue.Queue()
        tracked.start_tailing(q, _identity_decoder, SLEEP)
        assert _wait_for(lambda: not tracked.tailing)
        assert q.empty()
        assert tracked.offset == 2

    def test_missing_file_not_tailed(self, tmp_path):
        tracked = TrackedFile.new(str(tmp_path / "gone.log"), (1, 2), str(tmp_path))
        tracked.start_tailing(queue.Queue(), _identity_decoder, SLEEP)
        assert _wait_for(lambda: not tracked.tailing)
        assert tracked.state is TailState.STOPPED

    def test_undecodable_record_skipped_and_committed(self, tmp_path):
        content = b"bad\ngood\n"
        tracked, _ = _make_tracked(tmp_path, content)

        def decoder(line):
            if line == b"bad":
                raise DecodeError("bad record")
            return line

        q = queue.Queue()
        tracked.start_tailing(q, decoder, SLEEP)
        try:
            assert _drain(q, 1) == [b"good"]
            assert _wait_for(lambda: tracked.offset == len(content))
        finally:
            tracked.stop_tailing(2.0)

    def test_decoder_crash_skips_record(self, tmp_path):
        content = b"boom\ngood\n"
        tracked, _ = _make_tracked(tmp_path, content)

        def decoder(line):
            if line == b"boom":
                raise TypeError("unhashable type: 'list'")
            return line

        q = queue.Queue()
        tracked.start_tailing(q, decoder, SLEEP)
        try:
            assert _drain(q, 1) == [b"good"]
            assert _wait_for(lambda: tracked.offset == len(content))
            assert tracked.tailing is True
        finally:
            tracked.stop_tailing(2.0)

    def test_malformed_records_do_not_stop_tailing(self, tmp_path):
        good = b'{"model": "Acurite Rain Gauge", "time": "2020-01-01 00:00:00", "id": 1, "rain": 2.5}'
        content = (
            b'{"model": ["x"]}\n'
            b'{"model": "Acurite Rain Gauge", "time": "2020-01-01 00:00:00", "id": 1e400}\n'
            b'{"model": "Acurite Rain Gauge", "time": "2020-01-01 00:00:00", "id": 1, "rain": NaN}\n'
            + good + b"\n"
        )
        tracked, _ = _make_tracked(tmp_path, content)

        q = queue.Queue()
        tracked.start_tailing(q, decode_reading, SLEEP)
        try:
            (reading,) = _drain(q, 1)
            assert reading.rain == 2.5
            assert _wait_for(lambda: tracked.offset == len(content))
        finally:
            tracked.stop_tailing(2.0)

    def test_shrink_below_offset_warns(self, tmp_path, caplog):
        tracked, log = _make_tracked(tmp_path, b"ab\n")
        tracked.commit(100)

        q = queue.Queue()
        with caplog.at_level(logging.WARNING, logger="rtl_slurp.tracked_file"):
            tracked.start_tailing(q, _identity_decoder, SLEEP)
            try:
                assert _wait_for(lambda: any("shrank" in r.getMessage() for r in caplog.records))
                time.sleep(SLEEP * 4)
            finally:
                tracked.stop_tailing(2.0)

        shrink_warnings = [r for r in caplog.records if "shrank" in r.getMessage()]
        assert len(shrink_warnings) == 1
        assert tracked.offset == 100
        assert q.empty()

    def test_stop_while_queue_full(self, tmp_path):
        tracked, _ = _make_tracked(tmp_path, b"1\n2\n3\n")
        q = queue.Queue(maxsize=1)
        tracked.start_tailing(q, _identity_decoder, SLEEP)
        assert _wait_for(lambda: tracked.offset == 2)
        time.sleep(0.1)
        assert tracked.stop_tailing(3.0) is True
        # second record was never pushed, so it stays uncommitted
        assert tracked.offset == 2
        assert q.get_nowait() == b"1"
