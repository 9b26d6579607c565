"""Tests for the record splitter."""

from rtl_slurp.splitter import RecordSplitter, split_all


class TestTerminators:
    def test_lf_lines(self):
        assert split_all(b'{"a":1}\n{"b":2}\n') == [(b'{"a":1}', 8), (b'{"b":2}', 8)]

    def test_mixed_terminators(self):
        assert split_all(b"a\r\nb\rc\n") == [(b"a", 3), (b"b", 2), (b"c", 2)]

    def test_crlf_is_one_terminator(self):
        assert split_all(b"abc\r\n") == [(b"abc", 5)]

    def test_partial_line_held(self):
        splitter = RecordSplitter()
        assert list(splitter.feed(b"abc")) == []
        assert splitter.buffered == 3

    def test_empty_lines_skipped_and_counted(self):
        assert split_all(b"\n\nabc\n") == [(b"abc", 6)]

    def test_trailing_empty_lines_not_emitted(self):
        splitter = RecordSplitter()
        assert list(splitter.feed(b"abc\n\r\n")) == [(b"abc", 4)]
        assert splitter.buffered == 2


class TestChunkBoundaries:
    def test_cr_at_chunk_end_then_lf(self):
        splitter = RecordSplitter()
        assert list(splitter.feed(b"abc\r")) == []
        assert splitter.pending_cr is True
        assert splitter.buffered == 4
        assert list(splitter.feed(b"\ndef\n")) == [(b"abc", 5), (b"def", 4)]
        assert splitter.pending_cr is False

    def test_cr_at_chunk_end_then_text(self):
        splitter = RecordSplitter()
        assert list(splitter.feed(b"abc\r")) == []
        assert list(splitter.feed(b"def\n")) == [(b"abc", 4), (b"def", 4)]

    def test_flush_releases_held_line(self):
        splitter = RecordSplitter()
        assert list(splitter.feed(b"abc\r")) == []
        assert list(splitter.flush()) == [(b"abc", 4)]
        assert splitter.buffered == 0

    def test_flush_keeps_unterminated_data(self):
        splitter = RecordSplitter()
        list(splitter.feed(b"abc"))
        assert list(splitter.flush()) == []
        assert splitter.buffered == 3

    def test_empty_line_across_chunks(self):
        splitter = RecordSplitter()
        assert list(splitter.feed(b"a\n\r")) == [(b"a", 2)]
        assert list(splitter.feed(b"\nb\n")) == [(b"b", 4)]

    def test_line_split_across_chunks(self):
        splitter = RecordSplitter()
        assert list(splitter.feed(b'{"mod')) == []
        assert list(splitter.feed(b'el":1}\n')) == [(b'{"model":1}', 12)]

    def test_independent_of_chunk_size(self):
        data = b"one\r\ntwo\rthree\n\nfour\r\n\r\nfive\n"
        whole = split_all(data)
        assert [line for line, _ in whole] == [b"one", b"two", b"three", b"four", b"five"]
        assert sum(consumed for _, consumed in whole) == len(data)
        for size in range(1, len(data) + 1):
            assert split_all(data, size) == whole, size

    def test_consumed_sums_to_read_position(self):
        data = b"a\nbb\r\nccc"
        splitter = RecordSplitter()
        out = list(splitter.feed(data))
        assert sum(c for _, c in out) + splitter.buffered == len(data)


class TestReset:
    def test_reset_discards_partial_state(self):
        splitter = RecordSplitter()
        list(splitter.feed(b"half\r"))
        splitter.reset()
        assert splitter.buffered == 0
        assert splitter.pending_cr is False
        assert list(splitter.feed(b"\nnext\n")) == [(b"next", 6)]
