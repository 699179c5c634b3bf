import io
import time
from unittest.mock import MagicMock

import pytest
from tqdm import tqdm

from pv_migrate import progress
from pv_migrate.progress import LogTail, iter_lines, parse_line, update_progress_bar


def wait_for(condition, timeout=5):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return False


# -----------------------------------------------------------------------------
# parse_line
# -----------------------------------------------------------------------------
def test_parse_progress_line():
    p = parse_line("         12,345  67%    1.23MB/s    0:00:01 (xfr#1, to-chk=0/2)")
    assert p.transferred == 12345
    assert p.percentage == 67
    assert p.total == 18425


def test_parse_end_line():
    p = parse_line("total size is 1,234,567  speedup is 1.00")
    assert p.percentage == 100
    assert p.transferred == p.total == 1234567


def test_parse_zero_percent():
    p = parse_line("              0   0%    0.00kB/s    0:00:00")
    assert (p.transferred, p.total, p.percentage) == (0, 0, 0)


def test_total_never_below_transferred():
    p = parse_line("  1,000 101%")
    assert p.transferred == 1000
    assert p.total == 1000


@pytest.mark.parametrize("line", [
    "sending incremental file list",
    "file.txt",
    "",
    "sent 1,234 bytes  received 35 bytes",
])
def test_parse_non_progress_lines(line):
    assert parse_line(line) is None


# -----------------------------------------------------------------------------
# iter_lines
# -----------------------------------------------------------------------------
def test_iter_lines_splits_carriage_returns():
    stream = io.BytesIO(b"start\r  1,000  10%\r  2,000  20%\r\nend\n")
    assert list(iter_lines(stream)) == ["start", "  1,000  10%", "  2,000  20%", "end"]


class ChunkedReader:
    def __init__(self, chunks):
        self.chunks = list(chunks)

    def read(self, size):
        return self.chunks.pop(0) if self.chunks else b""


def test_iter_lines_across_chunks():
    data = "héllo\nwörld".encode()
    chunks = [data[i:i + 2] for i in range(0, len(data), 2)]
    assert list(iter_lines(ChunkedReader(chunks))) == ["héllo", "wörld"]


def test_iter_lines_urllib3_style_response():
    resp = MagicMock()
    resp.stream.return_value = iter([b"a\n", b"b"])
    assert list(iter_lines(resp)) == ["a", "b"]


# -----------------------------------------------------------------------------
# progress bar
# -----------------------------------------------------------------------------
def test_progress_bar_raises_total_and_never_rewinds():
    bar = tqdm(total=1, file=io.StringIO())
    try:
        update_progress_bar(bar, 500, 1000)
        assert (bar.n, bar.total) == (500, 1000)

        update_progress_bar(bar, 300, 2000)
        assert (bar.n, bar.total) == (500, 2000)

        update_progress_bar(bar, 0, 0)
        assert bar.n == 500
    finally:
        bar.close()


# -----------------------------------------------------------------------------
# LogTail
# -----------------------------------------------------------------------------
def test_log_tail_logs_progress():
    logger = MagicMock()
    tail = LogTail(lambda since_seconds: io.BytesIO(b"  1,000  50%\n"), logger=logger, reopen=False)
    tail.start()

    assert wait_for(lambda: logger.debug.called)
    tail.mark_complete(True)

    args, kwargs = logger.debug.call_args
    assert args[0] == "1,000  50%"
    assert kwargs["extra"]["fields"]["transferred"] == 1000
    assert kwargs["extra"]["fields"]["total"] == 2000


def test_log_tail_retries_are_bounded(monkeypatch):
    monkeypatch.setattr(progress, "RETRY_DELAY_SECONDS", 0)
    logger = MagicMock()
    open_stream = MagicMock(side_effect=ConnectionError("stream broke"))

    tail = LogTail(open_stream, logger=logger, max_retries=3)
    tail.start()
    tail._producer.join(timeout=5)

    assert not tail._producer.is_alive()
    assert open_stream.call_count == 4
    assert logger.warning.call_count == 1
    tail.mark_complete(False)


def test_log_tail_stops_on_completion():
    tail = LogTail(lambda since_seconds: io.BytesIO(b""), logger=MagicMock())
    tail.start()
    tail.mark_complete(True)
    tail._producer.join(timeout=5)

    assert not tail._consumer.is_alive()
    assert not tail._producer.is_alive()


def test_log_tail_reopens_after_last_line(monkeypatch):
    monkeypatch.setattr(progress, "RETRY_DELAY_SECONDS", 0)
    opens = []
    streams = [io.BytesIO(b""), io.BytesIO(b"sending incremental file list\n"), io.BytesIO(b"")]

    def open_stream(since_seconds):
        opens.append(since_seconds)
        return streams.pop(0)

    tail = LogTail(open_stream, logger=MagicMock(), max_retries=2)
    tail.start()
    tail._producer.join(timeout=5)
    tail.mark_complete(True)

    assert opens[:2] == [None, None]
    assert opens[2] >= 1
