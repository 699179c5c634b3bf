import codecs
import math
import queue
import re
import sys
import threading
import time
from dataclasses import dataclass

from tqdm import tqdm

from pv_migrate.log import get_logger

PROGRESS_RE = re.compile(r"\s*(?P<bytes>[0-9]+(,[0-9]+)*)\s+(?P<percentage>[0-9]{1,3})%")
RSYNC_END_RE = re.compile(r"\s*total size is (?P<bytes>[0-9]+(,[0-9]+)*)")

# rsync redraws progress2 with carriage returns
LINE_SPLIT_RE = re.compile(r"[\r\n]+")

MAX_LOG_TAIL_RETRIES = 10
RETRY_DELAY_SECONDS = 1
LINE_QUEUE_SIZE = 1024
CHUNK_SIZE = 4096
POLL_SECONDS = 0.2
JOIN_TIMEOUT_SECONDS = 5


@dataclass
class Progress:
    line: str
    percentage: int
    transferred: int
    total: int


# -----------------------------------------------------------------------------
# Parsing
# -----------------------------------------------------------------------------
def _parse_num_bytes(num_bytes):
    return int(num_bytes.replace(",", ""))


def parse_line(line):
    """Parse an rsync progress2 line, returning None when it carries no progress."""
    end = RSYNC_END_RE.search(line)
    if end:
        total = _parse_num_bytes(end.group("bytes"))
        return Progress(line=line, percentage=100, transferred=total, total=total)

    match = PROGRESS_RE.search(line)
    if not match:
        return None

    percentage = int(match.group("percentage"))
    if percentage == 0:
        return Progress(line=line, percentage=0, transferred=0, total=0)

    transferred = _parse_num_bytes(match.group("bytes"))
    total = round(transferred * 100 / percentage)
    if transferred > total:
        # rounding wobble, transferred is the accurate one
        total = transferred

    return Progress(line=line, percentage=percentage, transferred=transferred, total=total)


# -----------------------------------------------------------------------------
# Stream reading
# -----------------------------------------------------------------------------
def _read_chunks(stream):
    if hasattr(stream, "stream"):
        # urllib3 response from a follow=True log request
        yield from stream.stream(CHUNK_SIZE, decode_content=True)
        return

    read = getattr(stream, "read1", None) or stream.read
    while True:
        chunk = read(CHUNK_SIZE)
        if not chunk:
            return
        yield chunk


def iter_lines(stream):
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buf = ""
    for chunk in _read_chunks(stream):
        if isinstance(chunk, bytes):
            chunk = decoder.decode(chunk)
        buf += chunk
        parts = LINE_SPLIT_RE.split(buf)
        buf = parts.pop()
        for part in parts:
            if part.strip():
                yield part
    buf += decoder.decode(b"", final=True)
    if buf.strip():
        yield buf


def _close(stream):
    for name in ("close", "release_conn"):
        fn = getattr(stream, name, None)
        if fn is not None:
            try:
                fn()
            except Exception as e:
                get_logger().debug(f"failed to {name} log stream: {e}")


# -----------------------------------------------------------------------------
# Progress bar
# -----------------------------------------------------------------------------
def new_progress_bar(writer=None):
    return tqdm(
        total=1,
        file=writer or sys.stderr,
        unit="B",
        unit_scale=True,
        unit_divisor=1024,
        dynamic_ncols=True,
        desc="📂 Copying data...",
    )


def update_progress_bar(bar, transferred, total):
    # raise the max in place, a new bar would rewind the display
    bar.total = total
    if total == 0:
        return
    if transferred >= bar.n:
        bar.n = transferred
    bar.refresh()


def finish_progress_bar(bar):
    if bar.total:
        bar.n = bar.total
    bar.refresh()
    bar.close()


# -----------------------------------------------------------------------------
# Log tail
# -----------------------------------------------------------------------------
class LogTail:
    """
    Tails rsync output and turns it into debug logs or a progress bar.

    One thread reads lines from the stream returned by
    ``open_stream(since_seconds)`` and queues them, another parses them. When
    ``reopen`` is set a broken or ended stream is opened again, at most
    ``max_retries`` times. ``since_seconds`` is None on the first open and
    while no line has been read, afterwards it covers the time since the last
    line so a re-opened stream resumes instead of replaying. Both threads
    stop once ``mark_complete`` delivers the outcome.
    """

    def __init__(self, open_stream, show_progress_bar=False, writer=None, logger=None,
                 reopen=True, max_retries=MAX_LOG_TAIL_RETRIES):
        self._open_stream = open_stream
        self._show_progress_bar = show_progress_bar
        self._writer = writer
        self._logger = logger or get_logger()
        self._reopen = reopen
        self._max_retries = max_retries

        self._lines = queue.Queue(maxsize=LINE_QUEUE_SIZE)
        self._success = queue.Queue(maxsize=1)
        self._done = threading.Event()
        self._stream = None
        self._lock = threading.Lock()
        self._producer = None
        self._consumer = None

    def start(self):
        self._producer = threading.Thread(target=self._tail, name="pv-migrate-log-tail", daemon=True)
        self._consumer = threading.Thread(target=self._handle, name="pv-migrate-log-handle", daemon=True)
        self._producer.start()
        self._consumer.start()

    def mark_complete(self, success):
        try:
            self._success.put_nowait(success)
        except queue.Full:
            pass

        if self._consumer is not None:
            self._consumer.join(timeout=JOIN_TIMEOUT_SECONDS)

        self._done.set()
        with self._lock:
            stream, self._stream = self._stream, None
        if stream is not None:
            _close(stream)

    # --- producer ---

    def _tail(self):
        failures = 0
        last_line_at = None
        while not self._done.is_set():
            try:
                stream = self._open_stream(_since_seconds(last_line_at))
                with self._lock:
                    self._stream = stream
                for line in iter_lines(stream):
                    if self._done.is_set():
                        return
                    last_line_at = time.monotonic()
                    self._put(line)
            except Exception as e:
                if self._done.is_set():
                    return
                failures += 1
                if failures == 1:
                    self._logger.warning(f"[!] Log tail failed, will retry: {e}")
                else:
                    self._logger.debug(f"log tail failed again: {e}")
            else:
                if not self._reopen:
                    return
                failures += 1
                self._logger.debug("log stream ended before completion, reopening")
            finally:
                with self._lock:
                    stream, self._stream = self._stream, None
                if stream is not None:
                    _close(stream)

            if not self._reopen or failures > self._max_retries:
                self._logger.debug(f"giving up on log tail after {failures} attempts")
                return

            self._done.wait(RETRY_DELAY_SECONDS)

    def _put(self, line):
        while not self._done.is_set():
            try:
                self._lines.put(line, timeout=POLL_SECONDS)
                return
            except queue.Full:
                continue

    # --- consumer ---

    def _handle(self):
        bar = new_progress_bar(self._writer) if self._show_progress_bar else None
        try:
            while True:
                try:
                    success = self._success.get_nowait()
                except queue.Empty:
                    pass
                else:
                    if bar is not None and success:
                        finish_progress_bar(bar)
                        bar = None
                    return

                try:
                    line = self._lines.get(timeout=POLL_SECONDS)
                except queue.Empty:
                    continue

                self._handle_line(line, bar)
        finally:
            if bar is not None:
                bar.close()

    def _handle_line(self, line, bar):
        progress = parse_line(line)
        if progress is None:
            self._logger.debug(line)
            return

        if bar is None:
            self._logger.debug(
                line.strip(),
                extra={"fields": {
                    "source": "rsync",
                    "transferred": progress.transferred,
                    "total": progress.total,
                    "percentage": progress.percentage,
                }},
            )
            return

        update_progress_bar(bar, progress.transferred, progress.total)


def _since_seconds(last_line_at):
    if last_line_at is None:
        return None
    return max(1, int(math.ceil(time.monotonic() - last_line_at)))
