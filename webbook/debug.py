"""Process-wide debug trace for source authoring.

Every pipeline step reports human-readable lines keyed by the source URL.
The trace is a side channel: nothing in the pipeline reads it back.
"""
import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from config import settings

logger = logging.getLogger(__name__)

Listener = Callable[[str, str], None]


class DebugTracer:
    """
    Append-only sink of ``(source_url, message)`` lines.

    Each line is written under a lock, so concurrent runs never interleave
    partial lines. Ordering across runs is whatever order the writes happen in.
    """

    def __init__(self, max_lines: Optional[int] = None):
        self.max_lines = max_lines or settings.debug_buffer_size
        self._lock = threading.Lock()
        self._lines: Dict[str, Deque[str]] = {}
        self._listeners: List[Listener] = []

    def log(self, source_url: str, message: str, show_time: bool = True) -> None:
        """Record one trace line for a source."""
        if show_time:
            line = f"[{time.strftime('%H:%M:%S')}] {message}"
        else:
            line = message

        with self._lock:
            buffer = self._lines.get(source_url)
            if buffer is None:
                buffer = deque(maxlen=self.max_lines)
                self._lines[source_url] = buffer
            buffer.append(line)
            listeners = list(self._listeners)

        logger.debug(f"[{source_url}] {line}")

        for listener in listeners:
            try:
                listener(source_url, line)
            except Exception as e:
                logger.warning(f"Debug listener failed: {e}")

    def lines(self, source_url: str) -> List[str]:
        """Return the buffered lines of a source, oldest first."""
        with self._lock:
            return list(self._lines.get(source_url, ()))

    def clear(self, source_url: Optional[str] = None) -> None:
        with self._lock:
            if source_url is None:
                self._lines.clear()
            else:
                self._lines.pop(source_url, None)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that removes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def start_run(self, source_url: str, stage: str) -> "DebugRun":
        run = DebugRun(self, source_url, stage)
        run.log(f"︾ start {stage}")
        return run


class DebugRun:
    """
    Trace handle for one stage invocation.

    After cancel() the run is muted: late lines from worker threads and the
    completion line are dropped, so a cancelled run only ever reports that it
    was cancelled.
    """

    def __init__(self, tracer: DebugTracer, source_url: str, stage: str):
        self.tracer = tracer
        self.source_url = source_url
        self.stage = stage
        self._started = time.monotonic()
        self._finished = False
        # Reentrant: a listener may log to the run it is listening to
        self._lock = threading.RLock()

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)

    @property
    def finished(self) -> bool:
        return self._finished

    def log(self, message: str) -> None:
        with self._lock:
            if self._finished:
                return
            self.tracer.log(self.source_url, message)

    def _finish(self, message: str) -> None:
        with self._lock:
            if self._finished:
                return
            self._finished = True
            self.tracer.log(self.source_url, message)

    def complete(self) -> None:
        self._finish(f"︽ {self.stage} completed in {self.elapsed_ms} ms")

    def fail(self, error: Exception) -> None:
        self._finish(f"✗ {self.stage} failed: {error}")

    def cancel(self) -> None:
        self._finish(f"⊗ {self.stage} cancelled")


# Shared sink used by every WebBook unless one is injected
debug = DebugTracer()
