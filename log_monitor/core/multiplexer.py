import queue
import threading
from dataclasses import dataclass, replace

from loguru import logger

from log_monitor.core.errors import LogMonitorError


@dataclass(frozen=True)
class StreamEvent:
    name: str
    entries: tuple = ()
    ended: bool = False
    error: Exception = None


class StreamHandle:
    """One live sub-stream: its own cancel trigger and re-initialisation flag."""

    def __init__(self, name, prefix=""):
        self.name = name
        self.prefix = prefix
        self.cancelled = threading.Event()
        self.needs_reinit = False
        self.stream = None
        self.thread = None

    def cancel(self):
        self.cancelled.set()
        interrupt = getattr(self.stream, "interrupt", None)
        if interrupt is not None:
            interrupt()

    def is_alive(self):
        return self.thread is not None and self.thread.is_alive()


class StreamMultiplexer:
    """
    Fans N independent byte streams into one event queue.

    Every sub-stream is consumed on its own thread and turned into LogEntry
    batches by its parser. Order is FIFO per name; across names events are
    interleaved by delivery time. A stream that ends on its own (not through
    cancel) leaves the active set and produces an `ended` event, carrying the
    error if it failed, so only that name is re-initialised. Entries are
    tagged with the handle's `prefix`, fixed by the caller when it opens the
    stream.
    """

    def __init__(self):
        self.events = queue.Queue()
        self._handles = {}
        self._lock = threading.Lock()

    def open(self, name, stream_factory, parser, prefix=""):
        with self._lock:
            if name in self._handles:
                return self._handles[name]
            handle = StreamHandle(name, prefix)
            self._handles[name] = handle

        handle.thread = threading.Thread(
            target=self._consume, args=(handle, stream_factory, parser),
            name=f"log-stream-{name}", daemon=True,
        )
        handle.thread.start()
        return handle

    def cancel(self, name):
        with self._lock:
            handle = self._handles.pop(name, None)
        if handle is None:
            return False
        handle.cancel()
        logger.info(f"Stream for '{name}' cancelled")
        return True

    def cancel_all(self):
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            handle.cancel()

    def set_prefix(self, name, prefix):
        with self._lock:
            handle = self._handles.get(name)
        if handle is not None:
            handle.prefix = prefix

    def active_names(self):
        with self._lock:
            return sorted(self._handles)

    def handle(self, name):
        with self._lock:
            return self._handles.get(name)

    def drain(self):
        events = []
        while True:
            try:
                events.append(self.events.get_nowait())
            except queue.Empty:
                return events

    def _consume(self, handle, stream_factory, parser):
        logger.info(f"Stream for '{handle.name}' started")
        error = None
        try:
            handle.stream = stream_factory()
            if handle.cancelled.is_set():
                handle.cancel()
            for chunk in handle.stream:
                if handle.cancelled.is_set():
                    break
                self._publish(handle, parser.feed(chunk))
            if not handle.cancelled.is_set():
                self._publish(handle, parser.flush())
        except (LogMonitorError, OSError) as e:
            if not handle.cancelled.is_set():
                logger.warning(f"Stream for '{handle.name}' failed: {e}")
                error = e
        finally:
            logger.info(f"Stream for '{handle.name}' ended")
            self._finish(handle, error)

    def _publish(self, handle, entries):
        if not entries or handle.cancelled.is_set():
            return
        self.events.put(StreamEvent(handle.name, tuple(self._prefixed(handle, entries))))

    def _prefixed(self, handle, entries):
        if not handle.prefix:
            return entries
        return [replace(entry, prefix=handle.prefix) for entry in entries]

    def _finish(self, handle, error=None):
        # Queued under the lock so nobody sees the name gone without its event
        with self._lock:
            if not handle.cancelled.is_set():
                handle.needs_reinit = True
                self.events.put(StreamEvent(handle.name, ended=True, error=error))
            if self._handles.get(handle.name) is handle:
                del self._handles[handle.name]
