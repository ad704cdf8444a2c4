import enum
import math
import os
import subprocess
import time

from loguru import logger

from log_monitor.core.buffer import NANOS_PER_SECOND, ArrivalClock, LogEntry, parse_timestamp
from log_monitor.core.decoder import DEFAULT_ENCODINGS, Decoder
from log_monitor.core.errors import InvalidStateTransition, SourceTruncated, SourceUnavailable
from log_monitor.core.multiplexer import StreamMultiplexer


class SourceState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    STREAMING = "streaming"
    RELOADING = "reloading"
    STOPPING = "stopping"
    STOPPED = "stopped"


class SourceChange(enum.Enum):
    OK = "ok"
    SKIP = "skip"
    RELOAD = "reload"


TRANSITIONS = {
    SourceState.UNINITIALIZED: {SourceState.INITIALIZING, SourceState.STOPPING},
    SourceState.INITIALIZING: {SourceState.STREAMING, SourceState.STOPPING},
    SourceState.STREAMING: {SourceState.RELOADING, SourceState.STOPPING},
    SourceState.RELOADING: {SourceState.STREAMING, SourceState.STOPPING},
    SourceState.STOPPING: {SourceState.STOPPED},
    SourceState.STOPPED: set(),
}


class LogSource:
    """
    Where bytes come from.

    A SourceReader drives every source the same way on each poll:
    start() (idempotent), check_changes(), then read() when the change is OK.
    Sources with `ordered = True` return LogEntry lists from read() that must
    be placed by timestamp; the others return raw bytes to append.
    """

    ordered = False

    def __init__(self, name):
        self.name = name
        self.state = SourceState.UNINITIALIZED

    def _transition(self, target):
        if target not in TRANSITIONS[self.state]:
            raise InvalidStateTransition(self.state, target)
        logger.debug(f"Source '{self.name}': {self.state.name} -> {target.name}")
        self.state = target

    @property
    def is_stopped(self):
        return self.state in (SourceState.STOPPING, SourceState.STOPPED)

    @property
    def is_open(self):
        """True while read() can still return data, even if start() just failed."""
        return self.state in (SourceState.STREAMING, SourceState.RELOADING)

    def start(self):
        if self.state is SourceState.UNINITIALIZED:
            self._transition(SourceState.INITIALIZING)
            self._transition(SourceState.STREAMING)

    def check_changes(self):
        return SourceChange.SKIP if self.is_stopped else SourceChange.OK

    def read(self):
        raise NotImplementedError

    def take_failures(self):
        """Errors hit by parts of the source since the last call."""
        return []

    def stop(self):
        if self.is_stopped:
            return
        self._transition(SourceState.STOPPING)
        self._release()
        self._transition(SourceState.STOPPED)

    def _release(self):
        pass


class FileLogSource(LogSource):
    """Tails a local file, detecting truncation and replacement."""

    def __init__(self, path):
        super().__init__(os.path.basename(path))
        self.path = path
        self.offset = 0
        self._inode = None

    def _stat(self):
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            raise SourceUnavailable(f"{self.path} does not exist")

        if st.st_size < self.offset:
            raise SourceTruncated(f"{self.path} shrank from {self.offset} to {st.st_size} bytes")
        if self.offset > 0 and self._inode is not None and st.st_ino != self._inode:
            raise SourceTruncated(f"{self.path} was replaced")
        if st.st_size == 0:
            raise SourceUnavailable(f"{self.path} is empty")
        self._inode = st.st_ino
        return st.st_size

    def check_changes(self):
        if self.is_stopped:
            return SourceChange.SKIP
        try:
            self._stat()
        except SourceUnavailable as e:
            logger.debug(f"Skipping poll: {e}")
            return SourceChange.SKIP
        except SourceTruncated as e:
            logger.info(f"Reloading: {e}")
            self._transition(SourceState.RELOADING)
            self.offset = 0
            self._inode = None
            self._transition(SourceState.STREAMING)
            return SourceChange.RELOAD
        return SourceChange.OK

    def read(self):
        try:
            with open(self.path, "rb") as f:
                f.seek(self.offset)
                data = f.read()
        except FileNotFoundError:
            logger.debug(f"{self.path} vanished before it could be read")
            return b""
        self.offset += len(data)
        return data


class LogLineParser:
    """Turns the raw bytes of one timestamped sub-stream into LogEntry objects."""

    def __init__(self, source_label, encodings=DEFAULT_ENCODINGS, clock=None):
        self.source_label = source_label
        # Line terminators are kept verbatim; a leading \r matters to the buffer
        self.decoder = Decoder(encodings)
        self.clock = clock or ArrivalClock()
        self.last_timestamp = None
        self._partial = ""

    def feed(self, chunk):
        parts = (self._partial + self.decoder.decode(chunk)).split("\n")
        self._partial = parts.pop()
        return [self._entry(part + "\n") for part in parts]

    def flush(self):
        text = self._partial + self.decoder.flush()
        self._partial = ""
        return [self._entry(text + "\n")] if text else []

    def _entry(self, line):
        timestamp, text = parse_timestamp(line)
        if timestamp is None:
            logger.debug(f"Line without timestamp from '{self.source_label}'")
            timestamp = self.last_timestamp if self.last_timestamp is not None else self.clock.now()
        self.last_timestamp = timestamp
        return LogEntry(self.source_label, timestamp, text)


def container_label(pod, container):
    pod_id = pod.split("-")[-1]
    return f"{container}-{pod_id}"


def stream_prefixes(labels):
    """
    Maps stream key -> display tag for `labels` (key -> label).

    Tags are `[label]` padded to a common width so interleaved lines line up;
    a single stream gets no tag.
    """
    if len(labels) <= 1:
        return {key: "" for key in labels}
    width = max(len(label) for label in labels.values()) + 3
    return {key: f"[{label}]".ljust(width) for key, label in labels.items()}


class RemoteLogSource(LogSource):
    """
    Follows the containers of every pod whose name starts with one of `pods`.

    One sub-stream per (pod, container) runs in the multiplexer. A sub-stream
    that ends is reopened on a later poll without touching its siblings.
    """

    ordered = True

    def __init__(self, provider, namespace, pods, since_seconds=3600,
                 encodings=DEFAULT_ENCODINGS, helper=None, artifacts=(), multiplexer=None):
        super().__init__(",".join(pods))
        self.provider = provider
        self.namespace = namespace
        self.pods = list(pods)
        self.since_seconds = since_seconds
        self.encodings = tuple(encodings)
        self.helper = helper
        self.artifacts = list(artifacts)
        self.multiplexer = multiplexer or StreamMultiplexer()
        self._parsers = {}
        self._cancelled = set()
        self._failures = []
        self._needs_init = True

    def start(self):
        """Locates the pods and opens missing sub-streams. Raises RemoteConnectError."""
        if self.state is SourceState.UNINITIALIZED:
            self._transition(SourceState.INITIALIZING)
        if self.is_stopped or not self._needs_init:
            return

        workloads = self.provider.list_workloads(self.namespace)
        targets, located, all_ready = self._select(workloads)
        # Tags come from every located stream, so they are fixed before any
        # stream publishes and do not change while siblings come and go
        prefixes = stream_prefixes({
            f"{pod}#{container}": container_label(pod, container)
            for pod, container in located if f"{pod}#{container}" not in self._cancelled
        })
        active = set(self.multiplexer.active_names())
        for pod, container in targets:
            key = f"{pod}#{container}"
            if key in self._cancelled:
                continue
            if key in active:
                self.multiplexer.set_prefix(key, prefixes[key])
            else:
                self._open(key, pod, container, prefixes[key])

        self._needs_init = not all_ready
        if all_ready and self.state is SourceState.INITIALIZING:
            self._transition(SourceState.STREAMING)

    def _select(self, workloads):
        targets = []
        streams = []
        located = set()
        all_ready = True
        for workload in workloads:
            for wanted in self.pods:
                if workload.name.startswith(wanted):
                    located.add(wanted)
                    streams.extend((workload.name, c) for c in workload.containers)
                    if workload.ready:
                        targets.extend((workload.name, c) for c in workload.containers)
                    else:
                        logger.info(f"Pod '{workload.name}' is not ready yet")
                        all_ready = False
                    break
        missing = set(self.pods) - located
        if missing:
            logger.info(f"Pods not found in namespace {self.namespace}: {', '.join(sorted(missing))}")
            all_ready = False
        return targets, streams, all_ready

    def _open(self, key, pod, container, prefix=""):
        since = self.since_seconds
        previous = self._parsers.get(key)
        if previous is not None and previous.last_timestamp is not None:
            # Reopened stream: only ask for what we have not seen yet
            elapsed = time.time() - previous.last_timestamp / NANOS_PER_SECOND
            since = max(1, math.ceil(elapsed))

        parser = LogLineParser(key, self.encodings)
        self._parsers[key] = parser
        self.multiplexer.open(
            key,
            lambda: self.provider.stream_logs(self.namespace, pod, container, since_seconds=since, follow=True),
            parser,
            prefix=prefix,
        )

    def read(self):
        entries = []
        for event in self.multiplexer.drain():
            if event.ended:
                logger.info(f"Stream '{event.name}' ended, reopening on next poll")
                self._needs_init = True
                if event.error is not None:
                    self._failures.append(event.error)
                continue
            entries.extend(event.entries)
        return entries

    @property
    def is_open(self):
        if self.is_stopped:
            return False
        return bool(self.multiplexer.active_names()) or not self.multiplexer.events.empty()

    def take_failures(self):
        failures, self._failures = self._failures, []
        return failures

    def cancel(self, key):
        """Stops one sub-stream for good; its siblings keep streaming."""
        self._cancelled.add(key)
        return self.multiplexer.cancel(key)

    def _release(self):
        self.multiplexer.cancel_all()
        for path in self.artifacts:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Could not delete {path}: {e}")
        if self.helper is not None and self.helper.poll() is None:
            try:
                self.helper.kill()
                self.helper.wait(timeout=5)
            except (OSError, subprocess.TimeoutExpired) as e:
                logger.error(f"Could not stop helper process {self.helper.pid}: {e}")
