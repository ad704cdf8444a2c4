import queue
import threading
from dataclasses import dataclass, field

from loguru import logger

from log_monitor.core.buffer import NANOS_PER_SECOND, ArrivalClock, LogEntry, OrderedLogBuffer
from log_monitor.core.decoder import DEFAULT_ENCODINGS, Decoder
from log_monitor.core.errors import RemoteConnectError
from log_monitor.core.extracts import ExtractIndex
from log_monitor.core.matcher import RuleMatcher
from log_monitor.core.rules import SEARCH_ID, RuleSet
from log_monitor.core.search import SearchEngine
from log_monitor.core.sources import SourceChange

# --- Messages into the worker ---

@dataclass(frozen=True)
class ApplyRules:
    ruleset: RuleSet


@dataclass(frozen=True)
class RawData:
    data: bytes


@dataclass(frozen=True)
class Entries:
    entries: tuple


@dataclass(frozen=True)
class Clear:
    reload: bool = True


@dataclass(frozen=True)
class Search:
    query: str
    is_regex: bool = False
    case_sensitive: bool = False


@dataclass(frozen=True)
class OffsetForTimestamp:
    seconds: float


@dataclass(frozen=True)
class ReportFailure:
    message: str


@dataclass(frozen=True)
class Quit:
    pass


# --- Events out of the worker ---

@dataclass(frozen=True)
class LogUpdate:
    """Text placed at `display_offset`; match lines are relative to it."""
    text: str
    display_offset: int
    matches: dict = field(default_factory=dict)
    full_rescan: bool = False
    inserted: bool = False


@dataclass(frozen=True)
class LogCleared:
    reload: bool = True


@dataclass(frozen=True)
class RulesApplied:
    changes: object


@dataclass(frozen=True)
class SearchResults:
    query: str
    lines: tuple
    new_lines: tuple = ()
    full: bool = False


@dataclass(frozen=True)
class ExtractsUpdated:
    groups: dict


@dataclass(frozen=True)
class ScrollTo:
    offset: int


@dataclass(frozen=True)
class SourceFailed:
    message: str


class LogDataWorker:
    """
    The single processing worker of one log view.

    Owns the decoder, rule matcher, ordered buffer, search index and extract
    groups. Everything reaches it through `post()` and is handled strictly in
    order on its own thread; results leave through the `emit` callback.
    """

    def __init__(self, emit, encodings=DEFAULT_ENCODINGS, source_label=""):
        self.emit = emit
        self.source_label = source_label
        self.inbox = queue.Queue()
        self.decoder = Decoder(encodings, normalize_newlines=True)
        self.matcher = RuleMatcher()
        self.buffer = OrderedLogBuffer()
        self.search = SearchEngine()
        self.extracts = ExtractIndex()
        self.ruleset = RuleSet()
        self.clock = ArrivalClock()
        self._partial = ""
        self._thread = None
        self._handlers = {
            ApplyRules: self._apply_rules,
            RawData: self._append_raw,
            Entries: self._insert_entries,
            Clear: self._clear,
            Search: self._search,
            OffsetForTimestamp: self._offset_for_timestamp,
            ReportFailure: lambda msg: self.emit(SourceFailed(msg.message)),
        }

    def post(self, msg):
        self.inbox.put(msg)

    def start(self):
        self._thread = threading.Thread(target=self._run, name="log-data-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout=2.0):
        self.post(Quit())
        if self._thread is not None:
            self._thread.join(timeout)

    def _run(self):
        while True:
            msg = self.inbox.get()
            if isinstance(msg, Quit):
                break
            with logger.catch(message=f"Log data worker failed on {type(msg).__name__}"):
                self.handle(msg)
        logger.info("Log data worker stopped")

    def handle(self, msg):
        self._handlers[type(msg)](msg)

    # --- Rules ---

    def _apply_rules(self, msg):
        changes = self.ruleset.diff(msg.ruleset)
        self.ruleset = msg.ruleset
        if not changes.has_changes and not changes.restyled:
            return

        self.matcher.apply_changes(changes)
        stale = list(changes.removed) + [rule.id for rule in changes.updated]
        self.extracts.discard(stale)
        self.emit(RulesApplied(changes))

        if changes.needs_rescan and len(self.buffer):
            # Unchanged rules already consumed every line; only new/updated ones scan
            matches = self.matcher.apply(self.buffer.lines(), 0)
            self._collect_extracts(matches, 0)
            self.emit(LogUpdate("", 0, matches, full_rescan=True))

        search_rule = next((r for r in changes.added + changes.updated if r.id == SEARCH_ID), None)
        if search_rule is not None:
            self.search.set_pattern(search_rule.pattern)
            self._emit_full_search()

        if stale or changes.needs_rescan:
            self.emit(ExtractsUpdated(self.extracts.snapshot()))

    # --- Data ---

    def _append_raw(self, msg):
        parts = (self._partial + self.decoder.decode(msg.data)).split("\n")
        # The last piece has no terminator yet; hold it until it does
        self._partial = parts.pop()
        lines = self.matcher.exclude(parts)
        if not lines:
            return

        first = len(self.buffer)
        for line in lines:
            self.buffer.insert(LogEntry(self.source_label, self.clock.now(), line + "\n"))

        matches = self.matcher.apply(lines, first)
        found = self.search.append(lines, first)
        self._collect_extracts(matches, first)
        self.emit(LogUpdate("".join(line + "\n" for line in lines), first, matches))
        if found:
            self.emit(SearchResults(self.search.query, tuple(self.search.results), tuple(found)))
        if any(m.extracted_text is not None for ms in matches.values() for m in ms):
            self.emit(ExtractsUpdated(self.extracts.snapshot()))

    def _insert_entries(self, msg):
        found_any = []
        extracted = False
        for entry in msg.entries:
            if self.matcher.is_excluded(entry.line):
                continue
            offset = self.buffer.insert(entry)
            span = self.buffer.entry_span(entry)
            lines = self.buffer.lines(offset, offset + span)

            matches = self.matcher.scan(lines)
            self.extracts.shift(offset, span)
            extracted = self._collect_extracts(matches, offset) or extracted
            found_any = [line + span if line >= offset else line for line in found_any]
            found_any.extend(self.search.insert(offset, lines))
            self.emit(LogUpdate("".join(line + "\n" for line in lines), offset, matches, inserted=True))

        self.matcher.mark_consumed(len(self.buffer))
        if found_any:
            self.emit(SearchResults(self.search.query, tuple(self.search.results), tuple(sorted(found_any))))
        if extracted:
            self.emit(ExtractsUpdated(self.extracts.snapshot()))

    def _collect_extracts(self, matches, base_line):
        extracted = False
        for rule_matches in matches.values():
            if any(m.extracted_text is not None for m in rule_matches):
                self.extracts.add(rule_matches, base_line)
                extracted = True
        return extracted

    def _clear(self, msg):
        if msg.reload:
            # New decode epoch: nothing from before the truncation survives
            self.decoder.reset()
            self._partial = ""
        self.buffer.clear()
        self.matcher.reset()
        self.search.clear()
        self.extracts.clear()
        self.emit(LogCleared(msg.reload))

    # --- Queries ---

    def _search(self, msg):
        self.search.set_query(msg.query, msg.is_regex, msg.case_sensitive)
        self._emit_full_search()

    def _emit_full_search(self):
        lines = self.search.full(self.buffer.lines())
        self.emit(SearchResults(self.search.query, tuple(lines), tuple(lines), full=True))

    def _offset_for_timestamp(self, msg):
        offset = self.buffer.offset_for(int(msg.seconds * NANOS_PER_SECOND))
        self.emit(ScrollTo(offset))


class SourceReader:
    """
    Cancellable periodic task that polls one LogSource and forwards what it
    reads to the processing worker.
    """

    def __init__(self, source, post, interval=0.5):
        self.source = source
        self.post = post
        self.interval = interval
        self._stop = threading.Event()
        self._thread = None

    def start(self):
        self._thread = threading.Thread(target=self._run, name=f"source-reader-{self.source.name}", daemon=True)
        self._thread.start()

    def stop(self, timeout=2.0):
        self._stop.set()
        if self._thread is None:
            self.source.stop()
            return
        self._thread.join(timeout)

    @property
    def is_running(self):
        return self._thread is not None and self._thread.is_alive()

    def _run(self):
        logger.info(f"Source reader for '{self.source.name}' started")
        while not self._stop.is_set():
            self.poll_once()
            self._stop.wait(self.interval)
        self.source.stop()
        logger.info(f"Source reader for '{self.source.name}' stopped")

    def poll_once(self):
        try:
            self.source.start()
        except RemoteConnectError as e:
            logger.error(f"Could not initialise '{self.source.name}': {e}")
            self.post(ReportFailure(str(e)))
            # Streams that are already open keep delivering
            if not self.source.is_open:
                return

        change = self.source.check_changes()
        if change is SourceChange.RELOAD:
            self.post(Clear(reload=True))
            return
        if change is not SourceChange.OK:
            return

        data = self.source.read()
        if data:
            self.post(Entries(tuple(data)) if self.source.ordered else RawData(data))
        for error in self.source.take_failures():
            logger.error(f"Part of '{self.source.name}' failed: {error}")
            self.post(ReportFailure(str(error)))
