import bisect
import os
import queue
import re
from dataclasses import replace

from PySide6.QtCore import QObject, QTimer, Signal
from loguru import logger

from .core.decoder import DEFAULT_ENCODINGS
from .core.rules import SEARCH_ID, RuleSet, search_rule, with_pattern
from .core.sources import FileLogSource, RemoteLogSource
from .core.worker import (
    ApplyRules, Clear, ExtractsUpdated, LogCleared, LogDataWorker, LogUpdate,
    OffsetForTimestamp, RulesApplied, ScrollTo, Search, SearchResults,
    SourceFailed, SourceReader,
)
from .utils.helpers import rule_style


class LogViewSession(QObject):
    """
    One open log: a processing worker, the reader polling its source, and a
    timer that forwards worker events to the Qt thread as signals.
    """
    log_updated = Signal(object)          # LogUpdate
    log_cleared = Signal()
    rules_changed = Signal(object)        # RuleChanges
    search_results_ready = Signal(list, bool)  # all result lines, full rescan
    extracts_changed = Signal(object)     # {(rule_id, text): ExtractGroup}
    scroll_requested = Signal(int)        # display offset
    source_failed = Signal(str)

    def __init__(self, source, ruleset, encodings=DEFAULT_ENCODINGS, poll_interval_ms=500, parent=None):
        super().__init__(parent)
        self.source = source
        self.events = queue.Queue()
        self.worker = LogDataWorker(self.events.put, encodings, source_label=source.name)
        self.reader = SourceReader(source, self.worker.post, poll_interval_ms / 1000.0)
        self.worker.post(ApplyRules(ruleset))

        self.line_count = 0
        self.search_results = []
        self.extracts = {}
        self._extract_key = None
        self._extract_index = 0
        self.running = False

        self._timer = QTimer(self)
        self._timer.setInterval(50)
        self._timer.timeout.connect(self.process_events)

        self._dispatch = {
            LogUpdate: self._on_log_update,
            LogCleared: self._on_cleared,
            RulesApplied: lambda e: self.rules_changed.emit(e.changes),
            SearchResults: self._on_search_results,
            ExtractsUpdated: self._on_extracts,
            ScrollTo: lambda e: self.scroll_requested.emit(e.offset),
            SourceFailed: lambda e: self.source_failed.emit(e.message),
        }

    def start(self):
        if self.running: return
        self.running = True
        self.worker.start()
        self.reader.start()
        self._timer.start()
        logger.info(f"Session for '{self.source.name}' started")

    def stop(self):
        if not self.running:
            self.reader.stop()
            return
        self.running = False
        self._timer.stop()
        self.reader.stop()
        self.worker.stop()
        self.process_events()
        logger.info(f"Session for '{self.source.name}' stopped")

    # --- Requests to the worker ---

    def apply_rules(self, ruleset):
        self.worker.post(ApplyRules(ruleset))

    def search(self, query, is_regex=False, case_sensitive=False):
        self.worker.post(Search(query, is_regex, case_sensitive))

    def clear_search(self):
        self.worker.post(Search(""))

    def clear(self):
        self.worker.post(Clear(reload=False))

    def scroll_to_timestamp(self, seconds):
        self.worker.post(OffsetForTimestamp(seconds))

    # --- Events from the worker ---

    def process_events(self):
        handled = 0
        while True:
            try:
                event = self.events.get_nowait()
            except queue.Empty:
                return handled
            self._dispatch[type(event)](event)
            handled += 1

    def _on_log_update(self, event):
        if not event.full_rescan:
            self.line_count += event.text.count("\n")
        self.log_updated.emit(event)

    def _on_cleared(self, event):
        self.line_count = 0
        self.search_results = []
        self.extracts = {}
        self._extract_key = None
        self.log_cleared.emit()

    def _on_search_results(self, event):
        self.search_results = list(event.lines)
        self.search_results_ready.emit(list(event.lines), event.full)

    def _on_extracts(self, event):
        self.extracts = event.groups
        if self._extract_key not in self.extracts:
            self._extract_key = None
        self.extracts_changed.emit(event.groups)

    # --- Extract navigation ---

    def select_extract(self, rule_id, text):
        key = (rule_id, text)
        group = self.extracts.get(key)
        if group is None or not group.positions:
            return None
        self._extract_key = key
        self._extract_index = 0
        return self._scroll_to_extract()

    def next_extract(self):
        return self._step_extract(1)

    def previous_extract(self):
        return self._step_extract(-1)

    def _step_extract(self, step):
        group = self.extracts.get(self._extract_key)
        if group is None or not group.positions:
            return None
        self._extract_index = max(0, min(self._extract_index + step, len(group.positions) - 1))
        return self._scroll_to_extract()

    def _scroll_to_extract(self):
        position = self.extracts[self._extract_key].positions[self._extract_index]
        self.scroll_requested.emit(position)
        return position


class LogController(QObject):
    """
    Handles the open log sessions.
    """
    log_loaded = Signal(str) # session key
    log_closed = Signal(str) # session key

    def __init__(self, config, parent=None):
        super().__init__(parent)
        self.config = config
        self.sessions = {} # {key: LogViewSession}
        self.session_order = []
        self.current_key = None
        self.current_session = None
        self.config.rulesChanged.connect(self.on_rules_changed)

    def open_file(self, filepath, start=True):
        if not filepath: return None
        filepath = os.path.abspath(filepath)
        if filepath in self.sessions:
            self.set_current(filepath)
            return self.sessions[filepath]
        if not os.path.exists(filepath):
            logger.info(f"{filepath} does not exist yet, waiting for it")
        return self._add_session(filepath, FileLogSource(filepath), start)

    def open_pods(self, provider, pods, namespace=None, since_seconds=None,
                  helper=None, artifacts=(), start=True):
        pods = [p for p in pods if p]
        if not pods: return None
        namespace = namespace or self.config.namespace
        key = f"{namespace}/{','.join(pods)}"
        if key in self.sessions:
            self.set_current(key)
            return self.sessions[key]
        source = RemoteLogSource(
            provider, namespace, pods,
            since_seconds=since_seconds if since_seconds is not None else self.config.since_seconds,
            encodings=self.config.encodings, helper=helper, artifacts=artifacts,
        )
        return self._add_session(key, source, start)

    def _add_session(self, key, source, start):
        session = LogViewSession(
            source, self.config.ruleset(),
            encodings=self.config.encodings,
            poll_interval_ms=self.config.poll_interval_ms,
            parent=self,
        )
        self.sessions[key] = session
        self.session_order.append(key)
        self.set_current(key)
        if start:
            session.start()
        self.log_loaded.emit(key)
        return session

    def set_current(self, key):
        if key in self.sessions:
            self.current_key = key
            self.current_session = self.sessions[key]
            return True
        return False

    def close(self, key):
        session = self.sessions.pop(key, None)
        if session is None:
            return False
        session.stop()
        if key in self.session_order:
            self.session_order.remove(key)

        if self.current_key == key:
            self.current_key = None
            self.current_session = None
            if self.session_order:
                self.set_current(self.session_order[0])

        self.log_closed.emit(key)
        return True

    def close_all(self):
        for key in list(self.sessions):
            self.close(key)

    def apply_rules(self, ruleset):
        for session in self.sessions.values():
            session.apply_rules(ruleset)

    def on_rules_changed(self, rules):
        self.apply_rules(RuleSet(rules))


class RuleController(QObject):
    """
    The editable rule list, persisted through ConfigManager.
    """
    rules_changed = Signal(object) # list of Rule

    def __init__(self, config, parent=None):
        super().__init__(parent)
        self.config = config
        self.rules = list(config.rules)
        if not any(r.id == SEARCH_ID for r in self.rules):
            self.rules.append(search_rule())

    def get(self, rule_id):
        return next((r for r in self.rules if r.id == rule_id), None)

    def ruleset(self):
        return RuleSet(self.rules)

    def add_rule(self, rule):
        if self.get(rule.id) is not None:
            raise ValueError(f"Duplicate rule id {rule.id}")
        self.rules.append(rule)
        self._commit()
        return rule

    def update_rule(self, rule_id, **fields):
        for i, rule in enumerate(self.rules):
            if rule.id == rule_id:
                self.rules[i] = replace(rule, **fields)
                self._commit()
                return self.rules[i]
        return None

    def remove_rule(self, rule_id):
        rule = self.get(rule_id)
        if rule is None or rule.is_system:
            return False
        self.rules.remove(rule)
        self._commit()
        return True

    def set_rules(self, rules):
        keep = [r for r in self.rules if r.is_system and not any(n.id == r.id for n in rules)]
        self.rules = list(rules) + keep
        self._commit()

    def set_search_pattern(self, query):
        pattern = "(?i)" + re.escape(query) if query else None
        rule = self.get(SEARCH_ID)
        if rule is not None and rule.pattern == pattern:
            return
        self.rules = [r for r in self.rules if r.id != SEARCH_ID] + [with_pattern(rule or search_rule(), pattern)]
        self._commit()

    def style_for(self, rule_id):
        rule = self.get(rule_id)
        return rule_style(rule.color if rule else None, self.config.is_dark_mode)

    def _commit(self):
        self.config.rules = self.rules
        self.rules_changed.emit(list(self.rules))


class SearchController(QObject):
    search_results_ready = Signal(list, str) # results, query

    def __init__(self, parent=None):
        super().__init__(parent)
        self.search_results = []
        self.history = []
        self.last_query = ""
        self.last_case_sensitive = False
        self._session = None

    def perform_search(self, session, query, is_regex=False, case_sensitive=False):
        self._attach(session)
        if not session or not query:
            self.search_results = []
            self.last_query = ""
            if session: session.clear_search()
            self.search_results_ready.emit([], query or "")
            return

        self.last_query = query
        self.last_case_sensitive = case_sensitive
        self._add_to_history(query)
        session.search(query, is_regex, case_sensitive)

    def _attach(self, session):
        if session is self._session: return
        if self._session is not None:
            self._session.search_results_ready.disconnect(self.on_results)
        self._session = session
        if session is not None:
            session.search_results_ready.connect(self.on_results)

    def on_results(self, lines, full):
        self.search_results = list(lines)
        self.search_results_ready.emit(list(lines), self.last_query)

    def find_next(self, current_line, wrap=True):
        if not self.search_results: return None

        idx = bisect.bisect_right(self.search_results, current_line)
        if idx >= len(self.search_results):
            return self.search_results[0] if wrap else None
        return self.search_results[idx]

    def find_previous(self, current_line, wrap=True):
        if not self.search_results: return None

        idx = bisect.bisect_left(self.search_results, current_line) - 1
        if idx < 0:
            return self.search_results[-1] if wrap else None
        return self.search_results[idx]

    def _add_to_history(self, query):
        if query in self.history:
            self.history.remove(query)
        self.history.insert(0, query)
        if len(self.history) > 10:
            self.history.pop()

    def get_history(self):
        return self.history
