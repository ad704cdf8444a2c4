import bisect
import re

from loguru import logger

from log_monitor.core.errors import PatternCompileError
from log_monitor.core.matcher import compile_pattern


class SearchEngine:
    """
    Line index of the current search query.

    `full` rescans every buffer line, `incremental` only lines appended since
    the last scan, and `insert` handles lines placed in the middle of the
    buffer by shifting the existing results first.
    """

    def __init__(self):
        self.query = ""
        self.pattern = None
        self.results = []

    def set_query(self, query, is_regex=False, case_sensitive=False):
        self.query = query or ""
        self.results = []
        if not self.query:
            self.pattern = None
            return False

        source = self.query if is_regex else re.escape(self.query)
        flags = 0 if case_sensitive else re.IGNORECASE
        try:
            self.pattern = compile_pattern(source, flags)
        except PatternCompileError as e:
            logger.warning(f"Search disabled: {e}")
            self.pattern = None
            return False
        return True

    def set_pattern(self, pattern):
        """Uses a ready-made regex source, e.g. the pattern of the search rule."""
        return self.set_query(pattern, is_regex=True, case_sensitive=True)

    def _scan(self, lines, first_line):
        if self.pattern is None:
            return []
        return [first_line + i for i, line in enumerate(lines) if self.pattern.search(line)]

    def full(self, lines):
        self.results = self._scan(lines, 0)
        return list(self.results)

    def incremental(self, lines, first_line):
        """Scans lines[first_line:] and returns only the new match indices."""
        return self.append(lines[first_line:], first_line)

    def append(self, new_lines, first_line):
        found = self._scan(new_lines, first_line)
        self.results.extend(found)
        return found

    def insert(self, offset, inserted_lines):
        count = len(inserted_lines)
        idx = bisect.bisect_left(self.results, offset)
        self.results[idx:] = [line + count for line in self.results[idx:]]
        found = self._scan(inserted_lines, offset)
        self.results[idx:idx] = found
        return found

    def clear(self):
        self.results = []
