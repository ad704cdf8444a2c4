import re
from dataclasses import dataclass

from loguru import logger

from log_monitor.core.errors import PatternCompileError
from log_monitor.core.rules import RuleKind


@dataclass(frozen=True)
class SearchMatch:
    line: int
    start: int
    end: int
    rule_id: str = None
    extracted_text: str = None


def compile_pattern(pattern, flags=0):
    try:
        return re.compile(pattern, flags)
    except re.error as e:
        raise PatternCompileError(pattern, e) from e


def split_lines(text):
    """Splits decoded text into lines without terminators; a trailing partial line is kept."""
    if not text:
        return []
    lines = text.split("\n")
    if text.endswith("\n"):
        lines.pop()
    return lines


class ActiveRule:
    """Compiled runtime state of one rule."""

    def __init__(self, rule):
        self.rule_id = rule.id
        self.name = rule.name
        self.kind = rule.kind
        self.regex = self._compile(rule.pattern)
        self.extractor = self._compile(rule.extractor_pattern)
        self.consumed_line_offset = 0

    @staticmethod
    def _compile(pattern):
        if not pattern: return None
        try:
            return compile_pattern(pattern)
        except PatternCompileError as e:
            logger.warning(f"Rule disabled: {e}")
            return None

    @property
    def is_enabled(self):
        return self.regex is not None

    def scan(self, lines, first_line=0):
        matches = []
        for idx, line in enumerate(lines):
            for m in self.regex.finditer(line):
                if m.start() == m.end():
                    continue
                matches.append(SearchMatch(
                    line=first_line + idx,
                    start=m.start(),
                    end=m.end(),
                    rule_id=self.rule_id,
                    extracted_text=self._extract(line, m),
                ))
        return matches

    def _extract(self, line, m):
        if self.extractor is None:
            return None
        em = self.extractor.search(line, m.start(), m.end())
        if em is None:
            return None
        return em.group(1) if em.re.groups else em.group(0)


class RuleMatcher:
    """
    Applies the active rules to incoming text.

    Holds at most one ActiveRule per rule id. Each highlight rule remembers how
    many lines of the current buffer it has already scanned, so a full-buffer
    pass after a rule change only does work for the rules that changed.
    """

    def __init__(self):
        self.rules = {}

    def apply_changes(self, changes):
        for rule_id in changes.removed:
            self.rules.pop(rule_id, None)
        for rule in changes.added:
            self.rules[rule.id] = ActiveRule(rule)
        for rule in changes.updated:
            # Replacing the ActiveRule resets its line offset to 0
            self.rules[rule.id] = ActiveRule(rule)

    def reset(self):
        """Forget scan progress, e.g. after the source was truncated."""
        for rule in self.rules.values():
            rule.consumed_line_offset = 0

    def highlight_rules(self):
        return [r for r in self.rules.values() if r.kind is RuleKind.HIGHLIGHT and r.is_enabled]

    def exclude_rules(self):
        return [r for r in self.rules.values() if r.kind is RuleKind.EXCLUDE and r.is_enabled]

    def is_excluded(self, line):
        return any(rule.regex.search(line) for rule in self.exclude_rules())

    def exclude(self, lines):
        """Drops lines matched by an exclude rule. Lines may keep their terminators."""
        excluders = self.exclude_rules()
        if not excluders:
            return list(lines)
        return [line for line in lines if not any(rule.regex.search(line) for rule in excluders)]

    def apply(self, text, start_line=0, force_full_rescan=False):
        """
        Scans `text` (a string or a list of lines) that covers buffer lines
        starting at `start_line`.

        Each rule skips the lines it already consumed unless
        `force_full_rescan` is set. Returned matches are keyed by rule id and
        their `line` is relative to `start_line`.
        """
        lines = split_lines(text) if isinstance(text, str) else list(text)
        end_line = start_line + len(lines)
        results = {}
        for rule in self.highlight_rules():
            if force_full_rescan:
                skip = 0
            else:
                skip = max(rule.consumed_line_offset - start_line, 0)
            if skip < len(lines):
                matches = rule.scan(lines[skip:], skip)
                if matches:
                    results[rule.rule_id] = matches
            if force_full_rescan:
                rule.consumed_line_offset = end_line
            else:
                rule.consumed_line_offset = max(rule.consumed_line_offset, end_line)
        return results

    def scan(self, lines, first_line=0):
        """Stateless pass of every highlight rule over `lines`."""
        results = {}
        for rule in self.highlight_rules():
            matches = rule.scan(lines, first_line)
            if matches:
                results[rule.rule_id] = matches
        return results

    def mark_consumed(self, line_count):
        for rule in self.highlight_rules():
            rule.consumed_line_offset = line_count
