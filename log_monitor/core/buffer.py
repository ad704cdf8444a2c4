import bisect
import re
import time
from dataclasses import dataclass
from datetime import datetime

NANOS_PER_SECOND = 1_000_000_000

# Kubernetes prefixes each line with an RFC3339Nano timestamp when timestamps=true
TIMESTAMP_PATTERN = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(?P<frac>\d{1,9}))?(?P<tz>Z|[+-]\d{2}:\d{2}) ?"
)


def parse_timestamp(line):
    """
    Splits a timestamped log line.

    Returns (nanoseconds since the epoch, remaining text), or (None, line)
    when the line does not start with a timestamp.
    """
    m = TIMESTAMP_PATTERN.match(line)
    if not m:
        return None, line
    tz = "+00:00" if m.group("tz") == "Z" else m.group("tz")
    try:
        dt = datetime.fromisoformat(m.group("base") + tz)
    except ValueError:
        return None, line
    frac = (m.group("frac") or "").ljust(9, "0")
    return int(dt.timestamp()) * NANOS_PER_SECOND + int(frac), line[m.end():]


@dataclass(frozen=True)
class LogEntry:
    source_label: str
    timestamp: int
    text: str
    is_synthetic_blank: bool = False
    # Display tag of the originating stream; never part of `text`
    prefix: str = ""

    @property
    def line(self):
        """The entry as one display line, without terminators."""
        return self.prefix + self.text.rstrip("\r\n").lstrip("\r\n")

    @property
    def needs_leading_blank(self):
        # A leading terminator is swallowed by line-oriented renderers unless
        # the entry is itself nothing but an empty line
        return self.text[:1] in ("\r", "\n") and self.text not in ("\n", "\r\n")


class OrderedLogBuffer:
    """
    Timestamp-ordered store of log entries, one entry per display line.

    Entries with equal timestamps keep their arrival order: a new entry goes
    to the tail of its timestamp group.
    """

    def __init__(self):
        self._timestamps = []
        self._entries = []

    def __len__(self):
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries)

    def __getitem__(self, index):
        return self._entries[index]

    @property
    def timestamps(self):
        return tuple(self._timestamps)

    def insert(self, entry):
        """Inserts `entry` and returns the display offset its text starts at."""
        offset = bisect.bisect_right(self._timestamps, entry.timestamp)
        if entry.needs_leading_blank:
            blank = LogEntry(entry.source_label, entry.timestamp, "", is_synthetic_blank=True)
            self._timestamps.insert(offset, entry.timestamp)
            self._entries.insert(offset, blank)
            self._timestamps.insert(offset + 1, entry.timestamp)
            self._entries.insert(offset + 1, entry)
        else:
            self._timestamps.insert(offset, entry.timestamp)
            self._entries.insert(offset, entry)
        return offset

    def entry_span(self, entry):
        """Number of display lines an inserted entry occupies."""
        return 2 if entry.needs_leading_blank else 1

    def offset_for(self, timestamp):
        """Display offset of the first entry at or after `timestamp` (ns)."""
        return bisect.bisect_left(self._timestamps, timestamp)

    def lines(self, start=0, end=None):
        return [entry.line for entry in self._entries[start:end]]

    def text(self):
        return "".join(entry.line + "\n" for entry in self._entries)

    def clear(self):
        self._timestamps.clear()
        self._entries.clear()


class ArrivalClock:
    """Monotonic nanosecond timestamps for sources that carry none."""

    def __init__(self):
        self._last = 0

    def now(self):
        self._last = max(self._last, time.time_ns())
        return self._last
