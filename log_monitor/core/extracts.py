import bisect
from dataclasses import dataclass, field


@dataclass
class ExtractGroup:
    rule_id: str
    text: str
    count: int = 0
    positions: list = field(default_factory=list)


class ExtractIndex:
    """Aggregates extracted sub-matches by (rule_id, extracted_text)."""

    def __init__(self):
        self.groups = {}

    def add(self, matches, base_line=0):
        for m in matches:
            if m.extracted_text is None:
                continue
            key = (m.rule_id, m.extracted_text)
            group = self.groups.get(key)
            if group is None:
                group = self.groups[key] = ExtractGroup(m.rule_id, m.extracted_text)
            group.count += 1
            bisect.insort(group.positions, base_line + m.line)

    def shift(self, from_line, count):
        """Moves positions at or after `from_line` down by `count` lines."""
        for group in self.groups.values():
            idx = bisect.bisect_left(group.positions, from_line)
            group.positions[idx:] = [p + count for p in group.positions[idx:]]

    def discard(self, rule_ids):
        rule_ids = set(rule_ids)
        for key in [k for k in self.groups if k[0] in rule_ids]:
            del self.groups[key]

    def rule_count(self, rule_id):
        return sum(g.count for g in self.groups.values() if g.rule_id == rule_id)

    def snapshot(self):
        return {key: ExtractGroup(g.rule_id, g.text, g.count, list(g.positions))
                for key, g in self.groups.items()}

    def clear(self):
        self.groups.clear()
