import enum
import uuid
from dataclasses import dataclass, field, replace

SEARCH_ID = "ba5b70bb-57b9-4f5c-95c9-e80953ae113e"
UNNAMED_RULE = "Unnamed rule"


class RuleKind(enum.Enum):
    HIGHLIGHT = "highlight"
    EXCLUDE = "exclude"


@dataclass(frozen=True)
class Rule:
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = None
    color: str = None
    pattern: str = None
    extractor_pattern: str = None
    kind: RuleKind = RuleKind.HIGHLIGHT
    is_system: bool = False

    @property
    def display_name(self):
        return self.name or UNNAMED_RULE

    def matches_same_as(self, other):
        """True when both rules would produce the same matches."""
        return (self.pattern == other.pattern
                and self.kind == other.kind
                and self.extractor_pattern == other.extractor_pattern)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "color": self.color,
            "pattern": self.pattern,
            "extractor_pattern": self.extractor_pattern,
            "kind": self.kind.value,
            "is_system": self.is_system,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=str(data["id"]),
            name=data.get("name") or None,
            color=data.get("color") or None,
            pattern=data.get("pattern") or None,
            extractor_pattern=data.get("extractor_pattern") or None,
            kind=RuleKind(data.get("kind", RuleKind.HIGHLIGHT.value)),
            is_system=bool(data.get("is_system", False)),
        )


@dataclass(frozen=True)
class RuleChanges:
    """
    Delta between two rule sets.

    added, removed and updated are disjoint. unchanged holds the rules whose
    matching fields are identical; restyled lists the ids among them whose
    name or colour changed (presentation only, no re-matching needed).
    """
    added: tuple = ()
    removed: tuple = ()
    updated: tuple = ()
    unchanged: tuple = ()
    restyled: tuple = ()

    @property
    def has_changes(self):
        return bool(self.added or self.removed or self.updated)

    @property
    def needs_rescan(self):
        return bool(self.added or self.updated)


def diff_rules(previous, desired):
    """
    Merge-walks two id-sorted rule sequences in O(n + m).

    Rules only on the left are removed, rules only on the right are added and
    rules present on both sides are updated when pattern, kind or extractor
    differ.
    """
    added, removed, updated, unchanged, restyled = [], [], [], [], []
    i = j = 0
    while i < len(previous) and j < len(desired):
        left, right = previous[i], desired[j]
        if left.id < right.id:
            removed.append(left.id)
            i += 1
        elif left.id > right.id:
            added.append(right)
            j += 1
        else:
            if left.matches_same_as(right):
                unchanged.append(right)
                if left.name != right.name or left.color != right.color:
                    restyled.append(right.id)
            else:
                updated.append(right)
            i += 1
            j += 1

    removed.extend(rule.id for rule in previous[i:])
    added.extend(desired[j:])
    return RuleChanges(tuple(added), tuple(removed), tuple(updated), tuple(unchanged), tuple(restyled))


class RuleSet:
    """Immutable, id-sorted collection of rules. Replaced wholesale, never edited."""

    def __init__(self, rules=()):
        ordered = tuple(sorted(rules, key=lambda rule: rule.id))
        for left, right in zip(ordered, ordered[1:]):
            if left.id == right.id:
                raise ValueError(f"Duplicate rule id {left.id}")
        self._rules = ordered

    def __iter__(self):
        return iter(self._rules)

    def __len__(self):
        return len(self._rules)

    def __getitem__(self, index):
        return self._rules[index]

    def __eq__(self, other):
        return isinstance(other, RuleSet) and self._rules == other._rules

    def get(self, rule_id):
        for rule in self._rules:
            if rule.id == rule_id:
                return rule
        return None

    def ids(self):
        return [rule.id for rule in self._rules]

    def diff(self, desired):
        return diff_rules(self._rules, tuple(desired))

    def with_rule(self, rule):
        """Returns a new set with `rule` added or replacing the rule with the same id."""
        return RuleSet([r for r in self._rules if r.id != rule.id] + [rule])

    def without(self, rule_id):
        return RuleSet(r for r in self._rules if r.id != rule_id)


def search_rule(pattern=None):
    return Rule(id=SEARCH_ID, name="Search", color="rgb(255,222,0)", pattern=pattern, is_system=True)


def default_rules():
    return [
        Rule(name="Warnings", color="rgb(207,111,57)", pattern=r"(?i)\bwarn(ing)?\b"),
        Rule(name="Errors", color="rgb(244,94,94)", pattern=r"(?i)\b(error|fatal|failed)\b"),
        search_rule(),
    ]


def with_pattern(rule, pattern):
    return replace(rule, pattern=pattern or None)
