import unittest

from log_monitor.core.rules import (
    SEARCH_ID, Rule, RuleKind, RuleSet, default_rules, diff_rules, search_rule, with_pattern,
)


def rule(rule_id, pattern="x", **kwargs):
    return Rule(id=rule_id, pattern=pattern, **kwargs)


class TestDiffRules(unittest.TestCase):
    def test_partitions_added_removed_updated(self):
        previous = [rule("a"), rule("b"), rule("c", "old")]
        desired = [rule("b"), rule("c", "new"), rule("d")]
        changes = diff_rules(previous, desired)

        self.assertEqual([r.id for r in changes.added], ["d"])
        self.assertEqual(list(changes.removed), ["a"])
        self.assertEqual([r.id for r in changes.updated], ["c"])
        self.assertEqual([r.id for r in changes.unchanged], ["b"])

    def test_sets_are_disjoint(self):
        previous = [rule(str(i), f"p{i}") for i in range(0, 10, 2)]
        desired = [rule(str(i), f"p{i}" if i % 4 else "changed") for i in range(0, 10, 3)]
        changes = diff_rules(previous, desired)
        added = {r.id for r in changes.added}
        removed = set(changes.removed)
        updated = {r.id for r in changes.updated}
        self.assertFalse(added & removed)
        self.assertFalse(added & updated)
        self.assertFalse(removed & updated)

    def test_same_input_twice_yields_no_changes(self):
        rules = RuleSet([rule("a"), rule("b", kind=RuleKind.EXCLUDE)])
        changes = rules.diff(rules)
        self.assertFalse(changes.has_changes)
        self.assertFalse(changes.needs_rescan)

    def test_kind_and_extractor_changes_are_updates(self):
        previous = [rule("a"), rule("b")]
        desired = [rule("a", kind=RuleKind.EXCLUDE), rule("b", extractor_pattern=r"(\d+)")]
        changes = diff_rules(previous, desired)
        self.assertEqual([r.id for r in changes.updated], ["a", "b"])
        self.assertTrue(changes.needs_rescan)

    def test_name_or_colour_change_is_restyle_only(self):
        previous = [rule("a", name="one", color="#fff")]
        desired = [rule("a", name="two", color="#000")]
        changes = diff_rules(previous, desired)
        self.assertFalse(changes.has_changes)
        self.assertEqual(changes.restyled, ("a",))

    def test_empty_sides(self):
        self.assertEqual([r.id for r in diff_rules([], [rule("a")]).added], ["a"])
        self.assertEqual(diff_rules([rule("a")], []).removed, ("a",))


class TestRuleSet(unittest.TestCase):
    def test_sorted_by_id(self):
        rules = RuleSet([rule("c"), rule("a"), rule("b")])
        self.assertEqual(rules.ids(), ["a", "b", "c"])

    def test_rejects_duplicate_ids(self):
        with self.assertRaises(ValueError):
            RuleSet([rule("a"), rule("a", "y")])

    def test_with_rule_and_without(self):
        rules = RuleSet([rule("a"), rule("b")])
        replaced = rules.with_rule(rule("a", "new"))
        self.assertEqual(replaced.get("a").pattern, "new")
        self.assertEqual(rules.get("a").pattern, "x")
        self.assertEqual(replaced.without("b").ids(), ["a"])

    def test_round_trips_through_dict(self):
        original = Rule(name="Errors", color="rgb(1,2,3)", pattern="err", kind=RuleKind.EXCLUDE)
        self.assertEqual(Rule.from_dict(original.to_dict()), original)


class TestDefaultRules(unittest.TestCase):
    def test_contains_search_rule(self):
        rules = default_rules()
        search = [r for r in rules if r.id == SEARCH_ID]
        self.assertEqual(len(search), 1)
        self.assertTrue(search[0].is_system)
        self.assertIsNone(search[0].pattern)
        self.assertEqual({r.name for r in rules}, {"Warnings", "Errors", "Search"})

    def test_with_pattern_clears_empty(self):
        self.assertIsNone(with_pattern(search_rule("abc"), "").pattern)

    def test_display_name_falls_back(self):
        self.assertEqual(Rule().display_name, "Unnamed rule")


if __name__ == "__main__":
    unittest.main()
