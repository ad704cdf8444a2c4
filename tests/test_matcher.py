import unittest

from log_monitor.core.matcher import RuleMatcher, split_lines
from log_monitor.core.rules import Rule, RuleKind, RuleSet


def matcher_with(*rules):
    matcher = RuleMatcher()
    matcher.apply_changes(RuleSet().diff(RuleSet(rules)))
    return matcher


class TestRuleMatcher(unittest.TestCase):
    def test_second_chunk_does_not_report_first_chunk_match(self):
        matcher = matcher_with(Rule(id="err", pattern="error"))
        first = matcher.apply("no error here\n", 0)
        second = matcher.apply("all good\n", 1)

        self.assertEqual([(m.line, m.start, m.end) for m in first["err"]], [(0, 3, 8)])
        self.assertEqual(second, {})
        self.assertEqual(matcher.rules["err"].consumed_line_offset, 2)

    def test_rescan_only_touches_changed_rules(self):
        matcher = matcher_with(Rule(id="a", pattern="foo"))
        matcher.apply(["foo", "bar"], 0)

        before = RuleSet([Rule(id="a", pattern="foo")])
        after = RuleSet([Rule(id="a", pattern="foo"), Rule(id="b", pattern="bar")])
        matcher.apply_changes(before.diff(after))
        matches = matcher.apply(["foo", "bar"], 0)

        self.assertNotIn("a", matches)
        self.assertEqual([m.line for m in matches["b"]], [1])

    def test_force_full_rescan(self):
        matcher = matcher_with(Rule(id="a", pattern="foo"))
        matcher.apply(["foo"], 0)
        self.assertEqual(len(matcher.apply(["foo"], 0, force_full_rescan=True)["a"]), 1)

    def test_pattern_update_resets_offset(self):
        old = RuleSet([Rule(id="a", pattern="foo")])
        new = RuleSet([Rule(id="a", pattern="ba.")])
        matcher = RuleMatcher()
        matcher.apply_changes(RuleSet().diff(old))
        matcher.apply(["foo bar", "baz"], 0)
        matcher.apply_changes(old.diff(new))
        matches = matcher.apply(["foo bar", "baz"], 0)
        self.assertEqual([(m.line, m.start) for m in matches["a"]], [(0, 4), (1, 0)])

    def test_extractor_first_group_within_match(self):
        matcher = matcher_with(Rule(id="a", pattern=r"user=\w+", extractor_pattern=r"user=(\w+)"))
        matches = matcher.apply(["login user=alice ok", "user=bob"], 0)["a"]
        self.assertEqual([m.extracted_text for m in matches], ["alice", "bob"])

    def test_extractor_without_group_uses_whole_match(self):
        matcher = matcher_with(Rule(id="a", pattern=r"id \d+", extractor_pattern=r"\d+"))
        self.assertEqual(matcher.apply(["id 42"], 0)["a"][0].extracted_text, "42")

    def test_extractor_outside_match_span_is_ignored(self):
        matcher = matcher_with(Rule(id="a", pattern="error", extractor_pattern=r"\d+"))
        self.assertIsNone(matcher.apply(["7 error"], 0)["a"][0].extracted_text)

    def test_invalid_pattern_disables_only_that_rule(self):
        matcher = matcher_with(Rule(id="bad", pattern="(unclosed"), Rule(id="ok", pattern="ok"))
        matches = matcher.apply(["ok"], 0)
        self.assertEqual(list(matches), ["ok"])
        self.assertFalse(matcher.rules["bad"].is_enabled)

    def test_cleared_pattern_keeps_rule_disabled(self):
        matcher = matcher_with(Rule(id="a", pattern=None))
        self.assertIn("a", matcher.rules)
        self.assertEqual(matcher.apply(["anything"], 0), {})

    def test_exclude_rules(self):
        matcher = matcher_with(Rule(id="x", pattern="DEBUG", kind=RuleKind.EXCLUDE), Rule(id="h", pattern="a"))
        self.assertEqual(matcher.exclude(["DEBUG a", "INFO a"]), ["INFO a"])
        self.assertTrue(matcher.is_excluded("DEBUG"))
        self.assertEqual([m.line for m in matcher.apply(["DEBUG a"], 0)["h"]], [0])

    def test_empty_matches_are_skipped(self):
        matcher = matcher_with(Rule(id="a", pattern="x*"))
        matches = matcher.apply(["abc", "xx"], 0)["a"]
        self.assertEqual([(m.line, m.start, m.end) for m in matches], [(1, 0, 2)])

    def test_reset_rescans_from_start(self):
        matcher = matcher_with(Rule(id="a", pattern="a"))
        matcher.apply(["a"], 0)
        matcher.reset()
        self.assertIn("a", matcher.apply(["a"], 0))

    def test_stateless_scan_and_mark_consumed(self):
        matcher = matcher_with(Rule(id="a", pattern="a"))
        self.assertEqual(matcher.scan(["b", "a"], 5)["a"][0].line, 6)
        matcher.mark_consumed(3)
        self.assertEqual(matcher.rules["a"].consumed_line_offset, 3)


class TestSplitLines(unittest.TestCase):
    def test_split(self):
        self.assertEqual(split_lines("a\nb\n"), ["a", "b"])
        self.assertEqual(split_lines("a\nb"), ["a", "b"])
        self.assertEqual(split_lines(""), [])


if __name__ == "__main__":
    unittest.main()
