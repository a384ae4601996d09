import datetime
import unittest

from flagstone import Condition, ConfigurationError, Context, Rule, match_condition, matches


def _cond(attribute, operator, value):
    return Condition.from_dict({"attribute": attribute, "operator": operator, "value": value})


class TestOperators(unittest.TestCase):
    def test_operators(self):
        utc = datetime.timezone.utc
        cases = [
            # attribute value, operator, condition value, expected
            ("US", "equals", "US", True),
            ("US", "equals", "us", False),
            (5, "equals", 5, True),
            (5, "equals", 5.0, True),
            ("5", "equals", 5, True),
            (5, "equals", "5", True),
            ("five", "equals", 5, False),
            (True, "equals", True, True),
            (True, "equals", 1, False),
            (1, "equals", True, False),
            ([1], "equals", 1, False),
            ("US", "not-equals", "FR", True),
            ("US", "not-equals", "US", False),
            (True, "not-equals", "US", False),  # incompatible kinds never match
            ("US", "in", ["US", "CA"], True),
            ("FR", "in", ["US", "CA"], False),
            ("3", "in", [1, 2, 3], True),
            (["a", "b"], "in", ["b", "c"], True),
            (["a"], "in", ["b", "c"], False),
            ("FR", "not-in", ["US", "CA"], True),
            ("US", "not-in", ["US", "CA"], False),
            (True, "not-in", ["US", "CA"], False),
            ("anything", "not-in", [], True),
            ("hello world", "contains", "lo w", True),
            ("hello world", "contains", "xyz", False),
            (["beta", "staff"], "contains", "staff", True),
            ({"beta", "staff"}, "contains", "admin", False),
            ([1, 2], "contains", "2", True),
            (5, "contains", "5", False),
            (10, "greater-than", 5, True),
            ("10", "greater-than", 5, True),
            (5, "greater-than", 5, False),
            ("ten", "greater-than", 5, False),
            (3, "less-than", 5.5, True),
            (True, "less-than", 5, False),
            ("2.5", "less-than", "10", True),
            (datetime.datetime(2025, 1, 2, tzinfo=utc), "greater-than", "2025-01-01T00:00:00+00:00", True),
            (datetime.datetime(2025, 1, 2, tzinfo=utc), "less-than", "2025-01-01T00:00:00+00:00", False),
            (datetime.date(2025, 1, 1), "equals", "2025-01-01T00:00:00+00:00", True),
            ("2025-06-01T00:00:00+02:00", "greater-than", "2025-05-31T23:00:00+00:00", False),
            ("2025-06-01T00:00:00+02:00", "less-than", "2025-05-31T23:00:00+00:00", True),
            (datetime.datetime(2025, 1, 2), "greater-than", "2025-01-01T00:00:00+00:00", False),  # naive
            (datetime.datetime(2025, 1, 2, tzinfo=utc), "greater-than", 10**400, False),  # beyond float range
            (datetime.date(2025, 1, 1), "equals", 10**400, False),
            (10**400, "greater-than", "2025-01-01T00:00:00+00:00", False),
            ("user@example.com", "regex-match", r"@example\.com$", True),
            ("user@example.org", "regex-match", r"@example\.com$", False),
            (42, "regex-match", r"\d+", False),
            ("1.4.0", "semver-compare", ">=1.2.0", True),
            ("1.1.9", "semver-compare", ">=1.2.0", False),
            ("1.2.0", "semver-compare", "1.2", True),
            ("2.0.0", "semver-compare", "!=2.0.0", False),
            ("1.10.0", "semver-compare", ">1.9.0", True),
            ("0.9.0", "semver-compare", "<1.0.0", True),
            ("1.0.0", "semver-compare", "<=1.0.0", True),
            ("not a version", "semver-compare", ">=1.0.0", False),
            (100, "semver-compare", ">=1.0.0", False),
        ]
        for actual, operator, expected, result in cases:
            with self.subTest((actual, operator, expected)):
                ctx = Context("u1", {"attr": actual})
                self.assertEqual(match_condition(_cond("attr", operator, expected), ctx), result)

    def test_missing_attribute_never_matches(self):
        ctx = Context("u1", {"other": 1, "nothing": None})
        for operator, value in [
            ("equals", 1),
            ("not-equals", 1),
            ("in", [1]),
            ("not-in", [1]),
            ("contains", 1),
            ("greater-than", 0),
            ("less-than", 2),
            ("regex-match", ".*"),
            ("semver-compare", ">=0.0.0"),
        ]:
            with self.subTest(operator):
                self.assertFalse(match_condition(_cond("missing", operator, value), ctx))
                self.assertFalse(match_condition(_cond("nothing", operator, value), ctx))

    def test_key_attribute(self):
        ctx = Context("u1", {"key": "shadowed"})
        self.assertTrue(match_condition(_cond("key", "equals", "u1"), ctx))

    def test_invalid_conditions(self):
        cases = [
            ("in", "US"),
            ("not-in", 5),
            ("regex-match", "("),
            ("regex-match", 5),
            ("semver-compare", ">=not.a.version!"),
            ("greater-than", [1]),
            ("contains", {"a": 1}),
        ]
        for operator, value in cases:
            with self.subTest((operator, value)):
                with self.assertRaises(ConfigurationError):
                    _cond("attr", operator, value)
        with self.assertRaisesRegex(ConfigurationError, "requires an attribute"):
            Condition.from_dict({"operator": "equals", "value": 1})

    def test_unknown_operator_at_evaluation(self):
        with self.assertRaisesRegex(ConfigurationError, "unknown operator"):
            match_condition(Condition("bogus", 1, "attr"), Context("u1", {"attr": 1}))  # type: ignore

    def test_segment_match_needs_resolver(self):
        with self.assertRaises(ConfigurationError):
            match_condition(Condition("segment-match", "beta"), Context("u1"))


class TestRule(unittest.TestCase):
    def test_and_semantics(self):
        rule = Rule(
            conditions=(
                _cond("country", "equals", "US"),
                _cond("age", "greater-than", 18),
            ),
            variation="on",
        )
        cases = [
            ({"country": "US", "age": 30}, True),
            ({"country": "US", "age": 10}, False),
            ({"country": "FR", "age": 30}, False),
            ({"country": "US"}, False),
        ]
        for attributes, expected in cases:
            with self.subTest(attributes):
                self.assertEqual(matches(rule, Context("u1", attributes)), expected)

    def test_empty_rule_matches_everything(self):
        self.assertTrue(matches(Rule(variation="on"), Context("u1")))
