"""Matcher library tests."""

from __future__ import annotations

import unittest

from correlation_engine.matching.matchers import (
    BrokenRuleMatcher,
    ExactMatcher,
    ExpressionMatcher,
    FuzzyMatcher,
    RuleConfigurationError,
    build_matcher,
    validate_rule_definition,
)


def _fuzzy(threshold: float, algorithm: str = "jaro_winkler"):
    return build_matcher(
        rule_label="1:name",
        match_type="fuzzy",
        source_attribute="cn",
        target_attribute="full_name",
        normalize=True,
        algorithm=algorithm,
        threshold=threshold,
    )


class ExactMatcherTests(unittest.TestCase):
    def test_identical_values_score_one_after_normalization(self) -> None:
        matcher = ExactMatcher("mail", "email", normalize=True)
        for value in ["a@x.com", "  MiXeD  ", "Straße", "ﬁle"]:
            result = matcher.evaluate({"mail": value}, {"email": value})
            self.assertEqual(result.score, 1.0, value)
        self.assertEqual(matcher.evaluate({"mail": " A@X.com"}, {"email": "a@x.com"}).score, 1.0)

    def test_normalize_flag_off_compares_raw_values(self) -> None:
        matcher = ExactMatcher("mail", "email", normalize=False)
        self.assertEqual(matcher.evaluate({"mail": "A@X.com"}, {"email": "a@x.com"}).score, 0.0)

    def test_any_multi_value_pair_matches(self) -> None:
        matcher = ExactMatcher("mail", "email", normalize=True)
        result = matcher.evaluate({"mail": ["old@x.com", "new@x.com"]}, {"email": ["NEW@x.com"]})
        self.assertEqual(result.score, 1.0)

    def test_missing_attribute_is_not_evaluated(self) -> None:
        matcher = ExactMatcher("mail", "email", normalize=True)
        self.assertFalse(matcher.evaluate({}, {"email": "a@x.com"}).evaluated)
        self.assertFalse(matcher.evaluate({"mail": "a@x.com"}, {"email": "  "}).evaluated)

    def test_blank_values_never_match_each_other(self) -> None:
        matcher = ExactMatcher("mail", "email", normalize=True)
        for value in ["", "   ", "\t"]:
            result = matcher.evaluate({"mail": value}, {"email": value})
            self.assertIsNone(result.score, repr(value))


class FuzzyMatcherTests(unittest.TestCase):
    def test_similarity_above_threshold_contributes_its_score(self) -> None:
        result = _fuzzy(0.8).evaluate({"cn": "Jon Smith"}, {"full_name": "John Smith"})
        self.assertGreaterEqual(result.score, 0.9)
        self.assertLessEqual(result.score, 1.0)

    def test_similarity_below_threshold_scores_zero(self) -> None:
        result = _fuzzy(0.8).evaluate({"cn": "Jon Smith"}, {"full_name": "Alice Jones"})
        self.assertEqual(result.score, 0.0)
        self.assertTrue(result.evaluated)

    def test_score_is_monotonic_in_similarity(self) -> None:
        matcher = _fuzzy(0.5, algorithm="levenshtein")
        target = {"full_name": "abcdefghij"}
        previous = -1.0
        for source in ["zzzzzzzzzz", "abzzzzzzzz", "abcdezzzzz", "abcdefghzz", "abcdefghij"]:
            score = matcher.evaluate({"cn": source}, target).score
            self.assertGreaterEqual(score, previous, source)
            previous = score
        self.assertEqual(previous, 1.0)

    def test_fuzzy_matcher_type(self) -> None:
        self.assertIsInstance(_fuzzy(0.8), FuzzyMatcher)


class ExpressionMatcherTests(unittest.TestCase):
    def test_expression_result_maps_to_full_or_no_match(self) -> None:
        matcher = build_matcher(
            rule_label="3:expr",
            match_type="expression",
            source_attribute="*",
            target_attribute="*",
            normalize=True,
            expression="source.email == target.email",
        )
        self.assertIsInstance(matcher, ExpressionMatcher)
        self.assertEqual(matcher.evaluate({"email": "A@x.com"}, {"email": "a@X.com"}).score, 1.0)
        self.assertEqual(matcher.evaluate({"email": "a@x.com"}, {"email": "b@x.com"}).score, 0.0)

    def test_runtime_error_scores_zero_and_logs(self) -> None:
        matcher = build_matcher(
            rule_label="4:expr",
            match_type="expression",
            source_attribute="*",
            target_attribute="*",
            normalize=False,
            expression='source.age contains "1"',
        )
        with self.assertLogs("correlation_engine.matching.matchers", level="WARNING") as logs:
            result = matcher.evaluate({"age": 41}, {})
        self.assertEqual(result.score, 0.0)
        self.assertIn("correlation.expression_runtime_error", logs.output[0])

    def test_broken_rule_never_matches(self) -> None:
        matcher = BrokenRuleMatcher(rule_label="5:broken", error="Invalid expression")
        with self.assertLogs("correlation_engine.matching.matchers", level="ERROR"):
            self.assertEqual(matcher.evaluate({"a": 1}, {"a": 1}).score, 0.0)


class RuleDefinitionValidationTests(unittest.TestCase):
    def _validate(self, **overrides) -> None:
        values = {
            "match_type": "exact",
            "algorithm": None,
            "expression": None,
            "threshold": 0.85,
            "weight": 1.0,
            "tier": 1,
        }
        values.update(overrides)
        validate_rule_definition(**values)

    def test_valid_definitions_pass(self) -> None:
        self._validate()
        self._validate(match_type="fuzzy", algorithm="levenshtein")
        self._validate(match_type="expression", expression="source.a == target.a")

    def test_configuration_errors_are_rejected(self) -> None:
        cases = [
            {"match_type": "regex"},
            {"match_type": "fuzzy"},
            {"match_type": "fuzzy", "algorithm": "soundex"},
            {"algorithm": "levenshtein"},
            {"match_type": "expression"},
            {"match_type": "expression", "expression": "source.a =="},
            {"expression": "source.a == target.a"},
            {"threshold": 1.5},
            {"threshold": -0.1},
            {"weight": -1.0},
            {"tier": 0},
        ]
        for overrides in cases:
            with self.assertRaises(RuleConfigurationError, msg=str(overrides)):
                self._validate(**overrides)

    def test_build_matcher_rejects_unknown_match_type(self) -> None:
        with self.assertRaises(RuleConfigurationError):
            build_matcher(
                rule_label="9:x",
                match_type="phonetic",
                source_attribute="a",
                target_attribute="b",
                normalize=True,
            )


if __name__ == "__main__":
    unittest.main()
