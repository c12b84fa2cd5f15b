"""Attribute normalization and stringification tests."""

from __future__ import annotations

import unittest
from datetime import date, datetime, timezone
from decimal import Decimal

from correlation_engine.matching.normalize import attribute_values, normalize_value, stringify_attribute


class AttributeNormalizerTests(unittest.TestCase):
    def test_normalize_trims_and_casefolds(self) -> None:
        self.assertEqual(normalize_value("  Jane.Doe@Example.COM \t"), "jane.doe@example.com")

    def test_normalize_applies_nfkc_and_full_casefold(self) -> None:
        # Fullwidth letters fold to ASCII; sharp s case-folds to "ss".
        self.assertEqual(normalize_value("ＡＢＣ"), "abc")
        self.assertEqual(normalize_value("Straße"), "strasse")

    def test_normalize_disabled_passes_value_through(self) -> None:
        self.assertEqual(normalize_value("  Mixed Case ", enabled=False), "  Mixed Case ")

    def test_normalize_is_idempotent(self) -> None:
        samples = ["  Ǆemal ", "ﬁle", "İstanbul", "ΣΊΣΥΦΟΣ", "Ⅻ", " padded ", "plain"]
        for sample in samples:
            once = normalize_value(sample)
            self.assertEqual(normalize_value(once), once, sample)

    def test_stringify_scalars_use_stable_format(self) -> None:
        self.assertEqual(stringify_attribute(True), "true")
        self.assertEqual(stringify_attribute(False), "false")
        self.assertEqual(stringify_attribute(42), "42")
        self.assertEqual(stringify_attribute(2.0), "2")
        self.assertEqual(stringify_attribute(1.50), "1.5")
        self.assertEqual(stringify_attribute(Decimal("3.1400")), "3.14")
        self.assertEqual(stringify_attribute(date(2026, 1, 5)), "2026-01-05")
        self.assertEqual(
            stringify_attribute(datetime(2026, 1, 5, 8, 30, tzinfo=timezone.utc)),
            "2026-01-05T08:30:00+00:00",
        )

    def test_stringify_reports_missing_for_none_and_blank(self) -> None:
        self.assertIsNone(stringify_attribute(None))
        self.assertIsNone(stringify_attribute("   "))

    def test_stringify_containers_as_canonical_json(self) -> None:
        self.assertEqual(stringify_attribute({"b": 1, "a": [1, 2]}), '{"a":[1,2],"b":1}')

    def test_attribute_values_expand_multi_valued_attributes(self) -> None:
        attributes = {"mail": ["a@x.com", "", None, "b@x.com"], "uid": 7, "blank": " "}
        self.assertEqual(attribute_values(attributes, "mail"), ["a@x.com", "b@x.com"])
        self.assertEqual(attribute_values(attributes, "uid"), ["7"])
        self.assertEqual(attribute_values(attributes, "blank"), [])
        self.assertEqual(attribute_values(attributes, "absent"), [])


if __name__ == "__main__":
    unittest.main()
