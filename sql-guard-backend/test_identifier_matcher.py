"""
Tests for the identifier similarity engine (match_name and its primitives).

Pure functions, no DB required.
"""

import unittest

from identifier_matcher import (
    is_plural_singular,
    levenshtein_distance,
    match_name,
    normalize_identifier,
    similarity_score,
)


class TestPrimitives(unittest.TestCase):

    def test_levenshtein_distance(self):
        self.assertEqual(levenshtein_distance("kitten", "sitting"), 3)
        self.assertEqual(levenshtein_distance("", "abc"), 3)
        self.assertEqual(levenshtein_distance("same", "same"), 0)

    def test_similarity_is_case_insensitive(self):
        self.assertEqual(similarity_score("ABC", "abc"), 1.0)
        self.assertAlmostEqual(similarity_score("CIT", "City"), 0.75)

    def test_normalize_identifier(self):
        self.assertEqual(normalize_identifier("Total_Sales"), "totalsales")
        self.assertEqual(normalize_identifier("unit-price 2"), "unitprice2")

    def test_plural_singular_variants(self):
        self.assertTrue(is_plural_singular("product", "products"))
        self.assertTrue(is_plural_singular("box", "boxes"))
        self.assertTrue(is_plural_singular("city", "cities"))
        self.assertTrue(is_plural_singular("shelves", "shelf"))
        self.assertFalse(is_plural_singular("city", "city"))
        self.assertFalse(is_plural_singular("city", "state"))


class TestMatchName(unittest.TestCase):

    # --- Exact ---

    def test_exact_match_ignores_case(self):
        result = match_name("city", ["City", "State"])
        self.assertEqual(result.matched, "City")
        self.assertEqual(result.score, 1.0)
        self.assertEqual(result.strategy, "exact")
        self.assertTrue(result.is_exact)

    def test_exact_match_prefers_identical_spelling(self):
        result = match_name("city", ["CITY", "city"])
        self.assertEqual(result.matched, "city")
        self.assertEqual(result.score, 1.0)

    def test_exact_match_on_normalized_name(self):
        result = match_name("total_sales", ["TotalSales", "Region"])
        self.assertEqual(result.matched, "TotalSales")
        self.assertEqual(result.score, 1.0)

    def test_candidate_always_matches_itself(self):
        for candidate in ["State", "state", "STATE", "sales_2023"]:
            known = [candidate.swapcase(), candidate, "other"]
            result = match_name(candidate, known)
            self.assertEqual(result.matched, candidate)
            self.assertEqual(result.score, 1.0)

    # --- Plural / substring / semantic ---

    def test_plural_singular_match(self):
        result = match_name("city", ["cities", "states"])
        self.assertEqual(result.matched, "cities")
        self.assertEqual(result.score, 0.95)
        self.assertEqual(result.strategy, "plural_singular")

    def test_partial_name_matches_by_substring(self):
        result = match_name("CIT", ["City", "State"])
        self.assertEqual(result.matched, "City")
        self.assertGreaterEqual(result.score, 0.6)
        self.assertEqual(result.strategy, "substring")
        self.assertIn("fuzzy", result.reason.lower())
        self.assertIn("edit-distance", result.reason)

    def test_semantic_synonym(self):
        result = match_name("town", ["city", "state"])
        self.assertEqual(result.matched, "city")
        self.assertEqual(result.score, 0.8)
        self.assertEqual(result.strategy, "semantic")

    # --- Edit distance ---

    def test_typo_matches_by_edit_distance(self):
        result = match_name("custmer_name", ["customer_name", "city"])
        self.assertEqual(result.matched, "customer_name")
        self.assertEqual(result.strategy, "edit_distance")
        self.assertLess(result.score, 1.0)
        self.assertTrue(result.reason.startswith("Fuzzy match (92%"))

    def test_ties_resolved_by_known_order(self):
        result = match_name("stat", ["stab", "stag"])
        self.assertEqual(result.matched, "stab")

    def test_context_boost_breaks_tie(self):
        result = match_name("stat", ["stab", "stag"], context="SELECT stag FROM herd")
        self.assertEqual(result.matched, "stag")
        self.assertAlmostEqual(result.score, 0.85)

    def test_boosted_score_stays_below_exact(self):
        result = match_name("custmer_name", ["customer_name"], context="customer_name")
        self.assertEqual(result.score, 0.99)
        self.assertFalse(result.is_exact)

    # --- No match ---

    def test_no_match_lists_available_names(self):
        result = match_name("xyz", ["City", "State"])
        self.assertIsNone(result.matched)
        self.assertEqual(result.score, 0.0)
        self.assertIn("Available: City, State", result.reason)

    def test_no_match_truncates_available_names(self):
        known = ["alpha", "bravo", "charlie", "delta", "echo", "foxtrot", "golf"]
        result = match_name("qqqqqqqqqq", known)
        self.assertIsNone(result.matched)
        self.assertIn("alpha, bravo, charlie, delta, echo...", result.reason)
        self.assertNotIn("foxtrot", result.reason)

    def test_empty_inputs(self):
        self.assertIsNone(match_name("", ["City"]).matched)
        self.assertIsNone(match_name("City", []).matched)
        self.assertEqual(match_name("City", []).score, 0.0)

    def test_matched_is_none_iff_score_is_zero(self):
        known = ["City", "State", "population", "created_at"]
        for candidate in ["city", "stat", "popultion", "zzz", "created", "q"]:
            result = match_name(candidate, known)
            self.assertEqual(result.matched is None, result.score == 0.0, candidate)

    def test_deterministic(self):
        first = match_name("popl", ["population", "people", "pole"])
        second = match_name("popl", ["population", "people", "pole"])
        self.assertEqual(first, second)


if __name__ == "__main__":
    unittest.main()
