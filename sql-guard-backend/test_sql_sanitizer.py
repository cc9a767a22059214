"""
Regression tests for LIMIT bounding (ensure_bounded / SQLLimitEnforcer).

No DB required.
"""

import unittest

from sql_sanitizer import SQLLimitEnforcer, ensure_bounded, extract_limit


class TestEnsureBounded(unittest.TestCase):

    # --- LIMIT injection ---

    def test_order_by_gets_limit_appended(self):
        self.assertEqual(
            ensure_bounded("SELECT * FROM t ORDER BY x DESC"),
            "SELECT * FROM t ORDER BY x DESC LIMIT 5000",
        )

    def test_group_by_gets_limit_after_having(self):
        sql = "SELECT state, COUNT(*) FROM cities GROUP BY state HAVING COUNT(*) > 2"
        self.assertEqual(ensure_bounded(sql, 100), sql + " LIMIT 100")

    def test_trailing_semicolon_preserved(self):
        self.assertEqual(
            ensure_bounded("SELECT * FROM t WHERE a = 1;", 50),
            "SELECT * FROM t WHERE a = 1 LIMIT 50;",
        )

    def test_limit_goes_before_trailing_offset(self):
        self.assertEqual(
            ensure_bounded("SELECT * FROM t ORDER BY id OFFSET 20", 50),
            "SELECT * FROM t ORDER BY id LIMIT 50 OFFSET 20",
        )

    def test_subquery_limit_does_not_bound_outer_query(self):
        sql = "SELECT * FROM (SELECT * FROM t LIMIT 10) s"
        self.assertEqual(ensure_bounded(sql, 50), sql + " LIMIT 50")

    def test_limit_inside_string_literal_ignored(self):
        sql = "SELECT * FROM notes WHERE body = 'LIMIT 5'"
        self.assertEqual(ensure_bounded(sql, 50), sql + " LIMIT 50")

    # --- Existing LIMIT ---

    def test_limit_within_bounds_unchanged(self):
        result = SQLLimitEnforcer(50).enforce("SELECT * FROM t LIMIT 10")
        self.assertEqual(result.sql, "SELECT * FROM t LIMIT 10")
        self.assertFalse(result.limit_applied)
        self.assertEqual(result.original_limit, 10)
        self.assertEqual(result.enforced_limit, 10)
        self.assertFalse(result.was_capped)

    def test_limit_with_offset_within_bounds_unchanged(self):
        sql = "SELECT * FROM t LIMIT 10 OFFSET 5"
        self.assertEqual(ensure_bounded(sql, 50), sql)

    def test_limit_too_high_gets_capped(self):
        result = SQLLimitEnforcer(50).enforce("SELECT * FROM t LIMIT 500")
        self.assertEqual(result.sql, "SELECT * FROM t LIMIT 50")
        self.assertTrue(result.limit_applied)
        self.assertTrue(result.was_capped)
        self.assertEqual(result.original_limit, 500)

    def test_limit_all_gets_capped(self):
        result = SQLLimitEnforcer(50).enforce("SELECT * FROM t LIMIT ALL;")
        self.assertEqual(result.sql, "SELECT * FROM t LIMIT 50;")
        self.assertTrue(result.was_capped)
        self.assertIsNone(result.original_limit)

    # --- Non-SELECT ---

    def test_non_select_untouched(self):
        sql = "UPDATE t SET a = 1"
        result = SQLLimitEnforcer(50).enforce(sql)
        self.assertEqual(result.sql, sql)
        self.assertFalse(result.limit_applied)
        self.assertEqual(result.enforced_limit, 0)

    def test_empty_sql_untouched(self):
        self.assertEqual(ensure_bounded(""), "")

    # --- Properties ---

    def test_idempotent(self):
        samples = [
            "SELECT * FROM t",
            "SELECT * FROM t;",
            "SELECT * FROM t ORDER BY x DESC",
            "SELECT * FROM t LIMIT 9999",
            "SELECT * FROM t LIMIT ALL",
            "SELECT * FROM t OFFSET 3",
            "SELECT a FROM t WHERE b = 'LIMIT 1'",
            "SELECT * FROM t FETCH FIRST 500 ROWS ONLY",
        ]
        for sql in samples:
            once = ensure_bounded(sql, 100)
            self.assertEqual(ensure_bounded(once, 100), once, sql)

    def test_effective_limit_never_exceeds_cap(self):
        samples = [
            "SELECT * FROM t",
            "SELECT * FROM t LIMIT 1000000",
            "SELECT * FROM t LIMIT 5",
            "SELECT * FROM t LIMIT ALL OFFSET 10",
            "SELECT * FROM (SELECT * FROM u LIMIT 99999) x",
            "SELECT * FROM t FETCH FIRST 99999 ROWS ONLY",
        ]
        for sql in samples:
            limit = extract_limit(ensure_bounded(sql, 100))
            self.assertIsNotNone(limit, sql)
            self.assertLessEqual(limit, 100, sql)

    # --- FETCH FIRST ---

    def test_fetch_first_within_bounds_unchanged(self):
        sql = "SELECT * FROM t ORDER BY x FETCH FIRST 10 ROWS ONLY"
        self.assertEqual(ensure_bounded(sql), sql)
        result = SQLLimitEnforcer(50).enforce("SELECT * FROM t OFFSET 5 ROWS FETCH NEXT ROW ONLY;")
        self.assertEqual(result.sql, "SELECT * FROM t OFFSET 5 ROWS FETCH NEXT ROW ONLY;")
        self.assertFalse(result.limit_applied)
        self.assertEqual(result.enforced_limit, 1)

    def test_fetch_first_too_high_gets_capped(self):
        result = SQLLimitEnforcer(100).enforce("SELECT * FROM t ORDER BY x FETCH FIRST 100000 ROWS ONLY")
        self.assertEqual(result.sql, "SELECT * FROM t ORDER BY x FETCH FIRST 100 ROWS ONLY")
        self.assertTrue(result.was_capped)
        self.assertEqual(result.original_limit, 100000)
        self.assertEqual(extract_limit(result.sql), 100)
        self.assertNotIn("LIMIT", result.sql)

    def test_invalid_cap_rejected(self):
        with self.assertRaises(ValueError):
            SQLLimitEnforcer(0)
        with self.assertRaises(ValueError):
            ensure_bounded("SELECT 1", -5)


class TestExtractLimit(unittest.TestCase):

    def test_trailing_limit(self):
        self.assertEqual(extract_limit("SELECT * FROM t LIMIT 25;"), 25)

    def test_no_limit(self):
        self.assertIsNone(extract_limit("SELECT * FROM t"))
        self.assertIsNone(extract_limit("SELECT * FROM t LIMIT ALL"))
        self.assertIsNone(extract_limit(""))


if __name__ == "__main__":
    unittest.main()
