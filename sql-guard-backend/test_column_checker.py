"""
Tests for the post-validation column check.

No DB required.
"""

import unittest

from column_checker import ColumnExistenceChecker, check_columns
from schema_provider import ColumnDescriptor, StaticSchemaProvider, TableDescriptor


def _table(name, *columns):
    return TableDescriptor(name=name, columns=tuple(ColumnDescriptor(c) for c in columns))


TABLES = [
    _table("cities", "City", "State", "population"),
    _table("orders", "id", "city_id", "amount"),
]


class TestColumnExistenceChecker(unittest.TestCase):

    def setUp(self):
        self.checker = ColumnExistenceChecker(TABLES)

    # --- Valid ---

    def test_known_columns_pass(self):
        result = self.checker.check('SELECT "City", "State" FROM cities WHERE population > 1000')
        self.assertTrue(result.valid)
        self.assertIsNone(result.error)

    def test_case_insensitive(self):
        self.assertTrue(self.checker.check("SELECT city FROM cities").valid)

    def test_string_literals_not_checked(self):
        result = self.checker.check("SELECT \"City\" FROM cities WHERE \"State\" = 'Texas'")
        self.assertTrue(result.valid)

    def test_aliases_ignored(self):
        sql = (
            'SELECT "State", SUM(population) AS total_population FROM cities '
            'GROUP BY "State" ORDER BY total_population DESC'
        )
        self.assertTrue(self.checker.check(sql).valid)

    def test_cast_type_names_ignored(self):
        self.assertTrue(self.checker.check("SELECT CAST(population AS INTEGER) FROM cities").valid)

    def test_window_alias_ignored(self):
        sql = (
            "SELECT * FROM (SELECT City, ROW_NUMBER() OVER (PARTITION BY State "
            "ORDER BY population DESC) AS rn FROM cities) ranked WHERE rn <= 3"
        )
        self.assertTrue(self.checker.check(sql).valid)

    def test_subquery_alias_qualifier_skipped(self):
        sql = "SELECT s.total FROM (SELECT SUM(amount) AS total FROM orders) s"
        self.assertTrue(self.checker.check(sql).valid)

    # --- Invalid ---

    def test_unknown_quoted_column(self):
        result = self.checker.check('SELECT "Country" FROM cities')
        self.assertFalse(result.valid)
        self.assertEqual(result.unknown_columns, ["Country"])
        self.assertEqual(
            result.error,
            "Column(s) not found: Country. Available columns: City, State, population.",
        )

    def test_unknown_where_column(self):
        result = self.checker.check("SELECT \"City\" FROM cities WHERE region = 'west'")
        self.assertEqual(result.unknown_columns, ["region"])

    def test_unknown_qualified_column(self):
        result = self.checker.check("SELECT c.country FROM cities c")
        self.assertFalse(result.valid)
        self.assertEqual(result.unknown_columns, ["country"])

    def test_unknown_table(self):
        result = self.checker.check("SELECT * FROM towns")
        self.assertFalse(result.valid)
        self.assertEqual(result.unknown_tables, ["towns"])
        self.assertEqual(result.error, "Table(s) not found: towns. Available tables: cities, orders.")

    def test_columns_limited_to_referenced_tables(self):
        result = self.checker.check("SELECT amount FROM cities")
        self.assertEqual(result.unknown_columns, ["amount"])


class TestCheckColumns(unittest.TestCase):

    def test_accepts_schema_provider(self):
        provider = StaticSchemaProvider(TABLES)
        self.assertTrue(check_columns("SELECT amount FROM orders", provider).valid)
        self.assertFalse(check_columns("SELECT total FROM orders", provider).valid)

    def test_empty_sql_is_valid(self):
        self.assertTrue(check_columns("", TABLES).valid)


if __name__ == "__main__":
    unittest.main()
