"""
Tests for the bounded executor.

Runs against an in-memory SQLite engine (StaticPool, one shared connection);
PostgreSQL-only behaviour (type OIDs) is exercised with a stubbed dialect.
"""

import asyncio
import datetime
import unittest
import uuid
from decimal import Decimal
from unittest.mock import MagicMock

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from bounded_executor import (
    TIMEOUT_MESSAGE,
    BoundedExecutor,
    ResultColumn,
    coerce_value,
    create_bounded_executor,
    infer_generic_type,
    prepare_statement,
)
from engine_config import EngineConfig
from guard_errors import ConfigurationError, ErrorKind
from schema_provider import GenericType


def _sqlite_engine():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    with engine.begin() as conn:
        conn.exec_driver_sql("CREATE TABLE products (id INTEGER, name TEXT, price REAL)")
        conn.exec_driver_sql(
            "INSERT INTO products VALUES (1, 'Widget', 9.99), (2, 'Gadget', 100.0), (3, 'Gizmo', 25.5)"
        )
    return engine


class TestPrepareStatement(unittest.TestCase):

    def test_trailing_semicolon_stripped(self):
        self.assertEqual(prepare_statement("  SELECT 1 ;  "), "SELECT 1")

    def test_truncated_at_first_semicolon(self):
        self.assertEqual(prepare_statement("SELECT 1; DROP TABLE t"), "SELECT 1")
        self.assertEqual(prepare_statement("SELECT 1; DROP TABLE t;"), "SELECT 1")

    def test_empty(self):
        self.assertEqual(prepare_statement(""), "")
        self.assertEqual(prepare_statement(None), "")


class TestValueCoercion(unittest.TestCase):

    def test_safe_integers_stay_numbers(self):
        self.assertEqual(coerce_value(42), 42)
        self.assertEqual(coerce_value(2 ** 53 - 1), 2 ** 53 - 1)
        self.assertEqual(coerce_value(-(2 ** 53 - 1)), -(2 ** 53 - 1))

    def test_large_integers_become_decimal_strings(self):
        self.assertEqual(coerce_value(9223372036854775807), "9223372036854775807")
        self.assertEqual(coerce_value(-(2 ** 60)), str(-(2 ** 60)))
        self.assertEqual(coerce_value(Decimal("12345678901234567890")), "12345678901234567890")

    def test_decimals_become_floats(self):
        self.assertEqual(coerce_value(Decimal("12.50")), 12.5)
        self.assertEqual(coerce_value(Decimal("NaN")), "NaN")

    def test_dates_become_iso_strings(self):
        self.assertEqual(coerce_value(datetime.date(2024, 1, 5)), "2024-01-05")
        self.assertEqual(coerce_value(datetime.datetime(2024, 1, 5, 10, 30)), "2024-01-05T10:30:00")
        self.assertEqual(coerce_value(datetime.time(8, 15)), "08:15:00")

    def test_other_values(self):
        self.assertIs(coerce_value(True), True)
        self.assertIsNone(coerce_value(None))
        self.assertEqual(coerce_value("text"), "text")
        self.assertEqual(coerce_value(1.5), 1.5)
        self.assertEqual(coerce_value(float("inf")), "inf")
        self.assertEqual(coerce_value(b"\x01\xff"), "01ff")
        self.assertEqual(coerce_value(memoryview(b"\x0a")), "0a")
        self.assertEqual(coerce_value([1, 2]), "[1, 2]")
        self.assertEqual(coerce_value({"a": 1}), '{"a": 1}')
        value = uuid.UUID("12345678-1234-5678-1234-567812345678")
        self.assertEqual(coerce_value(value), "12345678-1234-5678-1234-567812345678")

    def test_type_inference(self):
        self.assertEqual(infer_generic_type([None, 3]), GenericType.INTEGER)
        self.assertEqual(infer_generic_type([True]), GenericType.BOOLEAN)
        self.assertEqual(infer_generic_type([Decimal("1.5")]), GenericType.DECIMAL)
        self.assertEqual(infer_generic_type([datetime.datetime(2024, 1, 1)]), GenericType.TIMESTAMP)
        self.assertEqual(infer_generic_type([datetime.date(2024, 1, 1)]), GenericType.DATE)
        self.assertEqual(infer_generic_type(["x"]), GenericType.TEXT)
        self.assertEqual(infer_generic_type([None]), GenericType.TEXT)


class TestBoundedExecutor(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.engine = _sqlite_engine()
        self.executor = BoundedExecutor(self.engine, EngineConfig())

    def tearDown(self):
        self.executor.close()

    # --- Results ---

    async def test_select_returns_rows_and_columns(self):
        outcome = await self.executor.execute("SELECT id, name FROM products ORDER BY id")
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.rows[0], {"id": 1, "name": "Widget"})
        self.assertEqual(outcome.row_count, 3)
        self.assertEqual(outcome.columns, [
            ResultColumn("id", GenericType.INTEGER),
            ResultColumn("name", GenericType.TEXT),
        ])
        self.assertFalse(outcome.truncated)
        self.assertGreaterEqual(outcome.elapsed_ms, 0)

    async def test_zero_rows_is_not_an_error(self):
        outcome = await self.executor.execute("SELECT id FROM products WHERE id < 0")
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.rows, [])
        self.assertEqual(outcome.columns, [])

    async def test_big_integer_converted_to_string(self):
        outcome = await self.executor.execute("SELECT 9223372036854775807 AS big, COUNT(*) AS n FROM products")
        self.assertEqual(outcome.rows, [{"big": "9223372036854775807", "n": 3}])

    async def test_statement_without_rows_commits(self):
        outcome = await self.executor.execute("INSERT INTO products VALUES (4, 'Doohickey', 1.0)")
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.rows, [])
        count = await self.executor.execute("SELECT COUNT(*) AS n FROM products")
        self.assertEqual(count.rows, [{"n": 4}])

    # --- Bounds ---

    async def test_row_cap_truncates(self):
        executor = BoundedExecutor(self.engine, EngineConfig(max_rows=2))
        outcome = await executor.execute("SELECT id FROM products ORDER BY id")
        self.assertEqual([row["id"] for row in outcome.rows], [1, 2])
        self.assertTrue(outcome.truncated)

    async def test_byte_budget_truncates(self):
        executor = BoundedExecutor(self.engine, EngineConfig(max_result_bytes=10))
        outcome = await executor.execute("SELECT id, name FROM products ORDER BY id")
        self.assertEqual(outcome.row_count, 1)
        self.assertTrue(outcome.truncated)

    async def test_only_first_statement_runs(self):
        outcome = await self.executor.execute("SELECT 1 AS a; DROP TABLE products")
        self.assertTrue(outcome.success)
        self.assertEqual(outcome.rows, [{"a": 1}])
        still_there = await self.executor.execute("SELECT COUNT(*) AS n FROM products")
        self.assertEqual(still_there.rows, [{"n": 3}])

    async def test_timeout(self):
        executor = BoundedExecutor(_sqlite_engine(), EngineConfig(max_execution_time_ms=50))
        outcome = await executor.execute(
            "WITH RECURSIVE c(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM c WHERE x < 20000000) "
            "SELECT COUNT(*) AS n FROM c"
        )
        self.assertEqual(outcome.error, TIMEOUT_MESSAGE)
        self.assertEqual(outcome.error_kind, ErrorKind.EXECUTION_TIMEOUT)
        self.assertEqual(outcome.rows, [])

    async def test_request_abandoned_in_pool_queue_never_runs(self):
        # the timeout fired before a connection was checked out
        handles = {"cancelled": True}
        outcome = await asyncio.to_thread(self.executor._run, "DELETE FROM products", handles)
        self.assertEqual(outcome.error_kind, ErrorKind.EXECUTION_TIMEOUT)
        self.assertIn("dbapi_connection", handles)
        count = await self.executor.execute("SELECT COUNT(*) AS n FROM products")
        self.assertEqual(count.rows, [{"n": 3}])

    # --- Errors ---

    async def test_driver_error_returned_verbatim(self):
        outcome = await self.executor.execute("SELECT * FROM missing_table")
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.error_kind, ErrorKind.EXECUTION_DRIVER_ERROR)
        self.assertIn("no such table: missing_table", outcome.error)
        self.assertEqual(outcome.rows, [])
        self.assertEqual(outcome.columns, [])

    async def test_percent_sign_passed_through(self):
        outcome = await self.executor.execute("SELECT name FROM products WHERE name LIKE 'G%' ORDER BY id")
        self.assertEqual([row["name"] for row in outcome.rows], ["Gadget", "Gizmo"])

    async def test_empty_statement(self):
        outcome = await self.executor.execute(" ; ")
        self.assertFalse(outcome.success)

    async def test_closed_executor(self):
        self.executor.close()
        outcome = await self.executor.execute("SELECT 1")
        self.assertEqual(outcome.error, "Executor is closed.")


class TestPostgresColumnTypes(unittest.TestCase):

    def test_type_oids_used_for_postgresql(self):
        engine = MagicMock()
        engine.dialect.name = "postgresql"
        executor = BoundedExecutor(engine, EngineConfig())
        outcome = executor._build_outcome(["n", "label"], [20, 25], [("12", "x")])
        self.assertEqual(outcome.columns, [
            ResultColumn("n", GenericType.INTEGER),
            ResultColumn("label", GenericType.TEXT),
        ])


class TestSyncUsage(unittest.TestCase):

    def test_execute_sync_and_context_manager(self):
        with BoundedExecutor(_sqlite_engine()) as executor:
            outcome = executor.execute_sync("SELECT name FROM products WHERE id = 2")
        self.assertEqual(outcome.rows, [{"name": "Gadget"}])

    def test_from_url(self):
        with create_bounded_executor("sqlite://") as executor:
            self.assertEqual(executor.engine.dialect.name, "sqlite")
            outcome = executor.execute_sync("SELECT 1 AS one")
        self.assertEqual(outcome.rows, [{"one": 1}])

    def test_from_url_requires_url(self):
        with self.assertRaises(ConfigurationError):
            BoundedExecutor.from_url(None, EngineConfig())


if __name__ == "__main__":
    unittest.main()
