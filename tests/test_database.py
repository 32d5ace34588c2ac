import unittest
import os
import sys
from unittest import mock

import psycopg2

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
from bookmyslot.booking import database
from bookmyslot.booking.error_utils import PersistenceError
from bookmyslot.booking.models import APPROVED, CANCELLED, PENDING, REJECTED


class BookingPersistenceTest(unittest.TestCase):
    # These run without a PostgreSQL server

    def test_connection_failure_becomes_persistence_error(self):
        with mock.patch.object(database.psycopg2, "connect", side_effect=psycopg2.OperationalError("no server")):
            with self.assertRaises(PersistenceError):
                database.BookingPersistence("postgresql://localhost/booking_calendar")

    def test_query_failure_rolls_back_and_closes(self):
        connection = mock.MagicMock()
        cursor = connection.cursor.return_value.__enter__.return_value
        cursor.execute.side_effect = psycopg2.ProgrammingError("relation does not exist")
        with mock.patch.object(database.psycopg2, "connect", return_value=connection):
            with self.assertRaises(PersistenceError):
                database.BookingPersistence()
        connection.__exit__.assert_called_once()
        connection.close.assert_called_once()


class TokenConsumptionTest(unittest.TestCase):
    # Token check, status check and token invalidation must stay in one conditional UPDATE

    def setUp(self):
        self.connection = mock.MagicMock()
        self.cursor = self.connection.cursor.return_value.__enter__.return_value
        self.cursor.fetchone.return_value = None
        patchers = [
            mock.patch.object(database.psycopg2, "connect", return_value=self.connection),
            mock.patch.object(database.BookingPersistence, "_setup_schema"),
        ]
        for patcher in patchers:
            patcher.start()
            self.addCleanup(patcher.stop)
        self.db = database.BookingPersistence()

    def executed(self):
        (call,) = self.cursor.execute.call_args_list
        query, params = call.args
        return " ".join(query.split()), params

    def test_resolve_pending_is_one_conditional_update(self):
        self.assertIsNone(self.db.resolve_pending("approve-token", APPROVED, "cancel-token"))
        query, params = self.executed()
        self.assertTrue(query.startswith("UPDATE booking_requests SET status = %s, approval_token = NULL, cancellation_token = %s"))
        self.assertIn("WHERE approval_token = %s AND status = %s RETURNING *", query)
        self.assertEqual(params, (APPROVED, "cancel-token", "approve-token", PENDING))

    def test_reject_issues_no_cancellation_token(self):
        self.db.resolve_pending("approve-token", REJECTED, None)
        _, params = self.executed()
        self.assertEqual(params, (REJECTED, None, "approve-token", PENDING))

    def test_cancel_approved_is_one_conditional_update(self):
        self.assertIsNone(self.db.cancel_approved("cancel-token", "schedule conflict"))
        query, params = self.executed()
        self.assertTrue(query.startswith("UPDATE booking_requests SET status = %s, cancellation_token = NULL"))
        self.assertIn("cancelled_at = now()", query)
        self.assertIn("WHERE cancellation_token = %s AND status = %s RETURNING *", query)
        self.assertEqual(params, (CANCELLED, "schedule conflict", "cancel-token", APPROVED))


if __name__ == "__main__":
    unittest.main()
