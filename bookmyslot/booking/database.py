from contextlib import contextmanager
from typing import List, Optional
from uuid import UUID
import logging

import psycopg2
from psycopg2.extras import DictCursor, register_uuid

from .error_utils import PersistenceError
from .models import (APPROVED, CANCELLED, PENDING, BookingRequest, BookingSlot, EventRef,
                     ReconciliationTask)

logger = logging.getLogger(__name__)

# Return uuid columns as uuid.UUID and accept UUID parameters
register_uuid()

BOOKING_COLUMNS = (
    "user_name", "user_email", "phone_number", "client_name", "role_name", "job_description",
    "team_details", "job_link", "message", "resume_file_path", "payment_screenshot_path",
)


class BookingPersistence:
    """
    psycopg2-backed store for booking requests, their slots, and the reconciliation work queue.

    Token checks and status writes happen in a single conditional UPDATE so two clicks on the same email link can never both succeed.
    Every psycopg2 error is re-raised as PersistenceError.
    """

    def __init__(self, database_url: Optional[str] = None):
        self._database_url = database_url
        self._setup_schema()

    @contextmanager
    def _database_connect(self):
        """
        Internal function to manage the Postgres database connections. The transaction commits when the block exits cleanly and rolls back otherwise.
        Without a database url a local 'booking_calendar' database is used for development.
        """
        try:
            if self._database_url:
                connection = psycopg2.connect(self._database_url)
            else:
                connection = psycopg2.connect(dbname='booking_calendar')
        except psycopg2.Error as e:
            logger.error(f"Database connection failed: {e}")
            raise PersistenceError(f"Database connection failed: {e}") from e
        try:
            with connection:
                yield connection
        except psycopg2.Error as e:
            logger.error(f"Database operation failed: {e}")
            raise PersistenceError(f"Database operation failed: {e}") from e
        finally:
            connection.close()

    # Booking requests

    def insert_booking_request(self, booking: BookingRequest) -> BookingRequest:
        """
        Inserts the request and all its slots in one transaction. Returns the stored booking with ids and timestamps filled in.
        """
        columns = BOOKING_COLUMNS + ("status", "approval_token", "total_slots")
        values = [getattr(booking, column) for column in BOOKING_COLUMNS] + [booking.status, booking.approval_token, booking.total_slots]
        query = f"""INSERT INTO booking_requests ({', '.join(columns)})
                    VALUES ({', '.join(['%s'] * len(columns))}) RETURNING *"""
        logger.info("Inserting booking request for %d slot(s)", booking.total_slots)
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                cursor.execute(query, values)
                row = cursor.fetchone()
                slots = []
                for slot in booking.slots:
                    cursor.execute("""INSERT INTO booking_slots
                                      (booking_request_id, slot_ordinal, slot_date, slot_start_time, slot_end_time, slot_duration_minutes)
                                      VALUES (%s, %s, %s, %s, %s, %s) RETURNING *""",
                                   (row['id'], slot.ordinal, slot.slot_date, slot.slot_start_time,
                                    slot.slot_end_time, slot.slot_duration_minutes))
                    slots.append(self._slot_from_row(cursor.fetchone()))
        return self._booking_from_row(row, slots)

    def retrieve_booking(self, booking_id: UUID) -> Optional[BookingRequest]:
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                cursor.execute("SELECT * FROM booking_requests WHERE id = %s", (booking_id,))
                row = cursor.fetchone()
                if row is None:
                    return None
                return self._booking_from_row(row, self._retrieve_slots(cursor, booking_id))

    def resolve_pending(self, approval_token: str, new_status: str, cancellation_token: Optional[str]) -> Optional[BookingRequest]:
        """
        Consumes the approval token and writes the new status in one statement.
        Returns None if no pending request holds the token (wrong token, or already resolved).
        """
        query = """UPDATE booking_requests
                   SET status = %s, approval_token = NULL, cancellation_token = %s
                   WHERE approval_token = %s AND status = %s
                   RETURNING *"""
        logger.info("Executing query: resolve pending booking -> %s", new_status)
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                cursor.execute(query, (new_status, cancellation_token, approval_token, PENDING))
                row = cursor.fetchone()
                if row is None:
                    return None
                return self._booking_from_row(row, self._retrieve_slots(cursor, row['id']))

    def cancel_approved(self, cancellation_token: str, reason: str) -> Optional[BookingRequest]:
        """
        Consumes the cancellation token and marks the booking cancelled in one statement.
        Returns None unless an approved request holds the token.
        """
        query = """UPDATE booking_requests
                   SET status = %s, cancellation_token = NULL, cancelled_at = now(), cancellation_reason = %s
                   WHERE cancellation_token = %s AND status = %s
                   RETURNING *"""
        logger.info("Executing query: cancel approved booking")
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                cursor.execute(query, (CANCELLED, reason, cancellation_token, APPROVED))
                row = cursor.fetchone()
                if row is None:
                    return None
                return self._booking_from_row(row, self._retrieve_slots(cursor, row['id']))

    def record_slot_event(self, ref: EventRef):
        query = "UPDATE booking_slots SET calendar_id = %s, calendar_event_id = %s WHERE id = %s"
        with self._database_connect() as conn:
            with conn.cursor() as cursor:
                cursor.execute(query, (ref.calendar_id, ref.event_id, ref.slot_id))

    @staticmethod
    def _retrieve_slots(cursor, booking_id) -> List[BookingSlot]:
        cursor.execute("""SELECT * FROM booking_slots WHERE booking_request_id = %s
                          ORDER BY slot_date, slot_start_time""", (booking_id,))
        return [BookingPersistence._slot_from_row(row) for row in cursor.fetchall()]

    # Reconciliation work queue

    def enqueue_reconciliation(self, booking_id: UUID, action: str, error: str) -> ReconciliationTask:
        query = """INSERT INTO reconciliation_tasks (booking_request_id, action, last_error)
                   VALUES (%s, %s, %s) RETURNING *"""
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                cursor.execute(query, (booking_id, action, error))
                return self._task_from_row(cursor.fetchone())

    def retrieve_open_reconciliations(self) -> List[ReconciliationTask]:
        query = "SELECT * FROM reconciliation_tasks WHERE completed_at IS NULL ORDER BY created_at, id"
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                cursor.execute(query)
                return [self._task_from_row(row) for row in cursor.fetchall()]

    def complete_reconciliation(self, task_id: int):
        query = "UPDATE reconciliation_tasks SET completed_at = now(), attempts = attempts + 1 WHERE id = %s"
        with self._database_connect() as conn:
            with conn.cursor() as cursor:
                cursor.execute(query, (task_id,))

    def record_reconciliation_failure(self, task_id: int, error: str):
        query = "UPDATE reconciliation_tasks SET attempts = attempts + 1, last_error = %s WHERE id = %s"
        with self._database_connect() as conn:
            with conn.cursor() as cursor:
                cursor.execute(query, (error, task_id))

    # Row mapping

    @staticmethod
    def _booking_from_row(row, slots: List[BookingSlot]) -> BookingRequest:
        return BookingRequest(
            id=row['id'],
            status=row['status'],
            approval_token=row['approval_token'],
            cancellation_token=row['cancellation_token'],
            created_at=row['created_at'],
            updated_at=row['updated_at'],
            cancelled_at=row['cancelled_at'],
            cancellation_reason=row['cancellation_reason'],
            slots=slots,
            **{column: row[column] for column in BOOKING_COLUMNS},
        )

    @staticmethod
    def _slot_from_row(row) -> BookingSlot:
        return BookingSlot(
            id=row['id'],
            booking_request_id=row['booking_request_id'],
            ordinal=row['slot_ordinal'],
            slot_date=row['slot_date'],
            slot_start_time=row['slot_start_time'],
            slot_end_time=row['slot_end_time'],
            slot_duration_minutes=row['slot_duration_minutes'],
            calendar_id=row['calendar_id'],
            calendar_event_id=row['calendar_event_id'],
        )

    @staticmethod
    def _task_from_row(row) -> ReconciliationTask:
        return ReconciliationTask(
            id=row['id'],
            booking_request_id=row['booking_request_id'],
            action=row['action'],
            last_error=row['last_error'],
            attempts=row['attempts'],
            created_at=row['created_at'],
            completed_at=row['completed_at'],
        )

    # Schema

    @staticmethod
    def _table_exists(cursor, table_name: str) -> bool:
        cursor.execute("""
            SELECT COUNT(*)
            FROM information_schema.tables
            WHERE table_schema = 'public' AND table_name = %s;
        """, (table_name,))
        return cursor.fetchone()[0] > 0

    def _setup_schema(self):
        """
        Internal function to set-up the database schema if the tables do not exist. Primarily used when being deployed in production.
        """
        with self._database_connect() as conn:
            with conn.cursor() as cursor:
                if not self._table_exists(cursor, 'booking_requests'):
                    logger.info("Setting up the schema.")
                    cursor.execute("""
                        CREATE TABLE booking_requests (
                        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                        user_name text NOT NULL,
                        user_email text NOT NULL,
                        phone_number text NOT NULL DEFAULT '',
                        client_name text NOT NULL DEFAULT '',
                        role_name text NOT NULL DEFAULT '',
                        job_description text NOT NULL DEFAULT '',
                        team_details text,
                        job_link text,
                        message text,
                        resume_file_path text,
                        payment_screenshot_path text,
                        total_slots integer NOT NULL DEFAULT 1,
                        status text NOT NULL DEFAULT 'pending'
                            CHECK (status IN ('pending', 'approved', 'rejected', 'cancelled')),
                        approval_token text UNIQUE,
                        cancellation_token text UNIQUE,
                        created_at timestamp with time zone NOT NULL DEFAULT now(),
                        updated_at timestamp with time zone NOT NULL DEFAULT now(),
                        cancelled_at timestamp with time zone,
                        cancellation_reason text);
                    """)
                if not self._table_exists(cursor, 'booking_slots'):
                    cursor.execute("""
                        CREATE TABLE booking_slots (
                        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
                        booking_request_id UUID NOT NULL REFERENCES booking_requests (id) ON DELETE CASCADE,
                        slot_ordinal integer NOT NULL,
                        slot_date date NOT NULL,
                        slot_start_time time without time zone NOT NULL,
                        slot_end_time time without time zone NOT NULL,
                        slot_duration_minutes integer NOT NULL CHECK (slot_duration_minutes IN (30, 60)),
                        calendar_id text,
                        calendar_event_id text,
                        created_at timestamp with time zone NOT NULL DEFAULT now());
                    """)
                if not self._table_exists(cursor, 'reconciliation_tasks'):
                    cursor.execute("""
                        CREATE TABLE reconciliation_tasks (
                        id serial PRIMARY KEY,
                        booking_request_id UUID NOT NULL REFERENCES booking_requests (id),
                        action text NOT NULL CHECK (action IN ('provision_calendar', 'remove_calendar')),
                        last_error text,
                        attempts integer NOT NULL DEFAULT 0,
                        created_at timestamp with time zone NOT NULL DEFAULT now(),
                        completed_at timestamp with time zone);
                    """)
                self._setup_updated_at_trigger(cursor)

    def _setup_updated_at_trigger(self, cursor):
        check_function_query = """
                                SELECT EXISTS (
                                SELECT 1
                                FROM pg_proc
                                JOIN pg_namespace ON pg_proc.pronamespace = pg_namespace.oid
                                WHERE proname = %s AND nspname = %s);
                                """
        function_name = 'update_updated_at_column'
        schema_name = 'public'
        # Check if the function exists within the database
        cursor.execute(check_function_query, (function_name, schema_name))
        function_exists = cursor.fetchone()[0]
        if not function_exists:
            create_function_query = """
            CREATE FUNCTION update_updated_at_column()
            RETURNS TRIGGER AS $$
            BEGIN
                NEW.updated_at = now();
                RETURN NEW;
            END;
            $$ LANGUAGE plpgsql;"""
            create_trigger_query = """
            CREATE TRIGGER update_booking_requests_updated_at
            BEFORE UPDATE ON booking_requests
            FOR EACH ROW
            EXECUTE FUNCTION update_updated_at_column();"""
            cursor.execute(create_function_query)
            cursor.execute(create_trigger_query)
