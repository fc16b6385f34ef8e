from datetime import date
import psycopg2
from psycopg2 import sql
from psycopg2.extras import DictCursor, Json, register_uuid
from contextlib import contextmanager
import logging
import os
from typing import Callable, List, Mapping, Optional

from .error_utils import BookingNotFoundError

logger = logging.getLogger(__name__)

register_uuid()

DEFAULT_DSN = 'dbname=venue_booking'

# (current, candidate, existing, blocked) -> None, raises to roll the write back
ConflictCheck = Callable[[Optional[dict], dict, List[dict], bool], None]

# DSNs whose schema has been verified during this process
_schema_ready = set()

# Columns each change-feed notification carries. pg_notify payloads must stay under 8000 bytes,
# so free-text columns (names aside) are left out and listeners re-read rows they need in full.
CHANGE_FEED_COLUMNS = {
    'bookings': ('id', 'full_name', 'booking_date', 'time_slot', 'start_time', 'end_time',
                 'guest_count', 'status', 'is_active'),
    'blocked_dates': ('id', 'blocked_date'),
    'notifications': ('id', 'type', 'priority', 'is_read'),
    'analytics_summary': ('id', 'events_hosted', 'guests_served', 'client_satisfaction'),
    'packages': ('id', 'is_active', 'is_featured'),
    'facilities': ('id', 'is_active'),
    'gallery': ('id', 'is_featured'),
}

JSON_COLUMNS = ('features', 'details', 'metadata')

TABLES = {
    'packages': """
        CREATE TABLE packages (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            name text NOT NULL,
            description text,
            price numeric(10, 2) CHECK (price >= 0),
            price_min numeric(10, 2) CHECK (price_min >= 0),
            price_max numeric(10, 2) CHECK (price_max >= 0),
            features jsonb NOT NULL DEFAULT '[]',
            max_guests integer CHECK (max_guests > 0),
            image_url text,
            is_featured boolean NOT NULL DEFAULT false,
            is_active boolean NOT NULL DEFAULT true,
            order_index integer,
            created_at timestamp with time zone NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at timestamp with time zone NOT NULL DEFAULT CURRENT_TIMESTAMP
        );""",
    'facilities': """
        CREATE TABLE facilities (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            title text NOT NULL,
            description text,
            icon text,
            image_url text,
            is_active boolean NOT NULL DEFAULT true,
            order_index integer,
            created_at timestamp with time zone NOT NULL DEFAULT CURRENT_TIMESTAMP
        );""",
    'gallery': """
        CREATE TABLE gallery (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            title text NOT NULL,
            image_url text NOT NULL,
            category text,
            description text,
            event_type text,
            is_featured boolean NOT NULL DEFAULT false,
            display_order integer,
            created_at timestamp with time zone NOT NULL DEFAULT CURRENT_TIMESTAMP
        );""",
    'bookings': """
        CREATE TABLE bookings (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            full_name text NOT NULL,
            mobile text NOT NULL,
            email text,
            booking_date date NOT NULL,
            time_slot text,
            start_time time,
            end_time time,
            guest_count integer NOT NULL DEFAULT 1 CHECK (guest_count > 0),
            package_id uuid REFERENCES packages (id) ON DELETE SET NULL,
            event_type text,
            special_requests text,
            additional_notes text,
            status text NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'confirmed', 'cancelled', 'completed')),
            is_active boolean NOT NULL DEFAULT true,
            cooking_gas_qty integer NOT NULL DEFAULT 0,
            garbage_bags integer NOT NULL DEFAULT 0,
            plates_small integer NOT NULL DEFAULT 0,
            plates_large integer NOT NULL DEFAULT 0,
            admin_price_adjustment numeric(10, 2) NOT NULL DEFAULT 0,
            floor_cleaning_cost numeric(10, 2),
            extra_services_total numeric(10, 2),
            final_price numeric(10, 2),
            ip_address text,
            created_by text,
            confirmed_by text,
            confirmed_at timestamp with time zone,
            cancelled_by text,
            cancelled_at timestamp with time zone,
            completed_at timestamp with time zone,
            extras_updated_by text,
            extras_updated_at timestamp with time zone,
            created_at timestamp with time zone NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at timestamp with time zone NOT NULL DEFAULT CURRENT_TIMESTAMP,
            CHECK (start_time IS NULL OR end_time IS NULL OR start_time < end_time)
        );
        CREATE INDEX bookings_booking_date_idx ON bookings (booking_date);""",
    'blocked_dates': """
        CREATE TABLE blocked_dates (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            blocked_date date UNIQUE NOT NULL,
            reason text,
            blocked_by text,
            created_at timestamp with time zone NOT NULL DEFAULT CURRENT_TIMESTAMP
        );""",
    # No foreign key so the trail outlives deleted bookings
    'booking_events': """
        CREATE TABLE booking_events (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            booking_id uuid,
            event_type text NOT NULL,
            actor text,
            details jsonb NOT NULL DEFAULT '{}',
            created_at timestamp with time zone NOT NULL DEFAULT CURRENT_TIMESTAMP
        );
        CREATE INDEX booking_events_booking_id_idx ON booking_events (booking_id);""",
    'notifications': """
        CREATE TABLE notifications (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            title text,
            message text NOT NULL,
            type text NOT NULL DEFAULT 'info',
            priority text NOT NULL DEFAULT 'medium',
            is_read boolean NOT NULL DEFAULT false,
            metadata jsonb,
            created_at timestamp with time zone NOT NULL DEFAULT CURRENT_TIMESTAMP
        );""",
    'analytics_summary': """
        CREATE TABLE analytics_summary (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            events_hosted integer NOT NULL CHECK (events_hosted >= 0),
            guests_served integer NOT NULL CHECK (guests_served >= 0),
            client_satisfaction integer NOT NULL CHECK (client_satisfaction BETWEEN 0 AND 100),
            updated_by text,
            created_at timestamp with time zone NOT NULL DEFAULT CURRENT_TIMESTAMP
        );""",
}


def _adapt(record: Mapping) -> dict:
    return {column: Json(value) if column in JSON_COLUMNS and value is not None else value
            for column, value in record.items()}


class DatabasePersistence:
    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn or os.environ.get('DATABASE_URL', DEFAULT_DSN)
        if self.dsn not in _schema_ready:
            self._setup_schema()
            _schema_ready.add(self.dsn)

    def connect(self):
        """Raw connection, used by the realtime listener which manages its own lifetime."""
        return psycopg2.connect(self.dsn)

    @contextmanager
    def _database_connect(self):
        """
        Internal function to manage the Postgres database connections.
        The block runs in one transaction: committed on success, rolled back if it raises.
        """
        connection = psycopg2.connect(self.dsn)
        try:
            with connection:
                yield connection
        finally:
            connection.close()

    def _fetch_all(self, query, params=()) -> List[dict]:
        logger.info("Executing query: %s", query)
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                cursor.execute(query, params)
                return [dict(row) for row in cursor.fetchall()]

    def _fetch_one(self, query, params=()) -> Optional[dict]:
        logger.info("Executing query: %s", query)
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                cursor.execute(query, params)
                row = cursor.fetchone()
        return dict(row) if row is not None else None

    def _execute(self, query, params=()) -> int:
        logger.info("Executing query: %s", query)
        with self._database_connect() as conn:
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                return cursor.rowcount

    @staticmethod
    def _insert_query(table: str, columns) -> sql.Composed:
        return sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
            sql.Identifier(table),
            sql.SQL(', ').join(map(sql.Identifier, columns)),
            sql.SQL(', ').join(sql.Placeholder() * len(columns)))

    # Bookings

    _BOOKING_SELECT = """SELECT bookings.*, packages.name AS package_name
                         FROM bookings LEFT JOIN packages ON packages.id = bookings.package_id"""

    def get_booking(self, booking_id) -> Optional[dict]:
        query = self._BOOKING_SELECT + " WHERE bookings.id = %s"
        return self._fetch_one(query, (str(booking_id),))

    def list_bookings(self, status=None, q=None, date_from=None, date_to=None, package_id=None) -> List[dict]:
        clauses, params = [], []
        if status:
            clauses.append("bookings.status = %s")
            params.append(status)
        if q:
            clauses.append("(bookings.full_name ILIKE %s OR bookings.mobile ILIKE %s OR bookings.email ILIKE %s)")
            params.extend([f"%{q}%"] * 3)
        if date_from:
            clauses.append("bookings.booking_date >= %s")
            params.append(date_from)
        if date_to:
            clauses.append("bookings.booking_date <= %s")
            params.append(date_to)
        if package_id:
            clauses.append("bookings.package_id = %s")
            params.append(str(package_id))
        query = self._BOOKING_SELECT
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY bookings.booking_date DESC, bookings.start_time"
        return self._fetch_all(query, params)

    def bookings_between(self, first: date, last: date) -> List[dict]:
        query = self._BOOKING_SELECT + """ WHERE bookings.booking_date BETWEEN %s AND %s
                                          ORDER BY bookings.booking_date, bookings.start_time"""
        return self._fetch_all(query, (first, last))

    def _lock_date(self, cursor, day: date):
        cursor.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (day.isoformat(),))

    def _date_state(self, cursor, day: date, exclude_id=None):
        """Active bookings on day (minus exclude_id) and whether the day is blocked."""
        query = """SELECT * FROM bookings
                   WHERE booking_date = %s AND status IN ('pending', 'confirmed') AND is_active
                   AND (%s::uuid IS NULL OR id <> %s::uuid)"""
        logger.info("Executing query: %s", query)
        exclude = str(exclude_id) if exclude_id is not None else None
        cursor.execute(query, (day, exclude, exclude))
        existing = [dict(row) for row in cursor.fetchall()]
        cursor.execute("SELECT EXISTS (SELECT 1 FROM blocked_dates WHERE blocked_date = %s)", (day,))
        blocked = cursor.fetchone()[0]
        return existing, blocked

    def insert_booking(self, record: Mapping, check: Optional[ConflictCheck] = None) -> dict:
        """
        Inserts a booking while holding the advisory lock for its date.
        check runs against the locked state before the insert; raising from it rolls everything back.
        """
        columns = list(record.keys())
        query = self._insert_query('bookings', columns)
        logger.info("Executing query: INSERT INTO bookings (%s)", ", ".join(columns))
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                self._lock_date(cursor, record['booking_date'])
                if check is not None:
                    existing, blocked = self._date_state(cursor, record['booking_date'])
                    check(None, dict(record), existing, blocked)
                try:
                    cursor.execute(query, list(_adapt(record).values()))
                except psycopg2.DatabaseError as e:
                    logger.error("Booking insertion failed: %s", e.args)
                    raise
                return dict(cursor.fetchone())

    def update_booking(self, booking_id, changes: Mapping, check: Optional[ConflictCheck] = None) -> dict:
        """
        Applies changes to a booking under the advisory locks of both its old and new date.
        Raises BookingNotFoundError when the booking does not exist.
        """
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                query = "SELECT * FROM bookings WHERE id = %s FOR UPDATE"
                logger.info("Executing query: %s", query)
                cursor.execute(query, (str(booking_id),))
                row = cursor.fetchone()
                if row is None:
                    raise BookingNotFoundError()
                current = dict(row)
                candidate = {**current, **changes}
                # Fixed lock order so two moves between the same dates cannot deadlock
                for day in sorted({current['booking_date'], candidate['booking_date']}):
                    self._lock_date(cursor, day)
                if check is not None:
                    existing, blocked = self._date_state(cursor, candidate['booking_date'], exclude_id=booking_id)
                    check(current, candidate, existing, blocked)

                values = _adapt({**changes})
                update = sql.SQL("UPDATE bookings SET {}, updated_at = CURRENT_TIMESTAMP WHERE id = %s RETURNING *").format(
                    sql.SQL(', ').join(sql.SQL("{} = %s").format(sql.Identifier(column)) for column in values))
                logger.info("Executing query: UPDATE bookings SET %s", ', '.join(values))
                try:
                    cursor.execute(update, list(values.values()) + [str(booking_id)])
                except psycopg2.DatabaseError as e:
                    logger.error("Booking update failed: %s", e.args)
                    raise
                return dict(cursor.fetchone())

    def delete_booking(self, booking_id) -> bool:
        query = "DELETE FROM bookings WHERE id = %s"
        return self._execute(query, (str(booking_id),)) > 0

    # Blocked dates

    def blocked_dates_between(self, first: date, last: date) -> List[date]:
        query = "SELECT blocked_date FROM blocked_dates WHERE blocked_date BETWEEN %s AND %s ORDER BY blocked_date"
        return [row['blocked_date'] for row in self._fetch_all(query, (first, last))]

    def get_blocked_date(self, day: date) -> Optional[dict]:
        query = "SELECT * FROM blocked_dates WHERE blocked_date = %s"
        return self._fetch_one(query, (day,))

    def insert_blocked_date(self, day: date, reason: Optional[str], blocked_by: Optional[str]) -> dict:
        """Blocks day; blocking an already blocked day returns the existing row."""
        query = """INSERT INTO blocked_dates (blocked_date, reason, blocked_by) VALUES (%s, %s, %s)
                   ON CONFLICT (blocked_date) DO NOTHING"""
        logger.info("Executing query: %s", query)
        with self._database_connect() as conn:
            with conn.cursor(cursor_factory=DictCursor) as cursor:
                self._lock_date(cursor, day)
                cursor.execute(query, (day, reason, blocked_by))
                cursor.execute("SELECT * FROM blocked_dates WHERE blocked_date = %s", (day,))
                return dict(cursor.fetchone())

    def delete_blocked_date(self, day: date) -> bool:
        query = "DELETE FROM blocked_dates WHERE blocked_date = %s"
        return self._execute(query, (day,)) > 0

    # Audit trail

    def insert_booking_event(self, booking_id, event_type: str, actor: Optional[str], details: Optional[dict] = None) -> dict:
        query = """INSERT INTO booking_events (booking_id, event_type, actor, details)
                   VALUES (%s, %s, %s, %s) RETURNING *"""
        booking_id = str(booking_id) if booking_id is not None else None
        return self._fetch_one(query, (booking_id, event_type, actor, Json(details or {})))

    def list_booking_events(self, booking_id) -> List[dict]:
        query = "SELECT * FROM booking_events WHERE booking_id = %s ORDER BY created_at DESC"
        return self._fetch_all(query, (str(booking_id),))

    # Catalogue

    def get_package(self, package_id) -> Optional[dict]:
        query = "SELECT * FROM packages WHERE id = %s"
        return self._fetch_one(query, (str(package_id),))

    def list_packages(self, include_inactive: bool = False) -> List[dict]:
        query = "SELECT * FROM packages"
        if not include_inactive:
            query += " WHERE is_active"
        query += " ORDER BY order_index NULLS LAST, name"
        return self._fetch_all(query)

    def list_facilities(self, include_inactive: bool = False) -> List[dict]:
        query = "SELECT * FROM facilities"
        if not include_inactive:
            query += " WHERE is_active"
        query += " ORDER BY order_index NULLS LAST, title"
        return self._fetch_all(query)

    def list_gallery(self) -> List[dict]:
        query = "SELECT * FROM gallery ORDER BY is_featured DESC, display_order NULLS LAST, created_at DESC"
        return self._fetch_all(query)

    # Notifications

    def insert_notification(self, title: str, message: str, type: str = 'info', priority: str = 'medium',
                            metadata: Optional[dict] = None) -> dict:
        query = """INSERT INTO notifications (title, message, type, priority, metadata)
                   VALUES (%s, %s, %s, %s, %s) RETURNING *"""
        return self._fetch_one(query, (title, message, type, priority, Json(metadata) if metadata is not None else None))

    def list_notifications(self, limit: int = 50) -> List[dict]:
        query = "SELECT * FROM notifications ORDER BY created_at DESC LIMIT %s"
        return self._fetch_all(query, (limit,))

    def mark_notification_read(self, notification_id) -> bool:
        query = "UPDATE notifications SET is_read = true WHERE id = %s"
        return self._execute(query, (str(notification_id),)) > 0

    def mark_all_notifications_read(self) -> int:
        query = "UPDATE notifications SET is_read = true WHERE NOT is_read"
        return self._execute(query)

    def delete_notification(self, notification_id) -> bool:
        query = "DELETE FROM notifications WHERE id = %s"
        return self._execute(query, (str(notification_id),)) > 0

    # Analytics (append only)

    def insert_analytics(self, snapshot: Mapping) -> dict:
        query = """INSERT INTO analytics_summary (events_hosted, guests_served, client_satisfaction, updated_by)
                   VALUES (%s, %s, %s, %s) RETURNING *"""
        return self._fetch_one(query, (snapshot['events_hosted'], snapshot['guests_served'],
                                       snapshot['client_satisfaction'], snapshot.get('updated_by')))

    def latest_analytics(self) -> Optional[dict]:
        query = "SELECT * FROM analytics_summary ORDER BY created_at DESC LIMIT 1"
        return self._fetch_one(query)

    def analytics_history(self, limit: int) -> List[dict]:
        query = "SELECT * FROM analytics_summary ORDER BY created_at DESC LIMIT %s"
        return self._fetch_all(query, (limit,))

    # Schema

    def _setup_schema(self):
        """
        Internal function to set up the database schema if the tables do not exist.
        """
        with self._database_connect() as conn:
            with conn.cursor() as cursor:
                cursor.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")
                for table_name, create_query in TABLES.items():
                    cursor.execute("""
                        SELECT COUNT(*)
                        FROM information_schema.tables
                        WHERE table_schema = 'public' AND table_name = %s;
                    """, (table_name,))
                    if cursor.fetchone()[0] == 0:
                        logger.info("Creating table %s", table_name)
                        cursor.execute(create_query)
                self._setup_change_feed(cursor)

    def _setup_change_feed(self, cursor):
        """
        Creates the trigger function that publishes row changes on the venue_changes channel
        and attaches it to every table the realtime bridge follows. Each trigger passes the
        columns it publishes as arguments, so payloads stay small whatever the row holds.
        """
        cursor.execute("""
        CREATE OR REPLACE FUNCTION notify_venue_change()
        RETURNS TRIGGER AS $$
        DECLARE
            new_row jsonb;
            old_row jsonb;
        BEGIN
            IF TG_OP <> 'DELETE' THEN
                SELECT jsonb_object_agg(key, value) INTO new_row
                FROM jsonb_each(to_jsonb(NEW)) WHERE key = ANY(TG_ARGV);
            END IF;
            IF TG_OP <> 'INSERT' THEN
                SELECT jsonb_object_agg(key, value) INTO old_row
                FROM jsonb_each(to_jsonb(OLD)) WHERE key = ANY(TG_ARGV);
            END IF;
            PERFORM pg_notify('venue_changes', jsonb_build_object(
                'table', TG_TABLE_NAME,
                'type', TG_OP,
                'record', new_row,
                'old_record', old_row
            )::text);
            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql;""")

        # Recreated every time so the published column list follows CHANGE_FEED_COLUMNS
        for table_name, columns in CHANGE_FEED_COLUMNS.items():
            trigger_name = sql.Identifier(f"{table_name}_change_feed")
            cursor.execute(sql.SQL("DROP TRIGGER IF EXISTS {} ON {};").format(
                trigger_name, sql.Identifier(table_name)))
            cursor.execute(sql.SQL("""
            CREATE TRIGGER {}
            AFTER INSERT OR UPDATE OR DELETE ON {}
            FOR EACH ROW
            EXECUTE FUNCTION notify_venue_change({});""").format(
                trigger_name, sql.Identifier(table_name), sql.SQL(', ').join(map(sql.Literal, columns))))
