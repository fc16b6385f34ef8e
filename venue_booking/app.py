from datetime import date, datetime, time
from decimal import Decimal
import logging
import os
import queue
import secrets
from functools import wraps
from uuid import UUID
from zoneinfo import ZoneInfo
from flask import Flask, Response, g, jsonify, request, stream_with_context
from flask.json.provider import DefaultJSONProvider
from flask_debugtoolbar import DebugToolbarExtension
from flask_httpauth import HTTPBasicAuth
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash, check_password_hash
import psycopg2
from venue_booking.booking import database, error_utils
from venue_booking.booking import booking_utils as util
from venue_booking.booking.analytics import AnalyticsLog, validate_history_limit
from venue_booking.booking.booking_service import BookingService
from venue_booking.booking.calendar import month_bounds
from venue_booking.booking.query_cache import (AnalyticsKeys, AvailabilityKeys, CalendarKeys, FACILITIES_KEY, GALLERY_KEY,
                                               NotificationKeys, PACKAGES_KEY, QueryCache)
from venue_booking.booking.rate_limiter import RateLimiter
from venue_booking.booking.realtime import NotificationBridge, TABLE_QUERY_KEYS
from venue_booking.booking.time_slots import slot_definitions

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
logger = logging.getLogger(__name__)

DEFAULT_NOTIFICATION_LIMIT = 50


class VenueJSONProvider(DefaultJSONProvider):
    """Dates as ISO strings, times as HH:MM, decimals as numbers."""

    @staticmethod
    def default(o):
        if isinstance(o, time):
            return o.strftime('%H:%M')
        if isinstance(o, (date, datetime)):
            return o.isoformat()
        if isinstance(o, Decimal):
            return float(o)
        if isinstance(o, UUID):
            return str(o)
        return DefaultJSONProvider.default(o)


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() in ('1', 'true', 'yes')


def create_app():
    app = Flask(__name__)
    app.json = VenueJSONProvider(app)
    app.secret_key = os.environ.get('SECRET_KEY') or secrets.token_hex(32) #256 bit
    app.config['SECRET_KEY'] = app.secret_key
    if os.environ.get('FLASK_ENV') == 'production':
        app.config['DOMAIN'] = os.environ.get('DOMAIN', 'https://www.example.com')
    else:
        app.config['DOMAIN'] = 'http://localhost:5003'
        app.config["DEBUG_TB_INTERCEPT_REDIRECTS"] = False  # Prevents redirect issues

    app.config['DATABASE_URL'] = os.environ.get('DATABASE_URL', database.DEFAULT_DSN)
    # Swapped out in tests for an in-memory store
    app.config['DATABASE_FACTORY'] = lambda: database.DatabasePersistence(app.config['DATABASE_URL'])
    app.config['VENUE_TIMEZONE'] = os.environ.get('VENUE_TIMEZONE', 'Asia/Kolkata')
    app.config['PHONE_REGION'] = os.environ.get('PHONE_REGION', 'IN')
    app.config['BOOKING_MAX_PER_DAY'] = int(os.environ.get('BOOKING_MAX_PER_DAY', 2))
    app.config['BOOKING_RATE_LIMIT'] = int(os.environ.get('BOOKING_RATE_LIMIT', 5))
    app.config['BOOKING_RATE_WINDOW'] = int(os.environ.get('BOOKING_RATE_WINDOW', 3600))
    app.config['CACHE_STALE_SECONDS'] = int(os.environ.get('CACHE_STALE_SECONDS', 300))
    app.config['REALTIME_ENABLED'] = _env_flag('REALTIME_ENABLED')
    return app

app = create_app()
# Set to make Flask debug toolbar work
if not os.environ.get('FLASK_ENV') == 'production':
    app.debug = True
auth = HTTPBasicAuth()

query_cache = QueryCache(stale_time=app.config['CACHE_STALE_SECONDS'])
rate_limiter = RateLimiter(app.config['BOOKING_RATE_LIMIT'], app.config['BOOKING_RATE_WINDOW'])
bridge = NotificationBridge(query_cache)


# Must set this in prod
prod_hash = os.getenv('HASH_ADMIN')

if prod_hash:
    users = {
        "admin": generate_password_hash(prod_hash)
    }
else: # For dev
    users = {
        "admin": generate_password_hash('secret')
    }

@auth.verify_password
def verify_password(username, password):
    if username in users and check_password_hash(users.get(username), password):
        return username

@auth.error_handler
def unauthorized(status):
    return failure("Unauthorized", status)

# Use decorator to create g.db instance within request context window for functions that require it
def instantiate_database(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        g.db = app.config['DATABASE_FACTORY']()
        return f(*args, **kwargs)
    return decorated_function

def venue_today() -> date:
    return datetime.now(ZoneInfo(app.config['VENUE_TIMEZONE'])).date()

def booking_service() -> BookingService:
    return BookingService(g.db, venue_today(), app.config['BOOKING_MAX_PER_DAY'], app.config['PHONE_REGION'])

def invalidate_tables(*tables):
    """Drops cached queries for tables this process just wrote, without waiting for the change feed."""
    for table in tables:
        for prefix in TABLE_QUERY_KEYS.get(table, []):
            query_cache.invalidate(prefix)

def success(data=None, message=None, status=200, **extra):
    body = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    body.update(extra)
    return jsonify(body), status

def failure(error, status, **extra):
    body = {"success": False, "error": error}
    body.update(extra)
    return jsonify(body), status

def json_body(required=True):
    payload = request.get_json(silent=True)
    if payload is None and not required:
        return {}
    if not isinstance(payload, dict):
        raise error_utils.BookingValidationError({'body': 'Expected a JSON object'})
    return payload

def admin_name() -> str:
    return auth.current_user()


@app.route('/')
def index():
    return success({"service": "venue-booking", "realtime": bridge.status}, "Venue booking service is running")

@app.route('/api/time-slots')
def get_time_slots():
    return success(slot_definitions())

@app.route('/api/calendar/<int:year>/<int:month>')
@instantiate_database
def get_calendar(year, month):
    month_bounds(year, month)
    service = booking_service()
    flags = query_cache.fetch(CalendarKeys.month(year, month), lambda: service.calendar_flags(year, month))
    return success(service.build_calendar(year, month, flags).to_dict())

@app.route('/api/availability/check')
@instantiate_database
def check_availability():
    booking_date = request.args.get('date')
    if not booking_date:
        raise error_utils.BookingValidationError({'date': 'date is required'})
    result = booking_service().check_availability(booking_date, request.args.get('start_time'), request.args.get('end_time'))
    return success(result, result['message'])

@app.route('/api/availability/month/<int:year>/<int:month>')
@instantiate_database
def get_month_availability(year, month):
    month_bounds(year, month)
    service = booking_service()
    summary = query_cache.fetch(AvailabilityKeys.monthly(year, month), lambda: service.month_availability(year, month))
    return success(summary)

@app.route('/api/bookings', methods=['POST'])
@instantiate_database
def create_booking():
    ip_address = util.client_ip(request.headers, request.remote_addr)
    allowed, remaining = rate_limiter.check(ip_address)
    if not allowed:
        raise error_utils.RateLimitExceeded(rate_limiter.limit)
    booking = booking_service().create_booking(request.get_json(silent=True), ip_address=ip_address)
    invalidate_tables('bookings', 'notifications')
    return success(booking, "Booking request submitted successfully. We will contact you soon.", 201,
                   remaining_requests=remaining)

@app.route('/api/packages')
@instantiate_database
def get_packages():
    return success(query_cache.fetch(PACKAGES_KEY, g.db.list_packages))

@app.route('/api/facilities')
@instantiate_database
def get_facilities():
    return success(query_cache.fetch(FACILITIES_KEY, g.db.list_facilities))

@app.route('/api/gallery')
@instantiate_database
def get_gallery():
    return success(query_cache.fetch(GALLERY_KEY, g.db.list_gallery))

@app.route('/api/analytics')
@instantiate_database
def get_analytics():
    return success(query_cache.fetch(AnalyticsKeys.latest(), AnalyticsLog(g.db).summary))


# Admin: bookings

@app.route('/admin/bookings', methods=['GET'])
@auth.login_required
@instantiate_database
def list_bookings():
    bookings = booking_service().search(
        status=request.args.get('status'),
        q=request.args.get('q'),
        date_from=request.args.get('date_from'),
        date_to=request.args.get('date_to'),
        package_id=request.args.get('package_id'),
    )
    return success(bookings, count=len(bookings))

@app.route('/admin/bookings', methods=['POST'])
@auth.login_required
@instantiate_database
def create_manual_booking():
    booking = booking_service().create_manual_booking(json_body(), admin_name())
    invalidate_tables('bookings')
    return success(booking, "Booking created", 201)

@app.route('/admin/bookings/<uuid:booking_id>', methods=['GET'])
@auth.login_required
@instantiate_database
def get_booking(booking_id):
    return success(booking_service().get_booking(booking_id))

@app.route('/admin/bookings/<uuid:booking_id>', methods=['PATCH'])
@auth.login_required
@instantiate_database
def update_booking(booking_id):
    booking = booking_service().update_details(booking_id, json_body(), admin_name())
    invalidate_tables('bookings')
    return success(booking, "Booking updated")

@app.route('/admin/bookings/<uuid:booking_id>', methods=['DELETE'])
@auth.login_required
@instantiate_database
def delete_booking(booking_id):
    booking_service().delete_booking(booking_id, admin_name())
    invalidate_tables('bookings')
    return success(message="Booking deleted")

@app.route('/admin/bookings/<uuid:booking_id>/extras', methods=['PATCH'])
@auth.login_required
@instantiate_database
def update_extras(booking_id):
    booking = booking_service().update_extras(booking_id, json_body(), admin_name())
    invalidate_tables('bookings')
    return success(booking, "Extras updated")

@app.route('/admin/bookings/<uuid:booking_id>/<any(confirm, cancel, complete, reopen):action>', methods=['POST'])
@auth.login_required
@instantiate_database
def booking_action(booking_id, action):
    statuses = {'confirm': 'confirmed', 'cancel': 'cancelled', 'complete': 'completed', 'reopen': 'pending'}
    notes = json_body(required=False).get('notes')
    booking = booking_service().change_status(booking_id, statuses[action], admin_name(), notes)
    invalidate_tables('bookings')
    return success(booking, f"Booking {booking['status']}")

@app.route('/admin/bookings/<uuid:booking_id>/status', methods=['PATCH'])
@auth.login_required
@instantiate_database
def change_booking_status(booking_id):
    payload = json_body()
    booking = booking_service().change_status(booking_id, payload.get('status'), admin_name(), payload.get('notes'))
    invalidate_tables('bookings')
    return success(booking, f"Booking {booking['status']}")

@app.route('/admin/bookings/<uuid:booking_id>/events', methods=['GET'])
@auth.login_required
@instantiate_database
def booking_history(booking_id):
    return success(booking_service().history(booking_id))


# Admin: calendar

@app.route('/admin/calendar/<int:year>/<int:month>')
@auth.login_required
@instantiate_database
def admin_calendar(year, month):
    first, last = month_bounds(year, month)
    service = booking_service()
    flags = query_cache.fetch(CalendarKeys.month(year, month), lambda: service.calendar_flags(year, month))
    data = service.build_calendar(year, month, flags).to_dict()
    data['bookings'] = service.bookings_by_day(year, month)
    data['blocked_dates'] = g.db.blocked_dates_between(first, last)
    return success(data)

@app.route('/admin/calendar/block', methods=['POST'])
@auth.login_required
@instantiate_database
def block_date():
    payload = json_body()
    blocked = booking_service().block_date(payload.get('date'), payload.get('reason'), admin_name())
    invalidate_tables('blocked_dates')
    return success(blocked, "Date blocked")

@app.route('/admin/calendar/block/<blocked_date>', methods=['DELETE'])
@auth.login_required
@instantiate_database
def unblock_date(blocked_date):
    day = booking_service().unblock_date(blocked_date, admin_name())
    invalidate_tables('blocked_dates')
    return success({"date": day}, "Date unblocked")


# Admin: notifications

def _unread(notifications):
    return sum(1 for notification in notifications if not notification.get('is_read'))

@app.route('/admin/notifications', methods=['GET'])
@auth.login_required
@instantiate_database
def list_notifications():
    limit = request.args.get('limit', DEFAULT_NOTIFICATION_LIMIT)
    try:
        limit = int(limit)
    except ValueError:
        raise error_utils.BookingValidationError({'limit': 'limit must be a whole number'})
    if not 1 <= limit <= 100:
        raise error_utils.BookingValidationError({'limit': 'limit must be between 1 and 100'})
    notifications = query_cache.fetch(NotificationKeys.listing(limit), lambda: g.db.list_notifications(limit))
    return success({"notifications": notifications, "unread_count": _unread(notifications)})

@app.route('/admin/notifications/<uuid:notification_id>/read', methods=['POST'])
@auth.login_required
@instantiate_database
def mark_notification_read(notification_id):
    def mark_read(notifications):
        return [dict(n, is_read=True) if str(n['id']) == str(notification_id) else n for n in notifications or []]

    with query_cache.optimistic(NotificationKeys.ALL, mark_read):
        if not g.db.mark_notification_read(notification_id):
            raise error_utils.BookingNotFoundError("Notification")
    return success(message="Notification marked as read")

@app.route('/admin/notifications/read-all', methods=['POST'])
@auth.login_required
@instantiate_database
def mark_all_notifications_read():
    def mark_all(notifications):
        return [dict(n, is_read=True) for n in notifications or []]

    with query_cache.optimistic(NotificationKeys.ALL, mark_all):
        updated = g.db.mark_all_notifications_read()
    return success({"updated": updated}, "All notifications marked as read")

@app.route('/admin/notifications/<uuid:notification_id>', methods=['DELETE'])
@auth.login_required
@instantiate_database
def delete_notification(notification_id):
    def remove(notifications):
        return [n for n in notifications or [] if str(n['id']) != str(notification_id)]

    with query_cache.optimistic(NotificationKeys.ALL, remove):
        if not g.db.delete_notification(notification_id):
            raise error_utils.BookingNotFoundError("Notification")
    return success(message="Notification deleted")

@app.route('/admin/notifications/stream')
@auth.login_required
def notification_stream():
    stream = bridge.open_stream()

    def generate():
        try:
            yield f"event: status\ndata: {app.json.dumps({'status': bridge.status})}\n\n"
            while True:
                try:
                    event = stream.get(timeout=15)
                except queue.Empty:
                    yield ": keep-alive\n\n"
                    continue
                yield f"event: change\ndata: {app.json.dumps(event.to_dict())}\n\n"
        finally:
            bridge.close_stream(stream)

    return Response(stream_with_context(generate()), mimetype='text/event-stream',
                    headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'})

@app.route('/admin/notifications/recent-bookings', methods=['GET'])
@auth.login_required
def recent_bookings():
    return success({
        "bookings": bridge.inbox.items(),
        "unread_count": bridge.inbox.unread_count,
        "connected": bridge.is_connected,
        "status": bridge.status,
    })

@app.route('/admin/notifications/recent-bookings/read', methods=['POST'])
@auth.login_required
def mark_recent_bookings_read():
    bridge.inbox.mark_as_read()
    return success(message="Recent bookings marked as read")


# Admin: analytics

@app.route('/admin/analytics/history', methods=['GET'])
@auth.login_required
@instantiate_database
def analytics_history():
    try:
        limit = int(request.args.get('limit', 3))
    except ValueError:
        raise error_utils.BookingValidationError({'limit': 'limit must be a whole number'})
    validate_history_limit(limit)
    log = AnalyticsLog(g.db)
    return success(query_cache.fetch(AnalyticsKeys.history(limit), lambda: log.history(limit)))

@app.route('/admin/analytics', methods=['POST'])
@auth.login_required
@instantiate_database
def record_analytics():
    row = AnalyticsLog(g.db).record(json_body(), admin_name())
    invalidate_tables('analytics_summary')
    return success(row, "Analytics updated", 201)


# Error handlers

@app.errorhandler(error_utils.BookingValidationError)
def handle_validation_error(error):
    return failure(error.message, 400, details=error.errors)

@app.errorhandler(error_utils.TimeValidationError)
def handle_time_error(error):
    return failure(error.message, 400, details={'time': error.message})

@app.errorhandler(error_utils.BookingNotFoundError)
def handle_not_found(error):
    return failure(error.message, 404)

@app.errorhandler(error_utils.BookingConflictError)
def handle_conflict(error):
    return failure(error.message, 409, conflicts=error.conflicts)

@app.errorhandler(error_utils.InvalidStatusTransition)
def handle_invalid_transition(error):
    return failure(error.message, 409, current_status=error.current, requested_status=error.requested)

@app.errorhandler(error_utils.RateLimitExceeded)
def handle_rate_limit(error):
    return failure(error.message, 429)

@app.errorhandler(HTTPException)
def handle_http_error(error):
    return failure(error.description or error.name, error.code)

@app.errorhandler(psycopg2.DatabaseError)
def handle_database_error(error):
    logger.error("Database error: %s", error.args)
    return failure("Database error", 500)

@app.errorhandler(Exception)
def handle_unexpected_error(error):
    logger.exception("Unhandled error: %s", error)
    return failure("Internal server error", 500)


if app.config['REALTIME_ENABLED']:
    bridge.start(database.DatabasePersistence(app.config['DATABASE_URL']).connect)

if __name__ == '__main__':
    # production
    if os.environ.get('FLASK_ENV') == 'production':
       app.run(debug=False)
    else:
       toolbar = DebugToolbarExtension(app)
       app.run(debug=True, port=5003)
