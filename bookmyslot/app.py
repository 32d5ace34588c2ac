from functools import wraps
import logging
import os
import secrets

import click
from flask import Flask, render_template, request, g, jsonify, current_app
from flask_debugtoolbar import DebugToolbarExtension
from flask_httpauth import HTTPBasicAuth
from werkzeug.security import generate_password_hash, check_password_hash

from bookmyslot.booking import error_utils
from bookmyslot.booking.config import BookingConfig
from bookmyslot.booking.database import BookingPersistence
from bookmyslot.booking.models import APPROVED
from bookmyslot.booking.state_machine import BookingStateMachine

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
logger = logging.getLogger(__name__)

auth = HTTPBasicAuth()


def default_engine_factory(config: BookingConfig) -> BookingStateMachine:
    return BookingStateMachine(config, BookingPersistence(config.database_url))


def create_app(config: BookingConfig = None, engine_factory=None):
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    app = Flask(__name__)
    app.secret_key = secrets.token_hex(32) #256 bit
    app.config['SECRET_KEY'] = app.secret_key
    app.config['BOOKING'] = config or BookingConfig.from_env()
    app.config['ENGINE_FACTORY'] = engine_factory or default_engine_factory
    if os.environ.get('FLASK_ENV') != 'production':
        app.config["DEBUG_TB_INTERCEPT_REDIRECTS"] = False  # Prevents redirect issues

    admin_password = app.config['BOOKING'].admin_password
    if not admin_password:
        # For dev
        admin_password = 'secret'
        logger.warning("ADMIN_PASSWORD not set, using the development password")
    app.config['ADMIN_USERS'] = {"admin": generate_password_hash(admin_password)}

    _register_routes(app)
    _register_error_handlers(app)
    _register_commands(app)
    return app


@auth.verify_password
def verify_password(username, password):
    users = current_app.config['ADMIN_USERS']
    if username in users and check_password_hash(users.get(username), password):
        return username


# Use decorator to create g.engine within the request context, one engine per request
def instantiate_engine(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        g.engine = current_app.config['ENGINE_FACTORY'](current_app.config['BOOKING'])
        return f(*args, **kwargs)
    return decorated_function


def _request_data():
    if request.is_json:
        return request.get_json(silent=True)
    return request.values.to_dict()


def _register_routes(app: Flask):

    @app.route('/')
    def home():
        return jsonify({"service": "bookmyslot", "status": "ok"})

    # Clients poll this on demand, nothing is cached between requests
    @app.route('/api/slots', methods=['GET', 'POST'])
    @instantiate_engine
    def get_slots():
        data = _request_data() or {}
        slots = g.engine.available_slots(data.get('startDate'), data.get('endDate'))
        return jsonify({"slots": [slot.to_json() for slot in slots]})

    @app.route('/api/booking-requests', methods=['POST'])
    @instantiate_engine
    def submit_booking_request():
        booking = g.engine.submit(_request_data())
        return jsonify({
            "success": True,
            "bookingId": str(booking.id),
            "message": "Booking request submitted successfully. You will receive a confirmation email once approved.",
        }), 201

    # Link from the operator's email
    @app.route('/booking/approval', methods=['GET'])
    @instantiate_engine
    def handle_booking_approval():
        token = request.args.get('token', '').strip()
        action = request.args.get('action', '').strip()
        if not token or action not in ('approve', 'reject'):
            return render_template('error.html', message="Invalid request parameters."), 400
        booking = g.engine.resolve(token, action)
        return render_template('approval.html', booking=booking, approved=booking.status == APPROVED)

    # Link from the requester's confirmation email
    @app.route('/booking/cancel', methods=['GET'])
    @instantiate_engine
    def handle_booking_cancellation():
        token = request.args.get('token', '').strip()
        if not token:
            return render_template('error.html', message="Invalid request: missing cancellation token."), 400
        booking = g.engine.cancel(token, request.args.get('reason'))
        response = current_app.make_response(render_template('cancelled.html', booking=booking))
        response.headers['Cache-Control'] = 'no-cache, no-store, must-revalidate'
        return response

    @app.route('/admin/reconciliations', methods=['GET'])
    @auth.login_required
    @instantiate_engine
    def list_reconciliations():
        return jsonify({"tasks": [task.to_json() for task in g.engine.pending_reconciliations()]})

    @app.route('/admin/reconciliations/retry', methods=['POST'])
    @auth.login_required
    @instantiate_engine
    def retry_reconciliations():
        return jsonify(g.engine.reconcile().to_json())


def _wants_html() -> bool:
    return request.path.startswith('/booking/')


def _error_response(error: error_utils.BookingError, status: int, message: str = None):
    message = message or error.public_message
    if _wants_html():
        return render_template('error.html', message=message), status
    return jsonify({"error": message}), status


def _register_error_handlers(app: Flask):

    @app.errorhandler(error_utils.ValidationError)
    def handle_validation_error(error):
        logger.info(f"Rejected input on {request.path}: {error.message}")
        # Validation messages only describe the caller's own input
        return _error_response(error, 400, error.message)

    @app.errorhandler(error_utils.NotFound)
    def handle_not_found(error):
        return _error_response(error, 404)

    @app.errorhandler(error_utils.CalendarLookupFailure)
    def handle_calendar_lookup(error):
        logger.error(f"Calendar lookup failed on {request.path}: {error}")
        return _error_response(error, 502)

    @app.errorhandler(error_utils.BookingError)
    def handle_booking_error(error):
        # AuthenticationFailure, PersistenceError and anything else fatal
        logger.error(f"{type(error).__name__} on {request.path}: {error}")
        return _error_response(error, 500)


def _register_commands(app: Flask):

    @app.cli.command('reconcile')
    def reconcile_command():
        """Retry calendar side effects that failed after a booking transition."""
        engine = app.config['ENGINE_FACTORY'](app.config['BOOKING'])
        report = engine.reconcile()
        click.echo(f"completed: {len(report.completed)}, failed: {len(report.failed)}, skipped: {len(report.skipped)}")


if __name__ == '__main__':
    app = create_app()
    # production
    if os.environ.get('FLASK_ENV') == 'production':
        app.run(debug=False)
    else:
        app.debug = True
        toolbar = DebugToolbarExtension(app)
        app.run(debug=True, port=5003)
