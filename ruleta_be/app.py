from dotenv import load_dotenv
import os

# Load environment variables from .env file
load_dotenv()

from flask import Flask, request, jsonify, current_app, g
import uuid
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from flask_cors import CORS
from flask_socketio import SocketIO
from flask_jwt_extended import JWTManager
from flask_jwt_extended.exceptions import NoAuthorizationError # For JWT specific errors
from sqlalchemy.exc import SQLAlchemyError # For database errors
from werkzeug.exceptions import HTTPException as WerkzeugHTTPException # Renamed to avoid conflict
from flask_talisman import Talisman
from ruleta_be.exceptions import AppException
from ruleta_be.error_codes import ErrorCodes
import json
import logging
import threading
import time
from pythonjsonlogger import jsonlogger
from marshmallow import ValidationError
from http import HTTPStatus
import click # For CLI commands

# Custom Logging Filter for Request ID
class RequestIdFilter(logging.Filter):
    def filter(self, record):
        try:
            record.request_id = g.get('request_id', 'N/A')
        except RuntimeError:
            # Background threads log outside of any request
            record.request_id = 'N/A'
        return True

from .models import db, RouletteMesa
from sqlalchemy import select
from .utils.auth import register_jwt_handlers # Relative import
from .config import Config # Relative import
from .config_validator import validate_production_config
from .services.roulette_engine import RouletteEngine
from .services.settlement_service import CreditJob
from .routes.roulette import roulette_bp

def create_app(config_class=Config):
    """Application factory pattern with enhanced security."""
    app = Flask(__name__)
    app.config.from_object(config_class)

    if app.config.get('VALIDATE_ON_STARTUP'):
        # Fail fast: exits the process when production settings are missing
        app.config.update(validate_production_config())

    # --- Security Headers with Talisman ---
    csp = {
        'default-src': "'self'",
        'script-src': "'self'",
        'style-src': "'self'",
        'img-src': "'self' data:",
        'connect-src': "'self'",
        'frame-ancestors': "'none'"
    }

    Talisman(app,
             force_https=not (app.debug or app.testing),
             strict_transport_security=True,
             content_security_policy=csp)

    # --- CORS Setup ---
    allowed_origins = []

    # Development origins
    if app.debug:
        allowed_origins.extend([
            "http://localhost:8080",
            "http://127.0.0.1:8080",
        ])

    if app.config.get('CORS_ORIGINS_LIST'):
        allowed_origins.extend(app.config['CORS_ORIGINS_LIST'])

    if allowed_origins:
        CORS(app,
             origins=allowed_origins,
             supports_credentials=True,
             methods=['GET', 'POST', 'OPTIONS'],
             allow_headers=['Content-Type', 'Authorization', 'X-CSRF-Token', 'X-Service-Token'],
             expose_headers=['X-RateLimit-Limit', 'X-RateLimit-Remaining'],
             max_age=86400)
        app.logger.info(f"CORS configured for origins: {allowed_origins}")
    else:
        app.logger.warning("No CORS origins configured - API will reject cross-origin requests")

    # --- Logging Configuration ---
    if not app.debug:
        handler = logging.StreamHandler()
        formatter = jsonlogger.JsonFormatter(
            '%(asctime)s %(levelname)s %(request_id)s %(name)s %(funcName)s %(lineno)d %(message)s'
        )
        handler.setFormatter(formatter)
        handler.addFilter(RequestIdFilter())
        # Engine services log through the 'ruleta_be' logger tree from background threads
        for logger in (app.logger, logging.getLogger('ruleta_be')):
            if logger.hasHandlers():
                logger.handlers.clear()
            logger.addHandler(handler)
            logger.setLevel(logging.INFO)
    else:
        if not app.logger.handlers:
            logging.basicConfig(level=logging.DEBUG)

    # --- Request ID Middleware ---
    @app.before_request
    def assign_request_id():
        g.request_id = request.headers.get('X-Request-ID') or str(uuid.uuid4())

    @app.after_request
    def add_request_id_header(response):
        response.headers['X-Request-ID'] = g.get('request_id', '')
        return response

    # --- Production Warnings ---
    log_production_warnings(app)

    # --- Rate Limiter Setup ---
    if app.config.get("TESTING"):
        app.config['RATELIMIT_ENABLED'] = False
        app.config['RATELIMIT_DEFAULT_LIMITS_ENABLED'] = False
        app.config['RATELIMIT_DEFAULT_LIMITS'] = "10000 per second"
    else:
        app.config.setdefault('RATELIMIT_ENABLED', True)
        app.config.setdefault('RATELIMIT_DEFAULT_LIMITS_ENABLED', True)
        app.config.setdefault('RATELIMIT_DEFAULT_LIMITS', "600 per minute")

    limiter = Limiter(key_func=get_remote_address)
    limiter.init_app(app)

    # --- Database Setup ---
    db.init_app(app)
    Migrate(app, db, directory=os.path.join(os.path.dirname(__file__), 'migrations'))

    # --- WebSocket Setup ---
    socketio = SocketIO(app,
                        cors_allowed_origins=allowed_origins,
                        async_mode='threading',
                        logger=app.logger,
                        engineio_logger=app.logger)

    # --- Roulette Engine ---
    engine = RouletteEngine.from_app(app)
    app.roulette_engine = engine

    # Initialize WebSocket Manager
    from .services.websocket_manager import WebSocketManager
    websocket_manager = WebSocketManager()
    websocket_manager.init_app(app, socketio=socketio, engine=engine)

    # Start the engine after app context is ready
    if app.config.get('ROULETTE_ENGINE_AUTOSTART') and not app.config.get('TESTING', False):
        def delayed_start():
            time.sleep(1)  # Wait 1 second for app to be ready
            engine.start()

        thread = threading.Thread(target=delayed_start, daemon=True)
        thread.start()

    # Store socketio and websocket manager in app for access in routes
    app.socketio = socketio
    app.websocket_manager = websocket_manager

    # --- JWT Setup ---
    jwt = JWTManager(app)
    register_jwt_handlers(jwt)

    # --- Specific Error Handlers ---
    @app.errorhandler(ValidationError)
    def handle_validation_error(e):
        # Marshmallow's ValidationError, rendered like our ValidationException
        request_id = g.get('request_id', 'N/A')
        current_app.logger.warning(
            f"Request ID: {request_id} - Validation error: {e.messages} - Error Code: {ErrorCodes.VALIDATION_ERROR}"
        )
        return jsonify({
            'request_id': request_id,
            'status': False,
            'error_code': ErrorCodes.VALIDATION_ERROR,
            'status_message': 'Input validation failed.',
            'details': {'errors': e.messages},
            'action_button': None
        }), HTTPStatus.UNPROCESSABLE_ENTITY

    @app.errorhandler(SQLAlchemyError)
    def handle_database_error(e):
        request_id = g.get('request_id', 'N/A')
        current_app.logger.error(
            f"Request ID: {request_id} - Database error. Error Code: {ErrorCodes.INTERNAL_SERVER_ERROR}",
            exc_info=True
        )
        db.session.rollback()
        return jsonify({
            'request_id': request_id,
            'status': False,
            'error_code': ErrorCodes.INTERNAL_SERVER_ERROR,
            'status_message': 'A database error occurred. Please try again later.',
            'details': {},
            'action_button': None
        }), HTTPStatus.INTERNAL_SERVER_ERROR

    @app.errorhandler(NoAuthorizationError)
    def handle_no_auth_error(e):
        request_id = g.get('request_id', 'N/A')
        current_app.logger.warning(
            f"Request ID: {request_id} - JWT NoAuthorizationError: {str(e)} - Error Code: {ErrorCodes.UNAUTHENTICATED}"
        )
        return jsonify({
            'request_id': request_id,
            'status': False,
            'error_code': ErrorCodes.UNAUTHENTICATED,
            'status_message': 'Missing or invalid authorization token.',
            'details': {'original_error': str(e)},
            'action_button': None
        }), HTTPStatus.UNAUTHORIZED

    @app.errorhandler(WerkzeugHTTPException)
    def handle_werkzeug_http_exception(e):
        request_id = g.get('request_id', 'N/A')
        error_code = ErrorCodes.GENERIC_ERROR # Default
        if e.code == 404:
            error_code = ErrorCodes.NOT_FOUND
        elif e.code == 405:
            error_code = ErrorCodes.METHOD_NOT_ALLOWED
        elif e.code == 401:
            error_code = ErrorCodes.UNAUTHENTICATED
        elif e.code == 403:
            error_code = ErrorCodes.FORBIDDEN
        elif e.code >= 500:
            error_code = ErrorCodes.INTERNAL_SERVER_ERROR

        current_app.logger.warning(
            f"Request ID: {request_id} - Werkzeug HTTPException: {e.code} - {e.name}: {e.description} - Error Code: {error_code}"
        )
        response_data = {
            'request_id': request_id,
            'status': False,
            'error_code': error_code,
            'status_message': e.name,
            'details': {'description': e.description},
            'action_button': None
        }
        response = e.get_response()
        response.data = jsonify(response_data).data
        response.content_type = "application/json"
        return response

    # --- Global Error Handler (catch-all for general exceptions) ---
    @app.errorhandler(Exception)
    def handle_global_exception(e):
        request_id = g.get('request_id', 'N/A')

        if isinstance(e, AppException):
            log = current_app.logger.error if e.status_code >= 500 else current_app.logger.warning
            log(
                f"Request ID: {request_id} - AppException: {e.error_code} - {e.status_message} - Details: {e.details}",
                exc_info=True if e.status_code >= 500 else False # Log stack trace for server errors
            )
            return jsonify({
                'request_id': request_id,
                'status': False,
                'error_code': e.error_code,
                'status_message': e.status_message,
                'details': e.details,
                'action_button': e.action_button
            }), e.status_code

        if isinstance(e, WerkzeugHTTPException):
            return handle_werkzeug_http_exception(e)

        current_app.logger.critical(
            f"Request ID: {request_id} - Unhandled Critical Exception. Error Code: {ErrorCodes.INTERNAL_SERVER_ERROR}",
            exc_info=True
        )
        return jsonify({
            'request_id': request_id,
            'status': False,
            'error_code': ErrorCodes.INTERNAL_SERVER_ERROR,
            'status_message': 'An unexpected internal server error occurred. Please try again later.',
            'details': {},
            'action_button': None
        }), HTTPStatus.INTERNAL_SERVER_ERROR

    @app.errorhandler(404) # Catches werkzeug.exceptions.NotFound
    def handle_flask_not_found(e):
        request_id = g.get('request_id', 'N/A')
        current_app.logger.warning(
            f"Request ID: {request_id} - HTTP 404 Not Found: {request.url} - Error Code: {ErrorCodes.NOT_FOUND}"
        )
        return jsonify({
            'request_id': request_id,
            'status': False,
            'error_code': ErrorCodes.NOT_FOUND,
            'status_message': 'The requested resource was not found.',
            'details': {'path': request.path},
            'action_button': None
        }), HTTPStatus.NOT_FOUND

    # --- Response Security Headers ---
    @app.after_request
    def add_security_headers(response):
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        if request.is_secure and not app.debug:
            response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
        return response

    # Register Blueprints
    app.register_blueprint(roulette_bp)

    # --- CLI commands ---
    @app.cli.command('roulette-status')
    def roulette_status_command():
        """Prints the latest persisted mesa of every type."""
        for type_id in engine.mesa_types:
            mesa = db.session.scalar(
                select(RouletteMesa).filter_by(mesa_type=type_id).order_by(RouletteMesa.sequence.desc()).limit(1)
            )
            if mesa is None:
                click.echo(f"[{type_id}] no mesa recorded yet")
                continue
            click.echo(
                f"[{type_id}] {mesa.mesa_id} {mesa.phase}{' (voided)' if mesa.voided else ''} "
                f"{mesa.filled_count}/{mesa.sector_count} closes {mesa.closes_at}"
            )

    @app.cli.command('roulette-retry-failed-credits')
    @click.option('--limit', type=int, default=None, help='Maximum number of failed credits to retry')
    def retry_failed_credits_command(limit):
        """Re-attempts prize credits recorded as failed."""
        failed = engine.history.failed_credits(limit=limit)
        if not failed:
            click.echo("No failed roulette credits.")
            return
        succeeded = 0
        for item in failed:
            job = CreditJob(user_id=item['user_id'], amount=item['amount'],
                            reference=item['reference'], mesa_id=item['mesa_id'])
            try:
                engine.balance_service.credit(job.user_id, job.amount, job.reference)
                succeeded += 1
                click.echo(f"Credited {job.amount} to user {job.user_id} ({job.reference})")
            except Exception as e:
                click.echo(f"Failed again: {job.reference}: {e}")
        click.echo(f"{succeeded} of {len(failed)} failed credits applied.")

    @app.cli.command('roulette-types')
    def roulette_types_command():
        """Prints the configured mesa types as JSON."""
        click.echo(json.dumps([mesa_type.to_dict() for mesa_type in engine.mesa_types.values()], indent=2))

    return app, socketio

def log_production_warnings(app):
    if not app.debug and not app.testing: # Corresponds to FLASK_DEBUG=False
        if app.config.get('SERVICE_API_TOKEN') == 'default_service_token_please_change':
            app.logger.critical(
                "CRITICAL SECURITY WARNING: Default SERVICE_API_TOKEN is used in a production environment. "
                "Please set a strong, unique SERVICE_API_TOKEN environment variable for the wheel result service."
            )

        if app.config.get('RATELIMIT_STORAGE_URI') == 'memory://':
            app.logger.warning(
                "PERFORMANCE/SCALABILITY WARNING: RATELIMIT_STORAGE_URI is set to 'memory://' in a production environment. "
                "This is not suitable for multi-process or multi-instance deployments. "
                "Consider using a persistent store like Redis (e.g., 'redis://localhost:6379/0')."
            )
