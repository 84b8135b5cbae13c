import logging
import traceback

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from .database import ensure_indexes, init_db
from .utils.errors import ImpactLensError


def register_error_handlers(app):
    def _with_stack(error, body):
        if app.config.get('EXPOSE_ERROR_STACK'):
            body["stack"] = ''.join(traceback.format_exception(type(error), error, error.__traceback__))
        return body

    @app.errorhandler(ImpactLensError)
    def handle_impactlens_error(e):
        if e.status_code >= 500:
            app.logger.error(f"{type(e).__name__}: {e.message} ({e.details})")
        return jsonify(_with_stack(e, e.to_dict())), e.status_code

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        if isinstance(e, HTTPException):
            return jsonify({"error": e.description}), e.code
        app.logger.error(f"Unhandled error on {request.method} {request.path}: {e}", exc_info=True)
        return jsonify(_with_stack(e, {"error": "An unexpected error occurred", "details": str(e)})), 500


def register_request_logging(app):
    @app.before_request
    def log_request_body():
        app.logger.debug(f"{request.method} {request.path} body: {request.get_data(as_text=True)}")

    @app.after_request
    def log_response_body(response):
        if response.is_json:
            app.logger.debug(f"{request.method} {request.path} -> {response.status_code}: {response.get_data(as_text=True)}")
        return response


def create_app(config_object, db=None, llm_client=None):
    """
    Create and configure the Flask application. ``db`` and ``llm_client`` are built from
    the configuration unless supplied by the caller.
    """
    app = Flask(__name__)

    # Load configuration
    try:
        app.config.from_object(config_object)
    except Exception as e:
        logging.getLogger(__name__).error(f"Failed to load configuration: {e}")
        raise

    logging.basicConfig(level=app.config.get('LOG_LEVEL', 'INFO'))
    app.logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))

    if db is None:
        if hasattr(config_object, 'validate'):
            config_object.validate()
        db = init_db(app)
        if db is None:
            app.logger.error("Failed to initialize database. Application may not function correctly.")
            raise RuntimeError("Database connection failed")
    ensure_indexes(db)

    if llm_client is None and app.config.get('GOOGLE_API_KEY') and not app.config.get('TESTING'):
        from .tasks.analyzer import build_client
        llm_client = build_client(app.config['GOOGLE_API_KEY'])

    # Register blueprints and initialize routes
    try:
        from .routes.main import main_bp, init_route_dependencies
        init_route_dependencies(app, db, llm_client)
        app.register_blueprint(main_bp)
    except Exception as e:
        app.logger.error(f"Failed to initialize application routes: {e}")
        raise

    register_error_handlers(app)
    if app.config.get('LOG_REQUEST_BODIES'):
        register_request_logging(app)

    from .cli import register_commands
    register_commands(app)

    @app.route('/')
    def index():
        return "ImpactLens Backend is running!"

    return app


__all__ = ['create_app']
