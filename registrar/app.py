import logging
import os

from urllib.parse import urlparse

from flask import Flask, jsonify, current_app, request
from flask_migrate import Migrate
from sqlalchemy import text
from werkzeug.exceptions import HTTPException
import redis

from .audit import AuditRecorder
from .competitor_registry import CompetitorRegistry
from .config import config, validate_config
from .errors import Forbidden, Internal, RegistrarError
from .identity import TokenService, login_manager
from .models import db
from .notifications import Notifier
from .rate_limiter import auth_rate_limiter, register_rate_limiter
from .stores import InMemoryStore, RedisStore, create_redis_client
from .tournament_registry import TournamentRegistry
from .user_manager import UserManager

logger = logging.getLogger(__name__)

migrate = Migrate()


def create_app(config_name: str = None, test_config: dict = None) -> Flask:
    """Application factory for the registration service."""
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])
    if test_config:
        app.config.update(test_config)
    validate_config(app.config)

    logging.basicConfig(
        level=app.config.get('LOG_LEVEL', 'INFO'),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s'
    )

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    # Shared counters and blacklist
    app.redis = None
    if app.config['STORE_BACKEND'] == 'redis':
        app.redis = create_redis_client(app.config['REDIS_URL'])
        store = RedisStore(app.redis)
    else:
        store = InMemoryStore()
    app.store = store

    # Initialize services
    app.tokens = TokenService(
        app.config['JWT_SECRET'],
        store,
        algorithm=app.config['JWT_ALGORITHM'],
        expires_days=app.config['JWT_EXPIRES_DAYS']
    )
    app.auth_limiter = auth_rate_limiter(
        store, app.config['AUTH_RATE_LIMIT_WINDOW'], app.config['AUTH_RATE_LIMIT_MAX']
    )
    app.register_limiter = register_rate_limiter(
        store, app.config['REGISTER_RATE_LIMIT_WINDOW'], app.config['REGISTER_RATE_LIMIT_MAX']
    )
    app.notifier = Notifier(app.redis)
    app.audit = AuditRecorder()
    app.registry = TournamentRegistry(app.audit)
    app.competitors = CompetitorRegistry(app.audit, app.notifier)
    app.users = UserManager(
        app.audit,
        app.notifier,
        lockout_threshold=app.config['LOGIN_LOCKOUT_THRESHOLD'],
        lockout_minutes=app.config['LOGIN_LOCKOUT_MINUTES']
    )

    # Create tables
    with app.app_context():
        db.create_all()

    register_error_handlers(app)
    register_security_hooks(app)

    from .routes import auth, tournaments, competitors, admin
    app.register_blueprint(auth.bp)
    app.register_blueprint(tournaments.bp)
    app.register_blueprint(competitors.bp)
    app.register_blueprint(admin.bp)

    @app.route('/health')
    def health():
        """Database and (when configured) Redis reachability."""
        checks = {}
        try:
            db.session.execute(text('SELECT 1'))
            checks['database'] = 'ok'
        except Exception as e:
            logger.error(f"Health check: database unavailable: {e}")
            checks['database'] = 'error'

        if current_app.redis is not None:
            try:
                current_app.redis.ping()
                checks['redis'] = 'ok'
            except redis.RedisError as e:
                logger.error(f"Health check: redis unavailable: {e}")
                checks['redis'] = 'error'

        healthy = all(v == 'ok' for v in checks.values())
        return jsonify({'status': 'healthy' if healthy else 'unhealthy', 'checks': checks}), \
            200 if healthy else 503

    return app


def register_error_handlers(app: Flask):
    """Render every failure as {"error": ..., "details": ...} JSON."""

    @app.errorhandler(RegistrarError)
    def handle_registrar_error(e: RegistrarError):
        db.session.rollback()
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(e: HTTPException):
        return jsonify({'error': e.description or e.name}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        db.session.rollback()
        logger.exception(f"Unhandled error: {e}")
        details = {'exception': repr(e)} if app.config.get('VERBOSE_ERRORS') else None
        error = Internal(details=details)
        return jsonify(error.to_dict()), error.status_code


SECURITY_HEADERS = {
    'X-Content-Type-Options': 'nosniff',
    'X-Frame-Options': 'DENY',
    'X-XSS-Protection': '1; mode=block',
    'Referrer-Policy': 'strict-origin-when-cross-origin',
    'Permissions-Policy': 'geolocation=(), microphone=(), camera=()',
    'Content-Security-Policy': (
        "default-src 'self'; "
        "script-src 'self' 'unsafe-inline' 'unsafe-eval'; "
        "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com; "
        "img-src 'self' data: https:; "
        "font-src 'self' data: https://fonts.gstatic.com; "
        "connect-src 'self' https:; "
        "frame-ancestors 'none';"
    ),
}

STATE_CHANGING_METHODS = ('POST', 'PUT', 'DELETE', 'PATCH')


def register_security_hooks(app: Flask):
    """Hardening headers on every response and a same-host check on writes."""

    @app.before_request
    def check_request_origin():
        if request.method not in STATE_CHANGING_METHODS:
            return None

        origin = request.headers.get('Origin')
        referer = request.headers.get('Referer')
        # Only enforced when the browser sent both headers
        if origin and referer:
            host = request.host
            if urlparse(origin).netloc != host or urlparse(referer).netloc != host:
                logger.warning(f"Cross-site {request.method} {request.path} refused: origin {origin}")
                raise Forbidden('CSRF token mismatch')
        return None

    @app.after_request
    def set_security_headers(response):
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response
