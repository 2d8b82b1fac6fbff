import os
import logging
from logging.handlers import RotatingFileHandler

from flask import Flask, session, g, request
from sqlalchemy import text

from config import Config
from extensions import db, login_manager, init_extensions
from models import User, PlatformSettings
from utils import error_response, utcnow


# Writes still allowed while maintenance mode is on
MAINTENANCE_EXEMPT_ENDPOINTS = {"auth.login", "auth.logout", "auth.check_session", "healthz"}


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    if not app.debug and not app.testing:
        app.config.update(
            SESSION_COOKIE_SECURE=True,
            REMEMBER_COOKIE_SECURE=True,
            REMEMBER_COOKIE_HTTPONLY=True,
        )

    setup_logging(app)

    # --------------------------------------------------------------------------------------------------------------------------
    # Initialize extensions
    # ----------------------------------------------------------------------------------------------------------------------------
    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///"):
        os.makedirs(os.path.join(app.root_path, "instance"), exist_ok=True)
    init_extensions(app)

    register_blueprints(app)

    from jobs import register_commands
    register_commands(app)

    # ------------------------------------------------------------------------------------------------------------------------
    # Flask-Login user_loader
    # ------------------------------------------------------------------------------------------------------------------------
    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    # ----------------------
    # Global before_request
    # ----------------------
    @app.before_request
    def load_logged_in_user():
        g.user = None
        user_id = session.get("user_id")
        if user_id:
            g.user = db.session.get(User, user_id)

    @app.before_request
    def enforce_maintenance_mode():
        if request.method in ("GET", "HEAD", "OPTIONS"):
            return None
        if request.endpoint in MAINTENANCE_EXEMPT_ENDPOINTS:
            return None
        if g.user is not None and g.user.is_admin:
            return None
        settings = db.session.get(PlatformSettings, 1)
        if settings is not None and settings.maintenance_mode:
            return error_response("The platform is under maintenance. Please try again later.", 503)
        return None

    # ----------------------
    # JSON errors
    # ----------------------
    @app.errorhandler(404)
    def not_found(e):
        return error_response("Not found", 404)

    @app.errorhandler(405)
    def method_not_allowed(e):
        return error_response("Method not allowed", 405)

    @app.errorhandler(500)
    def internal_error(e):
        db.session.rollback()
        app.logger.error(f"Unhandled error on {request.path}: {e}")
        return error_response("Internal server error", 500, "INTERNAL_SERVER_ERROR")

    @app.route("/healthz")
    def healthz():
        try:
            db.session.execute(text("SELECT 1"))
            database = "ok"
        except Exception as e:
            app.logger.error(f"Health check database error: {e}")
            database = "error"
        status = 200 if database == "ok" else 503
        return {"status": "ok" if status == 200 else "degraded", "database": database,
                "timestamp": utcnow().isoformat()}, status

    return app


def setup_logging(app):
    """File log under LOG_DIR, plus console output while debugging"""
    logs_dir = app.config.get("LOG_DIR", "logs")
    os.makedirs(logs_dir, exist_ok=True)

    file_handler = RotatingFileHandler(
        os.path.join(logs_dir, "app.log"), maxBytes=1024 * 1024, backupCount=10, encoding="utf-8"
    )
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
    ))
    file_handler.setLevel(logging.INFO)

    # Clear any existing handlers and add ours
    app.logger.handlers.clear()
    app.logger.addHandler(file_handler)
    app.logger.setLevel(logging.DEBUG if app.debug else logging.INFO)
    app.logger.propagate = False

    if app.debug:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG)
        app.logger.addHandler(console_handler)


def register_blueprints(app):
    """Register all blueprints"""
    from blueprints.auth import bp as auth_bp
    from blueprints.profile import bp as profile_bp
    from blueprints.admin import admin_bp
    from blueprints.payments import bp as payment_bp
    from blueprints.income import income_bp
    from activity import activity_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(profile_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(payment_bp)
    app.register_blueprint(income_bp)
    app.register_blueprint(activity_bp)


# ----------------------
# Local development
# ----------------------
if __name__ == "__main__":
    app = create_app()
    port = int(os.environ.get("PORT", 5000))
    debug_mode = app.config.get("DEBUG", False)
    app.run(debug=debug_mode, host="0.0.0.0", port=port)
