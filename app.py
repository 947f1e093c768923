import logging
import os
from logging.handlers import RotatingFileHandler

from flask import Flask, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from extensions import db, login_manager, migrate
from models import User

logger = logging.getLogger(__name__)


# ======================
# Logging
# ======================
def _configure_logging(app):
    level = getattr(logging, str(app.config.get("LOG_LEVEL") or "INFO").upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s"
    )
    logging.getLogger().setLevel(level)

    log_dir = app.config.get("LOG_DIR")
    if not log_dir:
        return

    if not os.path.exists(log_dir):
        os.makedirs(log_dir, exist_ok=True)

    log_path = os.path.join(log_dir, "workflow.log")
    root = logging.getLogger()
    # create_app may run more than once per process (tests, CLI)
    for h in root.handlers:
        if isinstance(h, RotatingFileHandler) and getattr(h, "baseFilename", None) == os.path.abspath(log_path):
            return

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=1_000_000,   # 1MB
        backupCount=5
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)s | %(message)s"
    ))
    root.addHandler(file_handler)


# ======================
# Login Manager
# ======================
def _bearer_token():
    header = request.headers.get("Authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


@login_manager.request_loader
def load_user_from_request(req):
    """Resolve the actor from ``Authorization: Bearer <api_token>``."""
    token = _bearer_token()
    if not token:
        return None
    try:
        user = User.query.filter_by(api_token=token).first()
    except SQLAlchemyError:
        logger.exception("request_loader DB error")
        return None

    if user is None:
        logger.warning("request_loader: unknown token | path=%s", req.path)
        return None
    if not user.is_active:
        logger.warning("request_loader: inactive user id=%s", user.id)
        return None
    return user


@login_manager.user_loader
def load_user(user_id):
    try:
        uid = int(user_id)
    except (TypeError, ValueError):
        logger.warning("user_loader invalid user_id: %s", user_id)
        return None
    try:
        return db.session.get(User, uid)
    except SQLAlchemyError:
        logger.exception("user_loader DB error for user_id=%s", uid)
        return None


@login_manager.unauthorized_handler
def unauthorized():
    logger.warning("Unauthorized access | path=%s", request.path)
    return jsonify({
        "success": False,
        "error": {"code": "UNAUTHORIZED", "message": "Authentication required"},
    }), 401


# ======================
# App factory
# ======================
def create_app(config_object="config.DevConfig"):
    app = Flask(__name__)
    app.config.from_object(config_object)

    _configure_logging(app)

    db.init_app(app)
    login_manager.init_app(app)
    migrate.init_app(app, db)

    from workflow import workflow_bp
    from workflow import services as workflow_services

    app.register_blueprint(workflow_bp)

    @app.errorhandler(401)
    def _handle_401(err):
        return jsonify({
            "success": False,
            "error": {"code": "UNAUTHORIZED", "message": "Authentication required"},
        }), 401

    @app.errorhandler(403)
    def _handle_403(err):
        return jsonify({
            "success": False,
            "error": {"code": "FORBIDDEN", "message": "You are not allowed to do this"},
        }), 403

    @app.errorhandler(404)
    def _handle_404(err):
        return jsonify({
            "success": False,
            "error": {"code": "NOT_FOUND", "message": "Not found"},
        }), 404

    @app.teardown_appcontext
    def shutdown_session(exception=None):
        db.session.remove()

    with app.app_context():
        db.create_all()

    workflow_services.init_app(app)

    logger.info("App created with %s", config_object if isinstance(config_object, str) else config_object.__name__)
    return app


if __name__ == "__main__":
    create_app().run(debug=True)
