# backend/keyflow/__init__.py
from flask import Flask, request

from .config import Config
from .extensions import db, migrate



def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    # SQLite writers queue on the busy timeout instead of failing fast
    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite"):
        app.config.setdefault("SQLALCHEMY_ENGINE_OPTIONS", {"connect_args": {"timeout": 30}})

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    from .services.concurrency import enable_sqlite_immediate_transactions
    with app.app_context():
        enable_sqlite_immediate_transactions(db.engine)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.auth import auth_bp
    from .routes.accounts import accounts_bp
    from .routes.keys import keys_bp
    from .routes.key_requests import key_requests_bp
    from .routes.children import children_bp
    from .routes.ledger import ledger_bp
    from .routes.notifications import notifications_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(accounts_bp)
    app.register_blueprint(keys_bp)
    app.register_blueprint(key_requests_bp)
    app.register_blueprint(children_bp)
    app.register_blueprint(ledger_bp)
    app.register_blueprint(notifications_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = set(app.config.get("CORS_ALLOWED_ORIGINS", ()))
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PATCH,DELETE,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
