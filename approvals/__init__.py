"""Application factory and extension initialization for the approval engine."""
from __future__ import annotations

import os
from typing import Optional

from dotenv import load_dotenv
from flask import Flask
from flask_login import LoginManager
from flask_mail import Mail
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from flask_wtf import CSRFProtect

from config import config_by_name

# Global extension instances -------------------------------------------------

db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
csrf = CSRFProtect()
mail = Mail()


def create_app(config_name: Optional[str] = None, config_overrides: Optional[dict] = None) -> Flask:
    """Flask application factory."""
    load_dotenv()

    app = Flask(__name__, instance_relative_config=True)

    config_name = config_name or os.getenv("FLASK_CONFIG", "development")
    config_class = config_by_name.get(config_name.lower())
    if config_class is None:
        raise ValueError(f"Unknown Flask configuration '{config_name}'")

    app.config.from_object(config_class)
    if config_overrides:
        app.config.update(config_overrides)

    # Ensure instance folder exists for SQLite DBs
    os.makedirs(app.instance_path, exist_ok=True)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)
    mail.init_app(app)

    # Wire engine collaborators from configuration
    from approvals.services.approval_engine import init_approval_engine
    init_approval_engine(app, mail)

    # Register blueprints
    from approvals.employee import employee_bp
    from approvals.manager import manager_bp
    from approvals.admin import admin_bp

    app.register_blueprint(employee_bp)
    app.register_blueprint(manager_bp)
    app.register_blueprint(admin_bp)

    from approvals.utils.helpers import register_error_handlers
    register_error_handlers(app)

    from approvals.cli import approvals_cli
    app.cli.add_command(approvals_cli)

    # User loader for Flask-Login
    from approvals.models import User

    @login_manager.user_loader
    def load_user(user_id: str) -> Optional[User]:
        return db.session.get(User, int(user_id))

    @app.shell_context_processor
    def shell_context():
        return {"db": db, "User": User}

    return app
