"""Application factory: clean entry point for the marketplace core."""

from __future__ import annotations

import logging

from dotenv import load_dotenv
from flask import Flask
from sqlalchemy import event

from cli import register_cli
from config import enable_sqlite_fks, load_config
from extensions import db
import models  # noqa: F401  registers the tables on db.metadata

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app():
    """Create and configure the Flask application."""
    app_cfg, booking_cfg, billing_cfg, db_uri = load_config()

    app = Flask(__name__)
    app.config["SQLALCHEMY_DATABASE_URI"] = db_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.secret_key = app_cfg.secret_key
    app.config["APP_CONFIG"] = app_cfg
    app.config["BOOKING_CONFIG"] = booking_cfg
    app.config["BILLING_CONFIG"] = billing_cfg

    db.init_app(app)

    # SQLite foreign key enforcement
    if "sqlite" in db_uri:
        with app.app_context():
            event.listen(db.engine, "connect", enable_sqlite_fks)

    with app.app_context():
        db.create_all()

    register_cli(app)

    logger.info(
        "%s ready (plans: %s, monthly reset: %s)",
        app_cfg.name, ", ".join(billing_cfg.plans), ", ".join(billing_cfg.monthly_reset_tiers),
    )
    return app

