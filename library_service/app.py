import logging
import os

import click
from flask import Flask
from flask_cors import CORS

from . import api, pages
from .config import Config
from .datastore import create_datastore
from .fines import format_money
from .identity import IdentityProvider, current_identity
from .inflight import InFlightTracker
from .sql_store import SqlDataStore

logger = logging.getLogger(__name__)


def create_app(config_object=Config, overrides=None):
    # ---------------------------------------------------------
    # Flask + data store setup
    # ---------------------------------------------------------
    app = Flask(__name__)
    app.config.from_object(config_object)
    if overrides:
        app.config.update(overrides)

    logging.basicConfig(level=app.config["LOG_LEVEL"])
    CORS(app, resources={r"/api/*": {"origins": app.config["CORS_ORIGINS"]}})

    store = create_datastore(app.config)
    if isinstance(store, SqlDataStore):
        # Create tables if not present
        store.create_all()
    app.extensions["datastore"] = store
    app.extensions["inflight"] = InFlightTracker()
    IdentityProvider(app)

    app.register_blueprint(pages.bp)
    app.register_blueprint(api.bp)

    @app.context_processor
    def inject_identity():
        return {"identity": current_identity(), "format_money": format_money}

    register_commands(app)
    logger.info("LibraryHub started with %s backend", app.config["DATA_BACKEND"])
    return app


# ---------------------------------------------------------
# CLI (local backend only)
# ---------------------------------------------------------

def _local_store(app):
    store = app.extensions["datastore"]
    if not isinstance(store, SqlDataStore):
        raise click.ClickException("This command needs DATA_BACKEND=sql")
    return store


def register_commands(app):
    @app.cli.command("init-db")
    def init_db():
        """Create database tables."""
        _local_store(app).create_all()
        click.echo("Database tables created.")

    @app.cli.command("seed-demo")
    def seed_demo_command():
        """Load demo categories, books and accounts."""
        from .seed import seed_demo

        counts = seed_demo(_local_store(app))
        click.echo(
            "Seeded {categories} categories, {books} books, {profiles} accounts.".format(**counts)
        )

    @app.cli.command("mark-overdue")
    def mark_overdue():
        """Flag active loans that are past their due date."""
        count = _local_store(app).mark_overdue()
        click.echo(f"{count} loans marked overdue.")


if __name__ == "__main__":
    port = int(os.getenv("PORT", "5000"))
    create_app().run(host="0.0.0.0", port=port, debug=True)
