"""
Bardo event ticketing backend
- Flask JSON API (blueprints per area)
- Flask-Login session auth for the admin panel
- MongoDB via PyMongo
- MercadoPago checkout preferences + payment webhook
- Daily status sweep (thread + `flask sweep-statuses`)
"""
from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Dict, Optional

import click
from flask import Flask, Response, current_app, jsonify, request

from .auth import auth_bp, create_user, ensure_default_admin, login_manager
from .config import Config
from .db import connect, get_store
from .errors import ApiError, ok, register_error_handlers
from .events import events_bp
from .mercadopago import MercadoPagoClient
from .payments import payments_bp
from .reports import reports_bp
from .reservations import reservations_bp
from .sweeper import StatusSweeper, parse_run_at, sweep_event_statuses
from .utils import iso_now

logger = logging.getLogger("bardo")


def create_app(config: Optional[Dict[str, Any]] = None, mongo_client: Any = None, gateway: Any = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(Config)
    if config:
        app.config.update(config)

    logging.basicConfig(
        level=getattr(logging, app.config["LOG_LEVEL"], logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    # Fail at startup rather than inside the sweeper thread.
    parse_run_at(app.config["SWEEPER_RUN_AT"])

    app.extensions["bardo.store"] = connect(app.config, mongo_client)
    app.extensions["bardo.gateway"] = gateway or MercadoPagoClient.from_config(app.config)
    app.extensions["bardo.started_at"] = time.time()

    login_manager.init_app(app)
    register_error_handlers(app)
    _register_request_hooks(app)

    app.register_blueprint(auth_bp)
    app.register_blueprint(events_bp)
    app.register_blueprint(reservations_bp)
    app.register_blueprint(payments_bp)
    # Older checkout clients still post to the /api/mercadopago prefix.
    app.register_blueprint(payments_bp, url_prefix="/api/mercadopago", name="mercadopago")
    app.register_blueprint(reports_bp)

    _register_routes(app)
    _register_cli(app)

    if not app.config.get("TESTING"):
        store = app.extensions["bardo.store"]
        ensure_default_admin(store, app.config["ADMIN_EMAIL"], app.config["ADMIN_PASSWORD"])
        if app.config["SWEEPER_ENABLED"]:
            sweeper = StatusSweeper(store, app.config["SWEEPER_RUN_AT"])
            sweeper.start()
            app.extensions["bardo.sweeper"] = sweeper
            logger.info("Status sweeper scheduled daily at %s UTC", app.config["SWEEPER_RUN_AT"])

    return app


def _register_request_hooks(app: Flask) -> None:
    # Attach a request id for debugging/traceability.
    @app.before_request
    def attach_request_id():
        rid = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.environ["request_id"] = rid

    @app.after_request
    def add_security_headers(resp: Response):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Cache-Control"] = "no-store"
        resp.headers["X-Request-Id"] = request.environ.get("request_id", "")
        return resp


def _register_routes(app: Flask) -> None:
    @app.get("/")
    def root():
        return ok({"service": "bardo", "message": "API de eventos BARDO", "health": "/api/health"})

    @app.get("/api/health")
    def health():
        connected = get_store().ping()
        body = {
            "status": "OK" if connected else "ERROR",
            "timestamp": iso_now(),
            "database": "Connected" if connected else "Disconnected",
            "environment": current_app.config["ENVIRONMENT"],
            "uptime": round(time.time() - current_app.extensions["bardo.started_at"], 3),
        }
        return jsonify(body), 200 if connected else 503


def _register_cli(app: Flask) -> None:
    @app.cli.command("sweep-statuses")
    def sweep_statuses_command():
        """Deactivate ended stages and recompute event statuses."""
        summary = sweep_event_statuses(get_store())
        click.echo(
            f"scanned={summary['scanned']} updated={summary['updated']} "
            f"stagesDeactivated={summary['stagesDeactivated']} errors={summary['errors']}"
        )

    @app.cli.command("create-admin")
    @click.argument("email")
    @click.password_option()
    def create_admin_command(email: str, password: str):
        """Create an admin user."""
        try:
            create_user(get_store(), email, password)
        except ApiError as e:
            raise click.ClickException(e.message)
        click.echo(f"Admin created: {email}")
