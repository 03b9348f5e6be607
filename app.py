"""Adventar API server.

Run locally with ``flask --app app run`` (Flask picks up ``create_app``) or
``python app.py``.
"""

import os
from datetime import datetime, timezone, tzinfo
from pathlib import Path
from typing import Any, Mapping, Optional
from zoneinfo import ZoneInfo

from flask import Flask, current_app

from adventar import AdventarService, FirebaseVerifier, SiteMetaFetcher, create_adventar_blueprint
from adventar.meta import DEFAULT_TIMEOUT_SECONDS
from extensions import db

DEFAULT_TIMEZONE = "Asia/Tokyo"
DEFAULT_SQLITE_NAME = "adventar.db"


# ====== Feature toggle ======
def _env_flag(name: str, default: bool) -> bool:
    """Parse truthy feature-toggle values from the environment."""
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(app: Flask, name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return max(1.0, float(raw))
    except ValueError:
        app.logger.warning("Invalid %s value: %r. Using default %s.", name, raw, default)
        return default


def _default_database_uri(app: Flask) -> str:
    data_dir = Path(app.root_path) / "data"
    return f"sqlite:///{data_dir / DEFAULT_SQLITE_NAME}"


def _load_config(app: Flask) -> dict:
    """Collect settings from the environment; explicit overrides win later."""
    return {
        "SQLALCHEMY_DATABASE_URI": os.environ.get("DATABASE_URL") or _default_database_uri(app),
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        "FIREBASE_PROJECT_ID": (os.environ.get("FIREBASE_PROJECT_ID") or "").strip() or None,
        "ADVENTAR_TIMEZONE": os.environ.get("ADVENTAR_TIMEZONE", DEFAULT_TIMEZONE),
        "META_FETCH_TIMEOUT": _env_float(app, "META_FETCH_TIMEOUT", DEFAULT_TIMEOUT_SECONDS),
        "MAINTENANCE_MODE": _env_flag("MAINTENANCE_MODE", False),  # answer 503 to every RPC
        "LOG_LEVEL": os.environ.get("LOG_LEVEL", "INFO").upper(),
    }


def _resolve_timezone(app: Flask, name: str) -> tzinfo:
    try:
        return ZoneInfo(name)
    except Exception:
        app.logger.warning("Unknown ADVENTAR_TIMEZONE %r; falling back to UTC.", name)
        return timezone.utc


def create_app(
    config_overrides: Optional[Mapping[str, Any]] = None,
    verifier=None,
    meta_fetcher=None,
) -> Flask:
    """Build the Flask app; collaborators can be swapped for tests or local runs."""
    app = Flask(__name__)
    app.config.update(_load_config(app))
    if config_overrides:
        app.config.update(config_overrides)
    app.logger.setLevel(app.config["LOG_LEVEL"])

    if app.config["SQLALCHEMY_DATABASE_URI"] == _default_database_uri(app):
        (Path(app.root_path) / "data").mkdir(parents=True, exist_ok=True)
    db.init_app(app)

    if verifier is None:
        if not app.config["FIREBASE_PROJECT_ID"]:
            app.logger.warning("FIREBASE_PROJECT_ID is not set; every sign-in will be rejected.")
        verifier = FirebaseVerifier(app.config["FIREBASE_PROJECT_ID"])
    if meta_fetcher is None:
        meta_fetcher = SiteMetaFetcher(timeout=app.config["META_FETCH_TIMEOUT"])
    zone = _resolve_timezone(app, app.config["ADVENTAR_TIMEZONE"])

    def build_service() -> AdventarService:
        return AdventarService(
            db.session,
            verifier,
            meta_fetcher,
            now=lambda: datetime.now(zone),
            logger=current_app.logger,
        )

    app.register_blueprint(create_adventar_blueprint(build_service))

    with app.app_context():
        db.create_all()

    return app


# ====== Entrypoint ======
if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=int(os.environ.get("PORT", 8080)), debug=True)
