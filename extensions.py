"""Shared Flask extensions used by the Adventar API and its models."""

from flask_sqlalchemy import SQLAlchemy

# SQLAlchemy instance initialized in app.py so models/services can import `db`.
db = SQLAlchemy()
