"""Database models for the Adventar API."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import func

from extensions import db

MIN_DAY = 1
MAX_DAY = 25


class User(db.Model):
    """Account upserted on sign-in, keyed by the identity provider's uid."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False, default="")
    icon_url = db.Column(db.String(1000), nullable=False, default="")
    auth_provider = db.Column(db.String(50), nullable=False)
    auth_uid = db.Column(db.String(255), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        db.UniqueConstraint("auth_provider", "auth_uid", name="uq_users_auth"),
    )

    def to_public_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "iconUrl": self.icon_url}

    def __repr__(self) -> str:  # pragma: no cover - helper for shell debugging
        return f"<User id={self.id} provider={self.auth_provider!r} name={self.name!r}>"


class Calendar(db.Model):
    """One user's Advent calendar for a given year."""

    __tablename__ = "calendars"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), index=True, nullable=False)
    title = db.Column(db.String(255), nullable=False, default="")
    description = db.Column(db.Text, nullable=False, default="")
    year = db.Column(db.Integer, index=True, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def to_public_dict(self, owner: Optional[User] = None, entry_count: Optional[int] = None) -> dict:
        """Serialize to the Calendar message; owner and entryCount only when given."""
        payload = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "year": self.year,
        }
        if owner is not None:
            payload["owner"] = owner.to_public_dict()
        if entry_count is not None:
            payload["entryCount"] = entry_count
        return payload

    def __repr__(self) -> str:  # pragma: no cover - helper for shell debugging
        return f"<Calendar id={self.id} year={self.year} title={self.title!r}>"


class Entry(db.Model):
    """A claimed day slot inside a calendar (unique per calendar/day)."""

    __tablename__ = "entries"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), index=True, nullable=False)
    calendar_id = db.Column(db.Integer, db.ForeignKey("calendars.id"), index=True, nullable=False)
    day = db.Column(db.Integer, nullable=False)
    title = db.Column(db.String(255), nullable=False, default="")
    comment = db.Column(db.Text, nullable=False, default="")
    url = db.Column(db.String(1000), nullable=False, default="")
    image_url = db.Column(db.String(1000), nullable=False, default="")

    created_at = db.Column(db.DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        db.UniqueConstraint("calendar_id", "day", name="uq_entries_calendar_day"),
    )

    def to_public_dict(
        self,
        owner: Optional[User] = None,
        calendar: Optional[Calendar] = None,
    ) -> dict:
        payload = {
            "id": self.id,
            "day": self.day,
            "title": self.title,
            "comment": self.comment,
            "url": self.url,
            "imageUrl": self.image_url,
        }
        if owner is not None:
            payload["owner"] = owner.to_public_dict()
        if calendar is not None:
            payload["calendar"] = calendar.to_public_dict()
        return payload

    def __repr__(self) -> str:  # pragma: no cover - helper for shell debugging
        return f"<Entry id={self.id} calendar_id={self.calendar_id} day={self.day}>"
