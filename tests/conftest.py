"""Shared fixtures: an app on in-memory SQLite with fake collaborators."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from adventar.auth import AuthResult, TokenVerificationError
from adventar.errors import MetaFetchError
from adventar.meta import SiteMeta
from adventar.service import AdventarService
from app import create_app
from extensions import db
from models import Calendar, Entry, User

FIXED_NOW = datetime(2024, 12, 1, 9, 0, tzinfo=timezone.utc)


class FakeVerifier:
    """Accepts only tokens registered via ``register``."""

    def __init__(self) -> None:
        self.identities: Dict[str, AuthResult] = {}

    def register(
        self,
        token: str,
        uid: str,
        name: str = "",
        icon_url: str = "",
        provider: str = "github.com",
    ) -> AuthResult:
        result = AuthResult(auth_provider=provider, auth_uid=uid, name=name, icon_url=icon_url)
        self.identities[token] = result
        return result

    def verify_id_token(self, token: str) -> AuthResult:
        try:
            return self.identities[token]
        except KeyError:
            raise TokenVerificationError(f"unknown token {token!r}") from None


class FakeMetaFetcher:
    def __init__(self) -> None:
        self.pages: Dict[str, SiteMeta] = {}
        self.calls: List[str] = []
        self.error: Optional[MetaFetchError] = None

    def fetch(self, url: str) -> SiteMeta:
        self.calls.append(url)
        if self.error is not None:
            raise self.error
        return self.pages.get(url, SiteMeta(title="", image_url=""))


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def meta_fetcher() -> FakeMetaFetcher:
    return FakeMetaFetcher()


@pytest.fixture
def app(verifier, meta_fetcher):
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "MAINTENANCE_MODE": False,
        },
        verifier=verifier,
        meta_fetcher=meta_fetcher,
    )
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def service(app, verifier, meta_fetcher) -> AdventarService:
    return AdventarService(db.session, verifier, meta_fetcher, now=lambda: FIXED_NOW)


@pytest.fixture
def sign_up(service, verifier):
    """Register a token with the fake verifier, sign in, and return the User row."""

    def _sign_up(token: str, name: Optional[str] = None, icon_url: str = "") -> User:
        verifier.register(token, uid=f"uid-{token}", name=name or token, icon_url=icon_url)
        service.sign_in(token)
        return db.session.query(User).filter_by(auth_uid=f"uid-{token}").one()

    return _sign_up


@pytest.fixture
def make_calendar():
    """Insert a calendar row directly, bypassing the current-year rule."""

    def _make_calendar(owner: User, year: int = 2024, title: str = "", description: str = "") -> Calendar:
        calendar = Calendar(
            user_id=owner.id,
            year=year,
            title=title or f"{owner.name}'s calendar",
            description=description,
        )
        db.session.add(calendar)
        db.session.commit()
        return calendar

    return _make_calendar


@pytest.fixture
def make_entry():
    def _make_entry(owner: User, calendar: Calendar, day: int, comment: str = "") -> Entry:
        entry = Entry(
            user_id=owner.id,
            calendar_id=calendar.id,
            day=day,
            title="",
            comment=comment,
            url="",
            image_url="",
        )
        db.session.add(entry)
        db.session.commit()
        return entry

    return _make_entry
