"""Calendar, entry and user operations behind the Adventar RPC surface.

Every public method maps to one RPC and returns the response message as a
plain dict. Writes run inside a single unit of work: statements are flushed
as they go and committed once, so a failure anywhere rolls back the whole
call. Owner-scoped updates and deletes match on both the target id and the
caller's id; a caller who does not own the row gets a successful no-op.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from adventar.auth import AuthResult, TokenVerificationError
from adventar.errors import (
    AlreadyExistsError,
    InvalidArgumentError,
    MetaFetchError,
    NotFoundError,
    UnauthenticatedError,
)
from models import MAX_DAY, MIN_DAY, Calendar, Entry, User

BEARER_PREFIX = "bearer "

Clock = Callable[[], datetime]


class AdventarService:
    """CRUD over calendars, entries and users.

    ``session`` is any SQLAlchemy session (Flask-SQLAlchemy's scoped session in
    the app). ``verifier`` must provide ``verify_id_token(token) -> AuthResult``
    raising ``TokenVerificationError``; ``meta_fetcher`` must provide
    ``fetch(url) -> SiteMeta`` raising ``MetaFetchError``.
    """

    def __init__(
        self,
        session: Session,
        verifier,
        meta_fetcher,
        now: Optional[Clock] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.session = session
        self.verifier = verifier
        self.meta_fetcher = meta_fetcher
        self._now = now or (lambda: datetime.now(timezone.utc))
        self.logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Calendars
    # ------------------------------------------------------------------

    def list_calendars(
        self,
        year: int,
        user_id: int = 0,
        query: str = "",
        page_size: int = 0,
    ) -> dict:
        if page_size < 0:
            raise InvalidArgumentError(f"Invalid page size: {page_size}")

        q = (
            self.session.query(Calendar, User)
            .join(User, User.id == Calendar.user_id)
            .filter(Calendar.year == year)
        )
        if user_id:
            q = q.filter(Calendar.user_id == user_id)
        if query:
            q = q.filter(
                or_(
                    Calendar.title.icontains(query, autoescape=True),
                    Calendar.description.icontains(query, autoescape=True),
                )
            )
        q = q.order_by(Calendar.id.desc())
        if page_size:
            q = q.limit(page_size)

        rows = q.all()
        counts = self._entry_counts([calendar.id for calendar, _ in rows]) if rows else {}

        return {
            "calendars": [
                calendar.to_public_dict(owner=owner, entry_count=counts.get(calendar.id, 0))
                for calendar, owner in rows
            ]
        }

    def get_calendar(self, calendar_id: int) -> dict:
        row = (
            self.session.query(Calendar, User)
            .join(User, User.id == Calendar.user_id)
            .filter(Calendar.id == calendar_id)
            .first()
        )
        if row is None:
            raise NotFoundError(f"Calendar {calendar_id} not found.")
        calendar, owner = row

        entries = self._calendar_entries(calendar.id)
        return {
            "calendar": calendar.to_public_dict(owner=owner, entry_count=len(entries)),
            "entries": entries,
        }

    def create_calendar(self, authorization: Optional[str], title: str, description: str) -> dict:
        user = self.current_user(authorization)

        with self._unit_of_work():
            calendar = Calendar(
                user_id=user.id,
                title=title,
                description=description,
                year=self._now().year,
            )
            self.session.add(calendar)
            self.session.flush()
            self.session.refresh(calendar)
            self.logger.info("Calendar %s created by user %s", calendar.id, user.id)
            return calendar.to_public_dict()

    def update_calendar(
        self,
        authorization: Optional[str],
        calendar_id: int,
        title: str,
        description: str,
    ) -> dict:
        user = self.current_user(authorization)

        with self._unit_of_work():
            matched = (
                self.session.query(Calendar)
                .filter(Calendar.id == calendar_id, Calendar.user_id == user.id)
                .update(
                    {Calendar.title: title, Calendar.description: description},
                    synchronize_session=False,
                )
            )
            self._log_owner_scoped("update", "calendar", calendar_id, user.id, matched)

            calendar = self.session.get(Calendar, calendar_id, populate_existing=True)
            if calendar is None:
                raise NotFoundError(f"Calendar {calendar_id} not found.")
            return calendar.to_public_dict()

    def delete_calendar(self, authorization: Optional[str], calendar_id: int) -> dict:
        user = self.current_user(authorization)

        with self._unit_of_work():
            matched = (
                self.session.query(Calendar)
                .filter(Calendar.id == calendar_id, Calendar.user_id == user.id)
                .delete(synchronize_session=False)
            )
            if matched:
                (
                    self.session.query(Entry)
                    .filter(Entry.calendar_id == calendar_id)
                    .delete(synchronize_session=False)
                )
            self._log_owner_scoped("delete", "calendar", calendar_id, user.id, matched)
        return {}

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def list_entries(self, user_id: int, year: int = 0) -> dict:
        q = (
            self.session.query(Entry, Calendar, User)
            .join(Calendar, Calendar.id == Entry.calendar_id)
            .join(User, User.id == Entry.user_id)
            .filter(Entry.user_id == user_id)
        )
        if year:
            q = q.filter(Calendar.year == year)

        rows = q.order_by(Entry.day.asc(), Entry.id.asc()).all()
        return {
            "entries": [
                entry.to_public_dict(owner=owner, calendar=calendar)
                for entry, calendar, owner in rows
            ]
        }

    def create_entry(self, authorization: Optional[str], calendar_id: int, day: int) -> dict:
        user = self.current_user(authorization)

        with self._unit_of_work():
            year = self.session.query(Calendar.year).filter(Calendar.id == calendar_id).scalar()
            if year is None:
                raise NotFoundError(f"Calendar {calendar_id} not found.")

            if not MIN_DAY <= day <= MAX_DAY:
                raise InvalidArgumentError(f"Invalid day: {day}")

            entry = Entry(
                user_id=user.id,
                calendar_id=calendar_id,
                day=day,
                title="",
                comment="",
                url="",
                image_url="",
            )
            self.session.add(entry)
            try:
                self.session.flush()
            except IntegrityError as exc:
                raise AlreadyExistsError(
                    f"Day {day} of calendar {calendar_id} is already taken."
                ) from exc

            entry_id = self.session.query(Entry.id).filter(Entry.id == entry.id).scalar()
            self.logger.info(
                "Entry %s created for calendar %s day %s by user %s",
                entry_id,
                calendar_id,
                day,
                user.id,
            )
            return {"id": entry_id}

    def update_entry(
        self,
        authorization: Optional[str],
        entry_id: int,
        comment: str,
        url: str,
    ) -> dict:
        user = self.current_user(authorization)

        with self._unit_of_work():
            matched = (
                self.session.query(Entry)
                .filter(Entry.id == entry_id, Entry.user_id == user.id)
                .update({Entry.comment: comment, Entry.url: url}, synchronize_session=False)
            )
            self._log_owner_scoped("update", "entry", entry_id, user.id, matched)

            if url:
                try:
                    meta = self.meta_fetcher.fetch(url)
                except MetaFetchError as exc:
                    self.logger.warning("Metadata fetch for entry %s failed: %s", entry_id, exc)
                    raise
                (
                    self.session.query(Entry)
                    .filter(Entry.id == entry_id, Entry.user_id == user.id)
                    .update(
                        {Entry.title: meta.title, Entry.image_url: meta.image_url},
                        synchronize_session=False,
                    )
                )

            entry = self.session.get(Entry, entry_id, populate_existing=True)
            if entry is None:
                raise NotFoundError(f"Entry {entry_id} not found.")
            return {
                "id": entry.id,
                "comment": entry.comment,
                "url": entry.url,
                "title": entry.title,
                "imageUrl": entry.image_url,
            }

    def delete_entry(self, authorization: Optional[str], entry_id: int) -> dict:
        user = self.current_user(authorization)

        # TODO: let the calendar owner cancel entries on their calendar
        with self._unit_of_work():
            matched = (
                self.session.query(Entry)
                .filter(Entry.id == entry_id, Entry.user_id == user.id)
                .delete(synchronize_session=False)
            )
            self._log_owner_scoped("delete", "entry", entry_id, user.id, matched)
        return {}

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def sign_in(self, jwt: str) -> dict:
        """Create the user on first sign-in; afterwards only refresh the icon."""
        auth = self._verify(jwt)

        with self._unit_of_work():
            user = self._find_user(auth)
            if user is None:
                user = User(
                    name=auth.name,
                    icon_url=auth.icon_url,
                    auth_provider=auth.auth_provider,
                    auth_uid=auth.auth_uid,
                )
                self.session.add(user)
                self.session.flush()
                self.logger.info("User %s signed up via %s", user.id, auth.auth_provider)
            else:
                user.icon_url = auth.icon_url
        return {}

    def update_user(self, authorization: Optional[str], name: str) -> dict:
        user = self.current_user(authorization)
        if not (name or "").strip():
            raise InvalidArgumentError("name is blank")

        with self._unit_of_work():
            user.name = name
            return {"id": user.id, "name": name}

    def current_user(self, authorization: Optional[str]) -> User:
        """Resolve the caller; a verified identity that never signed in is rejected."""
        token = _strip_bearer(authorization)
        if not token:
            raise UnauthenticatedError("not found authorization in metadata")

        auth = self._verify(token)
        user = self._find_user(auth)
        if user is None:
            raise UnauthenticatedError("user is not signed in")
        return user

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _unit_of_work(self) -> Iterator[None]:
        try:
            yield
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def _verify(self, token: str) -> AuthResult:
        try:
            return self.verifier.verify_id_token(token)
        except TokenVerificationError as exc:
            self.logger.warning("Token verification failed: %s", exc)
            raise UnauthenticatedError(str(exc)) from exc

    def _find_user(self, auth: AuthResult) -> Optional[User]:
        return (
            self.session.query(User)
            .filter(User.auth_provider == auth.auth_provider, User.auth_uid == auth.auth_uid)
            .first()
        )

    def _entry_counts(self, calendar_ids: List[int]) -> Dict[int, int]:
        rows = (
            self.session.query(Entry.calendar_id, func.count(Entry.id))
            .filter(Entry.calendar_id.in_(calendar_ids))
            .group_by(Entry.calendar_id)
            .all()
        )
        return {calendar_id: count for calendar_id, count in rows}

    def _calendar_entries(self, calendar_id: int) -> List[dict]:
        rows = (
            self.session.query(Entry, User)
            .join(User, User.id == Entry.user_id)
            .filter(Entry.calendar_id == calendar_id)
            .order_by(Entry.day.asc())
            .all()
        )
        return [entry.to_public_dict(owner=owner) for entry, owner in rows]

    def _log_owner_scoped(self, action: str, kind: str, target_id: int, user_id: int, matched: int) -> None:
        self.logger.info(
            "%s %s %s by user %s matched %s owned row(s)",
            action,
            kind,
            target_id,
            user_id,
            matched,
        )


def _strip_bearer(authorization: Optional[str]) -> str:
    value = (authorization or "").strip()
    if value.lower().startswith(BEARER_PREFIX):
        value = value[len(BEARER_PREFIX):].strip()
    return value
