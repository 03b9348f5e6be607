"""Firebase ID token verification for the Adventar API.

Tokens are RS256 JWTs signed with Google's rotating securetoken certificates.
The certificates are cached until the ``max-age`` announced by Google expires.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import requests
from flask import current_app, has_app_context
from jose import JWTError, jwt

GOOGLE_CERTS_URL = (
    "https://www.googleapis.com/robot/v1/metadata/x509/securetoken@system.gserviceaccount.com"
)
ISSUER_PREFIX = "https://securetoken.google.com/"
DEFAULT_CERTS_MAX_AGE = 3600
_MAX_AGE_PATTERN = re.compile(r"max-age=(\d+)")


@dataclass
class AuthResult:
    """Identity resolved from a verified token."""

    auth_provider: str
    auth_uid: str
    name: str
    icon_url: str


class TokenVerificationError(Exception):
    """Raised when an ID token is missing, malformed, expired or forged."""


class FirebaseVerifier:
    """Verify Firebase Authentication ID tokens and map them to ``AuthResult``."""

    def __init__(
        self,
        project_id: Optional[str],
        certs_url: str = GOOGLE_CERTS_URL,
        timeout: float = 10,
        http: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.project_id = project_id
        self.certs_url = certs_url
        self.timeout = timeout
        self._http = http or requests.Session()
        self._clock = clock
        self._cache: Dict[str, object] = {"certs": None, "expires_at": 0.0}

    def verify_id_token(self, token: str) -> AuthResult:
        if not self.project_id:
            raise TokenVerificationError("Firebase project id is not configured.")
        if not token:
            raise TokenVerificationError("ID token is empty.")

        try:
            claims = jwt.decode(
                token,
                self._certificates(),
                algorithms=["RS256"],
                audience=self.project_id,
                issuer=f"{ISSUER_PREFIX}{self.project_id}",
            )
        except JWTError as exc:
            raise TokenVerificationError(f"Invalid ID token: {exc}") from exc

        return auth_result_from_claims(claims)

    def _certificates(self) -> Dict[str, str]:
        now = self._clock()
        cached = self._cache.get("certs")
        if cached and now < float(self._cache["expires_at"]):
            return cached  # type: ignore[return-value]

        try:
            resp = self._http.get(self.certs_url, timeout=self.timeout)
            resp.raise_for_status()
            certs = resp.json()
        except (requests.RequestException, ValueError) as exc:
            _log_warning("Could not download Firebase certificates: %s", exc)
            raise TokenVerificationError("Signing certificates unavailable.") from exc

        self._cache["certs"] = certs
        self._cache["expires_at"] = now + _max_age(resp.headers.get("Cache-Control"))
        return certs


def auth_result_from_claims(claims: dict) -> AuthResult:
    """Map verified Firebase claims to the provider identity Adventar stores.

    The provider-side uid (e.g. the GitHub user id) is stored; the Firebase
    ``sub`` is used only when the token lists no identity for the provider.
    """
    subject = claims.get("sub")
    if not subject:
        raise TokenVerificationError("ID token has no subject.")

    firebase = claims.get("firebase") or {}
    provider = firebase.get("sign_in_provider") or ""
    if not provider:
        raise TokenVerificationError("ID token has no sign-in provider.")

    identities = firebase.get("identities") or {}
    provider_uids = identities.get(provider) or []
    uid = str(provider_uids[0]) if provider_uids else str(subject)

    return AuthResult(
        auth_provider=provider,
        auth_uid=uid,
        name=claims.get("name") or "",
        icon_url=claims.get("picture") or "",
    )


def _max_age(cache_control: Optional[str]) -> int:
    if not cache_control:
        return DEFAULT_CERTS_MAX_AGE
    match = _MAX_AGE_PATTERN.search(cache_control)
    if not match:
        return DEFAULT_CERTS_MAX_AGE
    return int(match.group(1))


def _log_warning(message: str, *args) -> None:
    if not has_app_context():
        return
    current_app.logger.warning(message, *args)
