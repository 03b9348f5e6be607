"""Error taxonomy shared by the Adventar service and its JSON transport."""

from __future__ import annotations

from typing import Any, Dict, Optional


class AdventarServiceError(Exception):
    """Raised when an RPC cannot complete; carries the wire code and HTTP status."""

    code = "unknown"
    status_code = 500

    def __init__(self, message: str, payload: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.payload = payload or {"code": self.code, "msg": message}


class InvalidArgumentError(AdventarServiceError):
    code = "invalid_argument"
    status_code = 400


class UnauthenticatedError(AdventarServiceError):
    code = "unauthenticated"
    status_code = 401


class NotFoundError(AdventarServiceError):
    code = "not_found"
    status_code = 404


class AlreadyExistsError(AdventarServiceError):
    code = "already_exists"
    status_code = 409


class MetaFetchError(AdventarServiceError):
    """The link-preview fetch failed; the surrounding update is abandoned."""

    code = "unavailable"
    status_code = 503
