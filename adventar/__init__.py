"""Adventar API package: service, collaborators and the JSON RPC blueprint."""

from .auth import AuthResult, FirebaseVerifier, TokenVerificationError
from .meta import SiteMeta, SiteMetaFetcher
from .routes import create_adventar_blueprint
from .service import AdventarService

__all__ = [
    "AdventarService",
    "AuthResult",
    "FirebaseVerifier",
    "SiteMeta",
    "SiteMetaFetcher",
    "TokenVerificationError",
    "create_adventar_blueprint",
]
