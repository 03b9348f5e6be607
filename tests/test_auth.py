"""Tests for adventar/auth.py: Firebase ID token verification.

Tokens are signed with a throwaway RSA key; the verifier's certificate
download is served by a mocked ``requests`` session returning that key's
public PEM under a ``kid``.
"""

from __future__ import annotations

import time
from unittest.mock import MagicMock

import pytest
import requests
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwt

from adventar.auth import (
    DEFAULT_CERTS_MAX_AGE,
    FirebaseVerifier,
    TokenVerificationError,
    _max_age,
    auth_result_from_claims,
)

PROJECT = "adventar-test"


@pytest.fixture(scope="module")
def signing_key():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


def _certs_session(public_pem: str, cache_control: str = "public, max-age=600") -> MagicMock:
    resp = MagicMock()
    resp.json.return_value = {"kid-1": public_pem}
    resp.headers = {"Cache-Control": cache_control}
    resp.raise_for_status.return_value = None
    http = MagicMock()
    http.get.return_value = resp
    return http


def _claims(**overrides) -> dict:
    now = int(time.time())
    claims = {
        "iss": f"https://securetoken.google.com/{PROJECT}",
        "aud": PROJECT,
        "sub": "firebase-uid",
        "iat": now,
        "exp": now + 3600,
        "name": "Alice",
        "picture": "https://avatars.example/alice.png",
        "firebase": {
            "sign_in_provider": "github.com",
            "identities": {"github.com": ["12345"]},
        },
    }
    claims.update(overrides)
    return claims


def _sign(private_pem: str, claims: dict) -> str:
    return jwt.encode(claims, private_pem, algorithm="RS256", headers={"kid": "kid-1"})


def test_verify_id_token_maps_claims(signing_key):
    private_pem, public_pem = signing_key
    verifier = FirebaseVerifier(PROJECT, http=_certs_session(public_pem))

    result = verifier.verify_id_token(_sign(private_pem, _claims()))

    assert result.auth_provider == "github.com"
    assert result.auth_uid == "12345"
    assert result.name == "Alice"
    assert result.icon_url == "https://avatars.example/alice.png"


def test_verify_id_token_rejects_other_audience(signing_key):
    private_pem, public_pem = signing_key
    verifier = FirebaseVerifier(PROJECT, http=_certs_session(public_pem))

    with pytest.raises(TokenVerificationError):
        verifier.verify_id_token(_sign(private_pem, _claims(aud="someone-else")))


def test_verify_id_token_rejects_expired_token(signing_key):
    private_pem, public_pem = signing_key
    verifier = FirebaseVerifier(PROJECT, http=_certs_session(public_pem))
    past = int(time.time()) - 7200

    with pytest.raises(TokenVerificationError):
        verifier.verify_id_token(_sign(private_pem, _claims(iat=past, exp=past + 60)))


def test_verify_id_token_rejects_garbage(signing_key):
    _, public_pem = signing_key
    verifier = FirebaseVerifier(PROJECT, http=_certs_session(public_pem))

    with pytest.raises(TokenVerificationError):
        verifier.verify_id_token("not-a-jwt")


def test_verify_id_token_requires_project_and_token():
    with pytest.raises(TokenVerificationError):
        FirebaseVerifier(None, http=MagicMock()).verify_id_token("anything")
    with pytest.raises(TokenVerificationError):
        FirebaseVerifier(PROJECT, http=MagicMock()).verify_id_token("")


def test_certificates_are_cached_until_max_age(signing_key):
    private_pem, public_pem = signing_key
    http = _certs_session(public_pem, cache_control="max-age=100")
    clock = MagicMock(return_value=1000.0)
    verifier = FirebaseVerifier(PROJECT, http=http, clock=clock)
    token = _sign(private_pem, _claims())

    verifier.verify_id_token(token)
    clock.return_value = 1099.0
    verifier.verify_id_token(token)
    assert http.get.call_count == 1

    clock.return_value = 1101.0
    verifier.verify_id_token(token)
    assert http.get.call_count == 2


def test_certificate_download_failure_is_a_verification_error():
    http = MagicMock()
    http.get.side_effect = requests.ConnectionError("offline")
    verifier = FirebaseVerifier(PROJECT, http=http)

    with pytest.raises(TokenVerificationError):
        verifier.verify_id_token("header.payload.signature")


def test_auth_result_falls_back_to_subject_without_identity():
    result = auth_result_from_claims(
        {"sub": "firebase-uid", "firebase": {"sign_in_provider": "password"}}
    )

    assert (result.auth_provider, result.auth_uid) == ("password", "firebase-uid")
    assert (result.name, result.icon_url) == ("", "")


@pytest.mark.parametrize(
    "claims",
    [
        {"firebase": {"sign_in_provider": "github.com"}},
        {"sub": "uid", "firebase": {}},
    ],
)
def test_auth_result_requires_subject_and_provider(claims):
    with pytest.raises(TokenVerificationError):
        auth_result_from_claims(claims)


@pytest.mark.parametrize(
    "header, expected",
    [
        ("public, max-age=19302, must-revalidate, no-transform", 19302),
        ("no-cache", DEFAULT_CERTS_MAX_AGE),
        (None, DEFAULT_CERTS_MAX_AGE),
    ],
)
def test_max_age(header, expected):
    assert _max_age(header) == expected
