# Overview: Signed back-office context tokens (tenant + user) for admin endpoints.

"""
Back-office Context Tokens

WHY: Administrative users authenticate elsewhere. What reaches this service
is a signed {org_id, user_id} context; signing with SECRET_KEY (itsdangerous)
is enough to trust it for BACKOFFICE_TOKEN_MAX_AGE seconds.
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from ..errors import InvalidCredential
from .tenant_store import tenant_store

TOKEN_SALT = "tpvcore.backoffice"


@dataclass(frozen=True)
class BackofficeContext:
    org_id: int
    user_id: int | None


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt=TOKEN_SALT)


def issue_backoffice_token(org_id: int, user_id: int | None = None) -> str:
    tenant_store.organization(org_id)
    return _serializer().dumps({"org_id": org_id, "user_id": user_id})


def load_backoffice_token(token: str) -> BackofficeContext:
    """
    Validate a context token.

    Raises InvalidCredential for bad signatures, expired tokens, malformed
    payloads and inactive organizations.
    """
    max_age = current_app.config.get("BACKOFFICE_TOKEN_MAX_AGE", 8 * 60 * 60)
    try:
        data = _serializer().loads(token, max_age=max_age)
    except SignatureExpired:
        raise InvalidCredential("Back-office token expired")
    except BadSignature:
        raise InvalidCredential("Invalid back-office token")

    org_id = data.get("org_id") if isinstance(data, dict) else None
    if not isinstance(org_id, int):
        raise InvalidCredential("Invalid back-office token")
    tenant_store.organization(org_id)
    return BackofficeContext(org_id=org_id, user_id=data.get("user_id"))
