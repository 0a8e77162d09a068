"""Caller identification for user endpoints and internal triggers."""

from __future__ import annotations

import hmac
from collections.abc import Mapping

from fastapi import HTTPException, status

from taskrelay.config import Settings

BEARER_PREFIX = "bearer "


def bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.lower().startswith(BEARER_PREFIX):
        return None
    token = authorization[len(BEARER_PREFIX) :].strip()
    return token or None


def resolve_user(settings: Settings, authorization: str | None) -> str:
    """Map the bearer token to a user id, 401 otherwise."""

    token = bearer_token(authorization)
    if token is not None:
        for known_token, user_id in settings.auth.api_tokens.items():
            if hmac.compare_digest(token, known_token):
                return user_id
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )


def has_cron_secret(settings: Settings, authorization: str | None) -> bool:
    secret = settings.trigger.cron_secret
    token = bearer_token(authorization)
    return bool(secret) and token is not None and hmac.compare_digest(token, secret)


def is_cron_authorized(settings: Settings, headers: Mapping[str, str]) -> bool:
    """Shared secret, or the scheduler's trusted header set to `1`."""

    header = settings.trigger.trusted_trigger_header
    if header and headers.get(header) == "1":
        return True
    return has_cron_secret(settings, headers.get("authorization"))
