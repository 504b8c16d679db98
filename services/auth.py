# services/auth.py
import hmac
import logging
import os
import time

from fastapi import Depends, Header, HTTPException
from google.auth import exceptions as google_auth_exceptions
from google.auth.transport import requests
from google.oauth2 import id_token
from redis.exceptions import RedisError

import config
from services.redis_client import get_redis

logger = logging.getLogger("api.auth")

# -----------------------------------------------------------------------------
# Config
# -----------------------------------------------------------------------------

TOKEN_CLOCK_SKEW_SEC = int(os.getenv("TOKEN_CLOCK_SKEW_SEC", "60"))
ALLOWED_ISSUERS = {
    "https://accounts.google.com",
    "accounts.google.com",
}

# -----------------------------------------------------------------------------
# Redis Keys
# -----------------------------------------------------------------------------

BLOCKED_SET = "auth:users:blocked"
ADMIN_SET = "auth:users:admin"
PERMISSION_SET_PREFIX = "auth:permissions"

PERMISSION_MUSIC_UPLOAD = "music:upload"
PERMISSION_SYSTEM_CONFIG = "system:config"

SERVICE_PRINCIPAL = "service:smart-upload"


def _unauthorized(error_code: str, message: str) -> HTTPException:
    return HTTPException(status_code=401, detail={"error_code": error_code, "error_message": message})


def _forbidden(error_code: str, message: str) -> HTTPException:
    return HTTPException(status_code=403, detail={"error_code": error_code, "error_message": message})


def _auth_backend_unavailable() -> HTTPException:
    return HTTPException(
        status_code=503,
        detail={
            "error_code": "INFRA_REDIS",
            "error_message": "Authentication backend temporarily unavailable",
        },
    )


def _google_client_id() -> str:
    client_id = (os.getenv("GOOGLE_CLIENT_ID") or "").strip()
    if not client_id:
        raise HTTPException(
            status_code=503,
            detail={"error_code": "AUTH_NOT_CONFIGURED", "error_message": "GOOGLE_CLIENT_ID not set"},
        )
    return client_id


def _bearer(authorization: str | None) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise _unauthorized("AUTH_MISSING_AUTH_HEADER", "Missing Authorization header")
    return authorization.replace("Bearer ", "", 1).strip()


# -----------------------------------------------------------------------------
# Google identity
# -----------------------------------------------------------------------------

def verify_google_id_token(token: str, r=None) -> dict:
    if not token:
        raise _unauthorized("AUTH_MISSING_TOKEN", "Missing token")

    client_id = _google_client_id()
    try:
        payload = id_token.verify_oauth2_token(token, requests.Request(), client_id)
    except (ValueError, google_auth_exceptions.GoogleAuthError):
        raise _unauthorized("AUTH_INVALID_TOKEN", "Invalid Google token")

    issuer = str(payload.get("iss") or "").strip()
    if issuer not in ALLOWED_ISSUERS:
        raise _unauthorized("AUTH_INVALID_ISSUER", "Invalid token issuer")

    audience = str(payload.get("aud") or "").strip()
    if audience != client_id:
        raise _unauthorized("AUTH_INVALID_AUDIENCE", "Invalid token audience")

    now = int(time.time())
    exp = int(payload.get("exp") or 0)
    if exp <= now - TOKEN_CLOCK_SKEW_SEC:
        raise _unauthorized("AUTH_TOKEN_EXPIRED", "Token expired")

    nbf = int(payload.get("nbf") or 0)
    if nbf and nbf > now + TOKEN_CLOCK_SKEW_SEC:
        raise _unauthorized("AUTH_TOKEN_NOT_YET_VALID", "Token not valid yet")

    email = payload.get("email")
    if not email:
        raise _unauthorized("AUTH_EMAIL_MISSING", "Email not found in token")

    if payload.get("email_verified") is not True:
        raise _unauthorized("AUTH_EMAIL_NOT_VERIFIED", "Email is not verified")

    email = email.lower()
    client = r if r is not None else get_redis()
    try:
        if client.sismember(BLOCKED_SET, email):
            raise _forbidden("AUTH_USER_BLOCKED", "User access blocked")
    except RedisError:
        raise _auth_backend_unavailable()

    return {"email": email, "user_id": payload.get("sub"), "name": payload.get("name")}


def verify_google_token(authorization: str = Header(None)) -> dict:
    """Resolve the caller from a Google ID token. Blocked users are denied."""
    return verify_google_id_token(_bearer(authorization))


# -----------------------------------------------------------------------------
# Permissions
# -----------------------------------------------------------------------------

def permission_set_key(action: str) -> str:
    return f"{PERMISSION_SET_PREFIX}:{action}"


def has_permission(user: dict, action: str, r=None) -> bool:
    """Admins hold every action; everyone else needs membership in the action's set."""
    if user.get("service"):
        return True
    email = str(user.get("email") or "").lower()
    if not email:
        return False
    client = r if r is not None else get_redis()
    try:
        if client.sismember(ADMIN_SET, email):
            return True
        return bool(client.sismember(permission_set_key(action), email))
    except RedisError:
        raise _auth_backend_unavailable()


def require_permission(*actions: str):
    def dependency(user: dict = Depends(verify_google_token)) -> dict:
        if any(has_permission(user, action) for action in actions):
            return user
        logger.info("permission_denied email=%s actions=%s", user.get("email"), ",".join(actions))
        raise _forbidden("AUTH_PERMISSION_DENIED", f"Requires permission: {' or '.join(actions)}")

    return dependency


# -----------------------------------------------------------------------------
# Internal service token
# -----------------------------------------------------------------------------

def is_service_token(token: str) -> bool:
    expected = config.SMART_UPLOAD_SERVICE_TOKEN
    return bool(expected) and hmac.compare_digest(token.encode(), expected.encode())


def require_service_or_permission(*actions: str):
    """Accept the internal service bearer token, or a Google user holding one of actions."""

    def dependency(authorization: str = Header(None)) -> dict:
        token = _bearer(authorization)
        if is_service_token(token):
            return {"email": SERVICE_PRINCIPAL, "service": True}
        user = verify_google_id_token(token)
        if any(has_permission(user, action) for action in actions):
            return user
        raise _forbidden("AUTH_PERMISSION_DENIED", f"Requires permission: {' or '.join(actions)}")

    return dependency
