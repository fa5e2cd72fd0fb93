"""
Password hashing, JWT handling and the auth guard dependencies.

The access token is accepted from the Authorization header or from the auth
cookie; there is no server-side session table.
"""

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, Header, Request, Response
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database

from config import Settings
from context import AppContext, get_context
from database import object_id
from errors import AuthenticationError, AuthorizationError
from schemas import Role, UserStatus

logger = logging.getLogger(__name__)

# Use pbkdf2_sha256 to avoid external bcrypt dependency issues
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

# Never leave the server
PRIVATE_USER_FIELDS = (
    "password",
    "refreshTokenHash",
    "emailVerificationToken",
    "emailVerificationExpires",
    "passwordResetToken",
    "passwordResetExpires",
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def random_token() -> str:
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    out = {k: v for k, v in user.items() if k not in PRIVATE_USER_FIELDS}
    out["id"] = str(out.pop("_id", out.get("id", "")))
    return out


# ======
# Tokens
# ======
def _encode(claims: dict, secret: str, algorithm: str, expires_delta: timedelta) -> str:
    now = datetime.now(timezone.utc)
    to_encode = dict(claims)
    to_encode.update({"iat": now, "exp": now + expires_delta})
    return jwt.encode(to_encode, secret, algorithm=algorithm)


def create_access_token(settings: Settings, user: Dict[str, Any]) -> str:
    return _encode(
        {"sub": str(user["_id"]), "role": user.get("role", Role.USER.value)},
        settings.jwt_secret,
        settings.jwt_algorithm,
        timedelta(minutes=settings.access_token_expire_minutes),
    )


def create_refresh_token(settings: Settings, user: Dict[str, Any]) -> str:
    return _encode(
        {"sub": str(user["_id"]), "type": "refresh", "jti": secrets.token_hex(8)},
        settings.jwt_refresh_secret,
        settings.jwt_algorithm,
        timedelta(days=settings.refresh_token_expire_days),
    )


def _decode(token: str, secret: str, algorithm: str) -> dict:
    try:
        return jwt.decode(token, secret, algorithms=[algorithm])
    except ExpiredSignatureError:
        raise AuthenticationError("Token expired, please log in again")
    except JWTError:
        raise AuthenticationError("Invalid token")


def decode_access_token(settings: Settings, token: str) -> dict:
    return _decode(token, settings.jwt_secret, settings.jwt_algorithm)


def decode_refresh_token(settings: Settings, token: str) -> dict:
    payload = _decode(token, settings.jwt_refresh_secret, settings.jwt_algorithm)
    if payload.get("type") != "refresh":
        raise AuthenticationError("Invalid token")
    return payload


def extract_token(authorization: Optional[str], cookies: Dict[str, str], cookie_name: str) -> Optional[str]:
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
        if token:
            return token
    token = cookies.get(cookie_name)
    # logout overwrites the cookie with a placeholder
    if token and token != "none":
        return token
    return None


def _password_changed_after(user: Dict[str, Any], issued_at: Optional[int]) -> bool:
    changed = user.get("passwordChangedAt")
    if not changed or issued_at is None:
        return False
    changed_ts = int(changed.replace(tzinfo=timezone.utc).timestamp())
    return issued_at < changed_ts


def resolve_user(db: Database, settings: Settings, token: str) -> Dict[str, Any]:
    payload = decode_access_token(settings, token)
    oid = object_id(payload.get("sub"))
    user = db["users"].find_one({"_id": oid}) if oid else None
    if not user:
        raise AuthenticationError("User not found for this token")
    if user.get("status") in (UserStatus.SUSPENDED.value, UserStatus.BANNED.value):
        logger.warning(f"Rejected token for {user.get('status')} user {oid}")
        raise AuthenticationError(f"Account {user.get('status')}")
    if _password_changed_after(user, payload.get("iat")):
        raise AuthenticationError("Password was changed recently, please log in again")
    return user


# ==========
# Auth guard
# ==========
def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    token = extract_token(authorization, request.cookies, ctx.settings.cookie_name)
    if not token:
        raise AuthenticationError("Not authenticated, token missing")
    return resolve_user(ctx.db, ctx.settings, token)


def get_optional_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    ctx: AppContext = Depends(get_context),
) -> Optional[Dict[str, Any]]:
    token = extract_token(authorization, request.cookies, ctx.settings.cookie_name)
    if not token:
        return None
    try:
        return resolve_user(ctx.db, ctx.settings, token)
    except AuthenticationError:
        return None


def require_roles(*roles: str):
    def dependency(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        if user.get("role") not in roles:
            raise AuthorizationError(f"Role {user.get('role')} is not allowed to access this resource")
        return user

    return dependency


require_admin = require_roles(Role.ADMIN.value)


# =======
# Cookies
# =======
def set_auth_cookie(response: Response, settings: Settings, token: str) -> None:
    response.set_cookie(
        settings.cookie_name,
        token,
        max_age=settings.access_token_expire_minutes * 60,
        httponly=True,
        secure=settings.is_production,
        samesite="none" if settings.is_production else "lax",
        path="/",
    )


def clear_auth_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.cookie_name,
        path="/",
        httponly=True,
        secure=settings.is_production,
        samesite="none" if settings.is_production else "lax",
    )
