"""
Authentication endpoints: registration and email confirmation, login with
lockout, logout, profile self-service, password reset and token refresh.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Response
from fastapi.responses import RedirectResponse
from pydantic.alias_generators import to_camel

from context import AppContext, get_context
from database import create_document, object_id, utcnow
from errors import AuthenticationError, AuthorizationError, NotFoundError, RateLimitError, ServerError, ValidationError
from schemas import (
    EmailRequest,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    Role,
    UpdateDetailsRequest,
    UpdatePasswordRequest,
    UserStatus,
)
from security import (
    clear_auth_cookie,
    create_access_token,
    create_refresh_token,
    decode_refresh_token,
    get_current_user,
    get_optional_user,
    hash_password,
    hash_token,
    public_user,
    random_token,
    set_auth_cookie,
    verify_password,
)
from users import users

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])

BLOCKED_STATUSES = (UserStatus.SUSPENDED.value, UserStatus.BANNED.value)


def _issue_tokens(ctx: AppContext, user: Dict[str, Any], response: Response) -> Dict[str, Any]:
    token = create_access_token(ctx.settings, user)
    refresh_token = create_refresh_token(ctx.settings, user)
    ctx.db["users"].update_one({"_id": user["_id"]}, {"$set": {"refreshTokenHash": hash_token(refresh_token)}})
    set_auth_cookie(response, ctx.settings, token)
    return {"success": True, "token": token, "refreshToken": refresh_token, "user": public_user(user)}


def _new_password_fields() -> Dict[str, Any]:
    # one second back so a token issued right after the change stays valid
    return {"passwordChangedAt": utcnow() - timedelta(seconds=1), "updatedAt": utcnow()}


def _verification_fields(ctx: AppContext):
    raw = random_token()
    fields = {
        "emailVerificationToken": hash_token(raw),
        "emailVerificationExpires": utcnow() + timedelta(hours=ctx.settings.email_verification_hours),
    }
    return raw, fields


# ============
# Registration
# ============
@router.post("/register", status_code=201)
def register(payload: RegisterRequest, ctx: AppContext = Depends(get_context)):
    if ctx.db["users"].find_one({"email": payload.email}):
        raise ValidationError.for_field("email", "A user with this email already exists")

    raw_token, verification = _verification_fields(ctx)
    document: Dict[str, Any] = {
        "firstName": payload.first_name,
        "lastName": payload.last_name,
        "email": payload.email,
        "password": hash_password(payload.password),
        "role": Role.USER.value,
        "status": UserStatus.PENDING.value,
        "isEmailVerified": False,
        "loginAttempts": 0,
        **verification,
    }
    for key in ("title", "about", "phone_number", "address"):
        value = getattr(payload, key)
        if value:
            document[to_camel(key)] = value
    social = {k: getattr(payload, k) for k in ("github", "linkedin", "twitter") if getattr(payload, k)}
    if social:
        document["socialLinks"] = social

    user = create_document(ctx.db, "users", document)
    logger.info(f"Registered user {user['_id']} ({payload.email})")
    sent = ctx.mailer.send_confirmation_email(payload.email, payload.first_name, raw_token)
    message = "Registration successful, please check your email to confirm your account"
    if not sent:
        message = "Registration successful, but the confirmation email could not be sent"
    return {"success": True, "message": message, "data": public_user(user)}


@router.get("/confirm-email")
def confirm_email(token: str = Query(...), ctx: AppContext = Depends(get_context)):
    user = ctx.db["users"].find_one(
        {"emailVerificationToken": hash_token(token), "emailVerificationExpires": {"$gt": utcnow()}}
    )
    if not user:
        raise ValidationError("Invalid or expired verification token")
    fields: Dict[str, Any] = {"isEmailVerified": True, "updatedAt": utcnow()}
    if user.get("status") == UserStatus.PENDING.value:
        fields["status"] = UserStatus.ACTIVE.value
    ctx.db["users"].update_one(
        {"_id": user["_id"]},
        {"$set": fields, "$unset": {"emailVerificationToken": "", "emailVerificationExpires": ""}},
    )
    logger.info(f"Email confirmed for user {user['_id']}")
    return RedirectResponse(f"{ctx.settings.client_url}/login?verified=true", status_code=302)


@router.post("/resend-verification-email")
def resend_verification_email(payload: EmailRequest, ctx: AppContext = Depends(get_context)):
    user = ctx.db["users"].find_one({"email": payload.email})
    if not user:
        raise NotFoundError("No user found with this email")
    if user.get("isEmailVerified"):
        raise ValidationError("This email is already verified")
    raw_token, verification = _verification_fields(ctx)
    ctx.db["users"].update_one({"_id": user["_id"]}, {"$set": verification})
    if not ctx.mailer.send_confirmation_email(user["email"], user.get("firstName", ""), raw_token):
        raise ServerError("Email could not be sent", status_code=503)
    return {"success": True, "message": "Verification email sent", "data": {}}


# =====
# Login
# =====
@router.post("/login")
def login(payload: LoginRequest, response: Response, ctx: AppContext = Depends(get_context)):
    settings = ctx.settings
    collection = ctx.db["users"]
    user = collection.find_one({"email": payload.email})
    if not user:
        raise AuthenticationError("Invalid credentials")

    now = utcnow()
    lock_until = user.get("lockUntil")
    if lock_until and lock_until > now:
        minutes = max(1, int((lock_until - now).total_seconds() // 60) + 1)
        raise RateLimitError(f"Account temporarily locked, try again in {minutes} minute(s)")

    if not verify_password(payload.password, user.get("password")):
        attempts = (user.get("loginAttempts") or 0) + 1
        if attempts >= settings.login_max_attempts:
            collection.update_one(
                {"_id": user["_id"]},
                {"$set": {"loginAttempts": 0, "lockUntil": now + timedelta(minutes=settings.login_lock_minutes)}},
            )
            logger.warning(f"Account {user['_id']} locked after {attempts} failed logins")
            raise RateLimitError(
                f"Too many failed login attempts, account locked for {settings.login_lock_minutes} minutes"
            )
        collection.update_one({"_id": user["_id"]}, {"$set": {"loginAttempts": attempts}})
        logger.info(f"Failed login for {payload.email} ({attempts}/{settings.login_max_attempts})")
        raise AuthenticationError("Invalid credentials")

    if user.get("status") in BLOCKED_STATUSES:
        raise AuthorizationError(f"Account {user['status']}, contact an administrator")

    collection.update_one(
        {"_id": user["_id"]},
        {"$set": {"loginAttempts": 0, "lastLogin": now}, "$unset": {"lockUntil": ""}},
    )
    user = collection.find_one({"_id": user["_id"]})
    logger.info(f"User {user['_id']} logged in")
    return _issue_tokens(ctx, user, response)


@router.api_route("/logout", methods=["GET", "POST"])
def logout(
    response: Response,
    ctx: AppContext = Depends(get_context),
    user: Optional[dict] = Depends(get_optional_user),
):
    if user is not None:
        ctx.db["users"].update_one({"_id": user["_id"]}, {"$unset": {"refreshTokenHash": ""}})
        logger.info(f"User {user['_id']} logged out")
    clear_auth_cookie(response, ctx.settings)
    return {"success": True, "message": "Logged out", "data": {}}


# ============
# Self-service
# ============
@router.get("/me")
def me(user: dict = Depends(get_current_user)):
    return {"success": True, "data": public_user(user)}


@router.put("/updatedetails")
def update_details(
    payload: UpdateDetailsRequest,
    ctx: AppContext = Depends(get_context),
    user: dict = Depends(get_current_user),
):
    _, new = users.update(ctx.db, str(user["_id"]), payload)
    return {"success": True, "data": public_user(new)}


@router.put("/updatepassword")
def update_password(
    payload: UpdatePasswordRequest,
    response: Response,
    ctx: AppContext = Depends(get_context),
    user: dict = Depends(get_current_user),
):
    if not verify_password(payload.current_password, user.get("password")):
        raise AuthenticationError("Current password is incorrect")
    fields = {"password": hash_password(payload.new_password), **_new_password_fields()}
    ctx.db["users"].update_one({"_id": user["_id"]}, {"$set": fields})
    logger.info(f"Password changed for user {user['_id']}")
    return _issue_tokens(ctx, ctx.db["users"].find_one({"_id": user["_id"]}), response)


# ==============
# Password reset
# ==============
@router.post("/forgotpassword")
def forgot_password(payload: EmailRequest, ctx: AppContext = Depends(get_context)):
    message = "If an account exists for this email, a reset link has been sent"
    user = ctx.db["users"].find_one({"email": payload.email})
    if not user:
        logger.info(f"Password reset requested for unknown email {payload.email}")
        return {"success": True, "message": message, "data": {}}

    raw_token = random_token()
    expires = utcnow() + timedelta(minutes=ctx.settings.password_reset_minutes)
    ctx.db["users"].update_one(
        {"_id": user["_id"]},
        {"$set": {"passwordResetToken": hash_token(raw_token), "passwordResetExpires": expires}},
    )
    if not ctx.mailer.send_password_reset_email(user["email"], user.get("firstName", ""), raw_token):
        ctx.db["users"].update_one(
            {"_id": user["_id"]}, {"$unset": {"passwordResetToken": "", "passwordResetExpires": ""}}
        )
        raise ServerError("Email could not be sent", status_code=503)
    return {"success": True, "message": message, "data": {}}


@router.put("/resetpassword/{token}")
def reset_password(
    token: str,
    payload: ResetPasswordRequest,
    response: Response,
    ctx: AppContext = Depends(get_context),
):
    collection = ctx.db["users"]
    user = collection.find_one({"passwordResetToken": hash_token(token), "passwordResetExpires": {"$gt": utcnow()}})
    if not user:
        raise ValidationError("Invalid or expired reset token")
    collection.update_one(
        {"_id": user["_id"]},
        {
            "$set": {"password": hash_password(payload.password), "loginAttempts": 0, **_new_password_fields()},
            "$unset": {"passwordResetToken": "", "passwordResetExpires": "", "lockUntil": ""},
        },
    )
    logger.info(f"Password reset for user {user['_id']}")
    return _issue_tokens(ctx, collection.find_one({"_id": user["_id"]}), response)


@router.post("/refresh-token")
def refresh_token(
    response: Response,
    payload: Optional[RefreshRequest] = None,
    ctx: AppContext = Depends(get_context),
):
    raw = payload.refresh_token if payload else None
    if not raw:
        raise AuthenticationError("Refresh token missing")
    claims = decode_refresh_token(ctx.settings, raw)
    oid = object_id(claims.get("sub"))
    user = ctx.db["users"].find_one({"_id": oid}) if oid else None
    if not user or user.get("refreshTokenHash") != hash_token(raw):
        raise AuthenticationError("Invalid refresh token")
    if user.get("status") in BLOCKED_STATUSES:
        raise AuthenticationError(f"Account {user['status']}")
    tokens = _issue_tokens(ctx, user, response)
    return {"success": True, "token": tokens["token"], "refreshToken": tokens["refreshToken"]}
