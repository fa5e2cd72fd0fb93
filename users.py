"""
User management (admin) and the current user's profile files.
"""

import logging
import re
from typing import Any, Dict

from fastapi import APIRouter, Depends, File, Request, UploadFile
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from context import AppContext, get_context
from database import utcnow
from errors import AuthorizationError, ValidationError
from resources import ResourceController
from schemas import Payload, Role, RoleChange, UserCreate, UserStatus, UserUpdate
from security import get_current_user, hash_password, public_user, require_admin
from uploads import delete_upload, save_upload

logger = logging.getLogger(__name__)


class UserController(ResourceController):
    def to_document(self, payload: Payload) -> Dict[str, Any]:
        document = payload.document()
        document["password"] = hash_password(document["password"])
        # accounts created by an admin skip email verification
        document["isEmailVerified"] = True
        document["loginAttempts"] = 0
        return document


users = UserController(
    "users",
    UserCreate,
    UserUpdate,
    label="User",
    sort=[("createdAt", DESCENDING)],
    unique=("email",),
)


def user_filters(request: Request) -> Dict[str, Any]:
    params = request.query_params
    query: Dict[str, Any] = {}
    if params.get("role") in {r.value for r in Role}:
        query["role"] = params["role"]
    if params.get("status") in {s.value for s in UserStatus}:
        query["status"] = params["status"]
    search = (params.get("search") or "").strip()
    if search:
        pattern = re.compile(re.escape(search), re.IGNORECASE)
        query["$or"] = [{"firstName": pattern}, {"lastName": pattern}, {"email": pattern}]
    return query


def _is_admin(user: Dict[str, Any]) -> bool:
    return user.get("role") == Role.ADMIN.value


def _ensure_self_or_admin(user: Dict[str, Any], item_id: str) -> None:
    if not _is_admin(user) and str(user["_id"]) != item_id:
        raise AuthorizationError("Not authorized to access this user")


def _ensure_not_self(user: Dict[str, Any], item_id: str, action: str) -> None:
    if str(user["_id"]) == item_id:
        raise ValidationError(f"You cannot {action} your own account")


def _set_fields(db: Database, user: Dict[str, Any], fields: Dict[str, Any], unset=()) -> Dict[str, Any]:
    operation: Dict[str, Any] = {"$set": dict(fields, updatedAt=utcnow())}
    if unset:
        operation["$unset"] = {key: "" for key in unset}
    return db["users"].find_one_and_update({"_id": user["_id"]}, operation, return_document=ReturnDocument.AFTER)


router = APIRouter(prefix="/api/v1/users", tags=["users"])


# Current user's files (declared before /{item_id})
@router.put("/upload-profile-image")
def upload_profile_image(
    file: UploadFile = File(None),
    ctx: AppContext = Depends(get_context),
    user: dict = Depends(get_current_user),
):
    url = save_upload(ctx.settings, file, "profiles")
    updated = _set_fields(ctx.db, user, {"profileImage": url})
    return {"success": True, "data": public_user(updated), "message": "Profile image updated"}


@router.delete("/remove-profile-image")
def remove_profile_image(ctx: AppContext = Depends(get_context), user: dict = Depends(get_current_user)):
    if not user.get("profileImage"):
        raise ValidationError("No profile image to remove")
    updated = _set_fields(ctx.db, user, {}, unset=("profileImage",))
    return {"success": True, "data": public_user(updated), "message": "Profile image removed"}


@router.put("/upload-cv")
def upload_cv(
    file: UploadFile = File(None),
    ctx: AppContext = Depends(get_context),
    user: dict = Depends(get_current_user),
):
    url = save_upload(ctx.settings, file, "cv")
    previous = user.get("cvUrl")
    updated = _set_fields(ctx.db, user, {"cvUrl": url})
    if previous:
        delete_upload(ctx.settings, previous)
    return {"success": True, "data": public_user(updated), "message": "CV updated"}


# Admin CRUD
@router.get("")
def list_users(request: Request, ctx: AppContext = Depends(get_context), _: dict = Depends(require_admin)):
    items = [public_user(doc) for doc in users.list(ctx.db, user_filters(request))]
    return {"success": True, "count": len(items), "data": items}


@router.post("", status_code=201)
def create_user(payload: UserCreate, ctx: AppContext = Depends(get_context), _: dict = Depends(require_admin)):
    return {"success": True, "data": public_user(users.create(ctx.db, payload))}


@router.get("/{item_id}")
def get_user(item_id: str, ctx: AppContext = Depends(get_context), user: dict = Depends(get_current_user)):
    _ensure_self_or_admin(user, item_id)
    return {"success": True, "data": public_user(users.get_by_id(ctx.db, item_id))}


@router.put("/{item_id}")
def update_user(
    item_id: str,
    payload: UserUpdate,
    ctx: AppContext = Depends(get_context),
    user: dict = Depends(get_current_user),
):
    _ensure_self_or_admin(user, item_id)
    if payload.model_fields_set & {"role", "status"}:
        if not _is_admin(user):
            raise AuthorizationError("Only administrators can change role or status")
        _ensure_not_self(user, item_id, "change the role or status of")
    _, new = users.update(ctx.db, item_id, payload)
    return {"success": True, "data": public_user(new)}


@router.delete("/{item_id}")
def delete_user(item_id: str, ctx: AppContext = Depends(get_context), admin: dict = Depends(require_admin)):
    _ensure_not_self(admin, item_id, "delete")
    doc = users.delete(ctx.db, item_id)
    delete_upload(ctx.settings, doc.get("cvUrl"))
    return {"success": True, "data": {}}


@router.put("/{item_id}/role")
def change_role(
    item_id: str,
    payload: RoleChange,
    ctx: AppContext = Depends(get_context),
    admin: dict = Depends(require_admin),
):
    _ensure_not_self(admin, item_id, "change the role of")
    target = users.get_by_id(ctx.db, item_id)
    updated = _set_fields(ctx.db, target, {"role": payload.role})
    logger.info(f"User {item_id} is now {payload.role}")
    return {"success": True, "data": public_user(updated), "message": f"Role updated to {payload.role}"}


@router.put("/{item_id}/suspend")
def toggle_suspend(item_id: str, ctx: AppContext = Depends(get_context), admin: dict = Depends(require_admin)):
    _ensure_not_self(admin, item_id, "suspend")
    target = users.get_by_id(ctx.db, item_id)
    # only an active account gets suspended; any other status is reactivated
    if target.get("status") == UserStatus.ACTIVE.value:
        status = UserStatus.SUSPENDED.value
    else:
        status = UserStatus.ACTIVE.value
    updated = _set_fields(ctx.db, target, {"status": status})
    logger.info(f"User {item_id} status set to {status}")
    return {"success": True, "data": public_user(updated), "message": f"User {status}"}
