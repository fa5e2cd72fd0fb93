"""
Generic CRUD controller over one MongoDB collection, and the router that
exposes it under /api/v1/<collection>.

Reads are public; every mutation requires the admin role.
"""

import logging
import re
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Type

import pydantic
from fastapi import APIRouter, BackgroundTasks, Depends, Request
from pymongo import ReturnDocument
from pymongo.database import Database

from context import AppContext, get_context, get_db
from database import SortSpec, create_document, get_documents, object_id, serialize, utcnow
from errors import FieldErrors, NotFoundError, ValidationError
from schemas import SERVER_FIELDS, Patch, Payload
from security import require_admin

logger = logging.getLogger(__name__)

# (background tasks, context, action, serialized data, acting user)
ChangeHook = Callable[[BackgroundTasks, AppContext, str, Any, Dict[str, Any]], None]
FilterBuilder = Callable[[Request], Dict[str, Any]]


def field_errors(exc: pydantic.ValidationError) -> FieldErrors:
    errors: FieldErrors = {}
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ())) or "body"
        errors.setdefault(field, []).append(err.get("msg", "Invalid value"))
    return errors


class ResourceController:
    def __init__(
        self,
        collection: str,
        create_schema: Type[Payload],
        update_schema: Type[Patch],
        label: str,
        sort: Optional[SortSpec] = None,
        unique: Sequence[str] = (),
        merge_schema: Optional[Type[Payload]] = None,
    ):
        self.collection = collection
        self.create_schema = create_schema
        self.update_schema = update_schema
        self.label = label
        self.sort = sort
        self.unique = tuple(unique)
        # the merged document of an update is re-validated against this schema
        self.merge_schema = merge_schema

    def list(self, db: Database, filter_dict: Optional[dict] = None) -> List[Dict[str, Any]]:
        return get_documents(db, self.collection, filter_dict, sort=self.sort)

    def get_by_id(self, db: Database, item_id: str) -> Dict[str, Any]:
        oid = object_id(item_id)
        doc = db[self.collection].find_one({"_id": oid}) if oid else None
        if doc is None:
            raise NotFoundError(f"{self.label} not found with id {item_id}")
        return doc

    def _check_unique(self, db: Database, values: Dict[str, Any], exclude: Any = None) -> None:
        errors: FieldErrors = {}
        for field in self.unique:
            value = values.get(field)
            if not isinstance(value, str):
                continue
            query: Dict[str, Any] = {field: re.compile(f"^{re.escape(value)}$", re.IGNORECASE)}
            if exclude is not None:
                query["_id"] = {"$ne": exclude}
            if db[self.collection].find_one(query) is not None:
                errors[field] = [f"{self.label} with this {field} already exists"]
        if errors:
            raise ValidationError(errors, message=next(iter(errors.values()))[0])

    def to_document(self, payload: Payload) -> Dict[str, Any]:
        return payload.document()

    def create(self, db: Database, payload: Payload) -> Dict[str, Any]:
        document = self.to_document(payload)
        self._check_unique(db, document)
        doc = create_document(db, self.collection, document)
        logger.info(f"Created {self.label} {doc['_id']}")
        return doc

    def _validate_merged(self, old: Dict[str, Any], to_set: Dict[str, Any], to_unset: List[str]) -> None:
        if self.merge_schema is None:
            return
        merged = {k: v for k, v in old.items() if k not in SERVER_FIELDS}
        merged.update(to_set)
        for key in to_unset:
            merged.pop(key, None)
        try:
            self.merge_schema.model_validate(merged)
        except pydantic.ValidationError as e:
            raise ValidationError(field_errors(e))

    def update(self, db: Database, item_id: str, patch: Patch) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Apply a partial update; returns (old, new)."""
        old = self.get_by_id(db, item_id)
        to_set, to_unset = patch.changes()
        self._validate_merged(old, to_set, to_unset)
        self._check_unique(db, to_set, exclude=old["_id"])

        to_set["updatedAt"] = utcnow()
        operation: Dict[str, Any] = {"$set": to_set}
        if to_unset:
            operation["$unset"] = {key: "" for key in to_unset}
        new = db[self.collection].find_one_and_update(
            {"_id": old["_id"]}, operation, return_document=ReturnDocument.AFTER
        )
        if new is None:
            # deleted between the read and the write
            raise NotFoundError(f"{self.label} not found with id {item_id}")
        logger.info(f"Updated {self.label} {item_id}")
        return old, new

    def delete(self, db: Database, item_id: str) -> Dict[str, Any]:
        oid = object_id(item_id)
        doc = db[self.collection].find_one_and_delete({"_id": oid}) if oid else None
        if doc is None:
            raise NotFoundError(f"{self.label} not found with id {item_id}")
        logger.info(f"Deleted {self.label} {item_id}")
        return doc


def build_router(
    controller: ResourceController,
    router: Optional[APIRouter] = None,
    filters: Optional[FilterBuilder] = None,
    on_change: Optional[ChangeHook] = None,
) -> APIRouter:
    """Mount list/get/create/update/delete for a controller.

    Routes that must win over "/{item_id}" have to be added to `router`
    before it is passed in.
    """
    if router is None:
        router = APIRouter(prefix=f"/api/v1/{controller.collection}", tags=[controller.collection])
    create_schema = controller.create_schema
    update_schema = controller.update_schema

    def notify(background_tasks, ctx, action, data, user):
        if on_change is not None:
            on_change(background_tasks, ctx, action, data, user)

    @router.get("")
    def list_items(request: Request, db: Database = Depends(get_db)):
        query = filters(request) if filters else {}
        items = [serialize(doc) for doc in controller.list(db, query)]
        return {"success": True, "count": len(items), "data": items}

    @router.get("/{item_id}")
    def get_item(item_id: str, db: Database = Depends(get_db)):
        return {"success": True, "data": serialize(controller.get_by_id(db, item_id))}

    @router.post("", status_code=201)
    def create_item(
        payload: create_schema,
        background_tasks: BackgroundTasks,
        ctx: AppContext = Depends(get_context),
        user: dict = Depends(require_admin),
    ):
        doc = serialize(controller.create(ctx.db, payload))
        notify(background_tasks, ctx, "created", doc, user)
        return {"success": True, "data": doc}

    @router.put("/{item_id}")
    def update_item(
        item_id: str,
        payload: update_schema,
        background_tasks: BackgroundTasks,
        ctx: AppContext = Depends(get_context),
        user: dict = Depends(require_admin),
    ):
        old, new = controller.update(ctx.db, item_id, payload)
        new = serialize(new)
        notify(background_tasks, ctx, "updated", {"old": serialize(old), "new": new}, user)
        return {"success": True, "data": new}

    @router.delete("/{item_id}")
    def delete_item(
        item_id: str,
        background_tasks: BackgroundTasks,
        ctx: AppContext = Depends(get_context),
        user: dict = Depends(require_admin),
    ):
        doc = controller.delete(ctx.db, item_id)
        notify(background_tasks, ctx, "deleted", serialize(doc), user)
        return {"success": True, "data": {}}

    return router
