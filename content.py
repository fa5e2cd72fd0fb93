"""
Portfolio content: skills, experiences, educations, certifications, projects.
"""

from typing import Any, Dict

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.encoders import jsonable_encoder
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

from context import AppContext, get_db
from database import get_documents, serialize
from relay import RelayEvent
from resources import ResourceController, build_router
from schemas import (
    CertificationCreate,
    CertificationUpdate,
    EducationCreate,
    EducationUpdate,
    ExperienceCreate,
    ExperienceUpdate,
    ProjectCreate,
    ProjectUpdate,
    SkillCategory,
    SkillCreate,
    SkillUpdate,
)

FEATURED_LIMIT = 6

skills = ResourceController(
    "skills",
    SkillCreate,
    SkillUpdate,
    label="Skill",
    sort=[("category", ASCENDING), ("name", ASCENDING)],
    unique=("name",),
    merge_schema=SkillCreate,
)
experiences = ResourceController(
    "experiences",
    ExperienceCreate,
    ExperienceUpdate,
    label="Experience",
    sort=[("startDate", DESCENDING)],
    merge_schema=ExperienceCreate,
)
educations = ResourceController(
    "educations",
    EducationCreate,
    EducationUpdate,
    label="Education",
    sort=[("startDate", DESCENDING)],
    merge_schema=EducationCreate,
)
certifications = ResourceController(
    "certifications",
    CertificationCreate,
    CertificationUpdate,
    label="Certification",
    sort=[("date", DESCENDING)],
    merge_schema=CertificationCreate,
)
projects = ResourceController(
    "projects",
    ProjectCreate,
    ProjectUpdate,
    label="Project",
    sort=[("createdAt", DESCENDING)],
    merge_schema=ProjectCreate,
)


def _is_true(value: str) -> bool:
    return value.lower() in ("1", "true", "yes")


def skill_filters(request: Request) -> Dict[str, Any]:
    category = request.query_params.get("category")
    if category in {c.value for c in SkillCategory}:
        return {"category": category}
    return {}


def project_filters(request: Request) -> Dict[str, Any]:
    featured = request.query_params.get("featured")
    if featured is None:
        return {}
    return {"featured": _is_true(featured)}


PROJECT_EVENTS = {
    "created": RelayEvent.PROJECT_CREATED,
    "updated": RelayEvent.PROJECT_UPDATED,
    "deleted": RelayEvent.PROJECT_DELETED,
}


def publish_project_change(
    background_tasks: BackgroundTasks, ctx: AppContext, action: str, data: Any, user: Dict[str, Any]
) -> None:
    # runs after the response has been sent
    background_tasks.add_task(
        ctx.relay.publish_project_event, PROJECT_EVENTS[action], jsonable_encoder(data), str(user["_id"])
    )


projects_router = APIRouter(prefix="/api/v1/projects", tags=["projects"])


@projects_router.get("/featured")
def featured_projects(db: Database = Depends(get_db)):
    items = get_documents(db, "projects", {"featured": True}, limit=FEATURED_LIMIT, sort=projects.sort)
    items = [serialize(doc) for doc in items]
    return {"success": True, "count": len(items), "data": items}


routers = [
    build_router(skills, filters=skill_filters),
    build_router(experiences),
    build_router(educations),
    build_router(certifications),
    build_router(projects, router=projects_router, filters=project_filters, on_change=publish_project_change),
]
