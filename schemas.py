"""
Database Schemas for the Portfolio API

Each entity has a create payload (full validation) and a patch payload (every
field optional, used by PUT). Field names are snake_case in Python and
camelCase on the wire and in MongoDB:
- Skill -> "skills" collection
- Experience -> "experiences" collection
- Education -> "educations" collection
- Certification -> "certifications" collection
- Project -> "projects" collection
- User -> "users" collection
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, ClassVar, Dict, FrozenSet, List, Optional, Tuple

from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict, EmailStr, Field, model_validator
from pydantic.alias_generators import to_camel

# Keys the server owns; silently dropped from incoming payloads
SERVER_FIELDS = frozenset({"id", "_id", "createdAt", "updatedAt"})

URL_RE = re.compile(r"^https?://[^\s/$.?#][^\s]*$", re.IGNORECASE)


# ============
# Enumerations
# ============
class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class UserStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    BANNED = "banned"


class SkillLevel(str, Enum):
    BEGINNER = "Beginner"
    INTERMEDIATE = "Intermediate"
    CONFIRMED = "Confirmed"
    EXPERT = "Expert"


class SkillCategory(str, Enum):
    FRONTEND = "frontend"
    BACKEND = "backend"
    DATABASE = "database"
    DEVOPS = "devops"
    OTHER = "other"


# ================
# Field validators
# ================
def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _http_url(value: str) -> str:
    if not URL_RE.match(value):
        raise ValueError("must be a valid http(s) URL")
    return value


def _image_url(value: str) -> str:
    if value.startswith("/uploads/") or URL_RE.match(value):
        return value
    raise ValueError("must be an http(s) URL or an /uploads/... path")


def _split_tags(value: Any) -> Any:
    # Forms send technologies as "React, Node.js"
    if isinstance(value, str):
        return [tag.strip() for tag in value.split(",") if tag.strip()]
    return value


def _lower(value: str) -> str:
    return value.lower()


def _strong_password(value: str) -> str:
    problems = []
    if len(value) < 8:
        problems.append("at least 8 characters")
    if not re.search(r"[0-9]", value):
        problems.append("a digit")
    if not re.search(r"[a-z]", value):
        problems.append("a lowercase letter")
    if not re.search(r"[A-Z]", value):
        problems.append("an uppercase letter")
    if not re.search(r"[^a-zA-Z0-9]", value):
        problems.append("a special character")
    if problems:
        raise ValueError("password must contain " + ", ".join(problems))
    return value


def _check_period(start: Optional[datetime], end: Optional[datetime]) -> None:
    if start and end and end < start:
        raise ValueError("endDate must not precede startDate")


UtcDatetime = Annotated[datetime, AfterValidator(_naive_utc)]
HttpUrl = Annotated[str, AfterValidator(_http_url)]
ImageUrl = Annotated[str, AfterValidator(_image_url)]
TagList = Annotated[List[str], BeforeValidator(_split_tags)]
Email = Annotated[EmailStr, AfterValidator(_lower)]
Password = Annotated[str, AfterValidator(_strong_password)]
Name = Annotated[str, Field(min_length=2, max_length=50)]


# ==========
# Base types
# ==========
class Payload(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        str_strip_whitespace=True,
        use_enum_values=True,
        validate_default=True,
    )

    @model_validator(mode="before")
    @classmethod
    def _drop_server_fields(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if k not in SERVER_FIELDS}
        return data

    def document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Patch(Payload):
    """Partial update: only the fields sent are touched, null removes an optional field."""

    non_nullable: ClassVar[FrozenSet[str]] = frozenset()

    @model_validator(mode="after")
    def _check_nulls(self):
        for name in self.model_fields_set & self.non_nullable:
            if getattr(self, name) is None:
                raise ValueError(f"{to_camel(name)} cannot be null")
        return self

    def changes(self) -> Tuple[Dict[str, Any], List[str]]:
        data = self.model_dump(by_alias=True, exclude_unset=True)
        to_set = {k: v for k, v in data.items() if v is not None}
        to_unset = [k for k, v in data.items() if v is None]
        return to_set, to_unset


class RequestBody(BaseModel):
    """Auth and form bodies: tolerant of extra keys the UI sends along."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True, use_enum_values=True
    )


# =======
# Content
# =======
class SkillCreate(Payload):
    name: str = Field(..., min_length=1, max_length=100)
    level: Optional[SkillLevel] = None
    category: SkillCategory


class SkillUpdate(Patch):
    non_nullable: ClassVar[FrozenSet[str]] = frozenset({"name", "category"})

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    level: Optional[SkillLevel] = None
    category: Optional[SkillCategory] = None


class ExperienceCreate(Payload):
    title: str = Field(..., min_length=1)
    company: str = Field(..., min_length=1)
    location: Optional[str] = None
    start_date: UtcDatetime
    end_date: Optional[UtcDatetime] = None  # absent = ongoing
    description: Optional[str] = None
    technologies: TagList = []

    @model_validator(mode="after")
    def _period(self):
        _check_period(self.start_date, self.end_date)
        return self


class ExperienceUpdate(Patch):
    non_nullable: ClassVar[FrozenSet[str]] = frozenset({"title", "company", "start_date", "technologies"})

    title: Optional[str] = Field(None, min_length=1)
    company: Optional[str] = Field(None, min_length=1)
    location: Optional[str] = None
    start_date: Optional[UtcDatetime] = None
    end_date: Optional[UtcDatetime] = None
    description: Optional[str] = None
    technologies: Optional[TagList] = None


class EducationCreate(Payload):
    degree: str = Field(..., min_length=1)
    institution: str = Field(..., min_length=1)
    field_of_study: Optional[str] = None
    start_date: UtcDatetime
    end_date: Optional[UtcDatetime] = None
    grade: Optional[str] = None
    description: Optional[str] = None

    @model_validator(mode="after")
    def _period(self):
        _check_period(self.start_date, self.end_date)
        return self


class EducationUpdate(Patch):
    non_nullable: ClassVar[FrozenSet[str]] = frozenset({"degree", "institution", "start_date"})

    degree: Optional[str] = Field(None, min_length=1)
    institution: Optional[str] = Field(None, min_length=1)
    field_of_study: Optional[str] = None
    start_date: Optional[UtcDatetime] = None
    end_date: Optional[UtcDatetime] = None
    grade: Optional[str] = None
    description: Optional[str] = None


class CertificationCreate(Payload):
    title: str = Field(..., min_length=1)
    issuer: str = Field(..., min_length=1)
    date: UtcDatetime
    credential_url: HttpUrl
    image_url: Optional[ImageUrl] = None
    credential_id: Optional[str] = None
    expiration_date: Optional[UtcDatetime] = None

    @model_validator(mode="after")
    def _expiry(self):
        if self.expiration_date and self.expiration_date < self.date:
            raise ValueError("expirationDate must not precede date")
        return self


class CertificationUpdate(Patch):
    non_nullable: ClassVar[FrozenSet[str]] = frozenset({"title", "issuer", "date", "credential_url"})

    title: Optional[str] = Field(None, min_length=1)
    issuer: Optional[str] = Field(None, min_length=1)
    date: Optional[UtcDatetime] = None
    credential_url: Optional[HttpUrl] = None
    image_url: Optional[ImageUrl] = None
    credential_id: Optional[str] = None
    expiration_date: Optional[UtcDatetime] = None


class ProjectCreate(Payload):
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1)
    image_url: ImageUrl
    technologies: Annotated[TagList, Field(min_length=1)]
    github_url: Optional[HttpUrl] = None
    demo_url: Optional[HttpUrl] = None
    featured: bool = False


class ProjectUpdate(Patch):
    non_nullable: ClassVar[FrozenSet[str]] = frozenset(
        {"title", "description", "image_url", "technologies", "featured"}
    )

    title: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, min_length=1)
    image_url: Optional[ImageUrl] = None
    technologies: Optional[Annotated[TagList, Field(min_length=1)]] = None
    github_url: Optional[HttpUrl] = None
    demo_url: Optional[HttpUrl] = None
    featured: Optional[bool] = None


# =====
# Users
# =====
class SocialLinks(Payload):
    github: Optional[HttpUrl] = None
    linkedin: Optional[HttpUrl] = None
    twitter: Optional[HttpUrl] = None


class UserCreate(Payload):
    first_name: Name
    last_name: Name
    email: Email
    password: Password
    role: Role = Role.USER
    status: UserStatus = UserStatus.ACTIVE
    title: Optional[str] = None
    about: Optional[str] = None
    phone_number: Optional[str] = None
    address: Optional[str] = None
    social_links: Optional[SocialLinks] = None


class UserUpdate(Patch):
    non_nullable: ClassVar[FrozenSet[str]] = frozenset({"first_name", "last_name", "email", "role", "status"})

    first_name: Optional[Name] = None
    last_name: Optional[Name] = None
    email: Optional[Email] = None
    role: Optional[Role] = None
    status: Optional[UserStatus] = None
    title: Optional[str] = None
    about: Optional[str] = None
    phone_number: Optional[str] = None
    address: Optional[str] = None
    social_links: Optional[SocialLinks] = None
    profile_image: Optional[ImageUrl] = None


class RoleChange(RequestBody):
    role: Role


# ====
# Auth
# ====
class RegisterRequest(RequestBody):
    first_name: Name
    last_name: Name
    email: Email
    password: Password
    confirm_password: str
    title: Optional[str] = None
    about: Optional[str] = None
    phone_number: Optional[str] = None
    address: Optional[str] = None
    github: Optional[HttpUrl] = None
    linkedin: Optional[HttpUrl] = None
    twitter: Optional[HttpUrl] = None

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("passwords do not match")
        return self


class LoginRequest(RequestBody):
    email: Email
    password: str = Field(..., min_length=1)


class EmailRequest(RequestBody):
    email: Email


class UpdateDetailsRequest(Patch):
    non_nullable: ClassVar[FrozenSet[str]] = frozenset({"first_name", "last_name", "email"})

    first_name: Optional[Name] = None
    last_name: Optional[Name] = None
    email: Optional[Email] = None
    title: Optional[str] = None
    about: Optional[str] = None
    phone_number: Optional[str] = None
    address: Optional[str] = None
    social_links: Optional[SocialLinks] = None


class UpdatePasswordRequest(RequestBody):
    current_password: str = Field(..., min_length=1)
    new_password: Password


class ResetPasswordRequest(RequestBody):
    password: Password
    confirm_password: str

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("passwords do not match")
        return self


class RefreshRequest(RequestBody):
    refresh_token: Optional[str] = None


class ContactRequest(RequestBody):
    name: str = Field(..., min_length=1)
    email: Email
    subject: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
