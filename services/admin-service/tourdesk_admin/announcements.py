from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .backend import BackendClient
from .errors import NotFoundError
from .refunds import parse_dt, ref_id
from .security import Session

AnnouncementType = Literal["INFO", "WARNING", "SUCCESS", "ERROR", "MAINTENANCE"]
Priority = Literal["LOW", "MEDIUM", "HIGH", "URGENT"]
Audience = Literal["ALL", "CUSTOMERS", "OPERATORS", "ADMINS"]

_ROLE_AUDIENCE = {"CUSTOMER": "CUSTOMERS", "TOUR_OPERATOR": "OPERATORS", "ADMIN": "ADMINS"}


def _check_audience(value: list[str] | None) -> list[str] | None:
    if value is None:
        return None
    seen: list[str] = []
    for a in value:
        if a not in seen:
            seen.append(a)
    if not seen:
        return ["ALL"]
    if "ALL" in seen and len(seen) > 1:
        raise ValueError("ALL cannot be combined with other audiences")
    return seen


def _blank_to_none(v):
    if isinstance(v, str) and not v.strip():
        return None
    return v


class AnnouncementIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(min_length=1)
    message: str = Field(min_length=1)
    type: AnnouncementType = "INFO"
    priority: Priority = "MEDIUM"
    target_audience: list[Audience] = Field(default_factory=lambda: ["ALL"], alias="targetAudience")
    start_date: date = Field(default_factory=date.today, alias="startDate")
    end_date: date | None = Field(default=None, alias="endDate")
    is_active: bool = Field(default=True, alias="isActive")

    @field_validator("title", "message")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("target_audience")
    @classmethod
    def _audience(cls, v: list[str]) -> list[str]:
        return _check_audience(v)

    @field_validator("end_date", mode="before")
    @classmethod
    def _end_blank(cls, v):
        return _blank_to_none(v)

    @model_validator(mode="after")
    def _window(self) -> "AnnouncementIn":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("endDate must not be before startDate")
        return self

    def to_backend(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class AnnouncementPatch(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str | None = Field(default=None, min_length=1)
    message: str | None = Field(default=None, min_length=1)
    type: AnnouncementType | None = None
    priority: Priority | None = None
    target_audience: list[Audience] | None = Field(default=None, alias="targetAudience")
    start_date: date | None = Field(default=None, alias="startDate")
    end_date: date | None = Field(default=None, alias="endDate")
    is_active: bool | None = Field(default=None, alias="isActive")

    @field_validator("target_audience")
    @classmethod
    def _audience(cls, v: list[str] | None) -> list[str] | None:
        return _check_audience(v)

    @field_validator("end_date", mode="before")
    @classmethod
    def _end_blank(cls, v):
        return _blank_to_none(v)

    @model_validator(mode="after")
    def _window(self) -> "AnnouncementPatch":
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("endDate must not be before startDate")
        return self

    def to_backend(self) -> dict:
        return self.model_dump(by_alias=True, mode="json", exclude_unset=True)


def toggle_audience(current: list[str], audience: str) -> list[str]:
    """Checkbox semantics of the audience picker: ALL clears the rest, anything else clears ALL."""
    if audience == "ALL":
        return ["ALL"]
    rest = [a for a in current if a != "ALL"]
    if audience in rest:
        return [a for a in rest if a != audience]
    return rest + [audience]


def audience_for_role(role: str | None) -> str | None:
    return _ROLE_AUDIENCE.get((role or "").upper())


def is_live(announcement: dict, now: datetime | None = None, audience: str | None = None) -> bool:
    """Whether a banner should show it right now (to `audience`, if given)."""
    now = now or datetime.now(tz=timezone.utc)
    if not announcement.get("isActive", True):
        return False
    start = parse_dt(announcement.get("startDate"))
    if start is not None and start > now:
        return False
    end = parse_dt(announcement.get("endDate"))
    if end is not None and len(str(announcement.get("endDate"))) == 10:
        # a date-only end runs through that whole day
        end += timedelta(days=1)
    if end is not None and end <= now:
        return False
    if audience:
        targets = announcement.get("targetAudience") or ["ALL"]
        return "ALL" in targets or audience in targets
    return True


class AnnouncementService:
    def __init__(self, backend: BackendClient):
        self.backend = backend

    async def list(self, session: Session, live_only: bool = False, now: datetime | None = None) -> list[dict]:
        items = await self.backend.list_announcements(session)
        if live_only:
            items = [a for a in items if is_live(a, now=now)]
        return items

    async def for_viewer(self, session: Session, now: datetime | None = None) -> list[dict]:
        """Banner feed: what the caller's role should see right now."""
        audience = audience_for_role(session.role)
        items = await self.backend.active_announcements(session, audience)
        # roles without an audience of their own only see ALL
        return [a for a in items if is_live(a, now=now, audience=audience or "ALL")]

    async def create(self, session: Session, payload: AnnouncementIn) -> dict:
        return await self.backend.create_announcement(session, payload.to_backend())

    async def update(self, session: Session, announcement_id: str, patch: AnnouncementPatch) -> dict:
        return await self.backend.update_announcement(session, announcement_id, patch.to_backend())

    async def delete(self, session: Session, announcement_id: str) -> None:
        await self.backend.delete_announcement(session, announcement_id)

    async def toggle_active(self, session: Session, announcement_id: str) -> dict:
        for a in await self.backend.list_announcements(session):
            if ref_id(a) == announcement_id:
                return await self.backend.update_announcement(
                    session, announcement_id, {"isActive": not bool(a.get("isActive", True))}
                )
        raise NotFoundError(f"Announcement {announcement_id} not found")
