"""
Review moderation.

Reviews carry two status vocabularies depending on which screen wrote them:
moderation (PENDING/APPROVED/REJECTED) and visibility (VISIBLE/HIDDEN). They
are kept apart here and forwarded to the backend untouched.
"""

from __future__ import annotations

from typing import Iterable, Literal

from .backend import BackendClient
from .errors import ValidationError
from .security import Session

ModerationStatus = Literal["PENDING", "APPROVED", "REJECTED"]
VisibilityStatus = Literal["VISIBLE", "HIDDEN"]
RatingFilter = Literal["all", "low", "high"]

MODERATION_STATUSES: tuple[str, ...] = ("PENDING", "APPROVED", "REJECTED")
VISIBILITY_STATUSES: tuple[str, ...] = ("VISIBLE", "HIDDEN")


def rating_bounds(rating: str) -> tuple[int | None, int | None]:
    if rating == "low":
        return None, 2
    if rating == "high":
        return 4, None
    return None, None


def _name(x) -> str:
    if isinstance(x, dict):
        return str(x.get("fullName") or x.get("title") or "")
    return ""


def filter_reviews(reviews: Iterable[dict], search: str = "") -> list[dict]:
    term = (search or "").strip().lower()
    if not term:
        return list(reviews)
    return [
        r
        for r in reviews
        if term in _name(r.get("customerId")).lower()
        or term in _name(r.get("packageId")).lower()
        or term in str(r.get("comment") or "").lower()
    ]


def status_counts(reviews: Iterable[dict]) -> dict[str, int]:
    counts = {s: 0 for s in MODERATION_STATUSES}
    for r in reviews:
        s = str(r.get("status") or "").upper()
        if s in counts:
            counts[s] += 1
    return counts


class ReviewService:
    def __init__(self, backend: BackendClient):
        self.backend = backend

    async def list(
        self,
        session: Session,
        status: str = "PENDING",
        rating: str = "all",
        search: str = "",
    ) -> list[dict]:
        min_rating, max_rating = rating_bounds(rating)
        reviews = await self.backend.list_reviews(
            session,
            status=None if status == "all" else status,
            min_rating=min_rating,
            max_rating=max_rating,
        )
        return filter_reviews(reviews, search)

    async def flagged(self, session: Session) -> list[dict]:
        return [r for r in await self.backend.list_reviews(session) if r.get("isFlagged")]

    async def moderate(self, session: Session, review_id: str, status: str, note: str = "") -> dict:
        status = (status or "").upper()
        if status not in ("APPROVED", "REJECTED"):
            raise ValidationError("Invalid moderation status", {"status": "Must be APPROVED or REJECTED"})
        return await self.backend.moderate_review(session, review_id, status, note)

    async def set_visibility(self, session: Session, review_id: str, status: str) -> dict:
        status = (status or "").upper()
        if status not in VISIBILITY_STATUSES:
            raise ValidationError("Invalid visibility status", {"status": "Must be VISIBLE or HIDDEN"})
        return await self.backend.set_review_visibility(session, review_id, status)
