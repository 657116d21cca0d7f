from __future__ import annotations

import dataclasses
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Literal

from fastapi import Body, Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field

from . import domain, events
from .announcements import AnnouncementIn, AnnouncementPatch, AnnouncementService
from .backend import BackendClient, close_backend, get_backend
from .chat import find_admin
from .contacts import ContactService
from .errors import NetworkError, NotFoundError, PermissionDenied, ValidationError
from .packages import PackageService, package_counts
from .pricing import PricingService
from .refunds import RefundService, filter_queue, queue_totals
from .reviews import ReviewService, status_counts
from .security import Session, get_session, require_permission
from .system_settings import SettingsService, dump_settings

app = FastAPI(
    title="Tourdesk Admin Service",
    version="0.1.0",
    description="Admin console API: refunds queue, pricing & cancellation rules, permissions, announcements, reviews, contacts and chat.",
)

@app.on_event("shutdown")
async def _shutdown():
    await close_backend()
    await events.close()


Backend = Annotated[BackendClient, Depends(get_backend)]

_HANDLED = (ValueError, NotFoundError, PermissionDenied, NetworkError)


def _http(e: Exception) -> HTTPException:
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail={"message": e.message, "errors": e.errors})
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail={"message": str(e), "errors": {}})
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, PermissionDenied):
        return HTTPException(status_code=403, detail=str(e) or "Forbidden")
    return HTTPException(status_code=502, detail=f"Backend unavailable: {e}")


@app.get("/health")
def health():
    return {"status": "ok"}


#
# Settings & permissions
#


class PermissionToggleIn(BaseModel):
    role: str = Field(min_length=1)
    permission: str = Field(min_length=1)


@app.get("/settings")
async def get_settings(
    backend: Backend,
    session: Annotated[Session, Depends(require_permission("canManageSettings"))],
):
    try:
        return dump_settings(await SettingsService(backend).load(session))
    except _HANDLED as e:
        raise _http(e)


@app.put("/settings")
async def put_settings(
    backend: Backend,
    session: Annotated[Session, Depends(require_permission("canManageSettings"))],
    payload: Annotated[dict[str, Any], Body()],
):
    try:
        saved = await SettingsService(backend).save(session, payload)
    except _HANDLED as e:
        raise _http(e)
    doc = dump_settings(saved)
    await events.publish("settings.updated", doc, actor_id=session.user_id)
    return doc


@app.post("/settings/permissions/toggle")
async def toggle_permission(
    payload: PermissionToggleIn,
    backend: Backend,
    session: Annotated[Session, Depends(require_permission("canManageSettings"))],
):
    try:
        settings, changed = await SettingsService(backend).toggle_permission(session, payload.role, payload.permission)
    except _HANDLED as e:
        raise _http(e)
    if changed:
        await events.publish(
            "settings.updated",
            {"permissions": settings.permissions.to_document()},
            actor_id=session.user_id,
        )
    return {"changed": changed, "permissions": settings.permissions.to_document()}


@app.get("/permissions/check")
async def check_permission(
    role: str,
    permission: str,
    backend: Backend,
    session: Annotated[Session, Depends(get_session)],
):
    try:
        settings = await SettingsService(backend).load(session)
    except _HANDLED as e:
        raise _http(e)
    return {"role": role, "permission": permission, "permitted": settings.permissions.is_permitted(role, permission)}


#
# Pricing
#


class PriceQuoteIn(BaseModel):
    base_price: Decimal = Field(ge=0)
    days_before_departure: int = 0
    party_size: int = Field(default=1, ge=1)
    season: domain.Season = "NORMAL"


class PriceLineOut(BaseModel):
    code: str
    description: str
    amount: Decimal


class PriceQuoteOut(BaseModel):
    base_price: Decimal
    final_price: Decimal
    lines: list[PriceLineOut]
    operator_commission: Decimal
    admin_commission: Decimal
    operator_payout: Decimal


@app.post("/pricing/quote", response_model=PriceQuoteOut)
async def pricing_quote(
    payload: PriceQuoteIn,
    backend: Backend,
    session: Annotated[Session, Depends(require_permission("canManagePackages"))],
):
    try:
        q = await PricingService(SettingsService(backend)).quote(
            session,
            base_price=payload.base_price,
            days_before_departure=payload.days_before_departure,
            party_size=payload.party_size,
            season=payload.season,
        )
    except _HANDLED as e:
        raise _http(e)
    return PriceQuoteOut(
        base_price=q.base_price,
        final_price=q.final_price,
        lines=[PriceLineOut(code=l.code, description=l.description, amount=l.amount) for l in q.lines],
        operator_commission=q.commission.operator_commission,
        admin_commission=q.commission.admin_commission,
        operator_payout=q.commission.operator_payout,
    )


#
# Refunds
#


class RefundRowOut(BaseModel):
    booking_id: str
    display_id: str
    customer_name: str | None
    customer_email: str | None
    package_title: str | None
    total_paid: Decimal
    total_amount: Decimal
    refund_amount: Decimal
    refunded_so_far: Decimal
    refund_status: str
    initiator: str
    is_departure_cancelled: bool
    reason: str
    requested_date: datetime | None
    start_date: datetime | None


class RefundQueueOut(BaseModel):
    items: list[RefundRowOut]
    pending_amount: Decimal
    refunded_amount: Decimal


class RefundQuoteOut(BaseModel):
    booking_id: str
    initiator: str
    days_before_start: int
    percentage: Decimal
    total_paid: Decimal
    gross: Decimal
    fee: Decimal
    net: Decimal
    tier_description: str


class ProcessRefundIn(BaseModel):
    amount: Decimal | None = Field(default=None, ge=0)
    emergency: bool = False


@app.get("/refunds", response_model=RefundQueueOut)
async def refund_queue(
    backend: Backend,
    session: Annotated[Session, Depends(require_permission("canProcessRefunds"))],
    search: str = "",
    status: Literal["all", "pending", "refunded"] = "all",
    initiator: Literal["all", "customer", "admin"] = "all",
    reason: Literal["all", "departure_cancelled", "customer_request"] = "all",
):
    try:
        rows = await RefundService(backend, SettingsService(backend)).queue(session)
    except _HANDLED as e:
        raise _http(e)
    rows = filter_queue(rows, search=search, status=status, initiator=initiator, reason=reason)
    pending, refunded = queue_totals(rows)
    return RefundQueueOut(
        items=[RefundRowOut(**dataclasses.asdict(r)) for r in rows],
        pending_amount=pending,
        refunded_amount=refunded,
    )


@app.get("/refunds/{booking_id}/quote", response_model=RefundQuoteOut)
async def refund_quote(
    booking_id: str,
    backend: Backend,
    session: Annotated[Session, Depends(require_permission("canProcessRefunds"))],
    emergency: bool = False,
):
    try:
        q = await RefundService(backend, SettingsService(backend)).quote(session, booking_id, emergency=emergency)
    except _HANDLED as e:
        raise _http(e)
    r = q.resolution
    return RefundQuoteOut(
        booking_id=q.booking_id,
        initiator=q.initiator,
        days_before_start=r.days_before_start,
        percentage=r.percentage,
        total_paid=r.total_paid,
        gross=r.gross,
        fee=r.fee,
        net=r.net,
        tier_description=r.tier_description,
    )


@app.post("/refunds/{booking_id}/process")
async def process_refund(
    booking_id: str,
    payload: ProcessRefundIn,
    backend: Backend,
    session: Annotated[Session, Depends(require_permission("canProcessRefunds"))],
):
    try:
        amount, result = await RefundService(backend, SettingsService(backend)).process(
            session, booking_id, amount=payload.amount, emergency=payload.emergency
        )
    except _HANDLED as e:
        raise _http(e)
    await events.publish("refund.processed", {"booking_id": booking_id, "amount": str(amount)}, actor_id=session.user_id)
    return {"booking_id": booking_id, "amount": str(amount), "result": result}


#
# Announcements
#


@app.get("/announcements")
async def list_announcements(
    backend: Backend,
    session: Annotated[Session, Depends(require_permission("canManageSettings"))],
    live_only: bool = False,
):
    try:
        return {"items": await AnnouncementService(backend).list(session, live_only=live_only)}
    except _HANDLED as e:
        raise _http(e)


@app.get("/announcements/live")
async def live_announcements(backend: Backend, session: Annotated[Session, Depends(get_session)]):
    try:
        return {"items": await AnnouncementService(backend).for_viewer(session)}
    except _HANDLED as e:
        raise _http(e)


@app.post("/announcements")
async def create_announcement(
    payload: AnnouncementIn,
    backend: Backend,
    session: Annotated[Session, Depends(require_permission("canManageSettings"))],
):
    try:
        created = await AnnouncementService(backend).create(session, payload)
    except _HANDLED as e:
        raise _http(e)
    await events.publish("announcement.created", {"title": payload.title, "type": payload.type}, actor_id=session.user_id)
    return created


@app.put("/announcements/{announcement_id}")
async def update_announcement(
    announcement_id: str,
    payload: AnnouncementPatch,
    backend: Backend,
    session: Annotated[Session, Depends(require_permission("canManageSettings"))],
):
    try:
        updated = await AnnouncementService(backend).update(session, announcement_id, payload)
    except _HANDLED as e:
        raise _http(e)
    await events.publish("announcement.updated", {"id": announcement_id, **payload.to_backend()}, actor_id=session.user_id)
    return updated


@app.delete("/announcements/{announcement_id}")
async def delete_announcement(
    announcement_id: str,
    backend: Backend,
    session: Annotated[Session, Depends(require_permission("canManageSettings"))],
):
    try:
        await AnnouncementService(backend).delete(session, announcement_id)
    except _HANDLED as e:
        raise _http(e)
    await events.publish("announcement.deleted", {"id": announcement_id}, actor_id=session.user_id)
    return {"deleted": announcement_id}


@app.post("/announcements/{announcement_id}/toggle")
async def toggle_announcement(
    announcement_id: str,
    backend: Backend,
    session: Annotated[Session, Depends(require_permission("canManageSettings"))],
):
    try:
        updated = await AnnouncementService(backend).toggle_active(session, announcement_id)
    except _HANDLED as e:
        raise _http(e)
    await events.publish(
        "announcement.updated",
        {"id": announcement_id, "isActive": updated.get("isActive")},
        actor_id=session.user_id,
    )
    return updated


#
# Reviews
#


class ModerateIn(BaseModel):
    status: Literal["APPROVED", "REJECTED"]
    note: str = ""


class VisibilityIn(BaseModel):
    status: Literal["VISIBLE", "HIDDEN"]


@app.get("/reviews")
async def list_reviews(
    backend: Backend,
    session: Annotated[Session, Depends(require_permission("canModerateReviews"))],
    status: str = "PENDING",
    rating: Literal["all", "low", "high"] = "all",
    search: str = "",
):
    try:
        items = await ReviewService(backend).list(session, status=status, rating=rating, search=search)
    except _HANDLED as e:
        raise _http(e)
    return {"items": items, "counts": status_counts(items)}


@app.patch("/reviews/{review_id}/moderate")
async def moderate_review(
    review_id: str,
    payload: ModerateIn,
    backend: Backend,
    session: Annotated[Session, Depends(require_permission("canModerateReviews"))],
):
    try:
        review = await ReviewService(backend).moderate(session, review_id, payload.status, payload.note)
    except _HANDLED as e:
        raise _http(e)
    await events.publish("review.moderated", {"id": review_id, "status": payload.status}, actor_id=session.user_id)
    return review


@app.patch("/reviews/{review_id}/visibility")
async def review_visibility(
    review_id: str,
    payload: VisibilityIn,
    backend: Backend,
    session: Annotated[Session, Depends(require_permission("canModerateReviews"))],
):
    try:
        return await ReviewService(backend).set_visibility(session, review_id, payload.status)
    except _HANDLED as e:
        raise _http(e)


#
# Contacts
#


@app.get("/contacts")
async def list_contacts(
    backend: Backend,
    session: Annotated[Session, Depends(require_permission("canManageUsers"))],
    unhandled_only: bool = False,
):
    try:
        return {"items": await ContactService(backend).list(session, unhandled_only=unhandled_only)}
    except _HANDLED as e:
        raise _http(e)


@app.post("/contacts/{contact_id}/handled")
async def contact_handled(
    contact_id: str,
    backend: Backend,
    session: Annotated[Session, Depends(require_permission("canManageUsers"))],
):
    try:
        await ContactService(backend).mark_handled(session, contact_id)
    except _HANDLED as e:
        raise _http(e)
    return {"handled": contact_id}


#
# Packages
#


@app.get("/packages")
async def list_packages(
    backend: Backend,
    session: Annotated[Session, Depends(require_permission("canManagePackages"))],
    search: str = "",
    type: str = "all",
    category: str = "all",
    status: Literal["all", "active", "inactive"] = "all",
):
    try:
        items = await PackageService(backend).list(session, search=search, type=type, category=category, status=status)
    except _HANDLED as e:
        raise _http(e)
    return {"items": items, "counts": package_counts(items)}


@app.post("/packages/{package_id}/toggle")
async def toggle_package(
    package_id: str,
    backend: Backend,
    session: Annotated[Session, Depends(require_permission("canManagePackages"))],
):
    try:
        return await PackageService(backend).toggle_active(session, package_id)
    except _HANDLED as e:
        raise _http(e)


#
# Chat
#


class MessageIn(BaseModel):
    content: str = Field(min_length=1)


@app.get("/chat/admin")
async def chat_admin(backend: Backend, session: Annotated[Session, Depends(get_session)]):
    try:
        admin = find_admin(await backend.list_users(session))
    except _HANDLED as e:
        raise _http(e)
    if admin is None:
        raise HTTPException(status_code=404, detail="No admin available")
    return admin


@app.get("/chat/{user_id}/messages")
async def chat_messages(user_id: str, backend: Backend, session: Annotated[Session, Depends(get_session)]):
    if not session.user_id:
        raise HTTPException(status_code=401, detail="Token has no subject")
    try:
        return {"items": await backend.conversation(session, session.user_id, user_id)}
    except _HANDLED as e:
        raise _http(e)


@app.post("/chat/{user_id}/messages")
async def chat_send(
    user_id: str,
    payload: MessageIn,
    backend: Backend,
    session: Annotated[Session, Depends(get_session)],
):
    if not session.user_id:
        raise HTTPException(status_code=401, detail="Token has no subject")
    if not payload.content.strip():
        raise HTTPException(status_code=400, detail="Message is empty")
    try:
        sent = await backend.send_message(session, session.user_id, user_id, payload.content)
        messages = await backend.conversation(session, session.user_id, user_id)
    except _HANDLED as e:
        raise _http(e)
    return {"sent": sent, "items": messages}
