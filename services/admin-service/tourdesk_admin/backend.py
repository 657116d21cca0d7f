from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

import httpx

from .errors import NetworkError, NotFoundError, PermissionDenied, ValidationError

BACKEND_URL = os.getenv("BACKEND_URL", "http://localhost:5000")
BACKEND_TIMEOUT_S = float(os.getenv("BACKEND_TIMEOUT_S", "10"))

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Session:
    """Who is calling. Passed explicitly to every backend call."""

    token: str
    user_id: str | None
    role: str

    @property
    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


def _message(resp: httpx.Response) -> str | None:
    try:
        data = resp.json()
    except ValueError:
        return (resp.text or "").strip() or None
    if isinstance(data, dict):
        msg = data.get("message") or data.get("error") or data.get("detail")
        if isinstance(msg, str):
            return msg
    return None


def _field_errors(resp: httpx.Response) -> dict[str, str]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    errs = data.get("errors") if isinstance(data, dict) else None
    if isinstance(errs, dict):
        return {str(k): str(v) for k, v in errs.items()}
    return {}


def _items(data: Any, key: str) -> list[dict]:
    """Backend list endpoints answer either a bare list or {key: [...]}."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return list(data.get(key) or [])
    return []


class BackendClient:
    """
    Thin async client over the marketplace REST backend.

    Every call takes the caller's Session; the bearer token is forwarded as-is.
    HTTP failures are mapped onto the admin error taxonomy so the service
    layer never has to look at status codes.
    """

    def __init__(
        self,
        base_url: str = BACKEND_URL,
        *,
        timeout: float = BACKEND_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.aclose()
        return False

    async def _request(
        self,
        session: Session,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        json: Any = None,
    ) -> Any:
        headers = {**session.auth_headers, "X-User-Role": session.role}
        try:
            resp = await self._client.request(method, path, params=params, json=json, headers=headers)
        except httpx.HTTPError as e:
            logger.warning("Backend unreachable (%s %s): %s", method, path, e)
            raise NetworkError(f"{method} {path} failed: {e}") from e

        if resp.status_code == 404:
            raise NotFoundError(_message(resp) or f"Not found: {path}")
        if resp.status_code in (400, 409, 422):
            raise ValidationError(_message(resp) or "Rejected by backend", _field_errors(resp))
        if resp.status_code in (401, 403):
            raise PermissionDenied(_message(resp) or "Forbidden")
        if resp.status_code >= 400:
            logger.warning("Backend error (%s %s): HTTP %s", method, path, resp.status_code)
            raise NetworkError(f"{method} {path} -> HTTP {resp.status_code}")

        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise NetworkError(f"{method} {path} returned invalid JSON") from e

    # bookings / departures

    async def list_bookings(self, session: Session, **filters) -> list[dict]:
        data = await self._request(session, "GET", "/api/bookings", params=filters or None)
        return _items(data, "bookings")

    async def get_booking(self, session: Session, booking_id: str) -> dict:
        data = await self._request(session, "GET", f"/api/bookings/{booking_id}")
        booking = data.get("booking", data) if isinstance(data, dict) else None
        if not booking:
            raise NotFoundError(f"Booking {booking_id} not found")
        return booking

    async def list_departures(self, session: Session, **filters) -> list[dict]:
        data = await self._request(session, "GET", "/api/admin/group-departures", params=filters or None)
        return _items(data, "departures")

    async def execute_refund(self, session: Session, booking_id: str, amount: str) -> dict:
        return await self._request(
            session,
            "POST",
            f"/api/admin/bookings/{booking_id}/refund",
            json={"adminId": session.user_id, "amount": amount},
        )

    # settings

    async def get_settings(self, session: Session) -> dict:
        data = await self._request(session, "GET", "/api/admin/settings")
        return data if isinstance(data, dict) else {}

    async def save_settings(self, session: Session, doc: dict) -> dict:
        return await self._request(session, "POST", "/api/admin/settings", json=doc)

    # announcements

    async def list_announcements(self, session: Session) -> list[dict]:
        data = await self._request(session, "GET", "/api/admin/announcements")
        return _items(data, "announcements")

    async def active_announcements(self, session: Session, audience: str | None = None) -> list[dict]:
        params = {"audience": audience} if audience else None
        data = await self._request(session, "GET", "/api/announcements", params=params)
        return _items(data, "announcements")

    async def create_announcement(self, session: Session, doc: dict) -> dict:
        data = await self._request(session, "POST", "/api/admin/announcements", json=doc)
        return data.get("announcement", data)

    async def update_announcement(self, session: Session, announcement_id: str, patch: dict) -> dict:
        data = await self._request(session, "PUT", f"/api/admin/announcements/{announcement_id}", json=patch)
        return data.get("announcement", data)

    async def delete_announcement(self, session: Session, announcement_id: str) -> None:
        await self._request(session, "DELETE", f"/api/admin/announcements/{announcement_id}")

    # reviews

    async def list_reviews(
        self,
        session: Session,
        status: str | None = None,
        min_rating: int | None = None,
        max_rating: int | None = None,
    ) -> list[dict]:
        params: dict[str, Any] = {}
        if status:
            params["status"] = status
        if min_rating is not None:
            params["minRating"] = min_rating
        if max_rating is not None:
            params["maxRating"] = max_rating
        data = await self._request(session, "GET", "/api/reviews", params=params or None)
        return _items(data, "reviews")

    async def moderate_review(self, session: Session, review_id: str, status: str, note: str = "") -> dict:
        data = await self._request(
            session,
            "PATCH",
            f"/api/reviews/{review_id}/moderate",
            json={"status": status, "moderatorNote": note},
        )
        return data.get("review", data)

    async def set_review_visibility(self, session: Session, review_id: str, status: str) -> dict:
        data = await self._request(session, "PATCH", f"/api/reviews/{review_id}/visibility", json={"status": status})
        return data.get("review", data)

    # contacts

    async def list_contacts(self, session: Session) -> list[dict]:
        data = await self._request(session, "GET", "/api/admin/contacts")
        return _items(data, "contacts")

    async def mark_contact_handled(self, session: Session, contact_id: str) -> None:
        await self._request(session, "POST", f"/api/admin/contacts/{contact_id}/handled", json={})

    # messaging

    async def list_users(self, session: Session) -> list[dict]:
        data = await self._request(session, "GET", "/api/users")
        return _items(data, "users")

    async def send_message(self, session: Session, sender_id: str, recipient_id: str, content: str) -> dict:
        data = await self._request(
            session,
            "POST",
            "/api/messages/send",
            json={"senderId": sender_id, "recipientId": recipient_id, "content": content},
        )
        if isinstance(data, dict) and data.get("success") is False:
            raise ValidationError(data.get("message") or "Failed to send message")
        return data.get("message", data) if isinstance(data.get("message"), dict) else data

    async def conversation(self, session: Session, user_a: str, user_b: str) -> list[dict]:
        data = await self._request(
            session,
            "GET",
            "/api/messages/conversation",
            params={"userA": user_a, "userB": user_b},
        )
        return _items(data, "messages")

    # packages

    async def list_packages(self, session: Session) -> list[dict]:
        data = await self._request(session, "GET", "/api/admin/packages")
        return _items(data, "packages")

    async def update_package(self, session: Session, package_id: str, patch: dict) -> dict:
        data = await self._request(session, "PUT", f"/api/tour-packages/{package_id}", json=patch)
        return data.get("package", data)


_BACKEND: BackendClient | None = None


def get_backend() -> BackendClient:
    global _BACKEND
    if _BACKEND is None:
        _BACKEND = BackendClient()
    return _BACKEND


async def close_backend() -> None:
    global _BACKEND
    if _BACKEND is not None:
        await _BACKEND.aclose()
        _BACKEND = None
