from __future__ import annotations

from datetime import datetime, timezone

from .backend import BackendClient
from .refunds import parse_dt
from .security import Session

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class ContactService:
    def __init__(self, backend: BackendClient):
        self.backend = backend

    async def list(self, session: Session, unhandled_only: bool = False) -> list[dict]:
        contacts = await self.backend.list_contacts(session)
        if unhandled_only:
            contacts = [c for c in contacts if not c.get("handled")]
        return sorted(contacts, key=lambda c: parse_dt(c.get("createdAt")) or _EPOCH, reverse=True)

    async def mark_handled(self, session: Session, contact_id: str) -> None:
        await self.backend.mark_contact_handled(session, contact_id)
