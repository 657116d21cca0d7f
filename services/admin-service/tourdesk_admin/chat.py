from __future__ import annotations

import asyncio
import logging
import os
from typing import Callable, Iterable

from .backend import BackendClient
from .errors import NetworkError, NotFoundError, PermissionDenied, ValidationError
from .security import Session

CHAT_POLL_INTERVAL_S = float(os.getenv("CHAT_POLL_INTERVAL_S", "3"))

logger = logging.getLogger(__name__)


def find_admin(users: Iterable[dict]) -> dict | None:
    """First user that carries the ADMIN role, whichever shape `role`/`roles` has."""
    for u in users:
        if not u:
            continue
        role = u.get("role")
        if isinstance(role, str) and role.upper() == "ADMIN":
            return u
        roles = u.get("roles")
        if isinstance(roles, list) and "ADMIN" in [str(r or "").upper() for r in roles]:
            return u
        if isinstance(roles, str) and roles.upper() == "ADMIN":
            return u
    return None


class ConversationPoller:
    """
    Keeps `messages` in sync with one conversation by polling on a fixed interval.

    A tick does not wait for the previous fetch, so fetches can overlap when
    the backend is slow. Every fetch gets a sequence number and a response is
    only applied if nothing newer has been applied already; late responses are
    dropped rather than cancelled.
    """

    def __init__(
        self,
        backend: BackendClient,
        session: Session,
        other_user_id: str,
        interval: float = CHAT_POLL_INTERVAL_S,
        on_update: Callable[[list[dict]], None] | None = None,
    ):
        if not session.user_id:
            raise ValueError("session has no user id")
        if not other_user_id:
            raise ValueError("other_user_id is required")
        self.backend = backend
        self.session = session
        self.other_user_id = other_user_id
        self.interval = interval
        self.on_update = on_update

        self.messages: list[dict] = []
        self._issued = 0
        self._applied = 0
        self._stopped = False
        self._task: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def refresh(self) -> bool:
        """Fetch once. Returns True when the response was applied."""
        self._issued += 1
        seq = self._issued
        try:
            messages = await self.backend.conversation(self.session, self.session.user_id, self.other_user_id)
        except (NetworkError, NotFoundError, PermissionDenied, ValidationError) as e:
            # keep what is on screen; the next tick tries again
            logger.warning("Conversation poll failed (%s <-> %s): %s", self.session.user_id, self.other_user_id, e)
            return False

        if self._stopped or seq <= self._applied:
            return False
        self._applied = seq
        self.messages = messages
        if self.on_update is not None:
            self.on_update(messages)
        return True

    async def _run(self) -> None:
        while True:
            t = asyncio.create_task(self.refresh())
            self._inflight.add(t)
            t.add_done_callback(self._reap)
            await asyncio.sleep(self.interval)

    def _reap(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Conversation refresh crashed (%s <-> %s)",
                self.session.user_id,
                self.other_user_id,
                exc_info=exc,
            )

    def start(self) -> None:
        if self.running:
            return
        self._stopped = False
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._stopped = True
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        # in-flight fetches finish on their own; their results are discarded
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def send(self, content: str) -> dict | None:
        if not (content or "").strip():
            return None
        sent = await self.backend.send_message(self.session, self.session.user_id, self.other_user_id, content)
        await self.refresh()
        return sent

    async def __aenter__(self) -> "ConversationPoller":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.stop()
        return False
