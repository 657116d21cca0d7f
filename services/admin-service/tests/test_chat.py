import asyncio

import pytest

from fakes import ADMIN, FakeBackend
from tourdesk_admin.chat import ConversationPoller, find_admin
from tourdesk_admin.errors import NetworkError
from tourdesk_admin.security import Session

CUSTOMER = Session(token="t-cust", user_id="cust-1", role="CUSTOMER")


class GatedBackend:
    """conversation() calls block until their gate is released, in any order."""

    def __init__(self):
        self.gates: list[asyncio.Event] = []
        self.responses: list[list[dict]] = []

    def gate(self, i: int) -> asyncio.Event:
        while len(self.gates) <= i:
            self.gates.append(asyncio.Event())
        return self.gates[i]

    async def conversation(self, session, user_a, user_b):
        i = len(self.responses)
        self.responses.append([{"_id": f"m{i}", "content": f"response {i}"}])
        await self.gate(i).wait()
        return self.responses[i]


@pytest.mark.parametrize(
    "users, expected",
    [
        ([{"_id": "u1", "role": "CUSTOMER"}, {"_id": "u2", "role": "admin"}], "u2"),
        ([{"_id": "u1", "roles": ["customer", "ADMIN"]}], "u1"),
        ([{"_id": "u1", "roles": "ADMIN"}], "u1"),
        ([None, {"_id": "u1", "role": "TOUR_OPERATOR"}], None),
    ],
)
def test_find_admin_accepts_role_shapes(users, expected):
    found = find_admin(users)
    assert (found or {}).get("_id") == expected


def test_poller_needs_both_user_ids():
    with pytest.raises(ValueError):
        ConversationPoller(FakeBackend(), Session(token="t", user_id="", role="CUSTOMER"), "admin-1")
    with pytest.raises(ValueError):
        ConversationPoller(FakeBackend(), CUSTOMER, "")


@pytest.mark.anyio
async def test_stale_response_is_dropped():
    backend = GatedBackend()
    poller = ConversationPoller(backend, CUSTOMER, "admin-1")

    first = asyncio.create_task(poller.refresh())
    second = asyncio.create_task(poller.refresh())
    await asyncio.sleep(0)

    backend.gate(1).set()
    assert await second is True
    backend.gate(0).set()
    assert await first is False

    assert poller.messages == [{"_id": "m1", "content": "response 1"}]


@pytest.mark.anyio
async def test_poll_failure_keeps_messages():
    backend = FakeBackend()
    poller = ConversationPoller(backend, CUSTOMER, "admin-1")
    await poller.send("hello")
    assert len(poller.messages) == 1

    async def broken(*args):
        raise NetworkError("backend down")

    backend.conversation = broken
    assert await poller.refresh() is False
    assert poller.messages[0]["content"] == "hello"


@pytest.mark.anyio
async def test_send_ignores_blank_and_refreshes():
    backend = FakeBackend()
    updates = []
    poller = ConversationPoller(backend, CUSTOMER, "admin-1", on_update=updates.append)

    assert await poller.send("   ") is None
    assert backend.messages == []

    sent = await poller.send("Where is my refund?")
    assert sent["recipientId"] == "admin-1"
    assert [m["content"] for m in poller.messages] == ["Where is my refund?"]
    assert len(updates) == 1


@pytest.mark.anyio
async def test_start_polls_until_stopped():
    backend = FakeBackend()
    await backend.send_message(ADMIN, "admin-1", "cust-1", "Hi John")
    updates = []

    async with ConversationPoller(backend, CUSTOMER, "admin-1", interval=0.01, on_update=updates.append) as poller:
        assert poller.running
        await asyncio.sleep(0.05)

    assert not poller.running
    assert len(updates) >= 2
    assert poller.messages[0]["content"] == "Hi John"


@pytest.mark.anyio
async def test_stop_discards_in_flight_fetch():
    backend = GatedBackend()
    poller = ConversationPoller(backend, CUSTOMER, "admin-1", interval=10)
    poller.start()
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    stopping = asyncio.create_task(poller.stop())
    await asyncio.sleep(0)
    backend.gate(0).set()
    await stopping

    assert poller.messages == []
    assert not poller.running


@pytest.mark.anyio
async def test_crash_in_background_refresh_is_logged(caplog):
    backend = FakeBackend()
    await backend.send_message(ADMIN, "admin-1", "cust-1", "Hi John")

    def explode(messages):
        raise RuntimeError("render failed")

    poller = ConversationPoller(backend, CUSTOMER, "admin-1", interval=10, on_update=explode)
    poller.start()
    for _ in range(5):
        await asyncio.sleep(0)
    await poller.stop()

    assert "Conversation refresh crashed" in caplog.text
    assert "render failed" in caplog.text
