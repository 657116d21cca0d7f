import sys
from pathlib import Path

import pytest

# Ensure `services/admin-service` is on sys.path so `import tourdesk_admin`
# works when running tests from the repo root without installing.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from tourdesk_admin import events  # noqa: E402


@pytest.fixture(autouse=True)
def published(monkeypatch):
    """Capture events instead of talking to RabbitMQ."""
    sent: list[tuple[str, dict]] = []

    async def _publish(routing_key, payload, actor_id=None):
        sent.append((routing_key, payload))

    monkeypatch.setattr(events, "publish", _publish)
    return sent


@pytest.fixture
def anyio_backend():
    """The service and its tests are asyncio-based (aio-pika, asyncio tasks)."""
    return "asyncio"
