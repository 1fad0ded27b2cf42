"""Pytest configuration and shared fixtures.

The Origin client is exercised against in-memory transports: ``FakeChannel``
stands in for the WebSocket control channel and ``FakeFetcher`` for the HTTP
image server.
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pytest

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from origin_bridge.clients.origin_client import EventType, OriginClient  # noqa: E402
from origin_bridge.clients.origin_protocol import ChannelError  # noqa: E402
from origin_bridge.core.config import Settings  # noqa: E402
from origin_bridge.services.image_archive import ImageArchive  # noqa: E402
from origin_bridge.services.session_log import SessionLog  # noqa: E402

TELESCOPE_HOST = "192.168.1.50"


class FakeChannel:
    """In-memory control channel.

    Inbound frames are queued with ``deliver``, which returns once the client
    has finished handling them.
    """

    def __init__(self):
        self.on_pong = None
        self.connected = False
        self.opened_urls: List[str] = []
        self.raw_sent: List[str] = []
        self.sent: List[Dict[str, Any]] = []
        self.pings = 0
        self.fail_open = False
        self.hang_open = False
        self.send_error: Optional[Exception] = None
        self.inbox: Optional[asyncio.Queue] = None

    async def open(self, url: str) -> None:
        if self.hang_open:
            await asyncio.Event().wait()
        if self.fail_open:
            raise ChannelError(f"Failed to open {url}: connection refused")
        self.opened_urls.append(url)
        self.inbox = asyncio.Queue()
        self.connected = True

    async def send_text(self, text: str) -> None:
        if not self.connected:
            raise ChannelError("Control channel is not open")
        if self.send_error is not None:
            raise self.send_error
        self.raw_sent.append(text)
        self.sent.append(json.loads(text))

    async def ping(self) -> None:
        self.pings += 1

    async def messages(self):
        while True:
            item = await self.inbox.get()
            try:
                if item is None:
                    return
                yield item
            finally:
                self.inbox.task_done()

    async def deliver(self, payload: Union[Dict[str, Any], str]) -> None:
        text = payload if isinstance(payload, str) else json.dumps(payload)
        await self.inbox.put(text)
        await self.inbox.join()

    def drop(self) -> None:
        """Simulate the telescope closing the connection."""
        self.connected = False
        self.inbox.put_nowait(None)

    async def close(self) -> None:
        if self.connected and self.inbox is not None:
            self.inbox.put_nowait(None)
        self.connected = False

    def commands(self) -> List[str]:
        return [message["Command"] for message in self.sent]


class FakeFetcher:
    """In-memory image server keyed by remote path."""

    def __init__(self):
        self.responses: Dict[str, Union[bytes, Exception]] = {}
        self.default = b"\xff\xd8 fake image"
        self.calls: List[tuple] = []
        self.gate: Optional[asyncio.Event] = None
        self.closed = False

    async def fetch(self, host: str, remote_path: str) -> bytes:
        self.calls.append((host, remote_path))
        if self.gate is not None:
            await self.gate.wait()
        response = self.responses.get(remote_path, self.default)
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self) -> None:
        self.closed = True


class EventRecorder:
    """Collects every event raised by a client."""

    def __init__(self):
        self.events = []

    def __call__(self, event) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType):
        return [event for event in self.events if event.event_type == event_type]

    def types(self):
        return [event.event_type for event in self.events]


# ==========================================
# Fixtures
# ==========================================


@pytest.fixture
def settings(tmp_path):
    """Settings with long timer periods so only explicit ticks happen."""
    return Settings(
        connection_timeout=1.0,
        status_interval=3600.0,
        ping_interval=3600.0,
        pending_command_ttl=60.0,
        log_dir=tmp_path / "logs",
        image_dir=tmp_path / "images",
    )


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def session_log(settings):
    return SessionLog(settings.log_dir)


@pytest.fixture
def image_archive(settings):
    return ImageArchive(settings.image_dir)


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
async def client(settings, channel, fetcher, session_log, image_archive, recorder):
    """Origin client wired to fake transports."""
    origin_client = OriginClient(
        settings=settings,
        channel=channel,
        fetcher=fetcher,
        session_log=session_log,
        image_archive=image_archive,
    )
    origin_client.subscribe_all_events(recorder)
    yield origin_client
    await origin_client.close()


@pytest.fixture
async def connected_client(client, channel):
    """Client physically and logically connected, with the connect traffic cleared."""
    assert await client.connect(TELESCOPE_HOST)
    client.set_connected(True)
    channel.sent.clear()
    channel.raw_sent.clear()
    return client


def new_image_ready(path: str, **extra: Any) -> Dict[str, Any]:
    """Build a NewImageReady notification."""
    return {
        "Type": "Notification",
        "Command": "NewImageReady",
        "Source": "ImageServer",
        "FileLocation": path,
        **extra,
    }
