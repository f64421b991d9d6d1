import asyncio
import json

import pytest

from channel import ChannelClosedError
from const import SessionConfig
from credentials import MemoryCredentialStore


class FakeChannel:
    """In-memory stand-in for LocalChannel."""

    def __init__(self, url, *, secure, timeout=10.0):
        self.url = url
        self.secure = secure
        self.timeout = timeout
        self.sent = []
        self.open_error = None
        self.send_error = None
        self.closed = False
        self._open = False
        self._inbox = asyncio.Queue()

    @property
    def is_open(self):
        return self._open

    async def open(self):
        if self.open_error is not None:
            raise self.open_error
        self._open = True

    async def send(self, message):
        if not self._open:
            raise ChannelClosedError("Channel is not open")
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(message)

    async def receive(self):
        item = await self._inbox.get()
        if isinstance(item, Exception):
            self._open = False
            raise item
        return item

    async def close(self):
        self._open = False
        self.closed = True

    def feed(self, message):
        if not isinstance(message, (str, Exception)):
            message = json.dumps(message)
        self._inbox.put_nowait(message)

    def methods(self):
        return [message["method"] for message in self.sent]


class FakeChannelFactory:
    def __init__(self):
        self.channels = []
        self.fail_open = False

    def __call__(self, url, *, secure, timeout):
        channel = FakeChannel(url, secure=secure, timeout=timeout)
        if self.fail_open:
            channel.open_error = ChannelClosedError("connection refused")
        self.channels.append(channel)
        return channel

    @property
    def last(self):
        return self.channels[-1]


class FakeCloud:
    """In-memory stand-in for SmartThingsClient."""

    def __init__(self, devices=None, details=None, statuses=None):
        self.devices = devices or []
        self.details = details or {}
        self.statuses = statuses or {}
        self.error = None
        self.commands = []
        self.calls = []
        self.exits = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.exits += 1

    def _call(self, name, *args):
        self.calls.append((name, *args))
        if self.error is not None:
            raise self.error

    async def list_devices(self):
        self._call("list_devices")
        return list(self.devices)

    async def get_device(self, device_id):
        self._call("get_device", device_id)
        return self.details.get(device_id, {"deviceId": device_id, "components": []})

    async def get_capability_status(self, device_id, capability, component="main"):
        self._call("get_capability_status", device_id, capability)
        return self.statuses.get(device_id, {})

    async def execute_command(
        self, device_id, capability, command, arguments=None, component="main"
    ):
        self._call("execute_command", device_id, capability, command)
        self.commands.append((device_id, capability, command, list(arguments or [])))


class FakeCloudFactory:
    def __init__(self, cloud):
        self.cloud = cloud
        self.tokens = []

    def __call__(self, token):
        self.tokens.append(token)
        return self.cloud


CONNECT_EVENT = {"event": "ms.channel.connect", "data": {"token": "tv-token"}}
UNAUTHORIZED_EVENT = {"event": "ms.channel.unauthorized"}


async def settle(rounds=10):
    """Let pending callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def authenticate(session, factory, event=CONNECT_EVENT):
    session.connect()
    await settle()
    factory.last.feed(event)
    await settle()
    assert session.authenticated


@pytest.fixture
def config():
    return SessionConfig(
        connection_timeout=5.0,
        authentication_timeout=5.0,
        heartbeat_interval=5.0,
        reconnect_delay=0.02,
        initial_reconnect_delay=0.05,
        command_retry_delay=0.02,
        capability_cooldown=5.0,
        device_connect_delay=0.01,
        discovery_delay=0.01,
    )


@pytest.fixture
def store():
    return MemoryCredentialStore()


@pytest.fixture
def channels():
    return FakeChannelFactory()


@pytest.fixture
def cloud():
    return FakeCloud()


async def wait_until(predicate, timeout=1.0):
    """Poll predicate until it holds or fail after timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)
