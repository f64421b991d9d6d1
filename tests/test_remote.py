import pytest

from conftest import authenticate
from const import CLOUD_KEY_MAPPING, LOCAL_KEYS, REMOTE_CONTROL_CAPABILITY
from remote import CloudCommand, CommandRouter, Route, classify, map_cloud_command
from smartthings import CloudApiError
from tv import RetryPolicy, TvSession


@pytest.fixture
async def session(store, config, channels):
    session = TvSession(
        store, config, channel_factory=channels, host="192.168.1.20", device_id="dev-1"
    )
    yield session
    await session.close()


@pytest.fixture
def router(session, cloud):
    return CommandRouter(session, lambda: cloud, RetryPolicy(retries=1, delay=0.01))


@pytest.mark.parametrize(
    "key, route",
    [
        ("KEY_UP", Route.LOCAL),
        ("KEY_RETURN", Route.LOCAL),
        ("KEY_VOLUP", Route.LOCAL),
        ("KEY_MUTE", Route.LOCAL),
        ("KEY_POWER", Route.CLOUD),
        ("KEY_CHANNELUP", Route.CLOUD),
        ("KEY_SOURCE", Route.CLOUD),
    ],
)
def test_classify(key, route):
    assert classify(key) == route


def test_map_cloud_command():
    assert map_cloud_command("KEY_POWER") == CloudCommand("switch", "on")
    assert map_cloud_command("KEY_CHANNELDOWN") == CloudCommand("tvChannel", "channelDown")
    assert map_cloud_command("KEY_SOURCE") == CloudCommand(
        REMOTE_CONTROL_CAPABILITY, "send", ["SOURCE"]
    )


def test_cloud_table_has_no_local_keys():
    assert not LOCAL_KEYS & CLOUD_KEY_MAPPING.keys()


async def test_local_key_uses_channel(router, session, channels, cloud):
    await authenticate(session, channels)
    assert await router.send("KEY_VOLUP")
    assert channels.last.sent[-1]["params"]["DataOfCmd"] == "KEY_VOLUP"
    assert cloud.commands == []


async def test_cloud_key_posts_command(router, cloud):
    assert await router.send("KEY_POWER")
    assert cloud.commands == [("dev-1", "switch", "on", [])]


async def test_cloud_key_needs_device(router, session, cloud):
    session.device_id = ""
    assert not await router.send("KEY_POWER")
    assert cloud.calls == []


async def test_cloud_key_needs_token(session):
    router = CommandRouter(session, lambda: None)
    assert not await router.send("KEY_CHANNELUP")


async def test_cloud_failure_is_not_retried(router, cloud):
    cloud.error = CloudApiError(409, "device offline")
    assert not await router.send("KEY_POWER")
    assert len(cloud.calls) == 1


async def test_empty_key(router, cloud):
    assert not await router.send("")
    assert cloud.calls == []


async def test_select_source(router, cloud):
    assert await router.select_source("HDMI1")
    assert cloud.commands == [
        ("dev-1", "samsungvd.mediaInputSource", "setInputSource", ["HDMI1"])
    ]
    assert not await router.select_source("")
