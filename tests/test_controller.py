import pytest

from conftest import CONNECT_EVENT, FakeCloudFactory, settle, wait_until
from const import INPUT_SOURCE_CAPABILITY, Device, InputSource, SessionState
from controller import ControllerState, TvController
from credentials import JsonCredentialStore
from smartthings import CloudConnectionError

TV = {"deviceId": "tv-1", "label": "Living Room TV", "type": "OCF"}
MONITOR = {"deviceId": "mon-1", "label": "Odyssey G7", "type": "OCF"}
TV_DETAIL = {
    "deviceId": "tv-1",
    "ocf": {"networkInfo": {"ip": "192.168.1.20"}},
    "components": [{"id": "main", "capabilities": [{"id": INPUT_SOURCE_CAPABILITY}]}],
}
TV_STATUS = {
    "supportedInputSourcesMap": {
        "value": [{"id": "HDMI2", "name": "Blu-ray"}, {"id": "HDMI1", "name": "Apple TV"}]
    }
}


@pytest.fixture
async def controller(store, config, channels, cloud):
    cloud.details = {"tv-1": TV_DETAIL}
    cloud.statuses = {"tv-1": TV_STATUS}
    controller = TvController(
        store, config, client_factory=FakeCloudFactory(cloud), channel_factory=channels
    )
    yield controller
    await controller.close()


def logged(controller, text):
    return any(text in entry.message for entry in controller.state.logs)


def test_source_name_falls_back_to_id():
    state = ControllerState(sources=(InputSource("HDMI1", "Apple TV"),))
    assert state.source_name("HDMI1") == "Apple TV"
    assert state.source_name("HDMI3") == "HDMI3"


async def test_start_without_token_waits(controller, cloud):
    await controller.start()
    await settle()
    assert logged(controller, "Waiting for a SmartThings token")
    assert cloud.calls == []
    assert controller.state.session_state == SessionState.IDLE


async def test_start_auto_connects_last_device(store, controller, channels, cloud):
    store.set("cloud_token", "token")
    store.set("last_device_id", "tv-1")
    cloud.devices = [MONITOR, TV]

    await controller.start()
    await wait_until(lambda: channels.channels)
    assert "192.168.1.20:8002" in channels.last.url
    assert store.get("endpoint_tv-1") == "192.168.1.20"

    await settle()
    channels.last.feed(CONNECT_EVENT)
    await wait_until(lambda: controller.state.sources)

    state = controller.state
    assert state.authenticated
    assert state.connected
    assert state.selected_device_id == "tv-1"
    assert state.devices == (Device("mon-1", "Odyssey G7"), Device("tv-1", "Living Room TV"))
    assert state.sources == (
        InputSource("HDMI1", "Apple TV"),
        InputSource("HDMI2", "Blu-ray"),
    )
    assert state.source_name("HDMI2") == "Blu-ray"
    assert "ms.channel.emit" in channels.last.methods()


async def test_discovery_without_last_device_selects_first(store, controller, channels, cloud):
    store.set("cloud_token", "token")
    cloud.devices = [MONITOR, TV]
    await controller.start()
    await wait_until(lambda: controller.state.devices)
    await settle()

    assert controller.state.selected_device_id == "mon-1"
    assert controller.session.device_id == "mon-1"
    assert channels.channels == []


async def test_failed_discovery_keeps_devices(store, controller, cloud):
    await controller.set_cloud_token("token")
    assert store.get("cloud_token") == "token"
    assert controller.state.devices == ()

    cloud.devices = [TV]
    await controller.discover_devices()
    assert controller.state.devices == (Device("tv-1", "Living Room TV"),)

    cloud.error = CloudConnectionError("offline")
    await controller.discover_devices()
    assert controller.state.devices == (Device("tv-1", "Living Room TV"),)


async def test_empty_cloud_token_is_ignored(store, controller, cloud):
    await controller.set_cloud_token("   ")
    assert store.get("cloud_token") is None
    assert cloud.calls == []


async def test_connect_to_device_rejects_empty_id(store, controller, channels):
    await controller.connect_to_device("")
    assert store.get("last_device_id") is None
    assert channels.channels == []


async def test_connect_to_device_without_address(store, controller, channels, cloud):
    cloud.details = {}
    await controller.connect_to_device("tv-2")
    await settle()
    assert store.get("last_device_id") == "tv-2"
    assert channels.channels == []
    assert logged(controller, "enter the IP address manually")


async def test_set_endpoint_validates(store, controller):
    controller.set_endpoint("192.168.1")
    assert store.get("endpoint") is None
    assert controller.session.host == ""

    controller.set_endpoint("192.168.1.50", device_id="tv-1")
    assert store.get("endpoint") == "192.168.1.50"
    assert store.get("endpoint_tv-1") == "192.168.1.50"
    assert controller.session.host == "192.168.1.50"
    assert controller.state.selected_device_id == "tv-1"


async def test_connect_and_disconnect_clear_sources(store, controller, channels):
    store.set("cloud_token", "token")
    controller.set_endpoint("192.168.1.20", device_id="tv-1")
    await controller.start()
    controller.connect()
    await settle()
    channels.last.feed(CONNECT_EVENT)
    await wait_until(lambda: controller.state.sources)

    controller.disconnect()
    state = controller.state
    assert state.sources == ()
    assert state.session_state == SessionState.IDLE
    assert not state.authenticated


async def test_stale_sources_are_ignored(store, controller):
    store.set("cloud_token", "token")
    controller.set_endpoint("192.168.1.20", device_id="tv-2")
    await controller.start()
    await controller._refresh_sources("tv-1")
    assert controller.state.sources == ()


async def test_network_loss_disconnects(controller, channels):
    controller.set_endpoint("192.168.1.20")
    controller.connect()
    await settle()
    channels.last.feed(CONNECT_EVENT)
    await settle()
    assert controller.state.authenticated

    controller.set_network_reachable(False)
    assert controller.state.session_state == SessionState.IDLE
    controller.connect()
    assert len(channels.channels) == 1


async def test_subscribers_receive_snapshots(controller):
    snapshots = []
    unsubscribe = controller.subscribe(snapshots.append)
    controller.set_endpoint("192.168.1.20")
    assert snapshots
    assert all(isinstance(snapshot, ControllerState) for snapshot in snapshots)
    assert logged(controller, "TV address set to 192.168.1.20")

    count = len(snapshots)
    unsubscribe()
    controller.set_endpoint("192.168.1.21")
    assert len(snapshots) == count


async def test_failing_subscriber_does_not_escape(controller):
    def broken(_state):
        raise RuntimeError("observer bug")

    controller.subscribe(broken)
    controller.set_endpoint("192.168.1.20")
    assert controller.session.host == "192.168.1.20"


async def test_send_command_routes_cloud_keys(store, controller, cloud):
    store.set("cloud_token", "token")
    await controller.start()
    controller.set_endpoint("192.168.1.20", device_id="tv-1")
    assert await controller.send_command("KEY_CHANNELUP")
    assert cloud.commands == [("tv-1", "tvChannel", "channelUp", [])]

    assert await controller.select_source("HDMI1")
    assert cloud.commands[-1] == ("tv-1", INPUT_SOURCE_CAPABILITY, "setInputSource", ["HDMI1"])


async def test_power_on_uses_selected_device(store, controller, cloud):
    store.set("cloud_token", "token")
    cloud.devices = [TV]
    await controller.start()
    controller.session.device_id = ""
    await controller.discover_devices()
    controller.session.device_id = ""

    assert await controller.power_on()
    assert cloud.commands == [("tv-1", "switch", "on", [])]


async def test_send_command_without_token(controller):
    controller.set_endpoint("192.168.1.20", device_id="tv-1")
    assert not await controller.send_command("KEY_POWER")
    assert logged(controller, "No SmartThings token available")


async def test_rediscovery_keeps_live_session(store, controller, channels, cloud):
    store.set("cloud_token", "token")
    store.set("last_device_id", "tv-1")
    cloud.devices = [TV]
    await controller.start()
    await wait_until(lambda: channels.channels)
    await settle()
    channels.last.feed(CONNECT_EVENT)
    await wait_until(lambda: controller.state.sources)
    channel = channels.last

    await controller.discover_devices()
    await settle()

    state = controller.state
    assert state.session_state == SessionState.AUTHENTICATED
    assert state.selected_device_id == "tv-1"
    assert state.sources
    assert not channel.closed
    assert channels.channels == [channel]


async def test_set_endpoint_discovers_when_token_known(controller, cloud):
    controller.set_endpoint("192.168.1.50")
    await settle()
    assert cloud.calls == []

    await controller.set_cloud_token("token")
    cloud.calls.clear()
    cloud.devices = [TV]
    controller.set_endpoint("192.168.1.51")
    await wait_until(lambda: controller.state.devices)
    assert cloud.calls[0] == ("list_devices",)
    assert controller.state.devices == (Device("tv-1", "Living Room TV"),)
    assert controller.session.host == "192.168.1.51"


async def test_unwritable_credentials_file_keeps_token(tmp_path, config, channels, cloud):
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    controller = TvController(
        JsonCredentialStore(blocker / "credentials.json"),
        config,
        client_factory=FakeCloudFactory(cloud),
        channel_factory=channels,
    )
    try:
        await controller.set_cloud_token("abc")
        assert controller.cloud_token == "abc"
        assert ("list_devices",) in cloud.calls
    finally:
        await controller.close()
