"""
Controller facade observed and driven by a user interface.

The controller owns the session, the device directory, the input source
resolver and the command router, and publishes an immutable
:class:`ControllerState` snapshot after every change.

:license: Mozilla Public License Version 2.0, see LICENSE for more details.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from channel import LocalChannel
from const import (
    ControllerEvents,
    CredentialKeys,
    Device,
    InputSource,
    LogEntry,
    SessionConfig,
    SessionEvents,
    SessionState,
    endpoint_key,
)
from credentials import CredentialRecord, CredentialStore
from discover import ClientFactory, DeviceDirectory
from eventlog import EventLog, EventLogHandler
from pyee.asyncio import AsyncIOEventEmitter
from remote import CommandRouter
from smartthings import SmartThingsClient
from sources import InputSourceResolver
from tv import ChannelFactory, RetryPolicy, TvSession, is_valid_host

_LOG = logging.getLogger(__name__)

LOGGER_NAMES = (
    "channel",
    "controller",
    "credentials",
    "discover",
    "network",
    "remote",
    "smartthings",
    "sources",
    "tv",
)


@dataclass(frozen=True)
class ControllerState:
    """Read-only snapshot published to the user interface."""

    connected: bool = False
    authenticated: bool = False
    session_state: SessionState = SessionState.IDLE
    logs: tuple[LogEntry, ...] = ()
    sources: tuple[InputSource, ...] = ()
    devices: tuple[Device, ...] = ()
    selected_device_id: str = ""
    apps: dict[str, str] = field(default_factory=dict, hash=False)

    def source_name(self, source_id: str) -> str:
        """Return the display name of an input source, or its id if unknown."""
        for source in self.sources:
            if source.id == source_id:
                return source.name
        return source_id


class TvController:
    """Connects a Samsung TV session to a user interface."""

    def __init__(
        self,
        store: CredentialStore,
        config: SessionConfig | None = None,
        *,
        client_factory: ClientFactory = SmartThingsClient,
        channel_factory: ChannelFactory = LocalChannel,
    ) -> None:
        """
        Create instance.

        :param store: credential store, also used by the session
        :param config: session tunables
        :param client_factory: creates a SmartThings client from a token
        :param channel_factory: creates the local channel transport
        """
        self._store = store
        self._config = config or SessionConfig()
        self._client_factory = client_factory
        self.events = AsyncIOEventEmitter()

        self._session = TvSession(store, self._config, channel_factory=channel_factory)
        self._directory = DeviceDirectory(store, client_factory)
        self._resolver = InputSourceResolver(self._config.capability_cooldown)
        self._router = CommandRouter(
            self._session,
            self._cloud_client,
            RetryPolicy(self._config.command_retries, self._config.command_retry_delay),
        )

        self._cloud_token: str | None = store.get(CredentialKeys.CLOUD_TOKEN)
        self._devices: tuple[Device, ...] = ()
        self._selected_device_id = ""
        self._sources: tuple[InputSource, ...] = ()
        self._subscribers: list[Callable[[ControllerState], None]] = []
        self._published = ControllerState()
        self._publishing = False
        self._dirty = False
        self._tasks: set[asyncio.Task] = set()
        self._discovery_handle: asyncio.TimerHandle | None = None

        self._log = EventLog(on_append=lambda _entry: self._publish())
        self._log_handler = EventLogHandler(self._log)
        self._attach_log_handler()

        events = self._session.events
        events.on(SessionEvents.UPDATE, self._on_session_update)
        events.on(SessionEvents.AUTHENTICATED, self._on_session_authenticated)
        events.on(SessionEvents.DISCONNECTED, self._on_session_disconnected)
        events.on(SessionEvents.CONNECTION_FAILED, self._on_connection_failed)
        events.on(SessionEvents.APPS, self._on_apps)

    @property
    def session(self) -> TvSession:
        """Return the local channel session."""
        return self._session

    @property
    def log(self) -> EventLog:
        """Return the user-visible event log."""
        return self._log

    @property
    def cloud_token(self) -> str | None:
        """Return the SmartThings token in use."""
        return self._cloud_token

    @property
    def state(self) -> ControllerState:
        """Return a snapshot of the current state."""
        return ControllerState(
            connected=self._session.connected,
            authenticated=self._session.authenticated,
            session_state=self._session.state,
            logs=self._log.entries,
            sources=self._sources,
            devices=self._devices,
            selected_device_id=self._selected_device_id,
            apps=dict(self._session.apps),
        )

    def subscribe(
        self, callback: Callable[[ControllerState], None]
    ) -> Callable[[], None]:
        """
        Register a state observer.

        :return: callable removing the observer again
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # ----------------------------------------------------------------- lifecycle

    async def start(self) -> None:
        """Restore persisted credentials and schedule the first discovery."""
        record = CredentialRecord.load(self._store)
        self._cloud_token = record.cloud_token
        if record.endpoint:
            self._session.host = record.endpoint
        if record.local_token:
            self._session.token = record.local_token
        if record.last_device_id:
            self._selected_device_id = record.last_device_id
            self._session.device_id = record.last_device_id
            cached = record.endpoints.get(record.last_device_id)
            if cached:
                self._session.host = cached

        if self._cloud_token:
            _LOG.info(
                "Found SmartThings token, discovering devices in %.0fs",
                self._config.discovery_delay,
            )
            self._discovery_handle = asyncio.get_running_loop().call_later(
                self._config.discovery_delay,
                lambda: self._spawn(self.discover_devices()),
            )
        else:
            _LOG.info("Waiting for a SmartThings token")
        self._publish()

    async def close(self) -> None:
        """Tear everything down."""
        if self._discovery_handle is not None:
            self._discovery_handle.cancel()
            self._discovery_handle = None
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._session.close()
        self._detach_log_handler()

    # ------------------------------------------------------------------ commands

    def connect(self) -> None:
        """Connect to the current TV address."""
        if not self._session.host:
            _LOG.warning("No IP address configured")
            return
        self._session.connect()
        self._publish()

    def disconnect(self) -> None:
        """Disconnect from the TV."""
        self._session.disconnect()

    async def send_command(self, key: str) -> bool:
        """Send a remote key."""
        try:
            return await self._router.send(key)
        except Exception:  # pylint: disable=broad-exception-caught
            _LOG.exception("Failed to send %s", key)
            return False

    async def select_source(self, source_id: str) -> bool:
        """Switch the TV to an input source."""
        try:
            return await self._router.select_source(source_id)
        except Exception:  # pylint: disable=broad-exception-caught
            _LOG.exception("Failed to select input source %s", source_id)
            return False

    async def connect_to_device(self, device_id: str) -> None:
        """Target a cloud device and connect to it."""
        if not device_id:
            _LOG.warning("No device ID given")
            return
        _LOG.info("[%s] Connecting to device", device_id)
        self._store.set(CredentialKeys.LAST_DEVICE_ID, device_id)
        self._selected_device_id = device_id
        session = self._session
        if device_id == session.device_id and session.authenticated and session.connected:
            _LOG.info("[%s] Already connected to device", device_id)
            self._publish()
            return
        self._session.set_device(device_id)
        self._sources = ()
        self._publish()

        address = await self._directory.resolve_address(
            self._cloud_token or "", device_id
        )
        if self._session.device_id != device_id:
            _LOG.debug("[%s] Device no longer selected, ignoring address", device_id)
            return
        if address is None:
            self._publish()
            return
        self._session.host = address
        self._store.set(CredentialKeys.ENDPOINT, address)
        self._session.schedule_connect(self._config.device_connect_delay)
        self._publish()

    async def set_cloud_token(self, token: str) -> None:
        """Store a SmartThings token and discover its devices."""
        token = (token or "").strip()
        if not token:
            _LOG.warning("Empty SmartThings token ignored")
            return
        self._store.set(CredentialKeys.CLOUD_TOKEN, token)
        self._cloud_token = token
        _LOG.info("SmartThings token saved")
        await self.discover_devices()

    def set_endpoint(self, ip_address: str, device_id: str | None = None) -> None:
        """Set the TV address manually, optionally bound to a device."""
        if not is_valid_host(ip_address):
            _LOG.warning("Invalid IP address format: %r", ip_address)
            return
        self._store.set(CredentialKeys.ENDPOINT, ip_address)
        if device_id:
            self._store.set(endpoint_key(device_id), ip_address)
            if device_id != self._session.device_id:
                self._session.set_device(device_id)
                self._selected_device_id = device_id
        self._session.host = ip_address
        _LOG.info("TV address set to %s", ip_address)
        self._publish()
        if self._cloud_token:
            _LOG.info("Found SmartThings token, discovering devices")
            self._spawn(self.discover_devices())

    async def discover_devices(self) -> None:
        """Refresh the device list and pick a device."""
        devices = await self._directory.refresh(self._cloud_token or "")
        if devices is None:
            self._publish()
            return
        self._devices = tuple(devices)
        selected, auto_connect = self._directory.pick(
            devices, self._store.get(CredentialKeys.LAST_DEVICE_ID)
        )
        self._selected_device_id = selected
        if selected and not self._session.device_id:
            self._session.device_id = selected
        self._publish()
        if auto_connect:
            _LOG.info("[%s] Last used device found, connecting", selected)
            await self.connect_to_device(selected)

    def set_network_reachable(self, reachable: bool) -> None:
        """Report a change of network reachability."""
        self._session.set_network_reachable(reachable)
        self._publish()

    async def power_on(self) -> bool:
        """
        Power the TV on through SmartThings.

        The local channel is down while the TV is off, so the cloud is the
        only way in.
        """
        if not self._session.device_id and self._selected_device_id:
            self._session.device_id = self._selected_device_id
        return await self.send_command("KEY_POWER")

    # ------------------------------------------------------------------ internals

    def _cloud_client(self) -> SmartThingsClient | None:
        if not self._cloud_token:
            return None
        return self._client_factory(self._cloud_token)

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            _LOG.error("Background task failed: %s", task.exception())

    def _attach_log_handler(self) -> None:
        for name in LOGGER_NAMES:
            logger = logging.getLogger(name)
            if not logger.isEnabledFor(logging.INFO):
                logger.setLevel(logging.INFO)
            logger.addHandler(self._log_handler)

    def _detach_log_handler(self) -> None:
        for name in LOGGER_NAMES:
            logging.getLogger(name).removeHandler(self._log_handler)

    def _publish(self) -> None:
        if self._publishing:
            self._dirty = True
            return
        self._publishing = True
        try:
            # Observers logging from their callback get one follow-up pass.
            for _ in range(2):
                self._dirty = False
                self._published = self.state
                for callback in list(self._subscribers):
                    try:
                        callback(self._published)
                    except Exception:  # pylint: disable=broad-exception-caught
                        _LOG.exception("State observer failed")
                self.events.emit(ControllerEvents.UPDATE, self._published)
                if not self._dirty:
                    break
        finally:
            self._publishing = False

    def _on_session_update(self, _state: SessionState) -> None:
        self._publish()

    def _on_session_authenticated(self) -> None:
        self._session.request_app_list()
        self._spawn(self._refresh_sources(self._session.device_id))
        self._publish()

    async def _refresh_sources(self, device_id: str) -> None:
        if not device_id:
            _LOG.info("No SmartThings device, skipping input sources")
            return
        client = self._cloud_client()
        if client is None:
            _LOG.info("No SmartThings token, skipping input sources")
            return
        async with client as cloud:
            sources = await self._resolver.resolve(cloud, device_id, self._sources)
        if device_id != self._session.device_id:
            _LOG.debug("[%s] Device no longer selected, ignoring sources", device_id)
            return
        if sources is None:
            return
        self._sources = tuple(sources)
        self._publish()

    def _on_session_disconnected(self) -> None:
        self._sources = ()
        self._publish()

    def _on_connection_failed(self) -> None:
        _LOG.warning("Connection failed, retry manually")
        self._publish()

    def _on_apps(self, _apps: dict[str, str]) -> None:
        self._publish()
