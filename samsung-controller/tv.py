"""
This module implements the session with the Samsung TV's local remote-control channel.

Every asynchronous completion (socket open, received frame, failed send,
timer) is turned into an event and handed to :meth:`TvSession._dispatch`,
which runs on the event loop and is the only place that mutates session state.
"""

import asyncio
import ipaddress
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from channel import (
    ChannelClosedError,
    ChannelError,
    ChannelTimeoutError,
    LocalChannel,
    app_list_message,
    build_channel_url,
    handshake_message,
    key_press_message,
    ping_message,
)
from const import (
    CredentialKeys,
    SessionConfig,
    SessionEvents,
    SessionState,
    TimerKind,
)
from credentials import CredentialStore
from pyee.asyncio import AsyncIOEventEmitter
from samsungtvws.event import (
    ED_INSTALLED_APP_EVENT,
    MS_CHANNEL_CONNECT_EVENT,
    MS_CHANNEL_UNAUTHORIZED,
    parse_installed_app,
)

_LOG = logging.getLogger(__name__)

ChannelFactory = Callable[..., LocalChannel]


def is_valid_host(host: str | None) -> bool:
    """Return True if host is a dotted IPv4 address."""
    if not host:
        return False
    try:
        return isinstance(ipaddress.ip_address(host), ipaddress.IPv4Address)
    except ValueError:
        return False


def is_connectivity_error(err: BaseException) -> bool:
    """Return True if err means the link itself is gone."""
    return isinstance(
        err,
        (ChannelTimeoutError, ChannelClosedError, asyncio.TimeoutError, ConnectionError),
    )


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry of a key press."""

    retries: int = 1
    delay: float = 2.0


@dataclass(frozen=True)
class _ChannelOpened:
    attempt: str


@dataclass(frozen=True)
class _ChannelFailed:
    attempt: str
    error: BaseException


@dataclass(frozen=True)
class _MessageReceived:
    attempt: str
    text: str


@dataclass(frozen=True)
class _TimerFired:
    attempt: str | None
    kind: TimerKind


class Timers:
    """Named one-shot timers. Arming a kind cancels its pending instance."""

    def __init__(self) -> None:
        self._handles: dict[TimerKind, tuple[asyncio.TimerHandle, float]] = {}

    def arm(self, kind: TimerKind, delay: float, callback: Callable[[], None]) -> None:
        """(Re)arm the timer of the given kind."""
        self.cancel(kind)
        loop = asyncio.get_running_loop()
        handle = loop.call_later(delay, self._fire, kind, callback)
        self._handles[kind] = (handle, delay)

    def _fire(self, kind: TimerKind, callback: Callable[[], None]) -> None:
        self._handles.pop(kind, None)
        callback()

    def cancel(self, kind: TimerKind) -> None:
        """Cancel the timer of the given kind if armed."""
        entry = self._handles.pop(kind, None)
        if entry:
            entry[0].cancel()

    def cancel_all(self) -> None:
        """Cancel every pending timer."""
        for kind in list(self._handles):
            self.cancel(kind)

    def is_armed(self, kind: TimerKind) -> bool:
        """Return True if the timer of the given kind is pending."""
        return kind in self._handles

    def delay(self, kind: TimerKind) -> float | None:
        """Return the delay the pending timer was armed with."""
        entry = self._handles.get(kind)
        return entry[1] if entry else None

    @property
    def armed(self) -> set[TimerKind]:
        """Return the pending timer kinds."""
        return set(self._handles)


class TvSession:
    """Session with the local remote-control channel of one TV."""

    def __init__(
        self,
        store: CredentialStore,
        config: SessionConfig | None = None,
        *,
        channel_factory: ChannelFactory = LocalChannel,
        host: str = "",
        device_id: str = "",
    ) -> None:
        """Create instance."""
        self._store = store
        self._config = config or SessionConfig()
        self._channel_factory = channel_factory
        self.events = AsyncIOEventEmitter()
        self.timers = Timers()

        self.host: str = host
        self.device_id: str = device_id
        self.token: str | None = store.get(CredentialKeys.LOCAL_TOKEN)
        self.apps: dict[str, str] = {}

        self._state = SessionState.IDLE
        self._port_index = 0
        self._reconnect_attempts = 0
        self._last_reconnect_at: datetime | None = None
        self._initial_attempt = True
        self._network_reachable = True

        self._channel: LocalChannel | None = None
        self._attempt: str | None = None
        self._handshake_in_flight = False
        self._generation = 0
        self._tasks: set[asyncio.Task] = set()
        self._receive_task: asyncio.Task | None = None
        self._closing: set[asyncio.Task] = set()

    @property
    def log_id(self) -> str:
        """Return a log identifier."""
        return self.device_id or self.host or "tv"

    @property
    def state(self) -> SessionState:
        """Return the session state."""
        return self._state

    @property
    def authenticated(self) -> bool:
        """Return True once the TV accepted the handshake."""
        return self._state == SessionState.AUTHENTICATED

    @property
    def connected(self) -> bool:
        """Return True while a channel is open."""
        return self._channel is not None and self._channel.is_open

    @property
    def connecting(self) -> bool:
        """Return True while an attempt is between open and confirmation."""
        return self._state in (SessionState.CONNECTING, SessionState.HANDSHAKE_SENT)

    @property
    def ports(self) -> tuple[int, ...]:
        """Return the candidate ports."""
        return self._config.ports

    @property
    def port_index(self) -> int:
        """Return the index of the port used by the next attempt."""
        return self._port_index

    @property
    def port(self) -> int:
        """Return the port used by the next attempt."""
        return self._config.ports[self._port_index]

    @property
    def reconnect_attempts(self) -> int:
        """Return the reconnect attempts made since the last success."""
        return self._reconnect_attempts

    @property
    def last_reconnect_at(self) -> datetime | None:
        """Return when the last reconnect was scheduled."""
        return self._last_reconnect_at

    @property
    def network_reachable(self) -> bool:
        """Return the last known network reachability."""
        return self._network_reachable

    # ------------------------------------------------------------------ commands

    def connect(self) -> None:
        """Start a connection attempt if none is running."""
        if self.connecting:
            _LOG.info("[%s] Connection attempt already in progress", self.log_id)
            return
        if not self._network_reachable:
            _LOG.info("[%s] Network is not reachable", self.log_id)
            return
        if not is_valid_host(self.host):
            _LOG.warning("[%s] Invalid IP address format: %r", self.log_id, self.host)
            return
        if self.authenticated and self.connected:
            _LOG.info("[%s] Already authenticated and connected", self.log_id)
            return
        self.timers.cancel(TimerKind.RECONNECT)
        self._start_attempt()

    def schedule_connect(self, delay: float) -> None:
        """Connect after delay, replacing any pending deferred connect."""
        self.timers.arm(TimerKind.DISCOVERY_STATUS, delay, self.connect)

    def disconnect(self) -> None:
        """Tear the session down and return to idle."""
        _LOG.info("[%s] Disconnecting", self.log_id)
        self._generation += 1
        self.timers.cancel_all()
        self._teardown_channel()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._reconnect_attempts = 0
        self._initial_attempt = True
        self.apps = {}
        was_idle = self._state == SessionState.IDLE
        self._set_state(SessionState.IDLE)
        if not was_idle:
            _LOG.info("[%s] Disconnected", self.log_id)
        self.events.emit(SessionEvents.DISCONNECTED)

    def set_network_reachable(self, reachable: bool) -> None:
        """Update reachability; losing the network forces a disconnect."""
        self._network_reachable = reachable
        if not reachable:
            _LOG.warning("[%s] Network is not reachable", self.log_id)
            self.disconnect()

    def set_device(self, device_id: str) -> None:
        """Target another device, tearing down the current session."""
        if device_id == self.device_id and self.authenticated and self.connected:
            _LOG.debug("[%s] Already connected, keeping session", self.log_id)
            return
        if self._state != SessionState.IDLE or self._channel is not None:
            self.disconnect()
        self.device_id = device_id
        self.apps = {}

    async def send_key(self, key: str, policy: RetryPolicy | None = None) -> bool:
        """
        Press a remote key over the local channel.

        When the session is not authenticated a connection is started and the
        press is retried according to the policy. Returns True once sent.
        """
        policy = policy or RetryPolicy(
            self._config.command_retries, self._config.command_retry_delay
        )
        generation = self._generation
        for attempt in range(policy.retries + 1):
            last = attempt == policy.retries
            if not self.authenticated:
                _LOG.info(
                    "[%s] Not authenticated, cannot send %s", self.log_id, key
                )
                if not last:
                    self.connect()
            else:
                try:
                    await self._send(key_press_message(key))
                    _LOG.info("[%s] Sent key %s", self.log_id, key)
                    return True
                except ChannelError as err:
                    _LOG.error("[%s] Failed to send %s: %s", self.log_id, key, err)
                    if is_connectivity_error(err) and self._attempt:
                        self._dispatch(_ChannelFailed(self._attempt, err))
            if last:
                break
            await asyncio.sleep(policy.delay)
            if generation != self._generation:
                _LOG.debug("[%s] Session reset, dropping %s", self.log_id, key)
                return False
        _LOG.warning("[%s] Giving up on key %s", self.log_id, key)
        return False

    def request_app_list(self) -> None:
        """Ask the TV for its installed applications."""
        if not self.authenticated:
            _LOG.debug("[%s] Not authenticated, skipping app list", self.log_id)
            return
        self._spawn(self._request_app_list())

    async def _request_app_list(self) -> None:
        try:
            await self._send(app_list_message())
            _LOG.debug("[%s] Requested app list", self.log_id)
        except ChannelError as err:
            _LOG.warning("[%s] Failed to request app list: %s", self.log_id, err)

    async def close(self) -> None:
        """Disconnect and wait for the transport to be released."""
        self.disconnect()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

    # --------------------------------------------------------------- internals

    def _set_state(self, state: SessionState) -> None:
        if state == self._state:
            return
        _LOG.debug("[%s] %s -> %s", self.log_id, self._state, state)
        self._state = state
        self.events.emit(SessionEvents.UPDATE, state)

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _start_attempt(self) -> None:
        self._teardown_channel()
        attempt = uuid.uuid4().hex
        self._attempt = attempt
        self._handshake_in_flight = False
        port = self.port
        secure = port == self._config.ports[0]
        url = build_channel_url(
            self.host, port, secure, self._config.client_name, self.token
        )
        _LOG.info(
            "[%s] Connecting to %s:%d (%s, token: %s)",
            self.log_id,
            self.host,
            port,
            "secure" if secure else "plain",
            "yes" if self.token else "none",
        )
        self._channel = self._channel_factory(
            url, secure=secure, timeout=self._config.connection_timeout
        )
        self._set_state(SessionState.CONNECTING)
        self._arm(TimerKind.CONNECTION, self._config.connection_timeout)
        self._spawn(self._open_channel(self._channel, attempt))

    async def _open_channel(self, channel: LocalChannel, attempt: str) -> None:
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        if attempt != self._attempt:
            return
        try:
            await channel.open()
        except (ChannelError, OSError, asyncio.TimeoutError) as err:
            self._dispatch(_ChannelFailed(attempt, err))
            return
        self._dispatch(_ChannelOpened(attempt))

    async def _receive_loop(self, channel: LocalChannel, attempt: str) -> None:
        while attempt == self._attempt:
            try:
                text = await channel.receive()
            except (ChannelError, OSError, asyncio.TimeoutError) as err:
                self._dispatch(_ChannelFailed(attempt, err))
                return
            self._dispatch(_MessageReceived(attempt, text))

    async def _send(self, message: dict[str, Any]) -> None:
        if self._channel is None:
            raise ChannelClosedError("No channel")
        await self._channel.send(message)

    def _teardown_channel(self) -> None:
        self._attempt = None
        self._handshake_in_flight = False
        if self._receive_task is not None:
            self._receive_task.cancel()
            self._receive_task = None
        channel, self._channel = self._channel, None
        if channel is not None:
            task = asyncio.get_running_loop().create_task(channel.close())
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)

    def _arm(self, kind: TimerKind, delay: float) -> None:
        attempt = self._attempt
        self.timers.arm(kind, delay, lambda: self._dispatch(_TimerFired(attempt, kind)))

    def _dispatch(self, event: Any) -> None:
        if getattr(event, "attempt", None) != self._attempt:
            _LOG.debug("[%s] Dropping stale %s", self.log_id, type(event).__name__)
            return
        match event:
            case _ChannelOpened():
                self._on_channel_opened()
            case _MessageReceived(text=text):
                self._on_message(text)
            case _ChannelFailed(error=error):
                _LOG.warning("[%s] Channel error: %s", self.log_id, error)
                self._handle_failure(str(error) or type(error).__name__)
            case _TimerFired(kind=TimerKind.CONNECTION):
                _LOG.warning(
                    "[%s] Connection timeout on port %d", self.log_id, self.port
                )
                self._handle_failure("connection timeout")
            case _TimerFired(kind=TimerKind.AUTHENTICATION):
                _LOG.warning(
                    "[%s] Authorization timeout - accept the pairing request on the TV",
                    self.log_id,
                )
                self._handle_failure("authentication timeout")
            case _TimerFired(kind=TimerKind.RECONNECT):
                self._on_reconnect_due()
            case _TimerFired(kind=TimerKind.HEARTBEAT):
                self._on_heartbeat()

    def _on_channel_opened(self) -> None:
        _LOG.debug("[%s] Channel open", self.log_id)
        self._receive_task = self._spawn(self._receive_loop(self._channel, self._attempt))
        self._arm(TimerKind.CONNECTION, self._config.connection_timeout)
        self._send_handshake()

    def _send_handshake(self) -> None:
        if self._handshake_in_flight:
            _LOG.debug("[%s] Handshake already sent, skipping", self.log_id)
            return
        self._handshake_in_flight = True
        connection_id = str(uuid.uuid4())
        message = handshake_message(
            self._config.client_name, connection_id, self.token, self.device_id
        )
        _LOG.info(
            "[%s] Sending handshake %s (token: %s)",
            self.log_id,
            connection_id,
            "yes" if self.token else "none",
        )
        self._set_state(SessionState.HANDSHAKE_SENT)
        self._arm(TimerKind.AUTHENTICATION, self._config.authentication_timeout)
        self._spawn(self._deliver(message, self._attempt))

    async def _deliver(self, message: dict[str, Any], attempt: str) -> None:
        try:
            await self._send(message)
        except ChannelError as err:
            self._dispatch(_ChannelFailed(attempt, err))

    def _on_message(self, text: str) -> None:
        self.timers.cancel(TimerKind.CONNECTION)
        try:
            message = json.loads(text)
        except ValueError:
            _LOG.warning("[%s] Dropping malformed frame: %.200s", self.log_id, text)
            return
        if not isinstance(message, dict):
            _LOG.warning("[%s] Dropping unexpected frame: %.200s", self.log_id, text)
            return

        event = message.get("event")
        data = message.get("data")
        if not isinstance(data, dict):
            data = {}
        match event:
            case str() if event == MS_CHANNEL_CONNECT_EVENT:
                if self.authenticated:
                    _LOG.debug("[%s] Duplicate connect event", self.log_id)
                elif data.get("additionalAuthCodeRequired") in (1, "1", True):
                    self._on_additional_auth()
                else:
                    self._on_authenticated(data)
            case str() if event == MS_CHANNEL_UNAUTHORIZED:
                self._on_unauthorized()
            case str() if event == ED_INSTALLED_APP_EVENT:
                self._on_app_list(message)
            case _:
                _LOG.debug("[%s] Ignoring event %s", self.log_id, event)

    def _on_authenticated(self, data: dict[str, Any]) -> None:
        token = data.get("token")
        if isinstance(token, str) and token and token != self.token:
            _LOG.info("[%s] Received new auth token", self.log_id)
            self.token = token
            self._store.set(CredentialKeys.LOCAL_TOKEN, token)
        self.timers.cancel(TimerKind.CONNECTION)
        self.timers.cancel(TimerKind.AUTHENTICATION)
        self._reconnect_attempts = 0
        self._initial_attempt = True
        self._set_state(SessionState.AUTHENTICATED)
        _LOG.info("[%s] Authenticated on port %d", self.log_id, self.port)
        self._arm(TimerKind.HEARTBEAT, self._config.heartbeat_interval)
        self.events.emit(SessionEvents.AUTHENTICATED)

    def _on_additional_auth(self) -> None:
        saved = self._store.get(CredentialKeys.LOCAL_TOKEN)
        if saved:
            _LOG.info("[%s] Additional auth required, resending saved token", self.log_id)
            self.token = saved
        else:
            _LOG.info("[%s] Additional auth required, no saved token", self.log_id)
        self._handshake_in_flight = False
        self._send_handshake()

    def _on_unauthorized(self) -> None:
        _LOG.warning(
            "[%s] Unauthorized - accept the pairing request on the TV", self.log_id
        )
        self._store.clear(CredentialKeys.LOCAL_TOKEN)
        self.token = None
        self._stop_attempt()
        if self._reconnect_attempts < self._config.max_reconnect_attempts:
            self._schedule_reconnect(self._config.reconnect_delay * 2)
        else:
            self._give_up()

    def _on_app_list(self, message: dict[str, Any]) -> None:
        try:
            apps = [
                app
                for app in parse_installed_app(message)
                if isinstance(app, dict)
                and isinstance(app.get("name"), str)
                and isinstance(app.get("appId"), str)
            ]
        except (AssertionError, KeyError, TypeError) as err:
            _LOG.warning("[%s] Cannot parse app list: %r", self.log_id, err)
            return
        self.apps = {
            app["name"]: app["appId"] for app in sorted(apps, key=lambda app: app["name"])
        }
        _LOG.debug("[%s] Installed apps updated: %d apps", self.log_id, len(self.apps))
        self.events.emit(SessionEvents.APPS, dict(self.apps))

    def _on_heartbeat(self) -> None:
        if not self.authenticated:
            return
        self._arm(TimerKind.HEARTBEAT, self._config.heartbeat_interval)
        self._spawn(self._ping(self._attempt))

    async def _ping(self, attempt: str) -> None:
        try:
            await self._send(ping_message(self.token))
        except ChannelError as err:
            _LOG.warning("[%s] Ping failed: %s", self.log_id, err)
            if is_connectivity_error(err):
                self._dispatch(_ChannelFailed(attempt, err))

    def _stop_attempt(self) -> None:
        for kind in (TimerKind.CONNECTION, TimerKind.AUTHENTICATION, TimerKind.HEARTBEAT):
            self.timers.cancel(kind)
        self._teardown_channel()

    def _handle_failure(self, reason: str) -> None:
        self._stop_attempt()
        if self._reconnect_attempts < self._config.max_reconnect_attempts:
            if self._initial_attempt:
                delay = self._config.initial_reconnect_delay
            else:
                delay = self._config.reconnect_delay
            self._initial_attempt = False
            self._schedule_reconnect(delay)
        else:
            _LOG.debug("[%s] Last failure: %s", self.log_id, reason)
            self._give_up()

    def _schedule_reconnect(self, delay: float) -> None:
        self._reconnect_attempts += 1
        self._last_reconnect_at = datetime.now()
        self._port_index = (self._port_index + 1) % len(self._config.ports)
        _LOG.info(
            "[%s] Reconnecting in %.1fs on port %d (attempt %d/%d)",
            self.log_id,
            delay,
            self.port,
            self._reconnect_attempts,
            self._config.max_reconnect_attempts,
        )
        self._set_state(SessionState.RECONNECTING)
        self.timers.arm(
            TimerKind.RECONNECT,
            delay,
            lambda: self._dispatch(_TimerFired(None, TimerKind.RECONNECT)),
        )

    def _on_reconnect_due(self) -> None:
        if self._state != SessionState.RECONNECTING:
            return
        if not self._network_reachable or not is_valid_host(self.host):
            _LOG.warning("[%s] Cannot reconnect now", self.log_id)
            self._give_up()
            return
        self._start_attempt()

    def _give_up(self) -> None:
        _LOG.error(
            "[%s] Maximum reconnect attempts reached, connection failed", self.log_id
        )
        self.timers.cancel_all()
        self._teardown_channel()
        self._reconnect_attempts = 0
        self._port_index = 0
        self._initial_attempt = True
        self._set_state(SessionState.IDLE)
        self.events.emit(SessionEvents.CONNECTION_FAILED)
