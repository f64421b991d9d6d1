"""Local realtime channel to the TV's remote-control websocket."""

import asyncio
import json
import logging
from typing import Any

import aiohttp
from const import CHANNEL_PATH, CLIENT_DEVICE_TYPE, CLIENT_VERSION
from samsungtvws.command import SamsungTVCommand
from samsungtvws.event import MS_CHANNEL_CONNECT_EVENT
from samsungtvws.helper import get_ssl_context, serialize_string
from samsungtvws.remote import ChannelEmitCommand, SendRemoteKey

_LOG = logging.getLogger(__name__)


class ChannelError(Exception):
    """Base error of the local channel."""


class ChannelTimeoutError(ChannelError):
    """An operation on the channel timed out."""


class ChannelClosedError(ChannelError):
    """The channel could not be opened or the connection was lost."""


def build_channel_url(
    host: str, port: int, secure: bool, client_name: str, token: str | None = None
) -> str:
    """Return the websocket URL of the remote-control channel."""
    scheme = "wss" if secure else "ws"
    url = f"{scheme}://{host}:{port}{CHANNEL_PATH}?name={serialize_string(client_name)}"
    if token:
        url += f"&token={token}"
    return url


def handshake_message(
    client_name: str, connection_id: str, token: str | None, device_id: str
) -> dict[str, Any]:
    """Return the channel connect handshake."""
    return SamsungTVCommand(
        MS_CHANNEL_CONNECT_EVENT,
        {
            "name": client_name,
            "deviceName": client_name,
            "deviceType": CLIENT_DEVICE_TYPE,
            "deviceOS": CLIENT_DEVICE_TYPE,
            "appId": client_name,
            "id": connection_id,
            "token": token or "",
            "type": "remote",
            "isHost": False,
            "version": CLIENT_VERSION,
            "deviceId": device_id,
        },
    ).as_dict()


def ping_message(token: str | None) -> dict[str, Any]:
    """Return the heartbeat ping."""
    return SamsungTVCommand("ms.remote.ping", {"token": token or ""}).as_dict()


def key_press_message(key: str) -> dict[str, Any]:
    """Return a single click of a remote key."""
    return SendRemoteKey.click(key).as_dict()


def app_list_message() -> dict[str, Any]:
    """Return the installed application query."""
    return ChannelEmitCommand.get_installed_app().as_dict()


class LocalChannel:
    """A single websocket connection to the TV."""

    def __init__(self, url: str, *, secure: bool, timeout: float = 10.0) -> None:
        """Create instance."""
        self._url = url
        self._secure = secure
        self._timeout = timeout
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    @property
    def url(self) -> str:
        """Return the channel URL."""
        return self._url

    @property
    def is_open(self) -> bool:
        """Return True while the websocket is usable."""
        return self._ws is not None and not self._ws.closed

    async def open(self) -> None:
        """Open the websocket."""
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(
                    self._url, ssl=get_ssl_context() if self._secure else False
                ),
                self._timeout,
            )
        except asyncio.TimeoutError as err:
            await self.close()
            raise ChannelTimeoutError(f"Timed out opening {self._url}") from err
        except (aiohttp.ClientError, OSError) as err:
            await self.close()
            raise ChannelClosedError(f"Cannot open {self._url}: {err}") from err

    async def send(self, message: dict[str, Any]) -> None:
        """Send one JSON message."""
        if not self.is_open:
            raise ChannelClosedError("Channel is not open")
        try:
            await asyncio.wait_for(self._ws.send_str(json.dumps(message)), self._timeout)
        except asyncio.TimeoutError as err:
            raise ChannelTimeoutError("Timed out sending message") from err
        except (ConnectionResetError, aiohttp.ClientConnectionError) as err:
            raise ChannelClosedError(f"Connection lost while sending: {err}") from err
        except (TypeError, ValueError) as err:
            raise ChannelError(f"Cannot encode message: {err}") from err

    async def receive(self) -> str:
        """Wait for the next text frame."""
        if not self.is_open:
            raise ChannelClosedError("Channel is not open")
        msg = await self._ws.receive()
        match msg.type:
            case aiohttp.WSMsgType.TEXT:
                return msg.data
            case aiohttp.WSMsgType.BINARY:
                return msg.data.decode("utf-8", errors="replace")
            case aiohttp.WSMsgType.ERROR:
                raise ChannelClosedError(f"Websocket error: {self._ws.exception()}")
            case _:
                raise ChannelClosedError(f"Websocket closed ({msg.type.name})")

    async def close(self) -> None:
        """Close the websocket and its HTTP session."""
        if self._ws is not None:
            try:
                await self._ws.close()
            except (aiohttp.ClientError, OSError) as err:
                _LOG.debug("Error closing websocket: %s", err)
            self._ws = None
        if self._session is not None:
            await self._session.close()
            self._session = None
