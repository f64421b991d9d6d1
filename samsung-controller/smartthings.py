"""
SmartThings cloud client.

Device list, capability status and commands go through :mod:`pysmartthings`.
The device detail is fetched as raw JSON because the typed model drops the
``ocf.networkInfo`` block that holds the TV's LAN address.
Every call is independent and raises a :class:`CloudError` subclass on failure.
"""

import asyncio
import json
import logging
import ssl
from typing import Any, Awaitable

import aiohttp
import certifi
from const import MAIN_COMPONENT, SMARTTHINGS_BASE_URL
from pysmartthings import (
    SmartThings,
    SmartThingsAuthenticationFailedError,
    SmartThingsCommandError,
    SmartThingsConnectionError,
    SmartThingsError,
)

_LOG = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30


class CloudError(Exception):
    """Base error of the cloud client."""


class CloudConnectionError(CloudError):
    """The cloud could not be reached or the request timed out."""


class CloudApiError(CloudError):
    """The cloud answered with a non-2xx status."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.message = message


class CloudAuthError(CloudApiError):
    """The cloud rejected the access token."""


class CloudParseError(CloudError):
    """The cloud answered with an unexpected payload shape."""


def _error_message(text: str, status: int) -> str:
    try:
        data = json.loads(text)
    except ValueError:
        return text or f"status {status}"
    if isinstance(data, dict):
        if isinstance(data.get("message"), str):
            return data["message"]
        error = data.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
    return text


class SmartThingsClient:
    """Client for the SmartThings REST API."""

    def __init__(
        self,
        token: str,
        *,
        base_url: str = SMARTTHINGS_BASE_URL,
        session: aiohttp.ClientSession | None = None,
        timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        """Create instance."""
        self._token = token
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = timeout
        self._api: SmartThings | None = None

    async def __aenter__(self) -> "SmartThingsClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def headers(self) -> dict[str, str]:
        """Return the request headers of raw calls."""
        return {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            # certifi bundle, the system store may lack the SmartThings root CA
            ssl_context = ssl.create_default_context(cafile=certifi.where())
            connector = aiohttp.TCPConnector(ssl=ssl_context)
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            )
            self._owns_session = True
            self._api = None
        return self._session

    def _get_api(self) -> SmartThings:
        session = self._get_session()
        if self._api is None:
            self._api = SmartThings(session=session, request_timeout=int(self._timeout))
            self._api.authenticate(self._token)
        return self._api

    async def close(self) -> None:
        """Close the underlying HTTP session if this client created it."""
        if self._session and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
        self._api = None

    async def _call(self, what: str, request: Awaitable[Any]) -> Any:
        try:
            return await request
        except SmartThingsAuthenticationFailedError as err:
            raise CloudAuthError(401, str(err)) from err
        except SmartThingsCommandError as err:
            raise CloudApiError(422, str(err)) from err
        except SmartThingsConnectionError as err:
            raise CloudConnectionError(f"{what} failed: {err}") from err
        except SmartThingsError as err:
            raise CloudApiError(0, str(err)) from err
        except (aiohttp.ClientError, asyncio.TimeoutError) as err:
            raise CloudConnectionError(f"{what} failed: {err}") from err
        except (LookupError, TypeError, ValueError) as err:
            # malformed payloads surface as model validation errors
            raise CloudParseError(f"{what}: unexpected payload: {err}") from err

    async def list_devices(self) -> list[dict[str, Any]]:
        """Return the devices of the account as plain items."""
        devices = await self._call("list devices", self._get_api().get_devices())
        _LOG.debug("Listed %d SmartThings devices", len(devices))
        return [
            {
                "deviceId": device.device_id,
                "name": device.name,
                "label": device.label,
                "type": str(device.type),
            }
            for device in devices
        ]

    async def get_device(self, device_id: str) -> dict[str, Any]:
        """Return the raw device detail."""
        path = f"/devices/{device_id}"
        session = self._get_session()
        try:
            async with session.request(
                "GET", f"{self._base_url}{path}", headers=self.headers
            ) as response:
                text = await response.text()
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as err:
            raise CloudConnectionError(f"GET {path} failed: {err}") from err

        _LOG.debug("GET %s -> %d", path, status)
        if status == 401:
            raise CloudAuthError(status, _error_message(text, status))
        if not 200 <= status < 300:
            raise CloudApiError(status, _error_message(text, status))
        try:
            data = json.loads(text)
        except ValueError as err:
            raise CloudParseError(f"GET {path}: invalid JSON") from err
        if not isinstance(data, dict):
            raise CloudParseError(f"GET {path}: expected a JSON object")
        return data

    async def get_capability_status(
        self, device_id: str, capability: str, component: str = MAIN_COMPONENT
    ) -> dict[str, Any]:
        """Return the status attributes of one capability."""
        components = await self._call(
            "device status", self._get_api().get_device_status(device_id)
        )
        attributes = components.get(component, {}).get(capability, {})
        return {
            str(attribute): {"value": status.value}
            for attribute, status in attributes.items()
        }

    async def execute_command(
        self,
        device_id: str,
        capability: str,
        command: str,
        arguments: list[Any] | None = None,
        component: str = MAIN_COMPONENT,
    ) -> None:
        """Post a single command to a device."""
        await self._call(
            f"{capability}.{command}",
            self._get_api().execute_device_command(
                device_id, capability, command, component, arguments or None
            ),
        )
