"""
Remote key routing.

Local navigation and volume keys travel over the TV's local channel, every
other key is translated into a SmartThings command.

:license: Mozilla Public License Version 2.0, see LICENSE for more details.
"""

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Callable

from const import (
    CLOUD_KEY_MAPPING,
    INPUT_SOURCE_CAPABILITY,
    LOCAL_KEYS,
    REMOTE_CONTROL_CAPABILITY,
)
from smartthings import CloudError, SmartThingsClient
from tv import RetryPolicy, TvSession

_LOG = logging.getLogger(__name__)


class Route(StrEnum):
    """Transport a key is sent through."""

    LOCAL = "local"
    CLOUD = "cloud"


@dataclass(frozen=True)
class CloudCommand:
    """A SmartThings command."""

    capability: str
    command: str
    arguments: list[Any] = field(default_factory=list)


def classify(key: str) -> Route:
    """Return the transport of a key."""
    return Route.LOCAL if key in LOCAL_KEYS else Route.CLOUD


def map_cloud_command(key: str) -> CloudCommand:
    """Translate a remote key into a SmartThings command."""
    if key in CLOUD_KEY_MAPPING:
        capability, command, arguments = CLOUD_KEY_MAPPING[key]
        return CloudCommand(capability, command, list(arguments))
    return CloudCommand(REMOTE_CONTROL_CAPABILITY, "send", [key.removeprefix("KEY_")])


class CommandRouter:
    """Dispatches remote keys to the local channel or the cloud."""

    def __init__(
        self,
        session: TvSession,
        cloud: Callable[[], SmartThingsClient | None],
        policy: RetryPolicy | None = None,
    ) -> None:
        """
        Create instance.

        :param session: local channel session
        :param cloud: returns a cloud client, or None without a token
        :param policy: retry policy of local key presses
        """
        self._session = session
        self._cloud = cloud
        self._policy = policy

    async def send(self, key: str) -> bool:
        """Send a key through the transport it belongs to."""
        if not key:
            _LOG.warning("Ignoring empty key")
            return False
        match classify(key):
            case Route.LOCAL:
                return await self._session.send_key(key, self._policy)
            case Route.CLOUD:
                return await self._send_cloud(key)

    async def _send_cloud(self, key: str) -> bool:
        command = map_cloud_command(key)
        _LOG.info(
            "Sending %s via SmartThings: %s.%s %s",
            key,
            command.capability,
            command.command,
            command.arguments,
        )
        return await self._execute(command)

    async def select_source(self, source_id: str) -> bool:
        """Switch the TV to an input source."""
        if not source_id:
            _LOG.warning("No input source given")
            return False
        _LOG.info("Selecting input source %s", source_id)
        return await self._execute(
            CloudCommand(INPUT_SOURCE_CAPABILITY, "setInputSource", [source_id])
        )

    async def _execute(self, command: CloudCommand) -> bool:
        device_id = self._session.device_id
        if not device_id:
            _LOG.error("No SmartThings device ID available")
            return False
        client = self._cloud()
        if client is None:
            _LOG.error("No SmartThings token available")
            return False
        try:
            async with client as cloud:
                await cloud.execute_command(
                    device_id, command.capability, command.command, command.arguments
                )
        except CloudError as err:
            _LOG.error(
                "[%s] Failed to send %s.%s: %s",
                device_id,
                command.capability,
                command.command,
                err,
            )
            return False
        _LOG.info("[%s] Sent %s.%s", device_id, command.capability, command.command)
        return True
