"""Process-wide network reachability monitor."""

import asyncio
import contextlib
import logging
import socket
from typing import Awaitable, Callable

_LOG = logging.getLogger(__name__)

PROBE_ADDRESS = ("8.8.8.8", 53)


def has_route(address: tuple[str, int] = PROBE_ADDRESS) -> bool:
    """
    Return True if the host has a route towards address.

    Connecting a UDP socket sends no packet, it only asks the kernel for a
    route and a local interface.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(address)
            return sock.getsockname()[0] not in ("0.0.0.0", "")
    except OSError:
        return False


class ReachabilityMonitor:
    """Polls reachability and reports changes."""

    def __init__(
        self,
        callback: Callable[[bool], None],
        interval: float = 5.0,
        probe: Callable[[], bool | Awaitable[bool]] = has_route,
    ) -> None:
        """Create instance."""
        self._callback = callback
        self._interval = interval
        self._probe = probe
        self._reachable: bool | None = None
        self._task: asyncio.Task | None = None

    @property
    def reachable(self) -> bool | None:
        """Return the last probe result, None before the first probe."""
        return self._reachable

    async def check(self) -> bool:
        """Probe once and report a change."""
        result = self._probe()
        if asyncio.iscoroutine(result):
            result = await result
        reachable = bool(result)
        if reachable != self._reachable:
            _LOG.info("Network is %s", "reachable" if reachable else "not reachable")
            self._reachable = reachable
            self._callback(reachable)
        return reachable

    async def _poll_loop(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        """Start polling in the background."""
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._poll_loop())

    async def stop(self) -> None:
        """Stop polling."""
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
