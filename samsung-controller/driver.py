"""
This module starts the Samsung TV controller as a headless service.

:license: Mozilla Public License Version 2.0, see LICENSE for more details.
"""

import asyncio
import logging
import os

from const import CredentialKeys
from controller import TvController
from credentials import CREDENTIALS_FILE, JsonCredentialStore
from network import ReachabilityMonitor
from tv import is_valid_host

_LOG = logging.getLogger("driver")


async def main():
    """Start the Samsung TV controller."""
    logging.basicConfig()

    level = os.getenv("TV_REMOTE_LOG_LEVEL", "DEBUG").upper()
    logging.getLogger("tv").setLevel(level)
    logging.getLogger("driver").setLevel(level)
    logging.getLogger("channel").setLevel(level)
    logging.getLogger("controller").setLevel(level)
    logging.getLogger("credentials").setLevel(level)
    logging.getLogger("discover").setLevel(level)
    logging.getLogger("network").setLevel(level)
    logging.getLogger("remote").setLevel(level)
    logging.getLogger("smartthings").setLevel(level)
    logging.getLogger("sources").setLevel(level)

    config_home = os.getenv("TV_REMOTE_CONFIG_HOME", ".")
    store = JsonCredentialStore(os.path.join(config_home, CREDENTIALS_FILE))
    _LOG.debug("Using credentials file %s", store.path)
    controller = TvController(store)

    # start() schedules the first discovery; set_endpoint() would start another
    host = os.getenv("TV_REMOTE_HOST")
    if host and is_valid_host(host):
        store.set(CredentialKeys.ENDPOINT, host)
    elif host:
        _LOG.warning("Ignoring invalid TV_REMOTE_HOST %r", host)
    token = os.getenv("TV_REMOTE_CLOUD_TOKEN")
    if token and token != controller.cloud_token:
        store.set(CredentialKeys.CLOUD_TOKEN, token)

    await controller.start()
    if controller.session.host and not controller.cloud_token:
        controller.connect()

    monitor = ReachabilityMonitor(controller.set_network_reachable)
    monitor.start()

    try:
        await asyncio.Future()
    finally:
        await monitor.stop()
        await controller.close()


if __name__ == "__main__":
    asyncio.run(main())
