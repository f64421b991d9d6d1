"""Discover Samsung TVs through the SmartThings cloud device list."""

import logging
from typing import Any, Callable, Sequence

from const import (
    DISPLAY_DEVICE_TYPE,
    DISPLAY_NAME_MARKERS,
    Device,
    endpoint_key,
)
from credentials import CredentialStore
from smartthings import CloudError, SmartThingsClient

_LOG = logging.getLogger(__name__)

ClientFactory = Callable[[str], SmartThingsClient]


def is_display_device(item: dict[str, Any]) -> bool:
    """Return True if a cloud device item looks like a TV or monitor."""
    device_type = item.get("type")
    label = item.get("label")
    if not isinstance(device_type, str) or not isinstance(label, str):
        return False
    return device_type == DISPLAY_DEVICE_TYPE and any(
        marker in label for marker in DISPLAY_NAME_MARKERS
    )


class DeviceDirectory:
    """Lists the display devices of a SmartThings account."""

    def __init__(
        self,
        store: CredentialStore,
        client_factory: ClientFactory = SmartThingsClient,
    ) -> None:
        """Create instance."""
        self._store = store
        self._client_factory = client_factory

    def cached_address(self, device_id: str) -> str | None:
        """Return the cached IP address of a device."""
        return self._store.get(endpoint_key(device_id))

    async def refresh(self, cloud_token: str) -> list[Device] | None:
        """
        Query the cloud for display devices.

        :param cloud_token: SmartThings access token
        :return: the devices, or None if the query failed
        """
        if not cloud_token:
            _LOG.warning("No SmartThings token available")
            return None

        _LOG.info("Searching for devices in SmartThings")
        try:
            async with self._client_factory(cloud_token) as cloud:
                items = await cloud.list_devices()
        except CloudError as err:
            _LOG.error("Failed to find devices: %s", err)
            return None

        devices: list[Device] = []
        for item in items:
            device_id = item.get("deviceId")
            if not isinstance(device_id, str) or not device_id:
                continue
            if not is_display_device(item):
                continue
            devices.append(
                Device(
                    id=device_id,
                    name=item["label"],
                    address=self.cached_address(device_id),
                )
            )
        _LOG.info("Found %d display device(s)", len(devices))
        for device in devices:
            _LOG.debug(
                "  - %s (%s) cached address: %s",
                device.name,
                device.id,
                device.address or "none",
            )
        return devices

    async def resolve_address(self, cloud_token: str, device_id: str) -> str | None:
        """
        Return the network address of a device.

        The cloud detail is asked first and a reported address is cached;
        otherwise the cached address is used.
        """
        if cloud_token:
            try:
                async with self._client_factory(cloud_token) as cloud:
                    detail = await cloud.get_device(device_id)
            except CloudError as err:
                _LOG.warning("[%s] Failed to get device detail: %s", device_id, err)
            else:
                ip_address = _network_address(detail)
                if ip_address:
                    _LOG.info("[%s] Found IP from network info: %s", device_id, ip_address)
                    self._store.set(endpoint_key(device_id), ip_address)
                    return ip_address

        cached = self.cached_address(device_id)
        if cached:
            _LOG.info("[%s] Using saved IP: %s", device_id, cached)
            return cached
        _LOG.warning(
            "[%s] No IP address found. Please enter the IP address manually", device_id
        )
        return None

    @staticmethod
    def pick(
        devices: Sequence[Device], last_device_id: str | None
    ) -> tuple[str, bool]:
        """
        Choose the device to select after a refresh.

        :return: selected device id and whether to connect to it right away
        """
        if last_device_id and any(device.id == last_device_id for device in devices):
            return last_device_id, True
        if devices:
            return devices[0].id, False
        return "", False


def _network_address(detail: dict[str, Any]) -> str | None:
    ocf = detail.get("ocf")
    if not isinstance(ocf, dict):
        return None
    network_info = ocf.get("networkInfo")
    if not isinstance(network_info, dict):
        return None
    ip_address = network_info.get("ip")
    return ip_address if isinstance(ip_address, str) and ip_address else None
