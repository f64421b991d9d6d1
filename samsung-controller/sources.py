"""Input source discovery through the SmartThings cloud."""

import logging
import time
from typing import Any, Callable, Sequence

from const import INPUT_SOURCE_CAPABILITY, STANDARD_INPUT_SOURCES, InputSource
from smartthings import CloudError, CloudParseError, SmartThingsClient

_LOG = logging.getLogger(__name__)


def has_capability(device: dict[str, Any], capability: str) -> bool:
    """Return True if any component of the device detail lists capability."""
    components = device.get("components")
    if not isinstance(components, list):
        raise CloudParseError("device detail has no components array")
    for component in components:
        if not isinstance(component, dict):
            continue
        capabilities = component.get("capabilities")
        if not isinstance(capabilities, list):
            continue
        for entry in capabilities:
            if isinstance(entry, dict) and entry.get("id") == capability:
                return True
    return False


def _attribute_value(status: dict[str, Any], name: str) -> Any:
    attribute = status.get(name)
    if isinstance(attribute, dict):
        return attribute.get("value")
    return None


class InputSourceResolver:
    """Resolves the input sources of a TV, at most once per cool-down window."""

    def __init__(
        self, cooldown: float = 5.0, clock: Callable[[], float] = time.monotonic
    ) -> None:
        """Create instance."""
        self._cooldown = cooldown
        self._clock = clock
        self._last_request: float | None = None
        self._known_ids: dict[str, set[str]] = {}

    async def resolve(
        self,
        cloud: SmartThingsClient,
        device_id: str,
        current: Sequence[InputSource] = (),
    ) -> list[InputSource] | None:
        """
        Return the input sources of a device.

        Returns None when the request falls inside the cool-down window of the
        previous one. Otherwise never fails: cloud errors degrade to the
        fallback list, and a non-empty ``current`` list is never replaced by
        the fallback.
        """
        now = self._clock()
        if self._last_request is not None and now - self._last_request < self._cooldown:
            _LOG.info(
                "[%s] Rate limiting input source request (%.1fs since last)",
                device_id,
                now - self._last_request,
            )
            return None
        self._last_request = now

        try:
            sources = await self._query(cloud, device_id)
        except CloudError as err:
            _LOG.warning("[%s] Cannot resolve input sources: %s", device_id, err)
            sources = []

        if sources:
            _LOG.info(
                "[%s] Updated input sources: %s",
                device_id,
                ", ".join(f"{source.name} ({source.id})" for source in sources),
            )
            return sources
        return self._fallback(device_id, current)

    async def _query(
        self, cloud: SmartThingsClient, device_id: str
    ) -> list[InputSource]:
        _LOG.debug("[%s] Querying device capabilities", device_id)
        device = await cloud.get_device(device_id)
        if not has_capability(device, INPUT_SOURCE_CAPABILITY):
            _LOG.info("[%s] No %s capability", device_id, INPUT_SOURCE_CAPABILITY)
            return []

        _LOG.debug("[%s] Querying input source status", device_id)
        status = await cloud.get_capability_status(device_id, INPUT_SOURCE_CAPABILITY)

        mapped = _attribute_value(status, "supportedInputSourcesMap")
        if isinstance(mapped, list):
            sources: dict[str, InputSource] = {}
            known = self._known_ids.setdefault(device_id, set())
            for entry in mapped:
                if not isinstance(entry, dict) or not isinstance(entry.get("id"), str):
                    continue
                known.add(entry["id"])
                name = entry.get("name")
                if isinstance(name, str) and name:
                    sources[entry["id"]] = InputSource(entry["id"], name)
            return sorted(sources.values(), key=lambda source: (source.name, source.id))

        plain = _attribute_value(status, "supportedInputSources")
        if isinstance(plain, list):
            ids = {entry for entry in plain if isinstance(entry, str) and entry}
            self._known_ids.setdefault(device_id, set()).update(ids)
            return [InputSource(source_id, source_id) for source_id in sorted(ids)]

        _LOG.info("[%s] No supported input sources in status", device_id)
        return []

    def _fallback(
        self, device_id: str, current: Sequence[InputSource]
    ) -> list[InputSource]:
        if current:
            _LOG.info(
                "[%s] Keeping existing input sources: %s",
                device_id,
                ", ".join(f"{source.name} ({source.id})" for source in current),
            )
            return list(current)
        ids = set(STANDARD_INPUT_SOURCES) | self._known_ids.get(device_id, set())
        fallback = [InputSource(source_id, source_id) for source_id in sorted(ids)]
        _LOG.info(
            "[%s] Using fallback input sources: %s",
            device_id,
            ", ".join(source.id for source in fallback),
        )
        return fallback
