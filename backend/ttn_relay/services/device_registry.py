"""
Device Registry
===============

Maps each configured TTN device identity to the kind of unit it is.

WHY THIS EXISTS:
---------------
The dashboard shows a "buoy" section and a "weather station" section. Which
device goes where is decided here, from configuration, and nowhere else.
Nothing looks at device name substrings or at which fields a payload carries.

WHERE THE MAPPING COMES FROM:
----------------------------
    TTN_DEVICE_BUOY_ID=reef-buoy-1        -> buoy
    TTN_DEVICE_WS_ID=station-1            -> weather
    TTN_DEVICE_ID=my-device               -> generic
    TTN_DEVICE_KINDS=buoy-2=buoy,ws-2=weather

Anything else that shows up on the broker is UNKNOWN.
"""

import logging
import re
from typing import Optional

from ttn_relay.models import DeviceKind

logger = logging.getLogger(__name__)

# TTN device ids: lowercase letters, digits and dashes
DEVICE_ID_PATTERN = re.compile(r"^[a-z0-9](?:[-]?[a-z0-9]){1,35}$")


def validate_device_id(device_id: str) -> bool:
    """
    Check that a string looks like a TTN end device id.

    Args:
        device_id: Device ID string

    Returns:
        True if valid, False otherwise
    """
    if not device_id:
        return False
    return bool(DEVICE_ID_PATTERN.match(device_id))


def parse_device_kinds(value: str) -> dict[str, DeviceKind]:
    """
    Parse an explicit ``id=kind,id=kind`` mapping.

    Bad entries are logged and skipped.
    """
    mapping: dict[str, DeviceKind] = {}
    for entry in (value or "").split(","):
        entry = entry.strip()
        if not entry:
            continue
        device_id, sep, kind_name = entry.partition("=")
        device_id = device_id.strip()
        kind_name = kind_name.strip().lower()
        if not sep or not device_id:
            logger.warning(f"[Registry] Ignoring malformed device mapping '{entry}'")
            continue
        try:
            kind = DeviceKind(kind_name)
        except ValueError:
            logger.warning(f"[Registry] Unknown device kind '{kind_name}' for {device_id}, ignoring")
            continue
        if kind == DeviceKind.UNKNOWN:
            logger.warning(f"[Registry] Device {device_id} cannot be mapped to 'unknown', ignoring")
            continue
        mapping[device_id] = kind
    return mapping


class DeviceRegistry:
    """
    The explicit identity -> kind mapping.

    HOW TO USE:
    ----------
    registry = DeviceRegistry(buoy_device_id="reef-buoy-1", weather_device_id="station-1")

    registry.kind_of("reef-buoy-1")   # DeviceKind.BUOY
    registry.kind_of("somebody-else") # DeviceKind.UNKNOWN
    registry.device_ids               # ["reef-buoy-1", "station-1"]
    """

    def __init__(
        self,
        buoy_device_id: str = "",
        weather_device_id: str = "",
        generic_device_id: str = "",
        extra_kinds: Optional[dict[str, DeviceKind]] = None,
    ):
        self.buoy_device_id = buoy_device_id or None
        self.weather_device_id = weather_device_id or None
        self.generic_device_id = generic_device_id or None

        # Insertion order is the order devices are queried and listed in
        self._kinds: dict[str, DeviceKind] = {}
        for device_id, kind in (
            (self.buoy_device_id, DeviceKind.BUOY),
            (self.weather_device_id, DeviceKind.WEATHER),
            (self.generic_device_id, DeviceKind.GENERIC),
        ):
            if device_id:
                self._add(device_id, kind)
        for device_id, kind in (extra_kinds or {}).items():
            self._add(device_id, kind)

    def _add(self, device_id: str, kind: DeviceKind):
        if not validate_device_id(device_id):
            logger.warning(f"[Registry] '{device_id}' does not look like a TTN device id")
        if device_id in self._kinds:
            if self._kinds[device_id] != kind:
                logger.warning(
                    f"[Registry] {device_id} already configured as {self._kinds[device_id].value}, "
                    f"ignoring {kind.value}"
                )
            return
        self._kinds[device_id] = kind

    def kind_of(self, device_id: Optional[str]) -> DeviceKind:
        """Configured kind of a device, or UNKNOWN."""
        if not device_id:
            return DeviceKind.UNKNOWN
        return self._kinds.get(device_id, DeviceKind.UNKNOWN)

    @property
    def device_ids(self) -> list[str]:
        """All configured device identities, in configuration order."""
        return list(self._kinds)

    @property
    def primary_device_id(self) -> Optional[str]:
        """The device a single-message lookup is for."""
        if self.generic_device_id:
            return self.generic_device_id
        return next(iter(self._kinds), None)

    @property
    def topic_filter(self) -> str:
        """
        Device segment of the uplink topic.

        Only a lone generic device gets its own topic. Everything else listens
        to the whole application.
        """
        if self.generic_device_id and self.device_ids == [self.generic_device_id]:
            return self.generic_device_id
        return "+"

    def describe(self) -> dict[str, str]:
        """Device id -> kind name, for logs and the health endpoint."""
        return {device_id: kind.value for device_id, kind in self._kinds.items()}

    def __len__(self) -> int:
        return len(self._kinds)
