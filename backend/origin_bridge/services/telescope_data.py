"""Extraction of mount and environment fields from Origin status packets."""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

MOUNT_FIELDS = ("IsTracking", "IsGotoOver", "IsAligned", "Enc0", "Enc1")


@dataclass
class MountData:
    is_tracking: bool = False
    is_goto_over: bool = True
    is_aligned: bool = False
    enc0: float = 0.0  # radians
    enc1: float = 0.0  # radians
    battery_level: Optional[str] = None


@dataclass
class EnvironmentData:
    ambient_temperature: float = 20.0  # Celsius
    camera_temperature: Optional[float] = None
    humidity: Optional[float] = None
    dew_point: Optional[float] = None


@dataclass
class TelescopeData:
    mount: MountData = field(default_factory=MountData)
    environment: EnvironmentData = field(default_factory=EnvironmentData)


class TelescopeDataProcessor:
    """Accumulates the latest mount/environment readings.

    ``process_json_packet`` returns True only when the packet carried status
    fields, so callers know when a status refresh is worthwhile.
    """

    def __init__(self):
        self.data = TelescopeData()

    def process_json_packet(self, packet: Union[bytes, str, Dict[str, Any]]) -> bool:
        if isinstance(packet, dict):
            obj = packet
        else:
            try:
                obj = json.loads(packet)
            except (json.JSONDecodeError, UnicodeDecodeError, TypeError):
                return False
            if not isinstance(obj, dict):
                return False

        if obj.get("Type") not in ("Response", "Notification"):
            return False

        source = obj.get("Source")
        if source == "Mount":
            return self._process_mount(obj)
        if source == "Environment":
            return self._process_environment(obj)
        return False

    def _process_mount(self, obj: Dict[str, Any]) -> bool:
        if not any(key in obj for key in MOUNT_FIELDS):
            return False

        mount = self.data.mount
        mount.is_tracking = bool(obj.get("IsTracking", mount.is_tracking))
        mount.is_goto_over = bool(obj.get("IsGotoOver", mount.is_goto_over))
        mount.is_aligned = bool(obj.get("IsAligned", mount.is_aligned))
        mount.enc0 = _as_float(obj.get("Enc0"), mount.enc0)
        mount.enc1 = _as_float(obj.get("Enc1"), mount.enc1)
        if "BatteryLevel" in obj:
            mount.battery_level = str(obj["BatteryLevel"])
        return True

    def _process_environment(self, obj: Dict[str, Any]) -> bool:
        if "AmbientTemperature" not in obj:
            return False

        env = self.data.environment
        env.ambient_temperature = _as_float(obj.get("AmbientTemperature"), env.ambient_temperature)
        env.camera_temperature = _as_float(obj.get("CameraTemperature"), env.camera_temperature)
        env.humidity = _as_float(obj.get("Humidity"), env.humidity)
        env.dew_point = _as_float(obj.get("DewPoint"), env.dew_point)
        return True


def _as_float(value: Any, default):
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.debug(f"Ignoring non-numeric status value: {value!r}")
        return default
