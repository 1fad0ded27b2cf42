"""
Mount adapter for the Celestron Origin.

Exposes the generic mount/camera surface used by the API layer and forwards
every call to an owned OriginClient.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from origin_bridge.clients.origin_client import (
    CameraState,
    EventType,
    OriginClient,
    OriginEvent,
    TelescopeStatus,
)

CoordinatesCallback = Callable[[float, float], None]
SnapshotCallback = Callable[[bytes, float, float, float], None]


class OriginMount:
    """Generic mount interface backed by an OriginClient."""

    def __init__(self, client: Optional[OriginClient] = None, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self.client = client or OriginClient()

        self._coordinates_callbacks: List[CoordinatesCallback] = []
        self._snapshot_callbacks: List[SnapshotCallback] = []

        self.client.subscribe_event(EventType.STATUS_UPDATED, self._on_status_updated)
        self.client.subscribe_event(EventType.SNAPSHOT_DOWNLOADED, self._on_snapshot_downloaded)

    # Callbacks

    def on_coordinates_updated(self, callback: CoordinatesCallback) -> None:
        """Call ``callback(ra_hours, dec_degrees)`` after every status refresh."""
        self._coordinates_callbacks.append(callback)

    def on_snapshot_ready(self, callback: SnapshotCallback) -> None:
        """Call ``callback(data, ra, dec, exposure)`` when a snapshot is downloaded."""
        self._snapshot_callbacks.append(callback)

    def _on_status_updated(self, event: OriginEvent) -> None:
        for callback in list(self._coordinates_callbacks):
            try:
                callback(event.data["ra"], event.data["dec"])
            except Exception as e:
                self.logger.error(f"Error in coordinates callback: {e}")

    def _on_snapshot_downloaded(self, event: OriginEvent) -> None:
        for callback in list(self._snapshot_callbacks):
            try:
                callback(event.data["data"], event.data["ra"], event.data["dec"], event.data["exposure"])
            except Exception as e:
                self.logger.error(f"Error in snapshot callback: {e}")

    # Connection

    async def connect(self, host: str, port: int = OriginClient.DEFAULT_PORT) -> bool:
        if not await self.client.connect(host, port):
            return False
        self.client.set_connected(True)
        return self.client.is_logically_connected

    async def disconnect(self) -> None:
        await self.client.disconnect()

    async def close(self) -> None:
        await self.client.close()

    def is_connected(self) -> bool:
        return self.client.is_logically_connected

    def connect_camera(self, connected: bool = True) -> None:
        self.client.set_camera_connected(connected)

    def is_camera_connected(self) -> bool:
        return self.client.is_camera_logically_connected

    # Mount

    async def slew(self, ra_hours: float, dec_degrees: float) -> bool:
        return await self.client.goto_position(ra_hours, dec_degrees)

    async def sync(self, ra_hours: float, dec_degrees: float) -> bool:
        return await self.client.sync_position(ra_hours, dec_degrees)

    async def abort(self) -> bool:
        return await self.client.abort_motion()

    async def park(self) -> bool:
        return await self.client.park_mount()

    async def unpark(self) -> bool:
        return await self.client.unpark_mount()

    async def track(self, enabled: bool) -> bool:
        return await self.client.set_tracking(enabled)

    async def initialize(self, latitude: float = 52.2, longitude: float = 0.0) -> bool:
        return await self.client.initialize_telescope(latitude, longitude)

    def status(self) -> TelescopeStatus:
        return self.client.status

    def connected_host(self) -> Optional[str]:
        return self.client.connected_host

    def get_ra(self) -> float:
        return self.client.status.ra_position

    def get_dec(self) -> float:
        return self.client.status.dec_position

    def is_slewing(self) -> bool:
        return self.client.status.is_slewing

    def is_tracking(self) -> bool:
        return self.client.is_tracking

    # Camera

    async def take_snapshot(self, exposure: float, iso: int) -> bool:
        return await self.client.take_snapshot(exposure, iso)

    def last_image(self) -> Optional[np.ndarray]:
        return self.client.last_image

    async def start_exposure(self, duration: float, gain: int = 200) -> bool:
        return await self.client.start_exposure(duration, gain)

    async def abort_exposure(self) -> bool:
        return await self.client.abort_exposure()

    async def set_gain(self, gain: int) -> bool:
        return await self.client.set_gain(gain)

    def reset_camera(self) -> bool:
        return self.client.reset_camera()

    def camera_state(self) -> CameraState:
        return self.client.camera_state

    def last_image_data(self) -> bytes:
        """Bytes of the last exposure-driven download."""
        return self.client.last_image_data

    def last_image_format(self) -> Optional[str]:
        return self.client.last_image_format

    def camera_status(self) -> Dict[str, Any]:
        client = self.client
        return {
            "state": client.camera_state.name.lower(),
            "connected": client.is_camera_logically_connected,
            "is_exposing": client.is_exposing,
            "image_ready": client.is_image_ready,
            "last_exposure_duration": client.last_exposure_duration,
            "last_exposure_start_time": client.last_exposure_start_time,
            "gain": client.current_gain,
            "image_format": client.last_image_format,
            "snapshot_in_progress": client.snapshot_in_progress,
        }
