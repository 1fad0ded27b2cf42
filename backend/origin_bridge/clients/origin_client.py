"""Celestron Origin WebSocket client for direct telescope control.

This module provides the session engine for the Origin smart telescope. The
mount is driven over a JSON WebSocket (the control channel); images are
announced there with ``NewImageReady`` notifications and then fetched over
HTTP (the image channel).

Three streams arrive independently: replies to our commands, unsolicited
notifications and finished image downloads. All of them are handled on one
asyncio loop, so telescope and camera state are only ever touched by one
handler at a time.

Example usage:
    client = OriginClient()
    if await client.connect("192.168.1.50"):
        client.set_connected(True)
        await client.goto_position(5.59, -5.39)
        await client.start_exposure(2.0, 400)
        ...
        await client.close()
"""

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import cv2
import numpy as np

from origin_bridge.clients.control_channel import ControlChannel
from origin_bridge.clients.image_fetcher import ImageFetcher
from origin_bridge.clients.origin_protocol import (
    FIRST_SEQUENCE_ID,
    ChannelError,
    Destination,
    ImageDownloadError,
    OriginClientError,
    OriginMessage,
    build_command,
    classify_image_notification,
    control_url,
    degrees_to_radians,
    hours_to_radians,
    image_format_for_path,
    radians_to_degrees,
    radians_to_hours,
)
from origin_bridge.core.config import Settings, get_settings
from origin_bridge.services.image_archive import ImageArchive
from origin_bridge.services.session_log import SessionLog
from origin_bridge.services.telescope_data import TelescopeDataProcessor

__all__ = [
    "CameraState",
    "ChannelError",
    "EventType",
    "ImageDownload",
    "ImageDownloadError",
    "OriginClient",
    "OriginClientError",
    "OriginEvent",
    "PendingCommand",
    "TelescopeStatus",
]

# Queried one per tick, in this order
STATUS_ROTATION: Tuple[Tuple[str, Destination], ...] = (
    ("GetStatus", Destination.MOUNT),
    ("GetStatus", Destination.ENVIRONMENT),
    ("GetCaptureParameters", Destination.CAMERA),
)

CAMERA_MODE_COMMANDS = ("GetEnableManual", "SetEnableManual", "SetEnableAuto")

# 0 = North, 1 = South, 2 = East, 3 = West
MOVE_DIRECTIONS: Dict[int, Tuple[str, str]] = {
    0: ("Dec", "Positive"),
    1: ("Dec", "Negative"),
    2: ("Ra", "Positive"),
    3: ("Ra", "Negative"),
}


class CameraState(IntEnum):
    """Exposure state machine states."""

    IDLE = 0
    EXPOSING = 1
    READING = 2
    ERROR = 3


@dataclass
class TelescopeStatus:
    """Current mount status."""

    alt_position: float = 0.0  # degrees
    az_position: float = 0.0  # degrees
    ra_position: float = 0.0  # hours
    dec_position: float = 0.0  # degrees
    is_connected: bool = False
    is_logically_connected: bool = False
    is_camera_logically_connected: bool = False
    is_slewing: bool = False
    is_tracking: bool = False
    is_parked: bool = False
    is_aligned: bool = False
    current_operation: str = "Idle"
    temperature: float = 20.0
    last_update: Optional[datetime] = None


class EventType(Enum):
    """Events raised to observers."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    STATUS_UPDATED = "status_updated"
    EXPOSURE_STARTED = "exposure_started"
    EXPOSURE_COMPLETE = "exposure_complete"
    IMAGE_READY = "image_ready"
    CAMERA_STATE_CHANGED = "camera_state_changed"
    CAMERA_MODE_CHANGED = "camera_mode_changed"
    CAPTURE_PARAMETERS_CHANGED = "capture_parameters_changed"
    CAMERA_INFO_RECEIVED = "camera_info_received"
    SNAPSHOT_REQUESTED = "snapshot_requested"
    SNAPSHOT_DOWNLOADED = "snapshot_downloaded"
    LIVE_IMAGE_DOWNLOADED = "live_image_downloaded"
    COMMAND_ERROR = "command_error"


@dataclass
class OriginEvent:
    """Event delivered to subscribers."""

    event_type: EventType
    timestamp: datetime
    data: Dict[str, Any]


@dataclass
class PendingCommand:
    """A sent command still waiting for its response."""

    sequence_id: int
    command: str
    destination: str
    sent_at: float


@dataclass(frozen=True)
class ImageDownload:
    """Context travelling with one in-flight image download."""

    remote_path: str
    is_snapshot: bool
    ra: float  # radians
    dec: float  # radians
    exposure: float  # seconds
    exposure_driven: bool = False


def _as_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def decode_image(data: bytes) -> Optional[np.ndarray]:
    """Decode JPEG/PNG bytes with OpenCV; None if the data is not an image."""
    if not data:
        return None
    try:
        return cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
    except cv2.error:
        return None


class OriginClient:
    """Session engine for one Celestron Origin telescope.

    Public operations never raise: they return False when the telescope is
    not connected or the command could not be written. Results arrive
    asynchronously and are published through ``subscribe_event``.
    """

    DEFAULT_PORT = 80

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        settings: Optional[Settings] = None,
        channel: Optional[ControlChannel] = None,
        fetcher: Optional[ImageFetcher] = None,
        data_processor: Optional[TelescopeDataProcessor] = None,
        session_log: Optional[SessionLog] = None,
        image_archive: Optional[ImageArchive] = None,
    ):
        """Initialize Origin client.

        Args:
            logger: Optional logger instance. If None, uses the module logger.
            settings: Optional settings. If None, uses ``get_settings()``.
            channel: Control channel transport (replaceable for tests)
            fetcher: Image channel transport (replaceable for tests)
            data_processor: Status packet parser
            session_log: Wire-level log
            image_archive: Downloaded image store
        """
        self.logger = logger or logging.getLogger(__name__)
        settings = settings or get_settings()

        self.connection_timeout = settings.connection_timeout
        self.status_interval = settings.status_interval
        self.ping_interval = settings.ping_interval
        self.pending_command_ttl = settings.pending_command_ttl

        # Transports and collaborators
        self._channel = channel or ControlChannel()
        self._channel.on_pong = self._on_pong
        self._fetcher = fetcher or ImageFetcher()
        self._data_processor = data_processor or TelescopeDataProcessor()
        self._session_log = session_log or SessionLog(settings.log_dir, enabled=settings.session_log_enabled)
        self._image_archive = image_archive or ImageArchive(settings.image_dir, enabled=settings.save_images)

        # Connection state
        self._host: Optional[str] = None
        self._port = self.DEFAULT_PORT
        self._status = TelescopeStatus()

        # Command tracking
        self._next_sequence_id = FIRST_SEQUENCE_ID
        self._pending_commands: Dict[int, PendingCommand] = {}

        # Background tasks
        self._receive_task: Optional[asyncio.Task] = None
        self._status_task: Optional[asyncio.Task] = None
        self._ping_task: Optional[asyncio.Task] = None
        self._download_tasks: Set[asyncio.Task] = set()
        self._status_rotation = 0

        # Camera
        self._camera_state = CameraState.IDLE
        self._camera_manual_mode = False
        self._current_exposure = 0.1
        self._current_iso = 200
        self._current_gain = 200
        self._camera_id: Optional[str] = None
        self._camera_model: Optional[str] = None
        self._last_exposure_duration = 0.0
        self._last_exposure_start_time: Optional[str] = None
        self._last_image_data = b""
        self._last_image_format: Optional[str] = None
        self._last_image_path: Optional[str] = None
        self._last_image: Optional[np.ndarray] = None
        self._image_ready = False
        self._snapshot_in_progress = False
        # Snapshot flag as it was before the running exposure set it
        self._snapshot_flag_before_exposure = False

        # Observers
        self._event_callbacks: Dict[EventType, List[Callable[[OriginEvent], None]]] = {
            event_type: [] for event_type in EventType
        }
        self._all_events_callbacks: List[Callable[[OriginEvent], None]] = []

    # ========================================================================
    # Properties
    # ========================================================================

    @property
    def is_connected(self) -> bool:
        """Physical link state as reported by the transport."""
        return self._channel.connected

    @property
    def is_logically_connected(self) -> bool:
        return self.is_connected and self._status.is_logically_connected

    @property
    def is_camera_logically_connected(self) -> bool:
        return self.is_connected and self._status.is_camera_logically_connected

    @property
    def status(self) -> TelescopeStatus:
        """Snapshot copy of the telescope status."""
        return replace(self._status)

    @property
    def connected_host(self) -> Optional[str]:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def temperature(self) -> float:
        return self._status.temperature

    @property
    def is_tracking(self) -> bool:
        return self._status.is_tracking

    @property
    def camera_state(self) -> CameraState:
        return self._camera_state

    @property
    def is_exposing(self) -> bool:
        return self._camera_state == CameraState.EXPOSING

    @property
    def is_image_ready(self) -> bool:
        return self._image_ready

    @property
    def last_image(self) -> Optional[np.ndarray]:
        return self._last_image

    @property
    def last_image_data(self) -> bytes:
        return self._last_image_data

    @property
    def last_image_format(self) -> Optional[str]:
        return self._last_image_format

    @property
    def last_image_path(self) -> Optional[str]:
        return self._last_image_path

    @property
    def last_exposure_duration(self) -> float:
        return self._last_exposure_duration

    @property
    def last_exposure_start_time(self) -> Optional[str]:
        return self._last_exposure_start_time

    @property
    def current_gain(self) -> int:
        return self._current_gain

    @property
    def current_exposure(self) -> float:
        return self._current_exposure

    @property
    def current_iso(self) -> int:
        return self._current_iso

    @property
    def camera_manual_mode(self) -> bool:
        return self._camera_manual_mode

    @property
    def snapshot_in_progress(self) -> bool:
        return self._snapshot_in_progress

    @property
    def next_sequence_id(self) -> int:
        return self._next_sequence_id

    @property
    def pending_commands(self) -> Dict[int, PendingCommand]:
        return dict(self._pending_commands)

    @property
    def status_rotation_index(self) -> int:
        return self._status_rotation % len(STATUS_ROTATION)

    @property
    def status_rotation_active(self) -> bool:
        return self._status_task is not None and not self._status_task.done()

    @property
    def keepalive_active(self) -> bool:
        return self._ping_task is not None and not self._ping_task.done()

    # ========================================================================
    # Observers
    # ========================================================================

    def subscribe_event(self, event_type: EventType, callback: Callable[[OriginEvent], None]) -> None:
        """Register callback for specific event type.

        Args:
            event_type: Type of event to listen for
            callback: Function to call when event occurs
        """
        if callback not in self._event_callbacks[event_type]:
            self._event_callbacks[event_type].append(callback)
            self.logger.debug(f"Subscribed to {event_type.value} events")

    def unsubscribe_event(self, event_type: EventType, callback: Callable[[OriginEvent], None]) -> None:
        if callback in self._event_callbacks[event_type]:
            self._event_callbacks[event_type].remove(callback)
            self.logger.debug(f"Unsubscribed from {event_type.value} events")

    def subscribe_all_events(self, callback: Callable[[OriginEvent], None]) -> None:
        """Receive all client events."""
        if callback not in self._all_events_callbacks:
            self._all_events_callbacks.append(callback)

    def unsubscribe_all_events(self, callback: Callable[[OriginEvent], None]) -> None:
        if callback in self._all_events_callbacks:
            self._all_events_callbacks.remove(callback)

    def _emit(self, event_type: EventType, **data: Any) -> None:
        event = OriginEvent(event_type=event_type, timestamp=datetime.now(), data=data)

        for callback in list(self._all_events_callbacks):
            try:
                callback(event)
            except Exception as e:
                self.logger.error(f"Error in all-events callback: {e}")

        for callback in list(self._event_callbacks[event_type]):
            try:
                callback(event)
            except Exception as e:
                self.logger.error(f"Error in {event_type.value} callback: {e}")

    # ========================================================================
    # Connection lifecycle
    # ========================================================================

    async def connect(self, host: str, port: int = DEFAULT_PORT) -> bool:
        """Connect to the telescope control channel.

        Waits for the WebSocket handshake for at most ``connection_timeout``
        seconds. There is a single attempt; reconnecting is up to the caller.

        Args:
            host: Hostname or IP address of the telescope
            port: Control channel port (default: 80)

        Returns:
            True if the link is connected
        """
        if self.is_connected:
            self.logger.info("Already connected to telescope")
            return True

        self._host = host
        self._port = port
        url = control_url(host, port)
        self.logger.info(f"Connecting to Origin telescope at: {url}")

        try:
            await asyncio.wait_for(self._channel.open(url), timeout=self.connection_timeout)
        except asyncio.TimeoutError:
            self.logger.error(f"Connection timeout to {host}:{port}")
            self._session_log.write("ERROR", f"Connection timeout to {host}:{port}")
            return False
        except ChannelError as e:
            self.logger.error(f"Failed to connect to {host}:{port}: {e}")
            self._session_log.write("ERROR", str(e))
            return False

        await self._on_channel_connected()
        return self.is_connected

    async def _on_channel_connected(self) -> None:
        self.logger.info("Connected to Origin telescope")
        self._session_log.write("SYSTEM", f"Connected to {self._host}:{self._port}")

        self._status.is_connected = True
        self._status_rotation = 0

        self._receive_task = asyncio.create_task(self._receive_loop())
        self._status_task = asyncio.create_task(self._status_loop())
        self._ping_task = asyncio.create_task(self._ping_loop())

        await self.send_command("GetStatus", Destination.MOUNT)

        self._emit(EventType.CONNECTED, host=self._host, port=self._port)

    async def disconnect(self) -> None:
        """Close the control channel and reset connection state."""
        await self._teardown("Disconnected from telescope")

    async def close(self) -> None:
        """Disconnect and release every resource held by the client."""
        await self.disconnect()

        for task in list(self._download_tasks):
            task.cancel()
        if self._download_tasks:
            await asyncio.gather(*self._download_tasks, return_exceptions=True)

        await self._fetcher.close()
        self._session_log.close()

    async def _teardown(self, reason: str) -> None:
        current = asyncio.current_task()
        for task in (self._status_task, self._ping_task, self._receive_task):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            # wait() leaves a cancellation of the caller itself propagating
            await asyncio.wait({task})
        self._status_task = None
        self._ping_task = None
        self._receive_task = None

        await self._channel.close()

        was_connected = self._status.is_connected
        self._status.is_connected = False
        self._status.is_logically_connected = False
        self._status.is_camera_logically_connected = False
        self._snapshot_in_progress = False
        self._snapshot_flag_before_exposure = False
        self._pending_commands.clear()

        if was_connected:
            self.logger.info(reason)
            self._session_log.write("SYSTEM", reason)
            self._emit(EventType.DISCONNECTED)

    def set_connected(self, connected: bool) -> None:
        """Set the logical connection flag (no network activity)."""
        if connected and not self.is_connected:
            self.logger.warning("Cannot set connected - no physical connection to Origin")
            return
        self._status.is_logically_connected = connected
        self.logger.debug(f"Logical connection state: {connected}")

    def set_camera_connected(self, connected: bool) -> None:
        if connected and not self.is_connected:
            self.logger.warning("Cannot logically connect camera - no physical connection")
            return
        self._status.is_camera_logically_connected = connected
        self.logger.debug(f"Camera logical connection state: {connected}")

    async def _receive_loop(self) -> None:
        """Background task to receive and dispatch messages from the telescope."""
        try:
            async for text in self._channel.messages():
                try:
                    await self._handle_text(text)
                except Exception as e:
                    self.logger.error(f"Error handling message: {e}", exc_info=True)
        except asyncio.CancelledError:
            self.logger.debug("Receive loop cancelled")
            return
        except Exception as e:
            self.logger.error(f"Receive loop error: {e}")
            self._session_log.write("ERROR", str(e))

        self.logger.warning("Connection closed by telescope")
        await self._teardown("Disconnected from telescope")

    async def _status_loop(self) -> None:
        try:
            while self.is_connected:
                await asyncio.sleep(self.status_interval)
                await self.update_status()
        except asyncio.CancelledError:
            self.logger.debug("Status loop cancelled")
        except Exception as e:
            self.logger.error(f"Status loop error: {e}")

    async def _ping_loop(self) -> None:
        try:
            while self.is_connected:
                await asyncio.sleep(self.ping_interval)
                await self.send_ping()
        except asyncio.CancelledError:
            self.logger.debug("Ping loop cancelled")
        except Exception as e:
            self.logger.error(f"Ping loop error: {e}")

    async def update_status(self) -> None:
        """Send the next status query of the rotation."""
        if not self.is_connected:
            return
        command, destination = STATUS_ROTATION[self._status_rotation % len(STATUS_ROTATION)]
        self._status_rotation += 1
        await self.send_command(command, destination)

    async def send_ping(self) -> None:
        """Send a transport-level keep-alive ping."""
        if not self.is_connected:
            return
        try:
            await self._channel.ping()
        except ChannelError as e:
            self.logger.warning(f"Keep-alive ping failed: {e}")
            return
        self._session_log.write("PING", "Keep-alive ping sent")

    def _on_pong(self, rtt_ms: float) -> None:
        self.logger.debug(f"Pong received, RTT: {rtt_ms:.0f} ms")
        self._session_log.write("PONG", f"RTT: {rtt_ms:.0f}ms")

    # ========================================================================
    # Command protocol
    # ========================================================================

    async def send_command(
        self, command: str, destination: str, params: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Send a command without waiting for its response.

        Args:
            command: Command name
            destination: Target subsystem
            params: Extra fields merged into the command object

        Returns:
            True if the command was written to the control channel
        """
        if not self.is_connected:
            self.logger.warning(f"Cannot send {command} - WebSocket not connected")
            return False

        self._expire_pending_commands()

        origin_command = build_command(command, destination, self._next_sequence_id, params)
        self._next_sequence_id += 1
        message = origin_command.to_json()

        # Registered before writing so a fast reply can always be matched
        self._pending_commands[origin_command.sequence_id] = PendingCommand(
            sequence_id=origin_command.sequence_id,
            command=command,
            destination=origin_command.destination,
            sent_at=time.monotonic(),
        )
        self._session_log.write("SEND", message)

        try:
            await self._channel.send_text(message)
        except ChannelError as e:
            self._pending_commands.pop(origin_command.sequence_id, None)
            self.logger.error(f"Failed to send {command}: {e}")
            return False

        return True

    def _expire_pending_commands(self) -> None:
        cutoff = time.monotonic() - self.pending_command_ttl
        expired = [seq_id for seq_id, pending in self._pending_commands.items() if pending.sent_at < cutoff]
        for seq_id in expired:
            pending = self._pending_commands.pop(seq_id)
            self.logger.debug(f"No response to {pending.command} (#{seq_id}), dropping")

    def _match_pending_command(self, message: OriginMessage) -> Optional[PendingCommand]:
        """Find the command a response answers: by sequence id, then by name."""
        if message.sequence_id is not None:
            pending = self._pending_commands.get(message.sequence_id)
            if pending is not None and pending.command == message.command:
                return self._pending_commands.pop(message.sequence_id)

        for seq_id, pending in self._pending_commands.items():
            if pending.command == message.command:
                return self._pending_commands.pop(seq_id)
        return None

    # ========================================================================
    # Inbound dispatch
    # ========================================================================

    async def _handle_text(self, text: str) -> None:
        self._session_log.write("RECV", text)

        message = OriginMessage.from_text(text)
        if message is None:
            self.logger.debug("Dropping non-object payload")
            return

        self._expire_pending_commands()

        if self._data_processor.process_json_packet(message.payload):
            self._update_status_from_processor()

        if message.is_notification:
            if message.command == "NewImageReady":
                self._handle_new_image_ready(message)
        elif message.is_response:
            self._handle_response(message)

    def _update_status_from_processor(self) -> None:
        data = self._data_processor.data

        self._status.is_tracking = data.mount.is_tracking
        self._status.is_slewing = not data.mount.is_goto_over
        self._status.is_aligned = data.mount.is_aligned

        self._status.ra_position = radians_to_hours(data.mount.enc0)
        self._status.dec_position = radians_to_degrees(data.mount.enc1)

        # Alt/Az are not reported by the mount
        self._status.alt_position = 45.0
        self._status.az_position = 180.0

        self._status.temperature = data.environment.ambient_temperature

        if self._status.is_slewing:
            self._status.current_operation = "Slewing"
        elif self._status.is_tracking:
            self._status.current_operation = "Tracking"
        else:
            self._status.current_operation = "Idle"

        self._status.last_update = datetime.now()
        self._emit(
            EventType.STATUS_UPDATED,
            ra=self._status.ra_position,
            dec=self._status.dec_position,
            operation=self._status.current_operation,
        )

    def _handle_response(self, message: OriginMessage) -> None:
        pending = self._match_pending_command(message)
        if pending is None:
            self.logger.debug(f"Unsolicited response: {message.command} from {message.source}")

        if message.error_code != 0:
            self.logger.warning(f"Command error: {message.command} {message.error_code} {message.error_message}")
            self._emit(
                EventType.COMMAND_ERROR,
                command=message.command,
                code=message.error_code,
                message=message.error_message,
                sequence_id=pending.sequence_id if pending else message.sequence_id,
            )
            return

        command = message.command
        if command == "RunSampleCapture":
            self.logger.debug("Exposure command acknowledged")

        elif command == "GetCaptureParameters":
            self._current_exposure = _as_float(message.get("Exposure"), self._current_exposure)
            self._current_iso = int(_as_float(message.get("ISO"), self._current_iso))
            self._emit(EventType.CAPTURE_PARAMETERS_CHANGED, exposure=self._current_exposure, iso=self._current_iso)

        elif command in CAMERA_MODE_COMMANDS:
            if "IsManual" in message.payload:
                self._camera_manual_mode = bool(message.get("IsManual"))
                self.logger.debug(f"Camera mode: {'Manual' if self._camera_manual_mode else 'Auto'}")
                self._emit(EventType.CAMERA_MODE_CHANGED, is_manual=self._camera_manual_mode)

        elif command == "GetCameraInfo":
            self._camera_id = str(message.get("CameraID", ""))
            self._camera_model = str(message.get("CameraModel", ""))
            self.logger.info(f"Camera info: ID = {self._camera_id} Model = {self._camera_model}")
            self._emit(EventType.CAMERA_INFO_RECEIVED, camera_id=self._camera_id, model=self._camera_model)

    # ========================================================================
    # Image pipeline
    # ========================================================================

    def _handle_new_image_ready(self, message: OriginMessage) -> None:
        action = classify_image_notification(message, self._snapshot_in_progress)
        if not action.should_fetch:
            self.logger.debug(f"Skipping image notification: {message.get('FileLocation')}")
            return

        exposure_driven = self._camera_state == CameraState.EXPOSING
        exposure = _as_float(message.get("ExposureTime"))
        if exposure_driven:
            self._set_camera_state(CameraState.READING)
            self._emit(EventType.EXPOSURE_COMPLETE, path=action.path)
            exposure = exposure or self._last_exposure_duration

        self._last_image_path = action.path
        self.logger.info(f"New image ready: {action.path} ({'TIFF snapshot' if action.is_snapshot else 'live frame'})")

        self._start_download(
            ImageDownload(
                remote_path=action.path,
                is_snapshot=action.is_snapshot,
                ra=_as_float(message.get("Ra")),
                dec=_as_float(message.get("Dec")),
                exposure=exposure,
                exposure_driven=exposure_driven,
            )
        )

    def _start_download(self, download: ImageDownload) -> None:
        task = asyncio.create_task(self._download_image(download))
        self._download_tasks.add(task)
        task.add_done_callback(self._download_tasks.discard)

    async def wait_for_downloads(self) -> None:
        """Wait until every image download started so far has finished."""
        while self._download_tasks:
            await asyncio.gather(*list(self._download_tasks), return_exceptions=True)

    async def _download_image(self, download: ImageDownload) -> None:
        if not self._host:
            self.logger.warning(f"Cannot download {download.remote_path} - no telescope host")
            self._on_download_failed(download)
            return

        try:
            image_data = await self._fetcher.fetch(self._host, download.remote_path)
        except ImageDownloadError as e:
            self.logger.warning(f"Download error: {e}")
            self._on_download_failed(download)
            return
        except Exception as e:
            self.logger.error(f"Unexpected download failure for {download.remote_path}: {e}")
            self._on_download_failed(download)
            return

        self._on_download_succeeded(download, image_data)

    def _on_download_succeeded(self, download: ImageDownload, image_data: bytes) -> None:
        self.logger.info(
            f"Downloaded: {len(image_data)} bytes ({'TIFF' if download.is_snapshot else 'JPEG'}) "
            f"from {download.remote_path}"
        )

        self._image_archive.save(image_data, download.remote_path, download.ra, download.dec, download.exposure)

        if download.exposure_driven:
            self._last_image_data = image_data
            self._last_image_format = image_format_for_path(download.remote_path)
            self._image_ready = True
            self._set_camera_state(CameraState.IDLE)
            self._emit(
                EventType.IMAGE_READY,
                path=download.remote_path,
                size=len(image_data),
                format=self._last_image_format,
            )

        if download.is_snapshot:
            self._snapshot_in_progress = False
            self.logger.debug("Snapshot complete - resuming live stream")
            self._emit(
                EventType.SNAPSHOT_DOWNLOADED,
                path=download.remote_path,
                data=image_data,
                ra=download.ra,
                dec=download.dec,
                exposure=download.exposure,
            )
            return

        image = decode_image(image_data)
        if image is None:
            self.logger.warning(f"Failed to decode live image {download.remote_path}")
            return

        self._last_image = image
        self._image_ready = True
        self._emit(
            EventType.LIVE_IMAGE_DOWNLOADED,
            data=image_data,
            ra=download.ra,
            dec=download.dec,
            exposure=download.exposure,
        )

    def _on_download_failed(self, download: ImageDownload) -> None:
        if download.is_snapshot:
            self._snapshot_in_progress = False
        if download.exposure_driven:
            self._set_camera_state(CameraState.ERROR)

    # ========================================================================
    # Camera exposure state machine
    # ========================================================================

    def _set_camera_state(self, state: CameraState) -> None:
        if state == self._camera_state:
            return
        self.logger.debug(f"Camera state: {self._camera_state.name} -> {state.name}")
        self._camera_state = state
        self._emit(EventType.CAMERA_STATE_CHANGED, state=int(state))

    async def start_exposure(self, duration: float, gain: int = 200) -> bool:
        """Start a camera exposure.

        Args:
            duration: Exposure time in seconds
            gain: Gain (the Origin calls it ISO)

        Returns:
            True if the exposure was started
        """
        if not self.is_logically_connected:
            self.logger.warning("Cannot start exposure - not connected")
            return False

        if self._camera_state != CameraState.IDLE:
            self.logger.warning(f"Cannot start exposure - camera busy ({self._camera_state.name})")
            return False

        previous_snapshot_flag = self._snapshot_in_progress
        self._snapshot_in_progress = True
        self._camera_state = CameraState.EXPOSING

        sent = await self.send_command(
            "RunSampleCapture", Destination.TASK_CONTROLLER, {"ExposureTime": duration, "ISO": gain}
        )
        if not sent:
            self._snapshot_in_progress = previous_snapshot_flag
            self._camera_state = CameraState.IDLE
            return False

        self._snapshot_flag_before_exposure = previous_snapshot_flag
        self._last_exposure_duration = duration
        self._current_gain = gain
        self._last_exposure_start_time = datetime.now(timezone.utc).isoformat(timespec="seconds")
        self._image_ready = False
        self._last_image_data = b""

        self.logger.info(f"Started exposure: {duration} sec, ISO: {gain}")
        self._emit(EventType.EXPOSURE_STARTED, duration=duration, gain=gain)
        self._emit(EventType.CAMERA_STATE_CHANGED, state=int(self._camera_state))
        return True

    async def abort_exposure(self) -> bool:
        """Abort the running exposure.

        Only the logical exposure is cancelled; an image download already
        triggered still runs to completion. The snapshot flag goes back to
        its value before the exposure so live frames flow again.
        """
        if self._camera_state != CameraState.EXPOSING:
            return False
        if not self.is_connected:
            self.logger.warning("Cannot abort exposure - not connected")
            return False

        self._snapshot_in_progress = self._snapshot_flag_before_exposure
        self._set_camera_state(CameraState.IDLE)
        sent = await self.send_command("AbortExposure", Destination.CAMERA)
        self.logger.info("Aborted exposure")
        return sent

    def reset_camera(self) -> bool:
        """Leave the ERROR state; the only way back to IDLE after a failed download."""
        if self._camera_state != CameraState.ERROR:
            return False
        self._set_camera_state(CameraState.IDLE)
        return True

    async def set_gain(self, gain: int) -> bool:
        if not self.is_logically_connected:
            self.logger.warning("Cannot set gain - not connected")
            return False

        self._current_gain = gain
        sent = await self.send_command(
            "SetCaptureParameters", Destination.CAMERA, {"ISO": gain, "Exposure": self._last_exposure_duration}
        )
        if sent:
            self.logger.debug(f"Set gain/ISO to: {gain}")
        return sent

    # ========================================================================
    # Snapshot and camera settings
    # ========================================================================

    async def take_snapshot(self, exposure: float, iso: int) -> bool:
        """Request a single TIFF snapshot.

        Live frames are ignored until the snapshot has been downloaded.
        """
        if not self.is_connected:
            self.logger.warning("Cannot take snapshot - not connected")
            return False

        previous_snapshot_flag = self._snapshot_in_progress
        self._snapshot_in_progress = True
        sent = await self.send_command(
            "RunSampleCapture", Destination.TASK_CONTROLLER, {"ExposureTime": exposure, "ISO": iso}
        )
        if not sent:
            self._snapshot_in_progress = previous_snapshot_flag
            return False

        self.logger.info(f"Taking snapshot: Exposure = {exposure} ISO = {iso}")
        self._emit(EventType.SNAPSHOT_REQUESTED, exposure=exposure, iso=iso)
        return True

    async def take_single_snapshot(self) -> bool:
        return await self.take_snapshot(self._current_exposure, self._current_iso)

    async def set_camera_manual_mode(self) -> bool:
        return await self._send_if_connected("SetEnableManual", Destination.LIVE_STREAM)

    async def set_camera_auto_mode(self) -> bool:
        return await self._send_if_connected("SetEnableAuto", Destination.LIVE_STREAM)

    async def get_camera_mode(self) -> bool:
        return await self._send_if_connected("GetEnableManual", Destination.LIVE_STREAM)

    async def get_capture_parameters(self) -> bool:
        return await self._send_if_connected("GetCaptureParameters", Destination.CAMERA)

    async def set_capture_parameters(self, exposure: float, iso: int) -> bool:
        return await self._send_if_connected(
            "SetCaptureParameters", Destination.CAMERA, {"Exposure": exposure, "ISO": iso}
        )

    async def set_camera_exposure(self, seconds: float) -> bool:
        return await self.set_capture_parameters(seconds, self._current_iso)

    async def set_camera_iso(self, iso: int) -> bool:
        return await self.set_capture_parameters(self._current_exposure, iso)

    async def get_camera_info(self) -> bool:
        return await self._send_if_connected("GetCameraInfo", Destination.CAMERA)

    def enable_image_saving(self, enable: bool = True) -> None:
        self._image_archive.enabled = enable
        self.logger.info(f"Image saving {'enabled' if enable else 'disabled'}")

    def set_image_save_path(self, path) -> bool:
        return self._image_archive.set_save_path(path)

    @property
    def image_save_path(self):
        return self._image_archive.save_path

    # ========================================================================
    # Mount control
    # ========================================================================

    async def _send_if_connected(
        self, command: str, destination: Destination, params: Optional[Dict[str, Any]] = None
    ) -> bool:
        if not self.is_connected:
            self.logger.warning(f"Cannot {command} - not connected")
            return False
        return await self.send_command(command, destination, params)

    async def goto_position(self, ra_hours: float, dec_degrees: float) -> bool:
        """Slew to equatorial coordinates.

        Args:
            ra_hours: Right ascension in decimal hours (0-24)
            dec_degrees: Declination in decimal degrees (-90 to 90)
        """
        sent = await self._send_if_connected(
            "GotoRaDec",
            Destination.MOUNT,
            {"Ra": hours_to_radians(ra_hours), "Dec": degrees_to_radians(dec_degrees)},
        )
        if sent:
            self.logger.info(f"Goto: RA={ra_hours}h, Dec={dec_degrees}°")
            self._status.is_slewing = True
            self._status.current_operation = "Slewing"
        return sent

    async def sync_position(self, ra_hours: float, dec_degrees: float) -> bool:
        return await self._send_if_connected(
            "SyncToRaDec",
            Destination.MOUNT,
            {"Ra": hours_to_radians(ra_hours), "Dec": degrees_to_radians(dec_degrees)},
        )

    async def abort_motion(self) -> bool:
        sent = await self._send_if_connected("AbortAxisMovement", Destination.MOUNT)
        if sent:
            self._status.is_slewing = False
            self._status.current_operation = "Idle"
        return sent

    async def park_mount(self) -> bool:
        sent = await self._send_if_connected("Park", Destination.MOUNT)
        if sent:
            self._status.is_parked = True
            self._status.current_operation = "Parking"
        return sent

    async def unpark_mount(self) -> bool:
        sent = await self._send_if_connected("Unpark", Destination.MOUNT)
        if sent:
            self._status.is_parked = False
            self._status.current_operation = "Unparking"
        return sent

    async def initialize_telescope(self, latitude: float = 52.2, longitude: float = 0.0) -> bool:
        """Run the mount initialization with the current UTC date and time.

        Args:
            latitude: Site latitude in degrees
            longitude: Site longitude in degrees
        """
        now = datetime.now(timezone.utc)
        sent = await self._send_if_connected(
            "RunInitialize",
            Destination.TASK_CONTROLLER,
            {
                "Date": now.strftime("%d %m %Y"),
                "Time": now.strftime("%H:%M:%S"),
                "TimeZone": "UTC",
                "Latitude": degrees_to_radians(latitude),
                "Longitude": degrees_to_radians(longitude),
                "FakeInitialize": False,
            },
        )
        if sent:
            self._status.current_operation = "Initializing"
        return sent

    async def move_direction(self, direction: int, speed: int) -> bool:
        """Move one axis.

        Args:
            direction: 0 = North, 1 = South, 2 = East, 3 = West
            speed: 0-100
        """
        if not self.is_connected:
            self.logger.warning("Cannot move - not connected")
            return False
        if direction not in MOVE_DIRECTIONS:
            self.logger.warning(f"Unknown move direction: {direction}")
            return False

        axis, sense = MOVE_DIRECTIONS[direction]
        return await self.send_command(
            "MoveAxis", Destination.MOUNT, {"Axis": axis, "Direction": sense, "Speed": speed}
        )

    async def set_tracking(self, enabled: bool) -> bool:
        sent = await self._send_if_connected("StartTracking" if enabled else "StopTracking", Destination.MOUNT)
        if sent:
            self._status.is_tracking = enabled
        return sent
