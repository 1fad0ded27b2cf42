"""Celestron Origin wire protocol helpers.

The Origin mount speaks single-line compact JSON over a WebSocket. Every
object carries a ``Type`` ("Command", "Response" or "Notification"), the
``Command`` name and the ``Source``/``Destination`` subsystems. Images are not
sent over the socket: a ``NewImageReady`` notification names a file which is
then fetched over plain HTTP.

This module holds the pieces of the protocol that do not depend on a live
connection: command building, inbound message parsing, image notification
classification and angle conversion.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import astropy.units as u

CONTROL_ENDPOINT = "SmartScope-1.0/mountControlEndpoint"
IMAGE_ENDPOINT = "SmartScope-1.0/dev2"
COMMAND_SOURCE = "AlpacaServer"
FIRST_SEQUENCE_ID = 2000

SNAPSHOT_EXTENSIONS = (".tif", ".tiff")


class OriginClientError(Exception):
    """Base exception for Origin client errors."""

    pass


class ChannelError(OriginClientError):
    """Raised when the control channel cannot be opened or written."""

    pass


class ImageDownloadError(OriginClientError):
    """Raised when an image cannot be fetched from the image server."""

    pass


class MessageType(str, Enum):
    """Value of the ``Type`` field."""

    COMMAND = "Command"
    RESPONSE = "Response"
    NOTIFICATION = "Notification"


class Destination(str, Enum):
    """Device subsystems addressable by a command."""

    MOUNT = "Mount"
    CAMERA = "Camera"
    TASK_CONTROLLER = "TaskController"
    LIVE_STREAM = "LiveStream"
    ENVIRONMENT = "Environment"
    IMAGE_SERVER = "ImageServer"


def control_url(host: str, port: int) -> str:
    """WebSocket URL of the control channel."""
    return f"ws://{host}:{port}/{CONTROL_ENDPOINT}"


def image_url(host: str, remote_path: str) -> str:
    """HTTP URL of an image reported by ``NewImageReady``; the path is used verbatim."""
    return f"http://{host}/{IMAGE_ENDPOINT}/{remote_path}"


# ========================================================================
# Outbound commands
# ========================================================================


@dataclass(frozen=True)
class OriginCommand:
    """A command as written on the control channel."""

    command: str
    destination: str
    sequence_id: int
    source: str = COMMAND_SOURCE
    params: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "Command": self.command,
            "Destination": self.destination,
            "SequenceID": self.sequence_id,
            "Source": self.source,
            "Type": MessageType.COMMAND.value,
        }
        # Fixed fields win over caller parameters
        return {**self.params, **payload}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))


def build_command(
    command: str, destination: str, sequence_id: int, params: Optional[Dict[str, Any]] = None
) -> OriginCommand:
    """Build a command object.

    Args:
        command: Command name, e.g. "GotoRaDec"
        destination: Target subsystem, e.g. "Mount"
        sequence_id: Session sequence id
        params: Extra key/value fields merged into the command

    Returns:
        OriginCommand ready to serialize
    """
    if isinstance(destination, Destination):
        destination = destination.value
    return OriginCommand(
        command=command, destination=destination, sequence_id=sequence_id, params=dict(params or {})
    )


# ========================================================================
# Inbound messages
# ========================================================================


@dataclass
class OriginMessage:
    """An inbound JSON object from the telescope."""

    type: str
    command: str
    source: str
    payload: Dict[str, Any]
    destination: Optional[str] = None
    sequence_id: Optional[int] = None
    error_code: int = 0
    error_message: str = ""

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "OriginMessage":
        sequence_id = payload.get("SequenceID")
        try:
            error_code = int(payload.get("ErrorCode") or 0)
        except (TypeError, ValueError):
            error_code = -1
        return cls(
            type=str(payload.get("Type", "")),
            command=str(payload.get("Command", "")),
            source=str(payload.get("Source", "")),
            payload=payload,
            destination=payload.get("Destination"),
            sequence_id=sequence_id if isinstance(sequence_id, int) else None,
            error_code=error_code,
            error_message=str(payload.get("ErrorMessage", "")),
        )

    @classmethod
    def from_text(cls, text: str) -> Optional["OriginMessage"]:
        """Parse a text frame; returns None unless it is a JSON object."""
        try:
            payload = json.loads(text)
        except (json.JSONDecodeError, TypeError):
            return None
        if not isinstance(payload, dict):
            return None
        return cls.from_dict(payload)

    @property
    def is_response(self) -> bool:
        return self.type == MessageType.RESPONSE.value

    @property
    def is_notification(self) -> bool:
        return self.type == MessageType.NOTIFICATION.value

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)


# ========================================================================
# Image notifications
# ========================================================================


class ImageActionKind(Enum):
    IGNORE = "ignore"
    FETCH_LIVE_FRAME = "fetch_live_frame"
    FETCH_SNAPSHOT = "fetch_snapshot"


@dataclass(frozen=True)
class ImageAction:
    """What to do with a ``NewImageReady`` notification."""

    kind: ImageActionKind
    path: Optional[str] = None

    @property
    def should_fetch(self) -> bool:
        return self.kind is not ImageActionKind.IGNORE

    @property
    def is_snapshot(self) -> bool:
        return self.kind is ImageActionKind.FETCH_SNAPSHOT


IGNORE_IMAGE = ImageAction(ImageActionKind.IGNORE)


def is_snapshot_path(path: str) -> bool:
    """TIFF files are snapshots, everything else is a live frame."""
    return path.lower().endswith(SNAPSHOT_EXTENSIONS)


def image_format_for_path(path: str) -> str:
    lowered = path.lower()
    if lowered.endswith((".jpg", ".jpeg")):
        return "JPEG"
    if lowered.endswith(SNAPSHOT_EXTENSIONS):
        return "TIFF"
    return "RAW"


def classify_image_notification(message: OriginMessage, snapshot_in_progress: bool) -> ImageAction:
    """Decide whether a notification should trigger an image download.

    Live frames are dropped while a snapshot is outstanding so a streaming
    JPEG never overwrites the snapshot the caller is waiting for.
    """
    if not (message.is_notification and message.command == "NewImageReady"):
        return IGNORE_IMAGE

    path = message.get("FileLocation")
    if not path or not isinstance(path, str):
        return IGNORE_IMAGE

    if is_snapshot_path(path):
        return ImageAction(ImageActionKind.FETCH_SNAPSHOT, path)
    if snapshot_in_progress:
        return IGNORE_IMAGE
    return ImageAction(ImageActionKind.FETCH_LIVE_FRAME, path)


# ========================================================================
# Angle conversion (the mount works in radians)
# ========================================================================


def radians_to_hours(radians: float) -> float:
    return (radians * u.rad).to_value(u.hourangle)


def radians_to_degrees(radians: float) -> float:
    return (radians * u.rad).to_value(u.deg)


def hours_to_radians(hours: float) -> float:
    return (hours * u.hourangle).to_value(u.rad)


def degrees_to_radians(degrees: float) -> float:
    return (degrees * u.deg).to_value(u.rad)
