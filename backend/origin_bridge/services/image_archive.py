"""On-disk archive of downloaded images.

Each image is written under a per-session directory together with a
human-readable ``.txt`` sidecar describing where and how it was taken.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from origin_bridge.clients.origin_protocol import radians_to_degrees, radians_to_hours

logger = logging.getLogger(__name__)


def _extension_for(original_path: str) -> str:
    lowered = original_path.lower()
    for ext in ("tiff", "tif", "jpeg", "jpg"):
        if lowered.endswith(f".{ext}"):
            return "tiff" if ext == "tif" else ext
    return "jpg"


class ImageArchive:
    """Saves image bytes plus a metadata sidecar."""

    def __init__(self, base_dir: Path, enabled: bool = True):
        self.base_dir = Path(base_dir)
        self.enabled = enabled
        self._save_path: Optional[Path] = None

    @property
    def save_path(self) -> Path:
        """Directory images are written to, created on first use."""
        if self._save_path is None:
            self._save_path = self._create_session_dir(self.base_dir)
        return self._save_path

    @staticmethod
    def _create_session_dir(base_dir: Path) -> Path:
        session_dir = base_dir / f"session_{datetime.now().strftime('%Y%m%d_%H%M%S')}"
        try:
            session_dir.mkdir(parents=True, exist_ok=True)
            return session_dir
        except OSError as e:
            logger.warning(f"Failed to create image save directory {session_dir}: {e}")
            return base_dir

    def set_save_path(self, path: Path) -> bool:
        path = Path(path)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Failed to create image save path {path}: {e}")
            return False
        self._save_path = path
        logger.info(f"Image save path set to: {path}")
        return True

    def save(
        self, image_data: bytes, original_path: str, ra: float, dec: float, exposure: float
    ) -> Optional[Path]:
        """Write an image and its sidecar.

        Args:
            image_data: Raw bytes as downloaded
            original_path: Remote path reported by the telescope
            ra: Right ascension in radians
            dec: Declination in radians
            exposure: Exposure in seconds

        Returns:
            Path of the saved image, or None when disabled or on failure
        """
        if not self.enabled or not image_data:
            return None

        extension = _extension_for(original_path)
        now = datetime.now()
        ra_hours = f"{radians_to_hours(ra):.4f}"
        dec_degrees = f"{radians_to_degrees(dec):.4f}"
        filename = (
            f"image_{now.strftime('%Y%m%d_%H%M%S')}_{now.microsecond // 1000:03d}"
            f"_ra{ra_hours}_dec{dec_degrees}_exp{exposure:.2f}s.{extension}"
        )
        full_path = self.save_path / filename

        try:
            full_path.write_bytes(image_data)
        except OSError as e:
            logger.warning(f"Failed to write image {full_path}: {e}")
            return None

        sidecar = full_path.with_name(full_path.name + ".txt")
        lines = [
            f"Image: {filename}",
            f"Timestamp: {now.isoformat(timespec='milliseconds')}",
            f"RA (hours): {ra_hours}",
            f"Dec (degrees): {dec_degrees}",
            f"RA (radians): {ra}",
            f"Dec (radians): {dec}",
            f"Exposure (seconds): {exposure}",
            f"Size (bytes): {len(image_data)}",
            f"Format: {extension.upper()}",
            f"Original path: {original_path}",
        ]
        try:
            sidecar.write_text("\n".join(lines) + "\n", encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to write metadata {sidecar}: {e}")

        logger.debug(f"Saved image: {full_path} ({len(image_data)} bytes)")
        return full_path
