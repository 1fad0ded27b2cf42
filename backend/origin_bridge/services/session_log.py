"""Wire-level session log.

Every message sent to or received from the telescope, plus connection
events, is appended to a timestamped text file:

    [2025-01-31 21:04:05.123] SEND: {"Command":"GetStatus",...}
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, TextIO

logger = logging.getLogger(__name__)


def _timestamp(now: datetime) -> str:
    return now.strftime("%Y-%m-%d %H:%M:%S.") + f"{now.microsecond // 1000:03d}"


class SessionLog:
    """Append-only log file for one client session."""

    def __init__(self, log_dir: Path, enabled: bool = True):
        self.log_dir = Path(log_dir)
        self.enabled = enabled
        self.path: Optional[Path] = None
        self._stream: Optional[TextIO] = None

    def open(self) -> None:
        if not self.enabled or self._stream is not None:
            return

        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            self.path = self.log_dir / f"websocket_log_{datetime.now().strftime('%Y%m%d_%H%M%S')}.txt"
            self._stream = open(self.path, "a", encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to open session log in {self.log_dir}: {e}")
            self.enabled = False
            self._stream = None
            return

        logger.info(f"Session logging initialized: {self.path}")
        self.write("SYSTEM", "=== WebSocket Logging Started ===")

    def write(self, direction: str, message: str) -> None:
        if self._stream is None:
            self.open()
            if self._stream is None:
                return

        self._stream.write(f"[{_timestamp(datetime.now())}] {direction}: {message}\n")
        self._stream.flush()

    def close(self) -> None:
        if self._stream is None:
            return
        self.write("SYSTEM", "=== WebSocket Logging Ended ===")
        self._stream.close()
        self._stream = None
