from __future__ import annotations

import logging
from pathlib import Path


class LastIpStore:
    """Persist the last address successfully published to Cloudflare."""

    def __init__(self, path: Path, logger: logging.Logger | None = None) -> None:
        self.path = Path(path)
        self._logger = logger or logging.getLogger(__name__)

    def get_last_ip(self) -> str | None:
        try:
            if not self.path.is_file():
                return None
            value = self.path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            self._logger.warning("Could not read last IP file %s: %s", self.path, exc)
            return None
        return value or None

    def save_ip(self, ip: str) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(ip, encoding="utf-8")
        except OSError as exc:
            self._logger.error("Failed to save IP to file %s: %s", self.path, exc)
            return False
        self._logger.debug("Saved IP %s to %s", ip, self.path)
        return True
