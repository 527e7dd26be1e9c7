import hashlib
import json
import logging
import threading
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def fingerprint(credential: str) -> str:
    if not credential:
        return ""
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()[:12]


class EventLog:
    """Append-only JSON-lines log of moderation events (blocks, bans, rejections)."""

    def __init__(self, path: Optional[Path]):
        self.path = path
        self._lock = threading.Lock()

    def log_event(self, event: dict) -> None:
        if self.path is None:
            return
        try:
            with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(event, ensure_ascii=False) + "\n")
        except OSError as e:
            logger.warning("could not write event log %s: %s", self.path, e)
