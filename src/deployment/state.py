"""LastKnownGood Persistence.

One small JSON document per environment::

    {"current": {...}, "previous": {...}, "rollback": {...}}

``current`` is the last (color, image) pair a deployment or rollback confirmed
healthy on the production port, ``previous`` the pair it replaced. ``rollback``
marks where the last successful rollback landed and is cleared by the next
deployment.
"""

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from .clock import SYSTEM_CLOCK, Clock
from .config import SlotColor
from .exceptions import IntegrityError

logger = logging.getLogger(__name__)


@dataclass
class LastKnownGood:
    """A confirmed-healthy (slot, image) pair."""

    color: SlotColor
    image: str
    recorded_at: datetime

    def to_dict(self) -> dict:
        return {
            "color": self.color.value,
            "image": self.image,
            "recorded_at": self.recorded_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["LastKnownGood"]:
        if not data:
            return None
        return cls(
            color=SlotColor(data["color"]),
            image=data["image"],
            recorded_at=datetime.fromisoformat(data["recorded_at"]),
        )


class LastKnownGoodStore:
    """Reads and writes the LastKnownGood document for one environment."""

    def __init__(self, state_dir: str, environment: str, clock: Optional[Clock] = None):
        self.environment = environment
        self.path = Path(state_dir) / f"{environment}.last_known_good.json"
        self._clock = clock or SYSTEM_CLOCK

    def get(self) -> Optional[LastKnownGood]:
        return LastKnownGood.from_dict(self._load().get("current"))

    def previous(self) -> Optional[LastKnownGood]:
        return LastKnownGood.from_dict(self._load().get("previous"))

    def rollback_marker(self) -> Optional[LastKnownGood]:
        return LastKnownGood.from_dict(self._load().get("rollback"))

    def record(self, color: SlotColor, image: str) -> LastKnownGood:
        """Record a successful switch; the old entry becomes ``previous``."""
        document = self._load()
        entry = LastKnownGood(color=color, image=image, recorded_at=self._clock.now())
        document = {
            "current": entry.to_dict(),
            "previous": document.get("current"),
            "rollback": None,
        }
        self._save(document)
        logger.info(
            "LastKnownGood for %s is now %s (%s)", self.environment, image, color.value
        )
        return entry

    def record_rollback(self, color: SlotColor, image: str) -> LastKnownGood:
        """Mark where a successful rollback landed and make it ``current``.

        The entry rolled away from is dropped rather than shifted into
        ``previous``, so a later rollback never selects it again.
        """
        document = self._load()
        entry = LastKnownGood(color=color, image=image, recorded_at=self._clock.now())
        previous = document.get("previous")
        if previous and previous.get("image") == image:
            previous = None
        self._save({
            "current": entry.to_dict(),
            "previous": previous,
            "rollback": entry.to_dict(),
        })
        logger.info(
            "LastKnownGood for %s rolled back to %s (%s)",
            self.environment, image, color.value,
        )
        return entry

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            return json.loads(self.path.read_text())
        except ValueError as exc:
            raise IntegrityError(f"Unreadable LastKnownGood record {self.path}: {exc}") from exc

    def _save(self, document: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(document, indent=2))
        os.replace(tmp, self.path)
