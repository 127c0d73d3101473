"""Deployment Lease.

A file-backed mutual-exclusion claim (owner + TTL) per environment. Deploy
and rollback both hold it for the whole mutating sequence; a crashed holder's
lease simply expires.
"""

import getpass
import json
import logging
import os
import socket
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator, Optional

from .clock import SYSTEM_CLOCK, Clock
from .exceptions import LeaseError

logger = logging.getLogger(__name__)


def default_owner() -> str:
    """``user@host:pid`` identity of the current invocation."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()}:{os.getpid()}"


@dataclass
class Lease:
    """A held or recorded lease."""

    environment: str
    owner: str
    acquired_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict:
        return {
            "environment": self.environment,
            "owner": self.owner,
            "acquired_at": self.acquired_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Lease":
        return cls(
            environment=data["environment"],
            owner=data["owner"],
            acquired_at=datetime.fromisoformat(data["acquired_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )


class DeploymentLease:
    """Acquire/release the lease for one environment."""

    def __init__(
        self,
        state_dir: str,
        environment: str,
        ttl_seconds: float = 1800.0,
        clock: Optional[Clock] = None,
    ):
        self.environment = environment
        self.ttl_seconds = ttl_seconds
        self.path = Path(state_dir) / f"{environment}.lease.json"
        self._clock = clock or SYSTEM_CLOCK

    def current(self) -> Optional[Lease]:
        """The recorded lease, expired or not."""
        if not self.path.exists():
            return None
        try:
            return Lease.from_dict(json.loads(self.path.read_text()))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable lease file %s: %s", self.path, exc)
            return None

    def acquire(self, owner: str) -> Lease:
        """Take the lease, or take over an expired or unreadable one.

        Raises:
            LeaseError: a different owner holds an unexpired lease.
        """
        now = self._clock.now()
        lease = Lease(
            environment=self.environment,
            owner=owner,
            acquired_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)

        existing = self.current()
        if existing is None and not self.path.exists():
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                existing = self.current()
                raise LeaseError(
                    f"Lease for {self.environment} was just taken",
                    holder=existing.owner if existing else "",
                    expires_at=existing.expires_at.isoformat() if existing else "",
                )
            with os.fdopen(fd, "w") as f:
                json.dump(lease.to_dict(), f)
        else:
            if existing is None:
                # Corrupt or half-written: treated as expired.
                logger.warning(
                    "Taking over unreadable lease file %s on %s", self.path, self.environment
                )
            elif existing.owner != owner and not existing.is_expired(now):
                raise LeaseError(
                    f"Environment {self.environment} is locked by {existing.owner} "
                    f"until {existing.expires_at.isoformat()}",
                    holder=existing.owner,
                    expires_at=existing.expires_at.isoformat(),
                )
            elif existing.owner != owner:
                logger.warning(
                    "Taking over expired lease of %s on %s", existing.owner, self.environment
                )
            tmp = self.path.with_suffix(".tmp")
            tmp.write_text(json.dumps(lease.to_dict()))
            os.replace(tmp, self.path)

        logger.info("Acquired lease on %s for %s", self.environment, owner)
        return lease

    def release(self, owner: str) -> bool:
        """Drop the lease if ``owner`` still holds it."""
        existing = self.current()
        if existing is None or existing.owner != owner:
            return False
        self.path.unlink(missing_ok=True)
        logger.info("Released lease on %s", self.environment)
        return True

    @contextmanager
    def hold(self, owner: str) -> Iterator[Lease]:
        lease = self.acquire(owner)
        try:
            yield lease
        finally:
            self.release(owner)
