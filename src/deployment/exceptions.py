"""Deployment Error Hierarchy.

Typed failures raised by the orchestration layer. Every step fails fast
with one of these; the CLI maps any of them to exit status 1.
"""

from typing import Any, Dict, List, Optional


class DeploymentError(Exception):
    """Base exception for all deployment and rollback failures."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigError(DeploymentError):
    """Raised when a required setting is missing or invalid."""

    def __init__(self, message: str = "Invalid configuration", missing: Optional[List[str]] = None):
        details = {"missing": missing} if missing else None
        super().__init__(message, details)
        self.missing = missing or []


class ConnectivityError(DeploymentError):
    """Raised when the control channel to the target host is unreachable."""


class RuntimeCommandError(DeploymentError):
    """Raised when a container-runtime command exits non-zero."""

    def __init__(self, message: str, command: str = "", returncode: int = 1, stderr: str = ""):
        super().__init__(
            message,
            {"command": command, "returncode": returncode, "stderr": stderr},
        )
        self.command = command
        self.returncode = returncode
        self.stderr = stderr


class StateError(DeploymentError):
    """Raised when slot state does not allow the requested operation."""

    NO_ACTIVE_SLOT = "no_active_slot"
    AMBIGUOUS = "ambiguous"
    NO_ROLLBACK_TARGET = "no_rollback_target"

    def __init__(self, message: str, reason: str):
        super().__init__(message, {"reason": reason})
        self.reason = reason


class HealthTimeoutError(DeploymentError):
    """Raised when bounded health polling is exhausted."""

    def __init__(self, message: str, target: str = "", attempts: int = 0, last_status: str = ""):
        super().__init__(
            message,
            {"target": target, "attempts": attempts, "last_status": last_status},
        )
        self.target = target
        self.attempts = attempts
        self.last_status = last_status


class IntegrityError(DeploymentError):
    """Raised when a backup archive fails verification or cannot be used."""


class LocalStateError(DeploymentError):
    """Raised when lease, LastKnownGood or other local state cannot be read or written."""

    def __init__(self, message: str, path: str = ""):
        super().__init__(message, {"path": path})
        self.path = path


class LeaseError(DeploymentError):
    """Raised when another owner holds the environment's deployment lease."""

    def __init__(self, message: str, holder: str = "", expires_at: str = ""):
        super().__init__(message, {"holder": holder, "expires_at": expires_at})
        self.holder = holder
        self.expires_at = expires_at


class RollbackExhaustedError(DeploymentError):
    """Raised when every rollback tier has failed; a human must intervene."""

    def __init__(self, message: str = "All rollback tiers failed", errors: Optional[Dict[str, str]] = None):
        super().__init__(message, {"errors": errors or {}})
        self.errors = errors or {}
