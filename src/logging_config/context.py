"""Invocation Context.

Binds the invocation id, target environment and operation of one CLI run
to every log record emitted inside it, using contextvars.
"""

import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


_invocation_id_var: ContextVar[str] = ContextVar("invocation_id", default="")
_environment_var: ContextVar[str] = ContextVar("environment", default="")
_operation_var: ContextVar[str] = ContextVar("operation", default="")
_extra_context_var: ContextVar[dict] = ContextVar("extra_context", default={})


def generate_invocation_id() -> str:
    """Short unique id for one CLI invocation."""
    return uuid.uuid4().hex[:12]


def get_invocation_id() -> str:
    return _invocation_id_var.get()


def get_context_dict() -> dict[str, Any]:
    """Bound context as a dictionary for log records."""
    ctx = {}
    for key, var in (
        ("invocation_id", _invocation_id_var),
        ("environment", _environment_var),
        ("operation", _operation_var),
    ):
        value = var.get()
        if value:
            ctx[key] = value
    extra = _extra_context_var.get()
    if extra:
        ctx.update(extra)
    return ctx


@dataclass
class InvocationContext:
    """Context manager for invocation-scoped logging context.

    Example:
        with InvocationContext(environment="production", operation="deploy"):
            logger.info("pulling image")  # carries invocation_id, environment
    """

    environment: str = ""
    operation: str = ""
    invocation_id: str = ""
    extra: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    _tokens: list = field(default_factory=list, repr=False)

    def __post_init__(self):
        if not self.invocation_id:
            self.invocation_id = generate_invocation_id()

    def __enter__(self) -> "InvocationContext":
        self._tokens = [
            (_invocation_id_var, _invocation_id_var.set(self.invocation_id)),
            (_environment_var, _environment_var.set(self.environment)),
            (_operation_var, _operation_var.set(self.operation)),
            (_extra_context_var, _extra_context_var.set(self.extra.copy())),
        ]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()

    @property
    def elapsed_ms(self) -> float:
        delta = datetime.now(timezone.utc) - self.started_at
        return delta.total_seconds() * 1000

    def bind(self, **kwargs: Any) -> None:
        """Add extra key-value pairs to the context."""
        current = _extra_context_var.get()
        _extra_context_var.set({**current, **kwargs})
        self.extra.update(kwargs)
