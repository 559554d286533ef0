"""Per-task log tags.

The webhook handler tags its task with ``wh`` and the GitHub delivery id; the
chat actor tags its task with ``chat``.  `ContextFilter` renders the tag as a
``[wh:72d3162e] `` prefix on every record emitted from that task.  Tasks
spawned later inherit the tag of their parent.
"""

from __future__ import annotations

import dataclasses
import logging
from contextvars import ContextVar
from dataclasses import dataclass

_DELIVERY_CHARS = 8


@dataclass(frozen=True, slots=True)
class LogContext:
    operation: str | None = None
    delivery_id: str | None = None

    @property
    def prefix(self) -> str:
        delivery = (self.delivery_id or "")[:_DELIVERY_CHARS]
        parts = [part for part in (self.operation, delivery) if part]
        return f"[{':'.join(parts)}] " if parts else ""


_current: ContextVar[LogContext] = ContextVar("psrelay_log_context", default=LogContext())


def current_log_context() -> LogContext:
    return _current.get()


def set_log_context(*, operation: str | None = None, delivery_id: str | None = None) -> None:
    """Tag the current task.  ``None`` leaves a field as it was."""
    changes = {"operation": operation, "delivery_id": delivery_id}
    updates = {name: value for name, value in changes.items() if value is not None}
    _current.set(dataclasses.replace(_current.get(), **updates))


class ContextFilter(logging.Filter):
    """Sets ``record.ctx`` to the emitting task's prefix."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.ctx = _current.get().prefix
        return True
