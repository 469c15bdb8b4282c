"""
Correlation ID tracking across async operations.

Every issued command and every inbound broker message is handled inside its
own correlation scope, so the log lines produced while routing it
(store -> router -> connection manager -> broker, and back) share one id.
"""

from __future__ import annotations

import contextvars
import uuid
from collections.abc import Generator
from contextlib import contextmanager

__all__ = [
    "correlation_context",
    "ensure_correlation_id",
    "generate_correlation_id",
    "get_correlation_id",
    "set_correlation_id",
]

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id",
    default=None,
)


def generate_correlation_id() -> str:
    """Return a new correlation id (UUID4 hex without dashes)."""
    return uuid.uuid4().hex


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def set_correlation_id(correlation_id: str | None) -> None:
    _ = _correlation_id.set(correlation_id)


@contextmanager
def correlation_context(
    correlation_id: str | None = None,
    auto_generate: bool = True,
) -> Generator[str | None]:
    """
    Scope a correlation id and restore the previous one on exit.

    Args:
        correlation_id: Specific id to use (None to auto-generate)
        auto_generate: Generate a new id when correlation_id is None

    Example:
        with correlation_context() as corr_id:
            store.issue_command("lamp-1", "on", True)
    """
    previous_id = get_correlation_id()
    if correlation_id is None and auto_generate:
        correlation_id = generate_correlation_id()
    set_correlation_id(correlation_id)
    try:
        yield correlation_id
    finally:
        set_correlation_id(previous_id)


def ensure_correlation_id() -> str:
    """Return the current correlation id, creating one for task entry points that have none."""
    current_id = get_correlation_id()
    if current_id is None:
        current_id = generate_correlation_id()
        set_correlation_id(current_id)
    return current_id
