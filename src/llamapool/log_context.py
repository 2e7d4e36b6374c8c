"""Logging context helpers: workflow and job ids on every log record."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

_WORKFLOW_ID: ContextVar[str] = ContextVar("workflow_id", default="-")
_JOB_ID: ContextVar[str] = ContextVar("job_id", default="-")


def set_log_context(
    *,
    workflow_id: str | None = None,
    job_id: str | None = None,
) -> list[tuple[ContextVar[str], object]]:
    """Set log context values and return tokens for reset."""
    tokens: list[tuple[ContextVar[str], object]] = []
    if workflow_id is not None:
        tokens.append((_WORKFLOW_ID, _WORKFLOW_ID.set(workflow_id)))
    if job_id is not None:
        tokens.append((_JOB_ID, _JOB_ID.set(job_id)))
    return tokens


def reset_log_context(tokens: list[tuple[ContextVar[str], object]]) -> None:
    """Reset log context values using tokens returned by set_log_context."""
    for var, token in reversed(tokens):
        var.reset(token)


@contextmanager
def log_context(
    *,
    workflow_id: str | None = None,
    job_id: str | None = None,
) -> Iterator[None]:
    """Context manager for applying log fields within a block."""
    tokens = set_log_context(workflow_id=workflow_id, job_id=job_id)
    try:
        yield
    finally:
        reset_log_context(tokens)


def current_job_id() -> str:
    return _JOB_ID.get()


def install_log_context() -> None:
    """Install a LogRecord factory that injects context fields."""
    if getattr(install_log_context, "_installed", False):
        return

    old_factory = logging.getLogRecordFactory()

    def record_factory(*args, **kwargs):
        record = old_factory(*args, **kwargs)
        record.workflow_id = _WORKFLOW_ID.get()
        record.job_id = _JOB_ID.get()
        return record

    logging.setLogRecordFactory(record_factory)
    install_log_context._installed = True


__all__ = [
    "current_job_id",
    "install_log_context",
    "log_context",
    "reset_log_context",
    "set_log_context",
]
