"""Helpers for correlation identifiers in logs."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from uuid import uuid4

from score_engine.config.logging_config import bind_context, unbind_context

CORRELATION_ID_KEY = "correlation_id"
QUEUE_ITEM_KEYS = ("queue_item_id", "unique_key", "job_kind")


@contextmanager
def correlation_scope(existing_id: str | None = None) -> Iterator[str]:
    """Bind a correlation identifier for the lifetime of the context."""

    correlation_id = existing_id or str(uuid4())
    bind_context(**{CORRELATION_ID_KEY: correlation_id})
    try:
        yield correlation_id
    finally:
        unbind_context(CORRELATION_ID_KEY)


@contextmanager
def queue_item_scope(
    queue_item_id: int, unique_key: str, job_kind: str
) -> Iterator[str]:
    """Bind queue item identifiers plus a fresh correlation id."""

    bind_context(queue_item_id=queue_item_id, unique_key=unique_key, job_kind=job_kind)
    try:
        with correlation_scope() as correlation_id:
            yield correlation_id
    finally:
        unbind_context(*QUEUE_ITEM_KEYS)


__all__ = ["CORRELATION_ID_KEY", "correlation_scope", "queue_item_scope"]
