from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator


# Label of the request or scheduler job whose work is running; slow-query and
# request logs carry it.
current_operation: ContextVar[str] = ContextVar('current_operation', default='idle')


@contextmanager
def operation_scope(label: str) -> Iterator[str]:
    token = current_operation.set(label)
    try:
        yield label
    finally:
        current_operation.reset(token)
