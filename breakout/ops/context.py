from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

# One id per evaluation pass; audit rows pick it up when none is passed.
_pass_id: ContextVar[Optional[str]] = ContextVar("breakout_pass_id", default=None)


def get_pass_id() -> Optional[str]:
    return _pass_id.get()


@contextmanager
def evaluation_pass(pass_id: Optional[str] = None) -> Iterator[str]:
    """Bind a pass id for the duration of one evaluation pass."""
    pid = pass_id or uuid.uuid4().hex[:12]
    token = _pass_id.set(pid)
    try:
        yield pid
    finally:
        _pass_id.reset(token)
