from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> str:
    """Request ID of the task currently running, ``app`` outside of one."""
    return _request_id.get() or "app"


@contextmanager
def request_scope(request_id: str) -> Iterator[str]:
    """
    Tag every log line emitted inside the block with ``request_id``.

    ``asyncio.run`` copies the current context, so entering the scope around
    it covers all coroutines of the task.
    """
    token = _request_id.set(request_id)
    try:
        yield request_id
    finally:
        _request_id.reset(token)
