from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, TypeVar

from iamprovider.logging import get_logger
from iamprovider.service.errors import ServerError

logger = get_logger(__name__)

T = TypeVar("T")


class DependencyTimeoutError(ServerError):
    """A store, hasher or cache call exceeded its time budget (503)."""

    default_message = "a backing service did not respond in time"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message, status_code=503)


async def run_bounded(
    func: Callable[..., T], *args: Any, timeout: Optional[float], label: str = "store"
) -> T:
    """Run a blocking call in a worker thread under a timeout.

    A timeout is raised as :class:`DependencyTimeoutError`, never turned into
    an empty result.
    """
    try:
        if timeout is None:
            return await asyncio.to_thread(func, *args)
        return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout)
    except asyncio.TimeoutError:
        logger.error(
            "dependency_call_timeout",
            dependency=label,
            call=getattr(func, "__name__", repr(func)),
            timeout=timeout,
        )
        raise DependencyTimeoutError()


class BoundedCaller:
    """Callable wrapper binding :func:`run_bounded` to one timeout."""

    def __init__(self, timeout: Optional[float], *, label: str = "store") -> None:
        self.timeout = timeout
        self.label = label

    async def __call__(self, func: Callable[..., T], *args: Any) -> T:
        return await run_bounded(func, *args, timeout=self.timeout, label=self.label)
