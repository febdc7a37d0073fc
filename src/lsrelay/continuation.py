"""Callback-to-awaitable adapter for remote calls.

Remote operations report completion through a reply callback carrying either
a value or an error. A Continuation turns that into a single awaited result
and enforces that it is resolved exactly once.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from lsrelay.errors import ContinuationAlreadyResolvedError

if TYPE_CHECKING:
    from lsrelay.service.connection import RemoteExtensionService, ServiceConnection

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Continuation(Generic[T]):
    """Single-resolution result handle.

    ``resume`` and ``reject`` may be called from callbacks running on the event
    loop. The first call wins; any later call raises
    ContinuationAlreadyResolvedError because it means a relay bug.
    """

    def __init__(self) -> None:
        self._future: asyncio.Future[T] = asyncio.get_running_loop().create_future()

    @property
    def is_resolved(self) -> bool:
        return self._future.done()

    def resume(self, value: T) -> None:
        self._check_unresolved()
        self._future.set_result(value)

    def reject(self, error: BaseException) -> None:
        self._check_unresolved()
        self._future.set_exception(error)

    def reject_if_pending(self, error: BaseException) -> bool:
        """Force-fail the continuation unless it already resolved.

        Used when the underlying connection or process goes away.
        """
        if self._future.done():
            return False
        self._future.set_exception(error)
        return True

    async def wait(self) -> T:
        """Await the result.

        Cancelling the waiter leaves the continuation pending, so a reply that
        arrives afterwards still resolves it exactly once.
        """
        return await asyncio.shield(self._future)

    def _check_unresolved(self) -> None:
        if self._future.done():
            raise ContinuationAlreadyResolvedError(
                "continuation resolved more than once"
            )


ServiceCall = Callable[["RemoteExtensionService", Continuation[Any]], None]


async def with_service_connected(
    connection: ServiceConnection,
    fn: ServiceCall,
) -> Any:
    """Invoke one remote operation and await its reply.

    The continuation is registered with the connection so that invalidation
    rejects it together with every other outstanding call.
    """
    continuation: Continuation[Any] = Continuation()
    connection.track(continuation)
    try:
        try:
            fn(connection.remote_service, continuation)
        except ContinuationAlreadyResolvedError:
            raise
        except Exception as e:
            continuation.reject_if_pending(e)
        return await continuation.wait()
    finally:
        connection.untrack(continuation)
