"""
Request/reply correlation over the websocket.

Every outbound request gets a fresh integer id. The reply carrying the same
id settles the waiting caller; a dropped connection or a timeout settles it
with an error instead. Each job settles at most once, and replies for jobs
that are already gone are ignored.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from ..errors import ConnectionDropped, RequestTimeout

log = logging.getLogger(__name__)


@dataclass
class Job:
    """An outstanding request waiting for its reply."""

    idx: int
    request: dict
    waiter: asyncio.Future


class JobCorrelator:
    """
    Maps request ids to pending waiters.

    Args:
        send: Coroutine function writing one message to the socket.
        logger: Optional logger, defaults to this module's logger.
    """

    def __init__(
        self,
        send: Callable[[dict], Awaitable[None]],
        logger: Optional[logging.Logger] = None,
    ):
        self._send = send
        self._log = logger or log
        self._jobs: dict[int, Job] = {}
        self._last_id = 0

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, idx: int) -> bool:
        return idx in self._jobs

    def next_id(self) -> int:
        self._last_id += 1
        return self._last_id

    async def request(self, payload: dict, timeout: Optional[float] = None) -> dict:
        """
        Send a request and wait for the correlated reply.

        Args:
            payload: Request body. A copy is sent with a fresh "id" field.
            timeout: Seconds to wait for the reply, or None to wait until the
                     reply arrives or the connection drops.

        Returns:
            The reply message (contains "result" or "error").

        Raises:
            ConnectionDropped: Socket not connected or dropped before the reply.
            RequestTimeout: No reply within timeout.
        """
        idx = self.next_id()
        request = {**payload, "id": idx}
        waiter = asyncio.get_running_loop().create_future()
        self._jobs[idx] = Job(idx, request, waiter)
        try:
            await self._send(request)
            return await asyncio.wait_for(waiter, timeout)
        except asyncio.TimeoutError as e:
            raise RequestTimeout(f"No reply to request {idx} within {timeout}s") from e
        finally:
            self._jobs.pop(idx, None)
            if not waiter.done():
                waiter.cancel()
            elif not waiter.cancelled():
                # fail_all() may settle the waiter while the send is still pending
                waiter.exception()

    def resolve(self, reply: dict) -> bool:
        """Settle the job matching reply["id"]. Returns False for stale or unknown ids."""
        job = self._jobs.pop(reply.get("id"), None)
        if job is None or job.waiter.done():
            self._log.debug("Ignoring reply for unknown or settled request: %s", reply)
            return False
        job.waiter.set_result(reply)
        return True

    def fail_all(self, reason: str = "connection dropped") -> int:
        """Fail every outstanding job with ConnectionDropped. Returns the number failed."""
        jobs = list(self._jobs.values())
        self._jobs.clear()
        failed = 0
        for job in jobs:
            if not job.waiter.done():
                job.waiter.set_exception(ConnectionDropped(f"Request {job.idx}: {reason}"))
                failed += 1
        return failed
