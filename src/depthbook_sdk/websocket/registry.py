"""
Subscription registry.

Maps each stream key to exactly one handler and tracks the in-flight
subscribe/unsubscribe request for it. On disconnect every registered handler
is told exactly once, then the registry is emptied; subscribers re-subscribe
after reconnecting if they still want the stream.

Subscription lifecycle:
    PENDING -> ACTIVE -> CLOSING -> removed   (subscribe, unsubscribe)
    PENDING | ACTIVE | CLOSING -> NOTIFIED -> removed   (disconnect)
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from ..errors import (
    ConnectionDropped,
    DuplicateSubscriptionError,
    PendingRequestError,
    RequestTimeout,
    SubscriptionError,
    SubscriptionTimeout,
)
from ..types import StreamKey
from .jobs import JobCorrelator

log = logging.getLogger(__name__)


class StreamHandler(Protocol):
    """Receiver of one subscribed stream."""

    async def on_message(self, payload: Any) -> None:
        ...

    async def on_disconnect(self) -> None:
        ...


class CallbackHandler:
    """Adapts plain coroutine functions to the StreamHandler interface."""

    def __init__(
        self,
        on_message: Callable[[Any], Awaitable[None]],
        on_disconnect: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self._on_message = on_message
        self._on_disconnect = on_disconnect

    async def on_message(self, payload: Any) -> None:
        await self._on_message(payload)

    async def on_disconnect(self) -> None:
        if self._on_disconnect is not None:
            await self._on_disconnect()


class SubscriptionState(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CLOSING = "closing"
    NOTIFIED = "notified"


@dataclass
class Subscription:
    key: StreamKey
    handler: StreamHandler
    state: SubscriptionState = SubscriptionState.PENDING


# Failures absorbed by the retry loop (or turned into SubscriptionTimeout)
RETRYABLE = (ConnectionDropped, RequestTimeout)


class SubscriptionRegistry:
    """
    Stream key -> handler table with request de-duplication.

    Args:
        jobs: Correlator used to send requests and await acknowledgements.
        repeat_cooldown: Seconds to sleep between retries when no timeout is given.
        is_terminated: Returns True once the owning session will never connect
                       again; retries then stop with ConnectionDropped.
        logger: Optional logger, defaults to this module's logger.
    """

    def __init__(
        self,
        jobs: JobCorrelator,
        repeat_cooldown: float = 5.0,
        is_terminated: Optional[Callable[[], bool]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._jobs = jobs
        self.repeat_cooldown = repeat_cooldown
        self._is_terminated = is_terminated or (lambda: False)
        self._log = logger or log
        self._subs: dict[StreamKey, Subscription] = {}

    def __len__(self) -> int:
        return len(self._subs)

    def __contains__(self, key: StreamKey) -> bool:
        return key in self._subs

    def state(self, key: StreamKey) -> Optional[SubscriptionState]:
        sub = self._subs.get(key)
        return sub.state if sub else None

    def keys(self) -> list[StreamKey]:
        return list(self._subs)

    # =========================================================================
    # Subscribe / unsubscribe
    # =========================================================================

    async def subscribe(
        self,
        key: StreamKey,
        handler: StreamHandler,
        payload: dict,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Register handler for key and send the subscribe request.

        Without timeout, dropped connections and missing replies are retried
        every repeat_cooldown seconds until acknowledged or the session
        terminates. With timeout, the first such failure raises SubscriptionTimeout.

        Returns:
            The "result" field of the acknowledgement.

        Raises:
            DuplicateSubscriptionError: key is already registered.
            SubscriptionError: Venue replied with an error.
            SubscriptionTimeout: Explicit timeout given and the attempt failed.
            ConnectionDropped: The session terminated before the acknowledgement.
        """
        while True:
            try:
                return await self._try_subscribe(key, handler, payload, timeout)
            except RETRYABLE as e:
                if timeout is not None:
                    raise SubscriptionTimeout(f"Subscribe {key} failed: {e}") from e
                if self._is_terminated():
                    raise ConnectionDropped(f"Session terminated, giving up subscribe {key}") from e
                self._log.info("Subscribe %s failed (%s), retrying in %.1fs", key, e, self.repeat_cooldown)
                await asyncio.sleep(self.repeat_cooldown)

    async def _try_subscribe(
        self, key: StreamKey, handler: StreamHandler, payload: dict, timeout: Optional[float]
    ) -> Any:
        if key in self._subs:
            raise DuplicateSubscriptionError(f"Duplicate stream {key}")

        sub = Subscription(key, handler)
        self._subs[key] = sub
        try:
            reply = await self._jobs.request(payload, timeout)
        except BaseException:
            self._discard(sub)
            raise

        if self._subs.get(key) is not sub:
            # Disconnect round already notified and removed this registration
            raise ConnectionDropped(f"Connection dropped while subscribing {key}")
        if "error" in reply or "result" not in reply:
            self._discard(sub)
            raise SubscriptionError(f"Subscribe {key} rejected: {reply.get('error', reply)}")

        sub.state = SubscriptionState.ACTIVE
        return reply["result"]

    async def unsubscribe(
        self,
        key: StreamKey,
        payload: dict,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Send the unsubscribe request for key and drop it once acknowledged.

        Unknown keys succeed immediately with "OK" and send nothing.

        Raises:
            PendingRequestError: Another request for key is still in flight.
            SubscriptionError: Venue replied with an error.
            SubscriptionTimeout: Explicit timeout given and the attempt failed.
            ConnectionDropped: The session terminated before the acknowledgement.
        """
        while True:
            try:
                return await self._try_unsubscribe(key, payload, timeout)
            except RETRYABLE as e:
                if timeout is not None:
                    raise SubscriptionTimeout(f"Unsubscribe {key} failed: {e}") from e
                if self._is_terminated():
                    raise ConnectionDropped(f"Session terminated, giving up unsubscribe {key}") from e
                self._log.info("Unsubscribe %s failed (%s), retrying in %.1fs", key, e, self.repeat_cooldown)
                await asyncio.sleep(self.repeat_cooldown)

    async def _try_unsubscribe(self, key: StreamKey, payload: dict, timeout: Optional[float]) -> Any:
        sub = self._subs.get(key)
        if sub is None:
            return "OK"
        if sub.state is not SubscriptionState.ACTIVE:
            raise PendingRequestError(f"repeat: request for {key} already in flight")

        sub.state = SubscriptionState.CLOSING
        try:
            reply = await self._jobs.request(payload, timeout)
        except BaseException:
            self._reactivate(sub)
            raise

        if self._subs.get(key) is not sub:
            # Disconnected meanwhile, nothing left to unsubscribe
            return "OK"
        if "error" in reply or "result" not in reply:
            self._reactivate(sub)
            raise SubscriptionError(f"Unsubscribe {key} rejected: {reply.get('error', reply)}")

        del self._subs[key]
        return reply["result"]

    def _discard(self, sub: Subscription):
        if self._subs.get(sub.key) is sub:
            del self._subs[sub.key]

    def _reactivate(self, sub: Subscription):
        if self._subs.get(sub.key) is sub and sub.state is SubscriptionState.CLOSING:
            sub.state = SubscriptionState.ACTIVE

    # =========================================================================
    # Delivery
    # =========================================================================

    async def dispatch(self, key: StreamKey, payload: Any) -> bool:
        """Deliver a push payload to the handler of key. Returns False if nobody listens."""
        sub = self._subs.get(key)
        if sub is None or sub.state not in (SubscriptionState.ACTIVE, SubscriptionState.CLOSING):
            self._log.debug("No active subscription for %s, dropping message", key)
            return False
        await sub.handler.on_message(payload)
        return True

    async def notify_disconnect(self) -> int:
        """
        Tell every registered handler about the disconnect, exactly once.

        The table is emptied before any handler runs. Handlers that want to
        re-subscribe should spawn a task rather than await it here.

        Returns:
            Number of handlers notified.
        """
        subs = list(self._subs.values())
        self._subs.clear()

        notified = 0
        for sub in subs:
            if sub.state is SubscriptionState.NOTIFIED:
                continue
            sub.state = SubscriptionState.NOTIFIED
            notified += 1
            try:
                await sub.handler.on_disconnect()
            except Exception:
                self._log.exception("Disconnect handler for %s failed", sub.key)
        return notified
