"""Fan-out of full snapshots to live observers."""

from __future__ import annotations

import asyncio
import itertools
import logging
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, Optional

from app.schemas import Snapshot

logger = logging.getLogger(__name__)

Message = Dict[str, Any]
SendJson = Callable[[Message], Awaitable[None]]

_ids = itertools.count(1)


def serialize_snapshot(snapshot: Snapshot) -> Message:
    return snapshot.model_dump(mode="json", by_alias=True)


class Observer:
    """One connected client with a bounded outbox drained on its event loop.

    ``offer`` may be called from any thread. An observer whose outbox overflows
    is closed rather than allowed to slow anybody else down.
    """

    def __init__(
        self,
        send_json: SendJson,
        loop: asyncio.AbstractEventLoop,
        max_pending: int = 32,
    ) -> None:
        self.id = next(_ids)
        self._send_json = send_json
        self._loop = loop
        self._outbox: asyncio.Queue[Optional[Message]] = asyncio.Queue(maxsize=max_pending)
        self.closed = False

    def offer(self, message: Message) -> None:
        try:
            self._loop.call_soon_threadsafe(self._enqueue, message)
        except RuntimeError:
            # Event loop already closed.
            self.closed = True

    def close(self) -> None:
        try:
            self._loop.call_soon_threadsafe(self._shutdown)
        except RuntimeError:
            self.closed = True

    async def pump(self) -> None:
        """Deliver queued messages until the observer is closed or a send fails."""
        while True:
            message = await self._outbox.get()
            if message is None:
                return
            try:
                await self._send_json(message)
            except Exception as exc:  # noqa: BLE001 - any send failure drops the observer
                logger.info("Dropping observer after failed send: %s", exc)
                self.closed = True
                return

    def _enqueue(self, message: Message) -> None:
        if self.closed:
            return
        try:
            self._outbox.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Observer %s is too slow; dropping it", self.id)
            self._shutdown()

    def _shutdown(self) -> None:
        self.closed = True
        while not self._outbox.empty():
            self._outbox.get_nowait()
        self._outbox.put_nowait(None)


class Broadcaster:
    """Keeps the latest serialized snapshot and pushes every change to observers.

    ``publish`` only enqueues, so it is safe to call while holding the reducer
    lock and from any thread.
    """

    def __init__(self) -> None:
        self._observers: Dict[int, Observer] = {}
        self._latest: Optional[Message] = None
        self._lock = Lock()

    @property
    def observer_count(self) -> int:
        with self._lock:
            return len(self._observers)

    def latest(self) -> Optional[Message]:
        with self._lock:
            return self._latest

    def publish(self, snapshot: Snapshot) -> None:
        message = serialize_snapshot(snapshot)
        with self._lock:
            self._latest = message
            observers = list(self._observers.values())
            for observer in observers:
                observer.offer(message)
        stale = [observer for observer in observers if observer.closed]
        for observer in stale:
            self.disconnect(observer)

    def connect(self, observer: Observer) -> None:
        """Register an observer; it receives the current snapshot before any update."""
        with self._lock:
            self._observers[observer.id] = observer
            if self._latest is not None:
                observer.offer(self._latest)
            count = len(self._observers)
        logger.info("Observer connected", extra={"observers": count})

    def disconnect(self, observer: Observer) -> None:
        with self._lock:
            removed = self._observers.pop(observer.id, None)
            count = len(self._observers)
        if removed is not None:
            observer.close()
            logger.info("Observer disconnected", extra={"observers": count})

    def close(self) -> None:
        with self._lock:
            observers = list(self._observers.values())
            self._observers.clear()
        for observer in observers:
            observer.close()
