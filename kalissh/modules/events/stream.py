import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, AsyncIterator, Dict, List, Optional

logger = logging.getLogger(__name__)

PROGRESS = "progress"
END = "end"


@dataclass(frozen=True)
class StreamEvent:
    event: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_end(self) -> bool:
        return self.event == END


class EventStream:
    """
    One-directional progress channel for a single executing session.

    Every subscriber gets its own bounded queue. Publishing never blocks the
    producer: when a subscriber falls behind, its oldest undelivered progress
    event is dropped. Closing delivers exactly one end event to every
    subscriber, after which publish() is a no-op.
    """

    def __init__(self, session_id: str, maxsize: int = 100):
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self.session_id = session_id
        self.maxsize = maxsize
        self._subscribers: List[asyncio.Queue] = []
        self._closed = False
        self._end_event: Optional[StreamEvent] = None
        self.published = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, message: str, **extra: Any) -> bool:
        """
        Emit a progress message.

        Returns:
            False if the stream is already closed
        """
        if self._closed:
            return False
        event = StreamEvent(
            event=PROGRESS,
            data={
                "session_id": self.session_id,
                "message": message,
                "timestamp": datetime.now(UTC).isoformat(),
                **extra,
            },
        )
        for queue in self._subscribers:
            self._put_dropping_oldest(queue, event)
        self.published += 1
        return True

    def close(self, status: str = "completed", discard_pending: bool = False, **extra: Any) -> bool:
        """
        Emit the terminal end event and close the stream.

        Args:
            status: Terminal status reported to subscribers
            discard_pending: Drop progress not yet delivered (used on cancel)

        Returns:
            False if the stream was already closed
        """
        if self._closed:
            return False
        self._closed = True
        self._end_event = StreamEvent(
            event=END,
            data={"session_id": self.session_id, "status": status, **extra},
        )
        for queue in self._subscribers:
            if discard_pending:
                self._drain(queue)
            self._put_dropping_oldest(queue, self._end_event)
        logger.debug(f"Event stream for {self.session_id} closed ({status})")
        return True

    async def subscribe(self) -> AsyncIterator[StreamEvent]:
        """
        Iterate over events until (and including) the end event.

        Subscribing after close yields only the end event.
        """
        if self._closed:
            yield self._end_event
            return

        queue: asyncio.Queue = asyncio.Queue(maxsize=self.maxsize)
        self._subscribers.append(queue)
        try:
            while True:
                event = await queue.get()
                yield event
                if event.is_end:
                    return
        finally:
            self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @staticmethod
    def _put_dropping_oldest(queue: asyncio.Queue, event: StreamEvent) -> None:
        while queue.full():
            queue.get_nowait()
        queue.put_nowait(event)

    @staticmethod
    def _drain(queue: asyncio.Queue) -> None:
        while not queue.empty():
            queue.get_nowait()
