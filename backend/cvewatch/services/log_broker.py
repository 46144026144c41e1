import asyncio
from typing import Dict, Set
import structlog

logger = structlog.get_logger()


class LogBroker:
    """Fan-out of job events to live subscribers.

    Every subscriber owns its own queue, so it sees only events published
    after it subscribed and a slow or vanished consumer never holds up the
    producer or the other subscribers.
    """

    def __init__(self, max_queue_size: int = 10000):
        self.subscribers: Dict[int, Set[asyncio.Queue]] = {}
        self.max_queue_size = max_queue_size

    def subscribe(self, job_id: int) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self.subscribers.setdefault(job_id, set()).add(queue)
        logger.debug("Log stream subscribed", job_id=job_id, subscribers=len(self.subscribers[job_id]))
        return queue

    def unsubscribe(self, job_id: int, queue: asyncio.Queue):
        if job_id in self.subscribers:
            self.subscribers[job_id].discard(queue)
            if not self.subscribers[job_id]:
                del self.subscribers[job_id]

    def subscriber_count(self, job_id: int) -> int:
        return len(self.subscribers.get(job_id, ()))

    def is_subscribed(self, job_id: int, queue: asyncio.Queue) -> bool:
        """False once the queue was unsubscribed, including when dropped for lagging."""
        return queue in self.subscribers.get(job_id, ())

    def publish(self, job_id: int, message: dict):
        for queue in list(self.subscribers.get(job_id, ())):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning("Log stream subscriber lagging, dropping it", job_id=job_id)
                self.unsubscribe(job_id, queue)
