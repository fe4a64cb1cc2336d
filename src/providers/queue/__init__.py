"""Job queue providers.

MemoryJobQueue is an asyncio-backed queue for single-process workers and
tests.  Broker-backed queues implement IJobQueue the same way.
"""

from src.providers.queue.memory_queue import MemoryJobQueue

__all__ = ["MemoryJobQueue"]
