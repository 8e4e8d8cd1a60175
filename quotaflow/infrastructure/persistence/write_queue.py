"""Per-entity FIFO serialization of async read-modify-write tasks.

Tasks submitted under the same entity id run one at a time in submission
order; different ids proceed concurrently. Coordination is in-process only:
two processes writing the same file are not protected from each other.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, TypeVar

from quotaflow.domain.models.common import EntityId

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WriteQueue:
    """Chains tasks per entity id so they never overlap."""

    def __init__(self):
        self._tails: Dict[EntityId, "asyncio.Future[None]"] = {}
        self._pending: Dict[EntityId, int] = {}

    async def run_serialized(self, entity_id: EntityId, task: Callable[[], Awaitable[T]]) -> T:
        """Runs ``task()`` after every earlier task for ``entity_id`` has settled.

        Args:
            entity_id: Serialization key, e.g. a record id.
            task: Zero-argument coroutine function performing the write.

        Returns:
            Whatever ``task()`` returns. Its exception, if any, is raised here
            only; later tasks in the chain still run.
        """
        if not entity_id:
            logger.warning("run_serialized called without an entity id, running unserialized")
            return await task()

        loop = asyncio.get_running_loop()
        previous = self._tails.get(entity_id)
        done: "asyncio.Future[None]" = loop.create_future()
        self._tails[entity_id] = done
        self._pending[entity_id] = self._pending.get(entity_id, 0) + 1
        if previous is not None:
            logger.debug(f"Write for '{entity_id}' queued ({self._pending[entity_id]} pending)")

        try:
            if previous is not None:
                # Our own cancellation must not cancel the predecessor
                await asyncio.shield(previous)
            return await task()
        finally:
            if previous is not None and not previous.done():
                # Cancelled while queued: successors still wait for the predecessor
                previous.add_done_callback(lambda _: self._release(entity_id, done))
            else:
                self._release(entity_id, done)

    def _release(self, entity_id: str, done: "asyncio.Future[None]") -> None:
        if not done.done():
            done.set_result(None)
        if self._tails.get(entity_id) is done:
            del self._tails[entity_id]
        remaining = self._pending.get(entity_id, 1) - 1
        if remaining > 0:
            self._pending[entity_id] = remaining
        else:
            self._pending.pop(entity_id, None)

    def pending_count(self, entity_id: EntityId) -> int:
        """Number of tasks queued or running for ``entity_id``."""
        return self._pending.get(entity_id, 0)

    def active_entities(self) -> List[EntityId]:
        return list(self._pending)
