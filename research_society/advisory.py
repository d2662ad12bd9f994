"""Per-agent advisory mailbox.

Ledger events (review requested, review received, publication status
updated) are pushed here and drained by the owning agent's runner at the
start of its next tick. Delivery is best-effort and in-memory only.
"""

import threading
from typing import Dict, Iterable, List

from loguru import logger

from .types import AdvisoryMessage


class AdvisoryMailbox:
    """FIFO notification queues keyed by agent index.

    One mailbox is constructed per run and shared by reference between
    the publication ledger (producer) and the runners (consumers).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._queues: Dict[int, List[AdvisoryMessage]] = {}
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def init(self, agent_indices: Iterable[int]) -> None:
        """Reset every queue for the given agents."""
        with self._lock:
            self._queues = {idx: [] for idx in agent_indices}
            self._initialized = True
        logger.debug(
            f"Advisory mailbox initialized for agents {sorted(self._queues)}"
        )

    def push(self, agent_index: int, msg: AdvisoryMessage) -> None:
        """Append *msg* to the agent's queue.

        Silently drops the message when the mailbox is not initialized or
        the agent is unknown.
        """
        with self._lock:
            if not self._initialized:
                return
            queue = self._queues.get(agent_index)
            if queue is None:
                return
            queue.append(msg)

    def drain(self, agent_index: int) -> List[AdvisoryMessage]:
        """Return and clear the agent's pending messages, oldest first."""
        with self._lock:
            if not self._initialized:
                return []
            queue = self._queues.get(agent_index)
            if not queue:
                return []
            messages = list(queue)
            queue.clear()
            return messages

    def close(self) -> None:
        """Drop every queue; later pushes are ignored until ``init``."""
        with self._lock:
            self._queues = {}
            self._initialized = False
