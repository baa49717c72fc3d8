"""Ordered buffer for early ICE candidates.

The partner may relay connectivity artifacts before this side has applied
a remote session description. Those are held here and applied strictly in
arrival order the moment the description lands, exactly once.
"""

import logging
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

Candidate = dict[str, Any] | None


class CandidateBuffer:
    """FIFO of candidates awaiting a remote description.

    One buffer serves one call attempt. After ``drain`` it is sealed:
    later candidates must go straight to the transport, and a new pairing
    gets a new buffer.
    """

    def __init__(self) -> None:
        self._pending: deque[Candidate] = deque()
        self._drained = False

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def drained(self) -> bool:
        return self._drained

    def pending(self) -> list[Candidate]:
        """Get buffered candidates in arrival order."""
        return list(self._pending)

    def add(self, candidate: Candidate) -> None:
        """Append a candidate that arrived before the remote description.

        Raises:
            RuntimeError: If the buffer has already been drained
        """
        if self._drained:
            raise RuntimeError("Candidate buffer already drained")
        self._pending.append(candidate)

    async def drain(self, apply: Callable[[Candidate], Awaitable[None]]) -> int:
        """Apply every buffered candidate in arrival order, then seal.

        A candidate the transport rejects is logged and skipped; the rest
        are still applied.

        Args:
            apply: Coroutine function that hands one candidate to the transport

        Returns:
            Number of candidates applied successfully
        """
        if self._drained:
            return 0
        self._drained = True

        applied = 0
        count = len(self._pending)
        if count:
            logger.info("Flushing buffered ICE candidates", extra={"count": count})

        while self._pending:
            candidate = self._pending.popleft()
            try:
                await apply(candidate)
                applied += 1
            except Exception as e:
                logger.warning(
                    "Error adding buffered ICE candidate",
                    extra={"error": str(e)},
                )
        return applied

    def clear(self) -> None:
        """Discard pending candidates without applying them."""
        self._pending.clear()
