"""Connectivity recovery for an established call.

Watches the transport's ICE connection state and attempts bounded
connectivity restarts:

- "disconnected": wait ``delay_s`` (default 10s); restart if still disconnected
- "failed": restart immediately
- "connected"/"completed": reset the attempt counter, cancel any pending timer

The controller never abandons a call on its own. When the budget is spent
the call stays up, degraded, until the user moves on.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

DEFAULT_RECOVERY_DELAY_S = 10.0
DEFAULT_MAX_RESTARTS = 2

RECOVERED_STATES = frozenset({"connected", "completed"})


class RecoveryController:
    """Bounded ICE-restart policy for one call attempt."""

    def __init__(
        self,
        restart: Callable[[], Awaitable[None]],
        current_state: Callable[[], str],
        delay_s: float = DEFAULT_RECOVERY_DELAY_S,
        max_attempts: int = DEFAULT_MAX_RESTARTS,
        on_timer_expired: Callable[[], None] | None = None,
        on_exhausted: Callable[[], None] | None = None,
    ) -> None:
        """Initialize recovery controller.

        Args:
            restart: Coroutine function producing and sending a restart offer
            current_state: Returns the transport's current ICE connection state
            delay_s: Grace period before restarting a disconnected link
            max_attempts: Restart budget per call attempt
            on_timer_expired: If set, called when the grace timer fires instead
                of restarting directly (lets the owner serialize the restart
                with its other events by calling ``handle_timer_expired``)
            on_exhausted: Called once when a restart is refused for budget
        """
        self._restart = restart
        self._current_state = current_state
        self.delay_s = delay_s
        self.max_attempts = max_attempts
        self._on_timer_expired = on_timer_expired
        self._on_exhausted = on_exhausted

        self._attempts = 0
        self._timer: asyncio.Task[None] | None = None
        self._exhausted_reported = False
        self._cancelled = False

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def timer_pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def on_ice_state(self, state: str) -> None:
        """Feed one ICE connection state change."""
        if self._cancelled:
            return

        if state in RECOVERED_STATES:
            if self._attempts:
                logger.info("ICE recovered", extra={"attempts": self._attempts})
            self._attempts = 0
            self._exhausted_reported = False
            self._cancel_timer()

        elif state == "disconnected":
            if not self.timer_pending:
                logger.info(
                    "ICE disconnected, will attempt restart if not recovered",
                    extra={"delay_s": self.delay_s},
                )
                self._timer = asyncio.create_task(self._wait_and_expire())

        elif state == "failed":
            logger.info("ICE failed, attempting immediate restart")
            self._cancel_timer()
            await self.attempt_restart()

        elif state == "closed":
            self._cancel_timer()

    async def handle_timer_expired(self) -> None:
        """Restart if the link is still disconnected after the grace period."""
        if self._cancelled:
            return
        if self._current_state() == "disconnected":
            logger.info("Still disconnected after grace period, attempting ICE restart")
            await self.attempt_restart()

    async def attempt_restart(self) -> bool:
        """Spend one restart from the budget.

        Returns:
            True if a restart was attempted, False if the budget is spent
        """
        if self._cancelled:
            return False

        if self._attempts >= self.max_attempts:
            if not self._exhausted_reported:
                self._exhausted_reported = True
                logger.warning(
                    "ICE restart budget exhausted, leaving call degraded",
                    extra={"max_attempts": self.max_attempts},
                )
                if self._on_exhausted is not None:
                    self._on_exhausted()
            return False

        self._attempts += 1
        logger.info("Attempting ICE restart", extra={"attempt": self._attempts})
        try:
            await self._restart()
        except Exception as e:
            logger.error("ICE restart failed", extra={"attempt": self._attempts, "error": str(e)})
        return True

    def cancel(self) -> None:
        """Stop the controller for good (call attempt torn down)."""
        self._cancelled = True
        self._cancel_timer()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            if not self._timer.done() and self._timer is not asyncio.current_task():
                self._timer.cancel()
            self._timer = None

    async def _wait_and_expire(self) -> None:
        try:
            await asyncio.sleep(self.delay_s)
        except asyncio.CancelledError:
            return
        self._timer = None
        if self._on_timer_expired is not None:
            self._on_timer_expired()
        else:
            await self.handle_timer_expired()
