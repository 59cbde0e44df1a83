"""Per-conversation fallback timers.

When a customer message gets no automatic answer, an escalation is armed for
the conversation. If nothing cancels it before ``delay_seconds`` elapse, the
``on_fire`` callback runs once (it normally persists the fallback system
message) and the conversation returns to idle.

State per token: ``ARMED -> CANCELLED`` or ``ARMED -> FIRED``. A conversation
holds at most one armed token; arming again cancels the previous one. The
timer task re-checks its token under the conversation lock before firing, so
a cancel or re-arm that wins the race turns the late callback into a no-op.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import weakref
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Optional, Set, Union
from uuid import uuid4

from .models import EscalationState, PendingEscalation

logger = logging.getLogger(__name__)

FireCallback = Callable[[int], Union[Awaitable[None], None]]


class EscalationScheduler:
    """Registry of cancelable, per-conversation escalation tasks.

    All methods must be called from the event loop that owns the scheduler.
    ``arm`` and ``cancel`` are synchronous so callers holding
    :meth:`lock_for` can mutate timers without yielding.
    """

    def __init__(
        self,
        on_fire: FireCallback,
        *,
        delay_seconds: float = 120.0,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._on_fire = on_fire
        self.delay_seconds = delay_seconds
        self._clock = clock
        self._pending: Dict[int, PendingEscalation] = {}
        # A lock lives only while some coroutine holds or awaits it.
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public API

    def lock_for(self, conversation_id: int) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    def arm(self, conversation_id: int) -> PendingEscalation:
        """Start a fresh countdown, replacing any armed one."""
        self.cancel(conversation_id)
        now = self._clock()
        entry = PendingEscalation(
            conversation_id=conversation_id,
            armed_at=now,
            fire_at=now + timedelta(seconds=self.delay_seconds),
            token=uuid4().hex,
        )
        self._pending[conversation_id] = entry
        entry.task = asyncio.get_running_loop().create_task(
            self._run(entry), name=f"escalation-{conversation_id}-{entry.token[:8]}"
        )
        self._tasks.add(entry.task)
        entry.task.add_done_callback(self._tasks.discard)
        logger.info(
            "Escalation armed for conversation %s (token=%s, fire_at=%s)",
            conversation_id,
            entry.token,
            entry.fire_at.isoformat(),
        )
        return entry

    def cancel(self, conversation_id: int) -> bool:
        """Invalidate the armed token, if any. Safe to call repeatedly."""
        entry = self._pending.pop(conversation_id, None)
        if entry is None:
            return False
        entry.state = EscalationState.CANCELLED
        if entry.task is not None and not entry.task.done():
            entry.task.cancel()
        logger.info(
            "Escalation cancelled for conversation %s (token=%s)",
            conversation_id,
            entry.token,
        )
        return True

    def pending(self, conversation_id: int) -> Optional[PendingEscalation]:
        return self._pending.get(conversation_id)

    def state(self, conversation_id: int) -> EscalationState:
        if conversation_id in self._pending:
            return EscalationState.ARMED
        return EscalationState.IDLE

    def pending_count(self) -> int:
        return len(self._pending)

    def lock_count(self) -> int:
        return len(self._locks)

    def shutdown(self) -> None:
        """Cancel every armed timer without firing.

        A fallback that is already being delivered keeps running; use
        :meth:`aclose` to wait for it.
        """
        for conversation_id in list(self._pending):
            self.cancel(conversation_id)

    async def aclose(self, timeout: float = 10.0) -> None:
        """Cancel armed timers and wait for fallbacks already in flight.

        Deliveries still running after ``timeout`` seconds are cancelled.
        """
        self.shutdown()
        running = [task for task in self._tasks if not task.done()]
        if not running:
            return
        _, unfinished = await asyncio.wait(running, timeout=timeout)
        for task in unfinished:
            logger.warning(
                "Cancelling escalation task %s still running at shutdown", task.get_name()
            )
            task.cancel()
        if unfinished:
            await asyncio.wait(unfinished)

    # ------------------------------------------------------------------
    # Timer task

    def _is_current(self, entry: PendingEscalation) -> bool:
        current = self._pending.get(entry.conversation_id)
        return current is not None and current.token == entry.token

    async def _run(self, entry: PendingEscalation) -> None:
        await asyncio.sleep(self.delay_seconds)
        async with self.lock_for(entry.conversation_id):
            if not self._is_current(entry):
                logger.debug(
                    "Stale escalation token %s for conversation %s ignored",
                    entry.token,
                    entry.conversation_id,
                )
                return
            del self._pending[entry.conversation_id]
            entry.state = EscalationState.FIRED
            logger.info(
                "Escalation fired for conversation %s (token=%s)",
                entry.conversation_id,
                entry.token,
            )
            try:
                result = self._on_fire(entry.conversation_id)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Failed to deliver fallback message for conversation %s",
                    entry.conversation_id,
                )
