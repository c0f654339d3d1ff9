"""Publish/subscribe for committed endowment changes.

The service publishes one event per committed command. Notification,
payment, and audit collaborators subscribe to what they need:

    bus = EventBus()
    bus.on(TRANCHE_RESOLVED, notify_donor)       # exact name
    bus.on("endowment.*", write_audit_line)      # every name under a prefix
    bus.on_all(metrics.count)                    # everything

Hooks may be plain callables or coroutine functions. A hook that raises is
logged and skipped: the command that produced the event has already
committed, so there is nothing to roll back.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict, deque
from dataclasses import dataclass, field
from time import time
from typing import Any

from loguru import logger

CONTRIBUTION_RECORDED = "endowment.contribution.recorded"
PAYMENT_APPLIED = "endowment.payment.applied"
DISTRIBUTION_RECORDED = "endowment.distribution.recorded"
INVESTMENT_RETURN_RECORDED = "endowment.investment_return.recorded"
SCHEDULE_EXTENDED = "endowment.schedule.extended"
TRANCHE_RESOLVED = "tranche.resolved"
TRANCHE_PREFERENCE_FAILED = "tranche.preference.failed"
INSTALLMENT_PAID = "tranche.installment.paid"
DONOR_NOTIFICATION = "donor.notification"
LEDGER_INCONSISTENCY = "ledger.inconsistency"

WILDCARD = "*"

Hook = Any  # Callable[[Event], None] | Callable[[Event], Awaitable[None]]


@dataclass(frozen=True)
class Event:
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time)
    source: str = ""

    @property
    def endowment_id(self) -> str | None:
        return self.payload.get("endowment_id")


def _topics(name: str) -> list[str]:
    """Subscription keys that match *name*: itself, each parent prefix, then the wildcard."""
    parts = name.split(".")
    prefixes = [".".join(parts[:i]) + ".*" for i in range(len(parts) - 1, 0, -1)]
    return [name, *prefixes, WILDCARD]


class EventBus:
    """In-process bus keyed by event name, dotted prefix (``"tranche.*"``), or ``"*"``.

    The last ``history_size`` events are kept in ``recent`` so an operator
    command can show what just happened without a subscriber in place.
    """

    def __init__(self, history_size: int = 100) -> None:
        self._hooks: dict[str, list[Hook]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()
        self.recent: deque[Event] = deque(maxlen=history_size)

    def on(self, topic: str, hook: Hook) -> None:
        self._hooks[topic].append(hook)

    def on_all(self, hook: Hook) -> None:
        self.on(WILDCARD, hook)

    def off(self, topic: str, hook: Hook) -> None:
        """Unsubscribe *hook*; unknown hooks are ignored."""
        hooks = self._hooks.get(topic)
        if hooks and hook in hooks:
            hooks.remove(hook)

    def subscribers(self, name: str) -> list[Hook]:
        """Hooks an event called *name* reaches, most specific first."""
        return [hook for topic in _topics(name) for hook in self._hooks.get(topic, ())]

    async def emit(self, event: Event) -> None:
        """Deliver *event*, awaiting coroutine hooks in order."""
        self.recent.append(event)
        for hook in self.subscribers(event.name):
            try:
                result = hook(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.warning(f"Event hook {hook!r} failed for {event.name}: {exc}")

    def emit_sync(self, event: Event) -> None:
        """Deliver *event* from synchronous code.

        Coroutine hooks become tasks on the running loop, or are skipped
        when no loop is running.
        """
        self.recent.append(event)
        try:
            loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        for hook in self.subscribers(event.name):
            if inspect.iscoroutinefunction(hook):
                if loop is None:
                    logger.debug(f"No running loop, skipping async hook {hook!r} for {event.name}")
                    continue
                task = loop.create_task(self._guarded(hook, event))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
                continue
            try:
                hook(event)
            except Exception as exc:
                logger.warning(f"Event hook {hook!r} failed for {event.name}: {exc}")

    @staticmethod
    async def _guarded(hook: Hook, event: Event) -> None:
        try:
            await hook(event)
        except Exception as exc:
            logger.warning(f"Event hook {hook!r} failed for {event.name}: {exc}")
