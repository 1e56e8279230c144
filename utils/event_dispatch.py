"""
Fire-and-forget dispatch to notification and audit sinks.

Observers never gate a transition: each delivery runs as its own task and a
failure is logged, never raised back into the workflow.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Set

logger = logging.getLogger(__name__)


class EventDispatcher:
    """Schedules observer deliveries as background tasks"""

    def __init__(self, notification_sink=None, audit_sink=None):
        self.notification_sink = notification_sink
        self.audit_sink = audit_sink
        self._pending: Set[asyncio.Task] = set()

    def notify(self, project_id: str, event_name: str, payload: Optional[Dict[str, Any]] = None):
        if self.notification_sink is None:
            return
        self._spawn(
            self.notification_sink.notify(project_id, event_name, payload or {}),
            f"notify:{event_name}",
        )

    def audit(
        self,
        action: str,
        actor_id: str,
        entity_type: str,
        entity_id: str,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
    ):
        if self.audit_sink is None:
            return
        changes = {}
        if old_values is not None:
            changes["old_values"] = old_values
        if new_values is not None:
            changes["new_values"] = new_values
        self._spawn(
            self.audit_sink.log_event(action, actor_id, entity_type, entity_id, changes),
            f"audit:{action}",
        )

    def _spawn(self, coro, label: str):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning(f"⚠️ No running event loop, dropped observer event {label}")
            return

        task = loop.create_task(coro, name=label)
        self._pending.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task):
        self._pending.discard(task)
        if task.cancelled():
            logger.warning(f"⚠️ Observer task {task.get_name()} was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"❌ Observer task {task.get_name()} failed: {type(error).__name__}: {error}")

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def drain(self, timeout: Optional[float] = None):
        """Wait for in-flight deliveries (shutdown hooks and tests)"""
        if not self._pending:
            return
        await asyncio.wait(set(self._pending), timeout=timeout)
