"""
Background task manager for post-persistence side effects.

Registration responses are returned as soon as the document is stored;
confirmation emails and admin notifications run afterwards as tracked
fire-and-forget tasks. A failing task is logged and never reaches the client.
"""
import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from mailer import Mailer

logger = logging.getLogger(__name__)


class BackgroundTaskManager:
    """
    Tracks fire-and-forget side effects and bounds how many run at once.
    Work submitted at capacity is dropped with a warning, not queued.
    """
    def __init__(self, max_concurrent_tasks: int = 100):
        self.max_concurrent_tasks = max_concurrent_tasks
        self.rejected = 0
        self._running: Dict[str, asyncio.Task] = {}
        self._created = 0

    @staticmethod
    async def _run(task_id: str, coro) -> None:
        try:
            await coro
        except Exception as e:
            logger.error(f"❌ Background task {task_id} failed: {e}", exc_info=True)

    async def create_task(self, coro, task_name: Optional[str] = None) -> Optional[str]:
        """Schedule `coro`. Returns the task id, or None when at capacity."""
        label = task_name or "unnamed"
        if len(self._running) >= self.max_concurrent_tasks:
            self.rejected += 1
            logger.warning(
                f"⚠️ Dropped background task '{label}': "
                f"{len(self._running)}/{self.max_concurrent_tasks} already running."
            )
            coro.close()
            return None

        self._created += 1
        task_id = f"task_{self._created}_{label}"
        task = asyncio.create_task(self._run(task_id, coro), name=task_id)
        self._running[task_id] = task
        task.add_done_callback(lambda _: self._running.pop(task_id, None))
        logger.debug(f"Scheduled {task_id} ({len(self._running)}/{self.max_concurrent_tasks} running)")
        return task_id

    def get_active_task_count(self) -> int:
        return len(self._running)

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for in-flight tasks on shutdown; stragglers are cancelled."""
        tasks = [task for task in self._running.values() if not task.done()]
        if not tasks:
            return
        logger.info(f"Waiting for {len(tasks)} background task(s) to finish...")
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"⚠️ Cancelled {len(pending)} background task(s) still running at shutdown.")


_task_manager = BackgroundTaskManager(max_concurrent_tasks=100)


def get_task_manager() -> BackgroundTaskManager:
    return _task_manager


# ============================================================================
# Mail side effects
# ============================================================================

async def send_logged(mailer: Mailer, to: str, message: Dict[str, Any]) -> Dict[str, Any]:
    result = await mailer.send_mail(to=to, **message)
    if not result.get("success"):
        logger.warning(f"⚠️ Mail to {to} failed ('{message.get('subject')}'): {result.get('error')}")
    return result


async def notify_admins(mailer: Mailer, recipients: Iterable[str], message: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Send the same message to each admin; one failure does not stop the rest."""
    addresses = [address for address in recipients if address]
    if not addresses:
        logger.debug(f"No admin recipients configured for '{message.get('subject')}'.")
        return []
    results = await asyncio.gather(
        *(send_logged(mailer, address, message) for address in addresses),
        return_exceptions=True,
    )
    for address, result in zip(addresses, results):
        if isinstance(result, Exception):
            logger.error(f"❌ Admin notification to {address} raised: {result}")
    return [r for r in results if not isinstance(r, Exception)]
