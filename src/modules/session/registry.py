"""
In-memory Session Registry

Holds one PipelineStateMachine per client session and the background
tasks running stages for them. Nothing survives a process restart.
"""

import asyncio
from typing import Callable, Coroutine, Dict, Optional, Set, Any

from src.core.config import settings
from src.core.logging import get_logger, LogContext
from src.core.metrics import active_sessions_gauge
from src.core.exceptions import SessionNotFoundError
from src.modules.session.models import SessionState
from src.pipeline.state_machine import PipelineStateMachine

logger = get_logger(__name__)

MachineFactory = Callable[[SessionState], PipelineStateMachine]


class SessionRegistry:
    """Maps session ids to state machines."""

    def __init__(self, machine_factory: MachineFactory, max_notifications: Optional[int] = None):
        self._factory = machine_factory
        self.max_notifications = max_notifications or settings.MAX_NOTIFICATIONS
        self._sessions: Dict[str, PipelineStateMachine] = {}
        self._tasks: Dict[str, Set[asyncio.Task]] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def create(self, session_id: Optional[str] = None) -> PipelineStateMachine:
        machine = self._factory(
            SessionState(session_id=session_id, max_notifications=self.max_notifications)
        )
        self._sessions[machine.session_id] = machine
        active_sessions_gauge.set(len(self._sessions))
        logger.info("session_created", session_id=machine.session_id)
        return machine

    def get(self, session_id: str) -> PipelineStateMachine:
        machine = self._sessions.get(session_id)
        if machine is None:
            raise SessionNotFoundError(session_id)
        return machine

    def spawn(
        self,
        session_id: str,
        run: Coroutine[Any, Any, Any],
        name: Optional[str] = None
    ) -> asyncio.Task:
        """Run a stage coroutine in the background, keeping a reference."""
        with LogContext(session_id=session_id):
            task = asyncio.create_task(run, name=name)

        tasks = self._tasks.setdefault(session_id, set())
        tasks.add(task)
        task.add_done_callback(lambda t: self._on_task_done(session_id, t))
        return task

    def _on_task_done(self, session_id: str, task: asyncio.Task):
        tasks = self._tasks.get(session_id)
        if tasks is not None:
            tasks.discard(task)
            if not tasks:
                self._tasks.pop(session_id, None)

        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "background_task_failed",
                session_id=session_id,
                task=task.get_name(),
                error=str(exc),
                error_type=type(exc).__name__
            )

    def pending(self, session_id: str) -> Set[asyncio.Task]:
        return set(self._tasks.get(session_id, ()))

    async def wait_idle(self, session_id: str):
        """Wait for every background task of a session to finish."""
        tasks = self.pending(session_id)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def discard(self, session_id: str):
        """Reset and forget a session. In-flight tasks finish on their own."""
        machine = self.get(session_id)
        await machine.reset()
        del self._sessions[session_id]
        active_sessions_gauge.set(len(self._sessions))
        logger.info("session_discarded", session_id=session_id)

    async def shutdown(self):
        """Cancel all background tasks (application shutdown)."""
        tasks = [task for group in self._tasks.values() for task in group]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._sessions.clear()
        active_sessions_gauge.set(0)
