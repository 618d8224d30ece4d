"""
Periodic idle/grace reclamation of session runtimes.

Every tick, each session is checked against two inactivity thresholds:
    idle > grace_timeout  -> container force-removed, session dropped
    idle > idle_timeout   -> container paused (ACTIVE sessions only)
Profiles are never touched.
"""

import asyncio
import logging
from contextlib import suppress
from datetime import datetime
from typing import Callable, Optional

from session_manager.errors import NotFound, OrchestrationFailure
from session_manager.orchestrator import DockerOrchestrator
from session_manager.sessions import Session, SessionRegistry, SessionStatus

logger = logging.getLogger(__name__)


class LifecycleSweeper:
    def __init__(
        self,
        registry: SessionRegistry,
        orchestrator: DockerOrchestrator,
        idle_timeout: float,
        grace_timeout: float,
        interval: float = 60,
        clock: Callable[[], datetime] = datetime.now,
    ):
        if grace_timeout <= idle_timeout:
            raise ValueError("grace_timeout must be greater than idle_timeout")
        self._registry = registry
        self._orchestrator = orchestrator
        self._idle_timeout = idle_timeout
        self._grace_timeout = grace_timeout
        self._interval = interval
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Lifecycle sweep error: {e}")
            await asyncio.sleep(self._interval)

    async def tick(self) -> None:
        """Apply the idle/grace policy to every registered session."""
        for session_id in self._registry.session_ids():
            try:
                async with self._registry.locked(session_id) as session:
                    await self._evaluate(session)
            except NotFound:
                # Stopped by a request since the snapshot
                continue
            except Exception as e:
                logger.error(f"Lifecycle sweep failed for session {session_id}: {e}")

    async def _evaluate(self, session: Session) -> None:
        inactive = (self._clock() - session.last_activity).total_seconds()

        if inactive > self._grace_timeout:
            try:
                await self._orchestrator.force_destroy(session.runtime_handle)
            except Exception as e:
                # Leftover labelled containers are removed on the next startup
                logger.error(f"Failed to destroy container for session {session.session_id}: {e}")
            self._registry.discard(session.session_id)
            logger.info(
                f"Deleted session {session.session_id} after {inactive:.0f}s idle - "
                f"user profile {session.user_key} preserved"
            )
        elif inactive > self._idle_timeout and session.status == SessionStatus.ACTIVE:
            try:
                await self._orchestrator.pause(session.runtime_handle)
            except OrchestrationFailure as e:
                logger.error(f"Failed to pause container for session {session.session_id}: {e}")
            session.status = SessionStatus.PAUSED
            logger.info(f"Paused session {session.session_id} after {inactive:.0f}s idle")
