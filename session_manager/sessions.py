"""
Session registry and session state machine.

State transitions:
    (create) -> ACTIVE <-> PAUSED
    ACTIVE | PAUSED -> (removed)

A terminated session is never stored; removal from the registry is the
terminal state. The owning user profile is never touched on removal.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Callable, Optional
from urllib.parse import quote

from session_manager.config import Settings
from session_manager.errors import NotFound, OrchestrationFailure
from session_manager.orchestrator import DockerOrchestrator, RuntimeInfo
from session_manager.profiles import ProfileStore, UserProfile, derive_user_key

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"


@dataclass
class Download:
    """A file the runtime reported as downloaded during a session."""
    filename: str
    source_path: str
    size_bytes: int
    produced_at: str
    retrieval_url: str
    retrieved: bool = False

    def to_dict(self) -> dict:
        return {
            "filename": self.filename,
            "filepath": self.source_path,
            "filesize": self.size_bytes,
            "timestamp": self.produced_at,
            "downloadUrl": self.retrieval_url,
            "downloaded": self.retrieved,
        }


@dataclass
class Session:
    session_id: str
    runtime_handle: str
    user_key: str
    endpoint_port: int
    last_activity: datetime
    status: SessionStatus = SessionStatus.ACTIVE
    start_url: str = ""
    created_at: datetime = field(default_factory=datetime.now)
    downloads: list[Download] = field(default_factory=list)

    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "containerId": self.runtime_handle,
            "userId": self.user_key,
            "port": self.endpoint_port,
            "status": self.status.value,
            "startUrl": self.start_url,
            "createdAt": self.created_at.isoformat(),
            "lastActivity": self.last_activity.isoformat(),
            "downloads": len(self.downloads),
        }


def retrieval_url(base_url: str, session_id: str, filename: str) -> str:
    return f"{base_url}/download/{session_id}/{quote(filename, safe='')}"


class SessionRegistry:
    """
    In-memory table of live sessions.

    Status and last_activity only change while holding the session's lock.
    The session map itself is only mutated between awaits, which keeps it
    consistent on the single event loop without a global lock.
    """

    def __init__(
        self,
        orchestrator: DockerOrchestrator,
        profiles: ProfileStore,
        settings: Settings,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._orchestrator = orchestrator
        self._profiles = profiles
        self._settings = settings
        self._clock = clock
        self._sessions: dict[str, Session] = {}

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFound("Session not found")
        return session

    def snapshot(self) -> list[Session]:
        """Point-in-time copy of all sessions."""
        return list(self._sessions.values())

    def session_ids(self) -> list[str]:
        return list(self._sessions)

    @asynccontextmanager
    async def locked(self, session_id: str) -> AsyncIterator[Session]:
        """Hold the session's lock. Raises NotFound if it was removed meanwhile."""
        session = self.get(session_id)
        async with session.lock:
            if self._sessions.get(session_id) is not session:
                raise NotFound("Session not found")
            yield session

    def discard(self, session_id: str) -> None:
        """Drop a session entry. Callers must hold the session's lock."""
        self._sessions.pop(session_id, None)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_session(
        self,
        identifier: Optional[str],
        start_url: Optional[str] = None,
    ) -> tuple[Session, UserProfile]:
        """
        Provision a runtime for identifier and register it as ACTIVE.

        Nothing is registered unless the profile exists, the container runs
        and its display port is known.
        """
        session_id = str(uuid.uuid4())
        identifier = identifier or f"anonymous-{session_id}"
        start_url = start_url or self._settings.default_start_url
        user_key = derive_user_key(identifier)

        await self._profiles.ensure_profile(user_key, identifier)

        handle = await self._orchestrator.launch(
            session_id, start_url, self._profiles.profile_path(user_key), user_key
        )
        try:
            port = await self._orchestrator.resolve_port(handle)
        except OrchestrationFailure:
            try:
                await self._orchestrator.force_destroy(handle)
            except OrchestrationFailure as e:
                logger.error(f"Failed to remove container {handle} after port lookup failure: {e}")
            raise

        now = self._clock()
        session = Session(
            session_id=session_id,
            runtime_handle=handle,
            user_key=user_key,
            endpoint_port=port,
            last_activity=now,
            start_url=start_url,
            created_at=now,
        )
        self._sessions[session_id] = session
        profile = self._profiles.record_usage(user_key, identifier)
        logger.info(f"Created session {session_id} for user {user_key} on port {port}")
        return session, profile

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def touch(self, session_id: str) -> SessionStatus:
        """Heartbeat: refresh activity and resume the runtime if paused."""
        async with self.locked(session_id) as session:
            session.last_activity = self._clock()
            self._profiles.touch(session.user_key)
            if session.status == SessionStatus.PAUSED:
                await self._orchestrator.resume(session.runtime_handle)
                session.status = SessionStatus.ACTIVE
                session.last_activity = self._clock()
                logger.info(f"Resumed session {session_id} on activity")
            return session.status

    async def pause(self, session_id: str) -> SessionStatus:
        """Administrative pause. The session stays ACTIVE if Docker fails."""
        async with self.locked(session_id) as session:
            if session.status == SessionStatus.PAUSED:
                return session.status
            await self._orchestrator.pause(session.runtime_handle)
            session.status = SessionStatus.PAUSED
            logger.info(f"Paused session {session_id} (admin)")
            return session.status

    async def resume(self, session_id: str) -> SessionStatus:
        """Administrative resume. The session stays PAUSED if Docker fails."""
        async with self.locked(session_id) as session:
            if session.status == SessionStatus.PAUSED:
                await self._orchestrator.resume(session.runtime_handle)
                session.status = SessionStatus.ACTIVE
                logger.info(f"Resumed session {session_id} (admin)")
            session.last_activity = self._clock()
            return session.status

    async def stop(self, session_id: str) -> None:
        """Stop and remove the runtime, then forget the session."""
        async with self.locked(session_id) as session:
            await self._orchestrator.stop(session.runtime_handle)
            self.discard(session_id)
        logger.info(f"Stopped session {session_id} - user profile {session.user_key} preserved")

    async def send_input_command(self, session_id: str, action: str, payload: Optional[dict] = None) -> None:
        async with self.locked(session_id) as session:
            await self._orchestrator.send_input_command(session.runtime_handle, action, payload)
            session.last_activity = self._clock()

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    def record_download(
        self,
        session_id: str,
        filename: str,
        source_path: str,
        size_bytes: int,
        produced_at: str,
    ) -> Download:
        session = self.get(session_id)
        download = Download(
            filename=filename,
            source_path=source_path,
            size_bytes=size_bytes,
            produced_at=produced_at,
            retrieval_url=retrieval_url(self._settings.public_base_url, session_id, filename),
        )
        session.downloads.append(download)
        logger.info(f"Download ready: {filename} ({size_bytes} bytes) for session {session_id}")
        return download

    def mark_retrieved(self, session_id: str, filename: str) -> None:
        """Flag the first not-yet-retrieved download of filename as retrieved."""
        session = self._sessions.get(session_id)
        if session is None:
            return
        for download in session.downloads:
            if download.filename == filename and not download.retrieved:
                download.retrieved = True
                return

    def list_downloads(self, session_id: str) -> list[Download]:
        session = self._sessions.get(session_id)
        if session is None:
            return []
        return list(session.downloads)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def recover(self, runtimes: list[RuntimeInfo]) -> int:
        """
        Re-register runtime containers left over from a previous run.

        Containers that are stopped or have no published display port are
        removed; their profiles stay on disk.
        """
        now = self._clock()
        recovered = 0
        for runtime in runtimes:
            usable = runtime.session_id and runtime.user_key and runtime.running and runtime.port
            if not usable or runtime.session_id in self._sessions:
                logger.warning(f"Removing unrecoverable container {runtime.handle}")
                try:
                    await self._orchestrator.force_destroy(runtime.handle)
                except OrchestrationFailure as e:
                    logger.error(f"Failed to remove container {runtime.handle}: {e}")
                continue

            self._sessions[runtime.session_id] = Session(
                session_id=runtime.session_id,
                runtime_handle=runtime.handle,
                user_key=runtime.user_key,
                endpoint_port=runtime.port,
                last_activity=now,
                status=SessionStatus.PAUSED if runtime.paused else SessionStatus.ACTIVE,
                created_at=now,
            )
            recovered += 1
            logger.info(f"Recovered session {runtime.session_id} (container {runtime.handle}, port {runtime.port})")
        return recovered
