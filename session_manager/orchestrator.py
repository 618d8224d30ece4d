"""
Docker orchestration for browser runtime containers.

Every operation is a single bounded Docker Engine call (or a short sequence
of them) with no retries. Docker errors and timeouts are surfaced as
OrchestrationFailure with the daemon's message attached.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import aiodocker
import aiodocker.exceptions

from session_manager.config import Settings
from session_manager.errors import InvalidRequest, OrchestrationFailure

logger = logging.getLogger(__name__)

LABEL_SESSION_ID = "session-manager.session-id"
LABEL_USER_KEY = "session-manager.user-key"

SHM_SIZE_BYTES = 536870912  # 512MB, Chromium crashes with Docker's 64MB default

# Navigation actions -> xdotool key chord (None: handled specially)
NAVIGATION_KEYS = {
    "back": "alt+Left",
    "forward": "alt+Right",
    "refresh": "F5",
    "navigate": None,
}

BROWSER_WINDOW_CLASS = "chromium"


def is_container_not_found(e: Exception) -> bool:
    """Check if exception indicates container not found."""
    return isinstance(e, aiodocker.exceptions.DockerError) and e.status == 404


def published_port(info: dict, private_port: int) -> Optional[int]:
    """Host port bound to private_port/tcp in a container inspect result."""
    ports = (info.get("NetworkSettings") or {}).get("Ports") or {}
    bindings = ports.get(f"{private_port}/tcp") or []
    for binding in bindings:
        host_port = binding.get("HostPort")
        if host_port:
            return int(host_port)
    return None


@dataclass
class RuntimeInfo:
    """A labelled runtime container found on the Docker host."""
    handle: str
    session_id: str
    user_key: Optional[str]
    port: Optional[int]
    running: bool
    paused: bool


class DockerOrchestrator:
    """
    Creates, suspends and destroys one browser container per session.

    Runtime handles are container names, derived from the session id, so a
    container can still be found and removed when a launch times out before
    Docker returned its id.
    """

    def __init__(self, settings: Settings, docker: Optional[aiodocker.Docker] = None):
        self._settings = settings
        self._docker = docker
        self._timeout = settings.docker_timeout_seconds

    async def open(self) -> None:
        if self._docker is None:
            self._docker = aiodocker.Docker()

    async def close(self) -> None:
        if self._docker is not None:
            await self._docker.close()
            self._docker = None

    @property
    def docker(self) -> aiodocker.Docker:
        if self._docker is None:
            raise RuntimeError("Docker client not initialized")
        return self._docker

    def container_name(self, session_id: str) -> str:
        return f"{self._settings.container_prefix}{session_id}"

    async def _call(self, what: str, aw):
        """Await a Docker call under the configured timeout."""
        try:
            return await asyncio.wait_for(aw, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise OrchestrationFailure(f"{what} timed out after {self._timeout}s") from e
        except aiodocker.exceptions.DockerError as e:
            raise OrchestrationFailure(f"{what} failed: {e.message}") from e

    async def _container(self, handle: str):
        return await self._call(f"inspect {handle}", self.docker.containers.get(handle))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def launch(
        self,
        session_id: str,
        start_url: str,
        profile_path: Path,
        user_key: Optional[str] = None,
    ) -> str:
        """Start a runtime container for the session. Returns its handle."""
        s = self._settings
        name = self.container_name(session_id)
        display = f"{s.display_port}/tcp"
        labels = {LABEL_SESSION_ID: session_id}
        if user_key:
            labels[LABEL_USER_KEY] = user_key

        host_config = {
            # Empty HostPort: Docker picks an ephemeral host port
            "PortBindings": {display: [{"HostIp": "0.0.0.0", "HostPort": ""}]},
            "Binds": [f"{Path(profile_path).resolve()}:{s.runtime_profile_mount}:rw"],
            "ExtraHosts": ["host.docker.internal:host-gateway"],
            "Memory": s.runtime_memory_bytes,
            "ShmSize": SHM_SIZE_BYTES,
        }
        if s.runtime_network:
            host_config["NetworkMode"] = s.runtime_network

        config = {
            "Image": s.runtime_image,
            "Env": [
                f"START_URL={start_url}",
                f"SESSION_ID={session_id}",
                f"SESSION_API_URL={s.callback_url}",
            ],
            "Labels": labels,
            "ExposedPorts": {display: {}},
            "HostConfig": host_config,
        }

        try:
            await self._call(
                f"docker run {s.runtime_image} as {name}",
                self.docker.containers.run(config=config, name=name),
            )
        except OrchestrationFailure:
            # A timed-out run may still have created the container
            await self._remove_quietly(name)
            raise

        logger.info(f"Started container {name} for session {session_id}")
        return name

    async def resolve_port(self, handle: str) -> int:
        """Wait for Docker to report the host port bound to the display port."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.port_wait_seconds
        while True:
            container = await self._container(handle)
            info = await self._call(f"inspect {handle}", container.show())
            port = published_port(info, self._settings.display_port)
            if port:
                return port
            if loop.time() >= deadline:
                raise OrchestrationFailure(
                    f"Container {handle} did not publish port "
                    f"{self._settings.display_port} within {self._settings.port_wait_seconds}s"
                )
            await asyncio.sleep(0.25)

    async def pause(self, handle: str) -> None:
        container = await self._container(handle)
        info = await self._call(f"inspect {handle}", container.show())
        if info["State"].get("Paused"):
            return
        await self._call(f"docker pause {handle}", container.pause())
        logger.info(f"Paused container {handle}")

    async def resume(self, handle: str) -> None:
        container = await self._container(handle)
        info = await self._call(f"inspect {handle}", container.show())
        if not info["State"].get("Paused"):
            return
        await self._call(f"docker unpause {handle}", container.unpause())
        logger.info(f"Resumed container {handle}")

    async def stop(self, handle: str) -> None:
        """Gracefully stop, then remove the container."""
        try:
            container = await self._call(f"inspect {handle}", self.docker.containers.get(handle))
        except OrchestrationFailure as e:
            if is_container_not_found(e.__cause__):
                logger.warning(f"Container {handle} already gone")
                return
            raise
        await self._call(f"docker stop {handle}", container.stop(t=self._settings.stop_grace_seconds))
        await self._call(f"docker rm {handle}", container.delete())
        logger.info(f"Stopped and removed container {handle}")

    async def force_destroy(self, handle: str) -> None:
        """Remove the container unconditionally (docker rm -f)."""
        try:
            container = await self._call(f"inspect {handle}", self.docker.containers.get(handle))
            await self._call(f"docker rm -f {handle}", container.delete(force=True))
        except OrchestrationFailure as e:
            if is_container_not_found(e.__cause__):
                return
            raise
        logger.info(f"Force-removed container {handle}")

    async def _remove_quietly(self, handle: str) -> None:
        try:
            await self.force_destroy(handle)
        except OrchestrationFailure as e:
            logger.error(f"Failed to clean up container {handle}: {e}")

    # ------------------------------------------------------------------
    # Input injection
    # ------------------------------------------------------------------

    async def send_input_command(self, handle: str, action: str, payload: Optional[dict] = None) -> None:
        """Inject a navigation action into the browser running in the container."""
        if action not in NAVIGATION_KEYS:
            raise InvalidRequest(f"Unknown action: {action}")
        payload = payload or {}

        focus = [
            "xdotool", "search", "--onlyvisible", "--class", BROWSER_WINDOW_CLASS,
            "windowactivate", "--sync", "%1",
        ]
        if action == "navigate":
            url = payload.get("url") or ""
            parsed = urlparse(url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise InvalidRequest("navigate requires an http(s) url")
            commands = [
                focus + ["key", "--clearmodifiers", "ctrl+l"],
                ["xdotool", "type", "--delay", "0", "--", url],
                ["xdotool", "key", "Return"],
            ]
        else:
            commands = [focus + ["key", "--clearmodifiers", NAVIGATION_KEYS[action]]]

        container = await self._container(handle)
        for cmd in commands:
            await self._call(f"docker exec {handle} {cmd[0]}", self._run_exec(container, cmd))

    async def _run_exec(self, container, cmd: list[str]) -> None:
        exec_ = await container.exec(
            cmd, environment=[f"DISPLAY={self._settings.runtime_display}"]
        )
        output = bytearray()
        async with exec_.start(detach=False) as stream:
            while True:
                msg = await stream.read_out()
                if msg is None:
                    break
                output.extend(msg.data)
        info = await exec_.inspect()
        exit_code = info.get("ExitCode")
        if exit_code:
            detail = output.decode("utf-8", errors="replace").strip()
            raise OrchestrationFailure(f"{' '.join(cmd[:2])} exited with {exit_code}: {detail}")

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def list_runtimes(self) -> list[RuntimeInfo]:
        """List runtime containers left over from previous server runs."""
        containers = await self._call(
            "docker ps",
            self.docker.containers.list(all=True, filters={"label": [LABEL_SESSION_ID]}),
        )
        runtimes = []
        for container in containers:
            info = await self._call("inspect", container.show())
            labels = (info.get("Config") or {}).get("Labels") or {}
            state = info.get("State") or {}
            runtimes.append(RuntimeInfo(
                handle=info["Name"].lstrip("/"),
                session_id=labels.get(LABEL_SESSION_ID, ""),
                user_key=labels.get(LABEL_USER_KEY),
                port=published_port(info, self._settings.display_port),
                running=bool(state.get("Running")),
                paused=bool(state.get("Paused")),
            ))
        return runtimes
