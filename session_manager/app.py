#!/usr/bin/env python3
"""
Browser Session Manager

Brokers isolated remote browser containers for remote clients. Each session
gets its own Docker container running Chromium behind a remote-display (VNC)
server. Containers are paused when idle and destroyed after a grace period,
while each user's browser profile persists on disk across sessions.
"""

import json
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

import aiofiles.os
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import FileResponse, JSONResponse, RedirectResponse
from starlette.background import BackgroundTask

from session_manager.auth import (
    TokenAuthManager,
    bearer_token,
    create_auth_manager,
    get_rate_limiter,
    is_auth_enabled,
)
from session_manager.config import Settings
from session_manager.endpoints import display_query, resolve_remote_endpoint
from session_manager.errors import (
    InvalidRequest,
    NotFound,
    OrchestrationFailure,
    SessionManagerError,
    StorageFailure,
    Unauthorized,
)
from session_manager.orchestrator import DockerOrchestrator
from session_manager.profiles import ProfileStore
from session_manager.sessions import SessionRegistry
from session_manager.sweeper import LifecycleSweeper

# Logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("aiodocker").setLevel(logging.WARNING)

# Paths that never require authentication (browser iframe traffic)
_AUTH_EXEMPT_PREFIXES = ("/vnc/",)

router = APIRouter()


# =============================================================================
# REQUEST HELPERS
# =============================================================================


def _registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def _profiles(request: Request) -> ProfileStore:
    return request.app.state.profiles


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _get_client_ip(request: Request) -> str:
    """Extract client IP from request, considering X-Forwarded-For."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        # Take the first IP in the chain (original client)
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def _json_body(request: Request) -> dict:
    """Parse a JSON object body. An empty body is an empty object."""
    raw = await request.body()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise InvalidRequest("Malformed JSON body") from e
    if not isinstance(data, dict):
        raise InvalidRequest("JSON body must be an object")
    return data


def _optional_str(data: dict, key: str) -> Optional[str]:
    value = data.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise InvalidRequest(f"'{key}' must be a string")
    return value


def _required_str(data: dict, key: str) -> str:
    value = _optional_str(data, key)
    if value is None:
        raise InvalidRequest(f"'{key}' is required")
    return value


def _optional_int(data: dict, key: str, default: int = 0) -> int:
    value = data.get(key)
    if value is None:
        return default
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidRequest(f"'{key}' must be a non-negative integer")
    return value


def _error_response(exc: SessionManagerError) -> JSONResponse:
    return JSONResponse({"error": str(exc)}, status_code=exc.status_code)


def _authenticate(auth_manager: TokenAuthManager, request: Request) -> str:
    """Return the caller's token name, or raise Unauthorized."""
    name = auth_manager.verify(bearer_token(request.headers.get("authorization")))
    if name is None:
        raise Unauthorized("Unauthorized - Invalid or missing token")
    return name


# =============================================================================
# SESSIONS
# =============================================================================


@router.post("/session")
async def create_session(request: Request):
    """Create a new browser session for the identified user."""
    data = await _json_body(request)
    identifier = _optional_str(data, "userId") or _optional_str(data, "email")
    start_url = _optional_str(data, "url")

    session, profile = await _registry(request).create_session(identifier, start_url)
    base_url = _settings(request).public_base_url
    return {
        "sessionId": session.session_id,
        "iframeSrc": f"{base_url}/vnc/{session.session_id}/vnc.html?{display_query()}",
        "userId": session.user_key,
        "isReturningUser": profile.session_count > 1,
    }


@router.post("/heartbeat/{session_id}")
async def heartbeat(request: Request, session_id: str):
    """Keep a session alive, resuming its container if it was paused."""
    status = await _registry(request).touch(session_id)
    return {"status": "ok", "sessionStatus": status.value}


@router.post("/stop/{session_id}")
async def stop_session(request: Request, session_id: str):
    """Stop and remove the session's container. The user profile is kept."""
    await _registry(request).stop(session_id)
    return {"status": "stopped"}


@router.post("/browser-command/{session_id}")
async def browser_command(request: Request, session_id: str):
    """Navigation controls: back, forward, refresh, navigate."""
    data = await _json_body(request)
    action = _required_str(data, "action")
    await _registry(request).send_input_command(session_id, action, {"url": _optional_str(data, "url")})
    return {"status": "success"}


# =============================================================================
# DOWNLOADS
# =============================================================================


@router.post("/download-notification")
async def download_notification(request: Request):
    """Called by the runtime container when a download finishes."""
    data = await _json_body(request)
    session_id = _required_str(data, "sessionId")
    filename = _required_str(data, "filename")
    filesize = _optional_int(data, "filesize")
    timestamp = data.get("timestamp") or datetime.now().isoformat()

    download = _registry(request).record_download(
        session_id,
        filename,
        _optional_str(data, "filepath") or "",
        filesize,
        str(timestamp),
    )
    return {"status": "notified", "download": download.to_dict()}


@router.get("/session/{session_id}/downloads")
async def list_downloads(request: Request, session_id: str):
    downloads = _registry(request).list_downloads(session_id)
    return {"downloads": [d.to_dict() for d in downloads]}


@router.get("/download/{session_id}/{filename}")
async def download_file(request: Request, session_id: str, filename: str):
    """Stream a downloaded file out of the user's profile."""
    registry = _registry(request)
    session = registry.get(session_id)

    downloads_dir = _profiles(request).downloads_path(session.user_key).resolve()
    file_path = (downloads_dir / filename).resolve()
    if file_path == downloads_dir or not file_path.is_relative_to(downloads_dir):
        raise InvalidRequest("Invalid filename")

    try:
        exists = await aiofiles.os.path.isfile(file_path)
    except OSError as e:
        raise StorageFailure(f"Cannot access {filename}: {e}") from e
    if not exists:
        raise NotFound("File not found")

    # Marked retrieved once the body has been sent
    return FileResponse(
        file_path,
        filename=filename,
        background=BackgroundTask(registry.mark_retrieved, session_id, filename),
    )


# =============================================================================
# USERS
# =============================================================================


@router.get("/user/{user_key}")
async def get_user(request: Request, user_key: str):
    profile = _profiles(request).get(user_key)
    if profile is None:
        return {"userId": user_key, "hasProfile": False}
    return {**profile.to_dict(), "hasProfile": True}


@router.get("/admin/users")
async def list_users(request: Request):
    users = [p.to_dict() for p in _profiles(request).list_profiles()]
    return {"users": users, "totalUsers": len(users)}


# =============================================================================
# ADMIN: RUNTIMES
# =============================================================================


@router.get("/admin/sessions")
async def list_sessions(request: Request):
    sessions = [s.to_dict() for s in _registry(request).snapshot()]
    return {"sessions": sessions, "totalSessions": len(sessions)}


@router.post("/admin/sessions/{session_id}/pause")
async def pause_session(request: Request, session_id: str):
    status = await _registry(request).pause(session_id)
    return {"sessionId": session_id, "status": status.value}


@router.post("/admin/sessions/{session_id}/resume")
async def resume_session(request: Request, session_id: str):
    status = await _registry(request).resume(session_id)
    return {"sessionId": session_id, "status": status.value}


# =============================================================================
# REMOTE DISPLAY
# =============================================================================


@router.get("/vnc/{session_id}/{path:path}")
async def remote_display(request: Request, session_id: str, path: str):
    """Redirect the browser iframe to the session's VNC port (no token required)."""
    session = _registry(request).get(session_id)
    origin = request.headers.get("referer") or request.headers.get("origin")
    url = resolve_remote_endpoint(
        session,
        origin,
        _settings(request),
        request_host=request.headers.get("host"),
        scheme=request.url.scheme,
        path=path or "vnc.html",
        query=dict(request.query_params),
    )
    return RedirectResponse(url)


# =============================================================================
# APPLICATION
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings: Settings = app.state.settings
    orchestrator = app.state.orchestrator
    # Startup
    settings.profiles_dir.mkdir(parents=True, exist_ok=True)
    await orchestrator.open()
    try:
        recovered = await app.state.registry.recover(await orchestrator.list_runtimes())
        if recovered:
            logger.info(f"Recovered {recovered} session(s) from previous run")
    except OrchestrationFailure as e:
        logger.error(f"Failed to list existing containers: {e}")
    app.state.sweeper.start()
    logger.info(f"Session manager started (idle {settings.idle_timeout_seconds:.0f}s, "
                f"grace {settings.grace_timeout_seconds:.0f}s)")

    yield

    # Shutdown
    await app.state.sweeper.stop()
    await orchestrator.close()
    logger.info("Session manager stopped")


def create_app(
    settings: Optional[Settings] = None,
    orchestrator=None,
    auth_manager: Optional[TokenAuthManager] = None,
    clock: Callable[[], datetime] = datetime.now,
) -> FastAPI:
    """
    Build the application.

    orchestrator defaults to a DockerOrchestrator; anything exposing the same
    coroutines (launch, resolve_port, pause, resume, stop, force_destroy,
    send_input_command, list_runtimes, open, close) can be passed instead.
    With auth_manager None, every route is open (localhost-only mode).
    """
    settings = settings or Settings.load()
    orchestrator = orchestrator or DockerOrchestrator(settings)
    profiles = ProfileStore(
        settings.profiles_dir,
        settings.profile_index_path,
        runtime_download_dir=f"{settings.runtime_profile_mount}/Downloads",
        clock=clock,
    )
    registry = SessionRegistry(orchestrator, profiles, settings, clock=clock)
    sweeper = LifecycleSweeper(
        registry,
        orchestrator,
        idle_timeout=settings.idle_timeout_seconds,
        grace_timeout=settings.grace_timeout_seconds,
        interval=settings.sweep_interval_seconds,
        clock=clock,
    )

    app = FastAPI(
        title="Browser Session Manager",
        description="Isolated remote browser sessions in Docker containers",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.orchestrator = orchestrator
    app.state.profiles = profiles
    app.state.registry = registry
    app.state.sweeper = sweeper
    app.state.auth_manager = auth_manager
    app.include_router(router)

    @app.exception_handler(SessionManagerError)
    async def session_manager_error(request: Request, exc: SessionManagerError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return _error_response(exc)

    @app.middleware("http")
    async def auth_middleware(request: Request, call_next):
        """Require a valid bearer token when authentication is enabled."""
        if auth_manager is None or request.url.path.startswith(_AUTH_EXEMPT_PREFIXES):
            return await call_next(request)

        client_ip = _get_client_ip(request)
        rate_limiter = get_rate_limiter()
        if rate_limiter.is_blocked(client_ip):
            logger.warning(f"Token check blocked for {client_ip} (rate limited)")
            return JSONResponse({"error": "Too many failed attempts"}, status_code=429)

        # Middleware runs outside the app's exception handlers
        try:
            _authenticate(auth_manager, request)
        except Unauthorized as exc:
            rate_limiter.record_failure(client_ip)
            remaining = rate_limiter.get_remaining_attempts(client_ip)
            logger.info(f"Rejected request to {request.url.path} from {client_ip} "
                        f"({remaining} attempts left)")
            return _error_response(exc)

        rate_limiter.clear_on_success(client_ip)
        return await call_next(request)

    return app


app = create_app(auth_manager=create_auth_manager())


if __name__ == "__main__":
    import uvicorn

    settings: Settings = app.state.settings

    # ==========================================================================
    # SECURITY CHECK
    # ==========================================================================
    # Without AUTH_TOKEN / auth.yaml: localhost only (unauthenticated).
    # With either:                    any bind address is allowed.
    # ==========================================================================
    if is_auth_enabled():
        logger.info("API token authentication enabled")
    else:
        ALLOWED_HOSTS = ("127.0.0.1", "localhost")
        if settings.host not in ALLOWED_HOSTS:
            print("=" * 70)
            print("SECURITY ERROR: Refusing to start!")
            print("=" * 70)
            print(f"SESSION_MANAGER_HOST is set to '{settings.host}'")
            print()
            print("Authentication is NOT configured (no AUTH_TOKEN, no auth.yaml).")
            print("Without authentication, the server MUST bind to localhost.")
            print()
            print("To enable authentication:")
            print("  python3 edit_token.py add <name>")
            print("=" * 70)
            sys.exit(1)

    uvicorn.run(app, host=settings.host, port=settings.port, access_log=False)
