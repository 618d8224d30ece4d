"""Remote-display address resolution for sessions."""

from typing import Optional
from urllib.parse import urlencode, urlparse

from session_manager.config import Settings
from session_manager.errors import Forbidden
from session_manager.sessions import Session, SessionStatus

LOCAL_DEV_HOSTS = ("localhost", "127.0.0.1", "::1")

# noVNC client parameters
DISPLAY_PARAMS = {"autoconnect": "true", "resize": "scale"}


def origin_allowed(origin: str, allowed_domains: tuple[str, ...]) -> bool:
    """Check an Origin/Referer URL against the allow-list and local dev hosts."""
    host = urlparse(origin).hostname
    if not host:
        return False
    if host in LOCAL_DEV_HOSTS:
        return True
    for domain in allowed_domains:
        domain = domain.lower()
        if host == domain or host.endswith("." + domain):
            return True
    return False


def display_query(extra: Optional[dict] = None) -> str:
    params = dict(DISPLAY_PARAMS)
    if extra:
        params.update(extra)
    return urlencode(params)


def resolve_remote_endpoint(
    session: Session,
    request_origin: Optional[str],
    settings: Settings,
    request_host: Optional[str] = None,
    scheme: str = "http",
    path: str = "vnc.html",
    query: Optional[dict] = None,
) -> str:
    """URL of the session's remote-display server, if the caller may use it."""
    if session.status != SessionStatus.ACTIVE:
        raise Forbidden("Session not active")
    if request_origin and not origin_allowed(request_origin, settings.allowed_origins):
        raise Forbidden("Access denied - unauthorized domain")

    host = settings.display_host
    if not host:
        # Host header may carry this service's own port
        host = urlparse(f"//{request_host or 'localhost'}").hostname or "localhost"
    if ":" in host:
        host = f"[{host}]"
    return f"{scheme}://{host}:{session.endpoint_port}/{path.lstrip('/')}?{display_query(query)}"
