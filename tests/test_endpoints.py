"""Tests for remote-display address resolution."""

from datetime import datetime

import pytest

from session_manager.endpoints import origin_allowed, resolve_remote_endpoint
from session_manager.errors import Forbidden
from session_manager.sessions import Session, SessionStatus

ALLOWED = ("portal2.ai",)


def make_session(status=SessionStatus.ACTIVE, port=40123):
    return Session(
        session_id="abc",
        runtime_handle="browser-session-abc",
        user_key="1234567890abcdef",
        endpoint_port=port,
        last_activity=datetime(2024, 1, 1),
        status=status,
    )


@pytest.mark.parametrize("origin", [
    "https://portal2.ai/dashboard",
    "https://www.portal2.ai",
    "http://localhost:8090/app",
    "http://127.0.0.1:8095",
])
def test_allowed_origins(origin):
    assert origin_allowed(origin, ALLOWED)


@pytest.mark.parametrize("origin", [
    "https://evil.example.com",
    "https://portal2.ai.evil.com",
    "https://notportal2.ai",
    "not a url",
])
def test_rejected_origins(origin):
    assert not origin_allowed(origin, ALLOWED)


def test_resolve_active_session(settings):
    url = resolve_remote_endpoint(make_session(), "https://portal2.ai/x", settings, request_host="sessions.test:3000")
    assert url == "http://sessions.test:40123/vnc.html?autoconnect=true&resize=scale"


def test_resolve_without_origin(settings):
    url = resolve_remote_endpoint(make_session(), None, settings, request_host="sessions.test")
    assert url.startswith("http://sessions.test:40123/")


def test_resolve_uses_configured_display_host(settings):
    settings.display_host = "display.example.net"
    url = resolve_remote_endpoint(
        make_session(), None, settings, request_host="sessions.test:3000", scheme="https",
        path="/core/vnc_lite.html", query={"resize": "remote", "password": "x"},
    )
    assert url == "https://display.example.net:40123/core/vnc_lite.html?autoconnect=true&resize=remote&password=x"


def test_resolve_paused_session_forbidden(settings):
    with pytest.raises(Forbidden):
        resolve_remote_endpoint(make_session(SessionStatus.PAUSED), None, settings)


def test_resolve_foreign_origin_forbidden(settings):
    with pytest.raises(Forbidden):
        resolve_remote_endpoint(make_session(), "https://evil.example.com/page", settings)


def test_resolve_local_origin_allowed(settings):
    url = resolve_remote_endpoint(make_session(), "http://localhost:8090/", settings, request_host="localhost:3000")
    assert url.startswith("http://localhost:40123/")
