"""Tests for the session registry state machine and download registry."""

import asyncio

import pytest

from session_manager.errors import (
    InvalidRequest,
    NotFound,
    OrchestrationFailure,
    StorageFailure,
)
from session_manager.orchestrator import RuntimeInfo
from session_manager.profiles import derive_user_key
from session_manager.sessions import SessionRegistry, SessionStatus


# Creation


@pytest.mark.asyncio
async def test_create_session(registry, fake_orchestrator, profiles, clock):
    session, profile = await registry.create_session("alice@example.com", "https://example.com")

    assert session.session_id in registry
    assert session.status == SessionStatus.ACTIVE
    assert session.user_key == derive_user_key("alice@example.com")
    assert session.endpoint_port == 40001
    assert session.last_activity == clock.now
    assert profile.session_count == 1

    container = fake_orchestrator.containers[session.runtime_handle]
    assert container["start_url"] == "https://example.com"
    assert container["profile_path"] == profiles.profile_path(session.user_key)


@pytest.mark.asyncio
async def test_create_session_same_identity_reuses_user_key(registry):
    first, _ = await registry.create_session("alice@example.com", "https://example.com")
    second, profile = await registry.create_session("alice@example.com", None)

    assert first.session_id != second.session_id
    assert first.user_key == second.user_key
    assert profile.session_count == 2


@pytest.mark.asyncio
async def test_create_session_defaults(registry, fake_orchestrator, settings):
    session, profile = await registry.create_session(None)

    assert profile.raw_identifier == f"anonymous-{session.session_id}"
    assert fake_orchestrator.containers[session.runtime_handle]["start_url"] == settings.default_start_url


@pytest.mark.asyncio
async def test_launch_failure_leaves_no_entry(registry, fake_orchestrator, profiles):
    fake_orchestrator.fail("launch", OrchestrationFailure("docker run failed: No such image"))

    with pytest.raises(OrchestrationFailure, match="No such image"):
        await registry.create_session("alice")

    assert len(registry) == 0
    assert profiles.get(derive_user_key("alice")) is None


@pytest.mark.asyncio
async def test_port_failure_destroys_container(registry, fake_orchestrator):
    fake_orchestrator.fail("resolve_port", OrchestrationFailure("port not published"))

    with pytest.raises(OrchestrationFailure):
        await registry.create_session("alice")

    assert len(registry) == 0
    assert len(fake_orchestrator.ops("force_destroy")) == 1
    assert fake_orchestrator.containers == {}


@pytest.mark.asyncio
async def test_profile_failure_skips_launch(fake_orchestrator, settings, clock, tmp_path):
    from session_manager.profiles import ProfileStore

    blocker = tmp_path / "blocked"
    blocker.write_text("")
    registry = SessionRegistry(fake_orchestrator, ProfileStore(blocker, clock=clock), settings, clock=clock)

    with pytest.raises(StorageFailure):
        await registry.create_session("alice")

    assert fake_orchestrator.calls == []
    assert len(registry) == 0


# Heartbeat and admin transitions


@pytest.mark.asyncio
async def test_touch_refreshes_activity(registry, clock):
    session, _ = await registry.create_session("alice")
    clock.advance(30)

    assert await registry.touch(session.session_id) == SessionStatus.ACTIVE
    assert session.last_activity == clock.now


@pytest.mark.asyncio
async def test_touch_resumes_paused_session(registry, fake_orchestrator, clock):
    session, _ = await registry.create_session("alice")
    await registry.pause(session.session_id)
    clock.advance(90)

    status = await registry.touch(session.session_id)

    assert status == SessionStatus.ACTIVE
    assert session.last_activity == clock.now
    assert fake_orchestrator.containers[session.runtime_handle]["paused"] is False


@pytest.mark.asyncio
async def test_touch_resume_failure_keeps_paused(registry, fake_orchestrator):
    session, _ = await registry.create_session("alice")
    await registry.pause(session.session_id)
    fake_orchestrator.fail("resume", OrchestrationFailure("docker unpause timed out"))

    with pytest.raises(OrchestrationFailure):
        await registry.touch(session.session_id)

    assert session.status == SessionStatus.PAUSED


@pytest.mark.asyncio
async def test_touch_unknown_session(registry):
    with pytest.raises(NotFound):
        await registry.touch("missing")


@pytest.mark.asyncio
async def test_touch_bumps_profile_last_used(registry, profiles, clock):
    session, _ = await registry.create_session("alice")
    clock.advance(45)

    await registry.touch(session.session_id)

    assert profiles.get(session.user_key).last_used == clock.now


@pytest.mark.asyncio
async def test_admin_pause_is_idempotent(registry, fake_orchestrator):
    session, _ = await registry.create_session("alice")

    assert await registry.pause(session.session_id) == SessionStatus.PAUSED
    assert await registry.pause(session.session_id) == SessionStatus.PAUSED
    assert len(fake_orchestrator.ops("pause")) == 1


@pytest.mark.asyncio
async def test_admin_pause_failure_stays_active(registry, fake_orchestrator):
    session, _ = await registry.create_session("alice")
    fake_orchestrator.fail("pause", OrchestrationFailure("docker pause failed"))

    with pytest.raises(OrchestrationFailure):
        await registry.pause(session.session_id)

    assert session.status == SessionStatus.ACTIVE


@pytest.mark.asyncio
async def test_admin_resume(registry, fake_orchestrator, clock):
    session, _ = await registry.create_session("alice")
    await registry.pause(session.session_id)
    clock.advance(10)

    assert await registry.resume(session.session_id) == SessionStatus.ACTIVE
    assert await registry.resume(session.session_id) == SessionStatus.ACTIVE
    assert len(fake_orchestrator.ops("resume")) == 1
    assert session.last_activity == clock.now


@pytest.mark.asyncio
async def test_stop_removes_session_keeps_profile(registry, fake_orchestrator, profiles):
    session, _ = await registry.create_session("alice")

    await registry.stop(session.session_id)

    assert session.session_id not in registry
    assert registry.snapshot() == []
    assert fake_orchestrator.ops("stop") == [("stop", session.runtime_handle)]
    assert profiles.get(session.user_key) is not None
    assert profiles.profile_path(session.user_key).is_dir()


@pytest.mark.asyncio
async def test_stop_unknown_session(registry):
    with pytest.raises(NotFound):
        await registry.stop("missing")


@pytest.mark.asyncio
async def test_stop_failure_keeps_entry(registry, fake_orchestrator):
    session, _ = await registry.create_session("alice")
    fake_orchestrator.fail("stop", OrchestrationFailure("docker stop timed out"))

    with pytest.raises(OrchestrationFailure):
        await registry.stop(session.session_id)

    assert session.session_id in registry


@pytest.mark.asyncio
async def test_heartbeat_waiting_on_stop_sees_removal(registry):
    session, _ = await registry.create_session("alice")

    results = await asyncio.gather(
        registry.stop(session.session_id),
        registry.touch(session.session_id),
        return_exceptions=True,
    )

    assert results[0] is None
    assert isinstance(results[1], NotFound)


@pytest.mark.asyncio
async def test_send_input_command(registry, fake_orchestrator):
    session, _ = await registry.create_session("alice")

    await registry.send_input_command(session.session_id, "navigate", {"url": "https://example.org"})

    assert fake_orchestrator.ops("send_input_command") == [
        ("send_input_command", session.runtime_handle, "navigate", {"url": "https://example.org"})
    ]


@pytest.mark.asyncio
async def test_send_input_command_unknown_action(registry):
    session, _ = await registry.create_session("alice")
    with pytest.raises(InvalidRequest):
        await registry.send_input_command(session.session_id, "explode")


# Downloads


@pytest.mark.asyncio
async def test_record_and_retrieve_download(registry):
    session, _ = await registry.create_session("alice")

    download = registry.record_download(
        session.session_id, "report final.pdf", "/home/chrome/Downloads/report final.pdf", 2048, "2024-01-01T12:00:00"
    )

    assert download.retrieval_url == f"http://sessions.test/download/{session.session_id}/report%20final.pdf"
    assert download.retrieved is False

    registry.mark_retrieved(session.session_id, "report final.pdf")
    registry.mark_retrieved(session.session_id, "report final.pdf")

    downloads = registry.list_downloads(session.session_id)
    assert len(downloads) == 1
    assert downloads[0].retrieved is True


@pytest.mark.asyncio
async def test_downloads_keep_arrival_order(registry):
    session, _ = await registry.create_session("alice")
    for name in ("b.txt", "a.txt", "c.txt"):
        registry.record_download(session.session_id, name, f"/dl/{name}", 1, "t")

    assert [d.filename for d in registry.list_downloads(session.session_id)] == ["b.txt", "a.txt", "c.txt"]


@pytest.mark.asyncio
async def test_list_downloads_empty(registry):
    session, _ = await registry.create_session("alice")
    assert registry.list_downloads(session.session_id) == []
    assert registry.list_downloads("missing") == []


def test_record_download_unknown_session(registry):
    with pytest.raises(NotFound):
        registry.record_download("missing", "a.txt", "/dl/a.txt", 1, "t")


def test_mark_retrieved_unknown_is_noop(registry):
    registry.mark_retrieved("missing", "a.txt")


# Recovery


@pytest.mark.asyncio
async def test_recover_existing_runtimes(registry, fake_orchestrator, clock):
    runtimes = [
        RuntimeInfo("browser-session-a", "a", "1111111111111111", 40100, running=True, paused=False),
        RuntimeInfo("browser-session-b", "b", "2222222222222222", 40101, running=True, paused=True),
        RuntimeInfo("browser-session-c", "c", "3333333333333333", None, running=True, paused=False),
        RuntimeInfo("browser-session-d", "d", "4444444444444444", 40103, running=False, paused=False),
    ]

    assert await registry.recover(runtimes) == 2

    assert registry.get("a").status == SessionStatus.ACTIVE
    assert registry.get("b").status == SessionStatus.PAUSED
    assert registry.get("a").last_activity == clock.now
    assert "c" not in registry and "d" not in registry
    assert sorted(c[1] for c in fake_orchestrator.ops("force_destroy")) == [
        "browser-session-c",
        "browser-session-d",
    ]
