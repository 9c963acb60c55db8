from __future__ import annotations

import asyncio
import json
import os
import time
from pathlib import Path
from typing import Any

import pytest


class _FakeUI:
    def __init__(self) -> None:
        self.shown: list[tuple[str, list[str] | None, str | None]] = []
        self.futures: dict[str | None, asyncio.Future[str]] = {}

    def show_message(self, message: str, options: list[str] | None = None, request_id: str | None = None):
        fut: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self.shown.append((message, options, request_id))
        self.futures[request_id] = fut
        return fut

    def update_history(self) -> None:
        return None

    def clear_history(self) -> None:
        return None


def _config(tmp_path: Path, **overrides: Any):
    from mcp_servers.panel_feedback.config import FeedbackConfig

    values: dict[str, Any] = {
        "registry_dir": tmp_path / "registry",
        "workspace_path": "/work/project",
        "state_file": tmp_path / "state" / "window.json",
        "host_session_id": "4242",
    }
    values.update(overrides)
    return FeedbackConfig(**values)


async def _wait_for(pred, timeout: float = 2.0) -> None:  # noqa: ANN001
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not pred():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def test_start_registers_and_stop_cleans_up(tmp_path: Path) -> None:
    from mcp_servers.panel_feedback.registry import RegistryStore, read_discovery_record
    from mcp_servers.panel_feedback.service import FeedbackService

    cfg = _config(tmp_path)

    async def _main() -> None:
        service = FeedbackService(cfg, ui=_FakeUI(), serve_panel=False)
        port = await service.start()
        assert port > 0

        entries = RegistryStore(cfg.registry_dir).read()
        assert [(e.port, e.owner_pid, e.workspace_path, e.host_session_id) for e in entries] == [
            (port, os.getpid(), "/work/project", "4242")
        ]
        rec = read_discovery_record(os.getpid(), cfg.registry_dir)
        assert rec is not None and rec.port == port and rec.host_session_id == "4242"

        status = service.status()
        assert status["listening"] is True and status["port"] == port

        await service.stop()
        assert RegistryStore(cfg.registry_dir).read() == []
        assert read_discovery_record(os.getpid(), cfg.registry_dir) is None
        assert not (cfg.registry_dir / f"port-{os.getpid()}.json").exists()

    asyncio.run(_main())


def test_submit_touches_registry_and_helper_round_trip(tmp_path: Path) -> None:
    from mcp_servers.panel_feedback.helper import FeedbackClient, resolve_window
    from mcp_servers.panel_feedback.registry import RegistryStore
    from mcp_servers.panel_feedback.service import FeedbackService

    cfg = _config(tmp_path)
    ui = _FakeUI()

    async def _main() -> None:
        service = FeedbackService(cfg, ui=ui, serve_panel=False)
        service.set_context()
        await service.start()
        try:
            # Make the registered timestamp clearly older than the submit.
            store = RegistryStore(cfg.registry_dir)
            store.touch(service.port, service.pid, now_ms=1)

            target = resolve_window(root=cfg.registry_dir, pid=os.getpid())
            assert target is not None and target.port == service.port and target.source == "discovery"

            client = FeedbackClient(target, timeout=5)
            answer = asyncio.create_task(
                asyncio.to_thread(client.request_feedback, "Pick one", ["A", "B"], request_id="h1", poll_interval=0.02)
            )
            await _wait_for(lambda: "h1" in ui.futures)
            assert ui.shown[-1] == ("Pick one", ["A", "B"], "h1")
            assert store.read()[0].last_active_at > 1

            ui.futures["h1"].set_result("B")
            data = await answer
            assert data == {"content": [{"type": "text", "text": "B"}]}
            assert service.broker.poll("h1") == {"status": "error", "error": "Request not found"}
        finally:
            await service.stop()

    asyncio.run(_main())


def test_restart_recovers_pending_request(tmp_path: Path) -> None:
    from mcp_servers.panel_feedback.broker import STATE_KEY
    from mcp_servers.panel_feedback.persistence import StateStore
    from mcp_servers.panel_feedback.service import FeedbackService

    cfg = _config(tmp_path)
    now = int(time.time() * 1000)
    StateStore(cfg.state_file).update(
        STATE_KEY,
        [
            {"id": "recent", "params": {"message": "one hour ago"}, "status": "pending", "createdAt": now - 3_600_000},
            {
                "id": "ancient",
                "params": {"message": "eight days ago"},
                "status": "pending",
                "createdAt": now - 8 * 86_400_000,
            },
        ],
    )
    ui = _FakeUI()

    async def _main() -> None:
        service = FeedbackService(cfg, ui=ui, serve_panel=False)
        service.set_context(StateStore(cfg.state_file))
        await service.start()
        try:
            await _wait_for(lambda: "recent" in ui.futures)
            assert [s[2] for s in ui.shown] == ["recent"]
            assert service.broker.pending_ids() == ["recent"]
        finally:
            await service.stop()

    asyncio.run(_main())
    stored = json.loads(cfg.state_file.read_text(encoding="utf-8"))["items"][STATE_KEY]
    assert [r["id"] for r in stored] == ["recent"]


def test_set_context_after_start_restores(tmp_path: Path) -> None:
    from mcp_servers.panel_feedback.broker import STATE_KEY
    from mcp_servers.panel_feedback.persistence import StateStore
    from mcp_servers.panel_feedback.service import FeedbackService

    cfg = _config(tmp_path)
    now = int(time.time() * 1000)
    StateStore(cfg.state_file).update(
        STATE_KEY, [{"id": "late", "params": {"message": "m"}, "status": "pending", "createdAt": now}]
    )
    ui = _FakeUI()

    async def _main() -> None:
        service = FeedbackService(cfg, ui=ui, serve_panel=False)
        await service.start()
        try:
            service.set_context()
            await _wait_for(lambda: "late" in ui.futures)
        finally:
            await service.stop()

    asyncio.run(_main())


def test_registry_failure_does_not_break_local_flow(tmp_path: Path) -> None:
    from mcp_servers.panel_feedback.service import FeedbackService

    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    cfg = _config(tmp_path, registry_dir=blocker)
    ui = _FakeUI()

    async def _main() -> None:
        service = FeedbackService(cfg, ui=ui, serve_panel=False)
        port = await service.start()
        try:
            assert port > 0
            assert service.broker.submit("x", {"message": "still works"})["status"] == "accepted"
            await _wait_for(lambda: "x" in ui.futures)
        finally:
            await service.stop()

    asyncio.run(_main())


def test_config_from_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    from mcp_servers.panel_feedback.config import FeedbackConfig
    from mcp_servers.panel_feedback.paths import workspace_key

    monkeypatch.setenv("PANEL_FEEDBACK_DIR", str(tmp_path))
    monkeypatch.setenv("PANEL_FEEDBACK_WORKSPACE", "/some/ws")
    monkeypatch.setenv("VSCODE_PID", "777")
    monkeypatch.setenv("PANEL_FEEDBACK_RETENTION_DAYS", "not-a-number")
    monkeypatch.setenv("PANEL_FEEDBACK_PANEL_PORT", "70000")
    monkeypatch.delenv("PANEL_FEEDBACK_STATE_FILE", raising=False)

    cfg = FeedbackConfig.from_env()
    assert cfg.registry_dir == tmp_path
    assert cfg.workspace_path == "/some/ws"
    assert cfg.host_session_id == "777"
    assert cfg.retention_days == 7.0
    assert cfg.retention_ms == 7 * 24 * 60 * 60 * 1000
    assert cfg.panel_port == 0
    assert cfg.host == "127.0.0.1"
    assert cfg.state_file == tmp_path / "state" / f"{workspace_key('/some/ws')}.json"

    monkeypatch.setenv("PANEL_FEEDBACK_STATE_FILE", str(tmp_path / "custom.json"))
    assert FeedbackConfig.from_env().state_file == tmp_path / "custom.json"


def test_stop_then_start_reshows_and_answers(tmp_path: Path) -> None:
    from mcp_servers.panel_feedback.panel import FeedbackPanel
    from mcp_servers.panel_feedback.registry import RegistryStore
    from mcp_servers.panel_feedback.service import FeedbackService

    cfg = _config(tmp_path)

    async def _main() -> None:
        service = FeedbackService(cfg, serve_panel=False)
        panel = service.ui
        assert isinstance(panel, FeedbackPanel)
        posted: list[dict[str, Any]] = []

        await service.start()
        try:
            panel.attach_view(posted.append)
            service.broker.submit("r1", {"message": "hi"})
            await _wait_for(lambda: panel.current_request_id == "r1")
        finally:
            await service.stop()
        assert service.broker.pending_ids() == ["r1"]

        port = await service.start()
        try:
            assert port > 0
            assert [e.port for e in RegistryStore(cfg.registry_dir).read()] == [port]
            panel.attach_view(posted.append)
            await _wait_for(lambda: panel.has_pending_question())
            assert [p["requestId"] for p in posted if p["type"] == "showMessage"][-1] == "r1"

            assert panel.submit_answer("yes") is True
            await _wait_for(lambda: service.broker.get("r1") is not None and service.broker.get("r1").is_terminal)
            assert service.broker.poll("r1") == {
                "status": "completed",
                "data": {"content": [{"type": "text", "text": "yes"}]},
            }

            # New questions on the restarted service are shown too.
            service.broker.submit("r2", {"message": "again"})
            await _wait_for(lambda: panel.current_request_id == "r2" and panel.has_pending_question())
        finally:
            await service.stop()

    asyncio.run(_main())
