from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest


def _seed(root: Path, windows: list[dict[str, Any]]) -> None:
    root.mkdir(parents=True, exist_ok=True)
    (root / "ports.json").write_text(json.dumps({"windows": windows}), encoding="utf-8")


def test_resolve_prefers_discovery_file_for_known_pid(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    from mcp_servers.panel_feedback import helper
    from mcp_servers.panel_feedback.registry import DiscoveryRecord, write_discovery_record

    monkeypatch.setattr(helper, "pid_alive", lambda pid: True)
    _seed(tmp_path, [{"port": 1111, "workspace": "/a", "lastActive": 99, "pid": 10}])
    write_discovery_record(DiscoveryRecord(port=2222, workspace_path="/b", owner_pid=20), tmp_path)

    target = helper.resolve_window(root=tmp_path, pid=20)
    assert target is not None
    assert (target.port, target.pid, target.source) == (2222, 20, "discovery")
    assert target.base_url == "http://127.0.0.1:2222"


def test_resolve_falls_back_when_discovery_pid_is_dead(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    from mcp_servers.panel_feedback import helper, registry
    from mcp_servers.panel_feedback.registry import DiscoveryRecord, write_discovery_record

    alive = {10}
    monkeypatch.setattr(helper, "pid_alive", lambda pid: int(pid) in alive)
    monkeypatch.setattr(registry, "pid_alive", lambda pid: int(pid) in alive)
    _seed(tmp_path, [{"port": 1111, "workspace": "/a", "lastActive": 99, "pid": 10}])
    write_discovery_record(DiscoveryRecord(port=2222, workspace_path="/b", owner_pid=20), tmp_path)

    target = helper.resolve_window(root=tmp_path, pid=20)
    assert target is not None
    assert (target.port, target.source) == (1111, "registry")


def test_resolve_ranking(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    from mcp_servers.panel_feedback import helper, registry

    monkeypatch.setattr(registry, "pid_alive", lambda pid: int(pid) != 99)
    _seed(
        tmp_path,
        [
            {"port": 1001, "workspace": "/repo", "lastActive": 10, "pid": 1, "vscodePid": "s1"},
            {"port": 1002, "workspace": "/repo/sub", "lastActive": 5, "pid": 2, "vscodePid": "s2"},
            {"port": 1003, "workspace": "/other", "lastActive": 50, "pid": 3},
            {"port": 1004, "workspace": "/repo/sub", "lastActive": 500, "pid": 99},
        ],
    )

    def _port(**kw: Any) -> int | None:
        t = helper.resolve_window(root=tmp_path, **kw)
        return t.port if t is not None else None

    assert _port(host_session_id="s1", workspace="/repo/sub/x") == 1001
    # Deepest containing workspace wins over recency; dead pid 99 is ignored.
    assert _port(workspace="/repo/sub/pkg") == 1002
    assert _port(workspace="/repo") == 1001
    # Prefix without a path separator does not count as containment.
    assert _port(workspace="/repository") == 1003
    assert _port() == 1003
    assert _port(host_session_id="unknown") == 1003


def test_resolve_empty_registry(tmp_path: Path) -> None:
    from mcp_servers.panel_feedback.helper import resolve_window

    assert resolve_window(root=tmp_path) is None
    assert resolve_window(root=tmp_path, pid=12345) is None


def test_request_feedback_polls_until_completed(monkeypatch: pytest.MonkeyPatch) -> None:
    from mcp_servers.panel_feedback.helper import FeedbackClient, WindowTarget

    calls: list[tuple[str, dict[str, Any]]] = []
    replies = iter(
        [
            {"status": "accepted", "requestId": "r"},
            {"status": "pending"},
            {"status": "pending"},
            {"status": "completed", "data": {"content": [{"type": "text", "text": "ok"}]}},
        ]
    )

    client = FeedbackClient(WindowTarget("127.0.0.1", 1, 1, "/", "registry"))

    def _fake_post(path: str, payload: dict[str, Any]) -> dict[str, Any]:
        calls.append((path, payload))
        return next(replies)

    monkeypatch.setattr(client, "_post", _fake_post)
    sleeps: list[float] = []
    data = client.request_feedback("q", ["a"], request_id="r", poll_interval=0.2, sleep=sleeps.append)

    assert data == {"content": [{"type": "text", "text": "ok"}]}
    assert calls[0] == ("/submit", {"requestId": "r", "params": {"message": "q", "predefined_options": ["a"]}})
    assert [c[0] for c in calls[1:]] == ["/poll", "/poll", "/poll"]
    assert sleeps == [0.2, 0.2]


def test_request_feedback_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    from mcp_servers.panel_feedback.helper import FeedbackClient, HelperError, WindowTarget

    client = FeedbackClient(WindowTarget("127.0.0.1", 1, 1, "/", "registry"))

    monkeypatch.setattr(client, "_post", lambda path, payload: {"status": "error", "error": "params.message is required"})
    with pytest.raises(HelperError, match="params.message"):
        client.request_feedback("q", request_id="r", sleep=lambda _s: None)

    replies = iter([{"status": "accepted"}, {"status": "error", "error": "Request not found"}])
    monkeypatch.setattr(client, "_post", lambda path, payload: next(replies))
    with pytest.raises(HelperError, match="Request not found"):
        client.request_feedback("q", request_id="r", sleep=lambda _s: None)

    def _always_pending(path: str, payload: dict[str, Any]) -> dict[str, Any]:
        return {"status": "accepted"} if path == "/submit" else {"status": "pending"}

    monkeypatch.setattr(client, "_post", _always_pending)
    with pytest.raises(HelperError, match="timed out"):
        client.request_feedback("q", request_id="r", timeout=0, sleep=lambda _s: None)


def test_unreachable_window_is_helper_error() -> None:
    import socket

    from mcp_servers.panel_feedback.helper import FeedbackClient, HelperError, WindowTarget

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        port = int(s.getsockname()[1])

    client = FeedbackClient(WindowTarget("127.0.0.1", port, 1, "/", "registry"), timeout=1)
    with pytest.raises(HelperError):
        client.poll("r")

