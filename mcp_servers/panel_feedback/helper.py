"""Helper side: find the right window and run submit/poll against it.

Selection policy (`resolve_window`):
- If a pid is known (PANEL_FEEDBACK_PID), read its discovery file and use it when alive.
- Otherwise read the shared registry (live entries only) and prefer, in order:
  the entry with the same host session id (VSCODE_PID), the entry whose workspace
  is the deepest ancestor of the helper's workspace, the most recently active entry.
"""

from __future__ import annotations

import json
import logging
import os
import time
import urllib.error
import urllib.request
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .registry import RegistryEntry, RegistryStore, pid_alive, read_discovery_record

_LOGGER = logging.getLogger("panel_feedback.helper")

_MAX_POLL_FAILURES = 3


class HelperError(Exception):
    pass


@dataclass(frozen=True, slots=True)
class WindowTarget:
    host: str
    port: int
    pid: int
    workspace_path: str
    source: str  # "discovery" or "registry"

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{int(self.port)}"


def _from_entry(entry: RegistryEntry, host: str) -> WindowTarget:
    return WindowTarget(
        host=host,
        port=entry.port,
        pid=entry.owner_pid,
        workspace_path=entry.workspace_path,
        source="registry",
    )


def _contains(parent: str, child: str) -> bool:
    if not parent or not child:
        return False
    p = os.path.normpath(parent)
    c = os.path.normpath(child)
    return c == p or c.startswith(p.rstrip(os.sep) + os.sep)


def resolve_window(
    *,
    root: Path | None = None,
    pid: int | None = None,
    workspace: str | None = None,
    host_session_id: str | None = None,
    host: str = "127.0.0.1",
) -> WindowTarget | None:
    if pid:
        rec = read_discovery_record(int(pid), root)
        if rec is not None and pid_alive(rec.owner_pid):
            return WindowTarget(
                host=host,
                port=rec.port,
                pid=rec.owner_pid,
                workspace_path=rec.workspace_path,
                source="discovery",
            )
        _LOGGER.debug("no live discovery record for pid=%s; falling back to registry", pid)

    entries = RegistryStore(root).live_entries()
    if not entries:
        return None

    def _newest(items: list[RegistryEntry]) -> RegistryEntry:
        return max(items, key=lambda e: int(e.last_active_at or 0))

    if host_session_id:
        same_session = [e for e in entries if e.host_session_id == host_session_id]
        if same_session:
            return _from_entry(_newest(same_session), host)

    if workspace:
        containing = [e for e in entries if _contains(e.workspace_path, workspace)]
        if containing:
            best = max(containing, key=lambda e: (len(os.path.normpath(e.workspace_path)), int(e.last_active_at or 0)))
            return _from_entry(best, host)

    return _from_entry(_newest(entries), host)


def resolve_from_env(root: Path | None = None) -> WindowTarget | None:
    pid = None
    raw_pid = (os.environ.get("PANEL_FEEDBACK_PID") or "").strip()
    if raw_pid.isdigit():
        pid = int(raw_pid)
    workspace = (os.environ.get("PANEL_FEEDBACK_WORKSPACE") or "").strip() or os.getcwd()
    host = (os.environ.get("PANEL_FEEDBACK_HOST") or "127.0.0.1").strip() or "127.0.0.1"
    return resolve_window(
        root=root,
        pid=pid,
        workspace=workspace,
        host_session_id=(os.environ.get("VSCODE_PID") or "").strip() or None,
        host=host,
    )


def new_request_id() -> str:
    return f"req-{int(time.time() * 1000)}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class FeedbackClient:
    def __init__(self, target: WindowTarget, *, timeout: float = 10.0) -> None:
        self.target = target
        self.timeout = max(0.05, float(timeout))

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        req = urllib.request.Request(
            self.target.base_url + path,
            data=body,
            method="POST",
            headers={"Content-Type": "application/json", "Cache-Control": "no-store"},
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:  # noqa: S310
                raw = resp.read()
        except urllib.error.HTTPError as exc:
            # 4xx bodies still carry a structured error.
            try:
                raw = exc.read()
            except Exception:  # noqa: BLE001
                raw = b""
            try:
                data = json.loads(raw.decode("utf-8"))
            except Exception:
                data = None
            if isinstance(data, dict):
                return data
            raise HelperError(f"HTTP {exc.code} from {self.target.base_url}{path}") from exc
        except (urllib.error.URLError, TimeoutError, OSError) as exc:
            raise HelperError(f"cannot reach feedback window at {self.target.base_url}: {exc}") from exc

        try:
            data = json.loads(raw.decode("utf-8"))
        except Exception as exc:
            raise HelperError("invalid JSON from feedback window") from exc
        if not isinstance(data, dict):
            raise HelperError("unexpected response shape from feedback window")
        return data

    def submit(self, request_id: str, message: str, options: list[str] | None = None) -> dict[str, Any]:
        params: dict[str, Any] = {"message": message}
        if options:
            params["predefined_options"] = list(options)
        return self._post("/submit", {"requestId": request_id, "params": params})

    def poll(self, request_id: str) -> dict[str, Any]:
        return self._post("/poll", {"requestId": request_id})

    def request_feedback(
        self,
        message: str,
        options: list[str] | None = None,
        *,
        request_id: str | None = None,
        timeout: float | None = None,
        poll_interval: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> dict[str, Any]:
        """Submit, then poll until the human answers. Returns `{"content": [...]}`."""
        rid = request_id or new_request_id()
        accepted = self.submit(rid, message, options)
        if accepted.get("status") != "accepted":
            raise HelperError(str(accepted.get("error") or "submit rejected"))

        deadline = None if timeout is None else time.monotonic() + max(0.0, float(timeout))
        failures = 0
        while True:
            try:
                res = self.poll(rid)
                failures = 0
            except HelperError:
                failures += 1
                if failures >= _MAX_POLL_FAILURES:
                    raise
                res = {"status": "pending"}

            status = res.get("status")
            if status == "completed":
                data = res.get("data")
                return data if isinstance(data, dict) else {"content": [{"type": "text", "text": ""}]}
            if status == "error":
                raise HelperError(str(res.get("error") or "feedback request failed"))
            if deadline is not None and time.monotonic() >= deadline:
                raise HelperError(f"timed out waiting for feedback (requestId={rid})")
            sleep(max(0.01, float(poll_interval)))
