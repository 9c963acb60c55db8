from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .paths import default_state_file
from .paths import registry_dir as default_registry_dir

DEFAULT_HOST = "127.0.0.1"
DEFAULT_RETENTION_DAYS = 7.0
DEFAULT_POLL_INTERVAL = 0.5


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except Exception:
        return default
    return value if value >= minimum else default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except Exception:
        return default
    return value if 0 <= value <= 65535 else default


@dataclass
class FeedbackConfig:
    registry_dir: Path
    workspace_path: str
    state_file: Path
    host: str = DEFAULT_HOST
    host_session_id: str = ""
    retention_days: float = DEFAULT_RETENTION_DAYS
    poll_interval: float = DEFAULT_POLL_INTERVAL
    panel_port: int = 0
    debug: bool = False

    @property
    def retention_ms(self) -> int:
        return int(self.retention_days * 24 * 60 * 60 * 1000)

    @classmethod
    def from_env(cls, *, workspace_path: str | None = None) -> FeedbackConfig:
        registry_dir = default_registry_dir(create=False)

        workspace = workspace_path
        if workspace is None:
            workspace = (os.environ.get("PANEL_FEEDBACK_WORKSPACE") or "").strip() or os.getcwd()

        raw_state = (os.environ.get("PANEL_FEEDBACK_STATE_FILE") or "").strip()
        state_file = Path(raw_state).expanduser() if raw_state else default_state_file(workspace, registry_dir)

        host = (os.environ.get("PANEL_FEEDBACK_HOST") or DEFAULT_HOST).strip() or DEFAULT_HOST
        return cls(
            registry_dir=registry_dir,
            workspace_path=workspace,
            state_file=state_file,
            host=host,
            host_session_id=(os.environ.get("VSCODE_PID") or "").strip(),
            retention_days=_env_float("PANEL_FEEDBACK_RETENTION_DAYS", DEFAULT_RETENTION_DAYS),
            poll_interval=_env_float("PANEL_FEEDBACK_POLL_INTERVAL", DEFAULT_POLL_INTERVAL, minimum=0.01),
            panel_port=_env_int("PANEL_FEEDBACK_PANEL_PORT", 0),
            debug=os.environ.get("PANEL_FEEDBACK_DEBUG") == "1",
        )
