from __future__ import annotations

import hashlib
import os
from pathlib import Path

REGISTRY_FILE_NAME = "ports.json"


def _registry_root() -> Path:
    raw = os.environ.get("PANEL_FEEDBACK_DIR")
    if isinstance(raw, str) and raw.strip():
        return Path(raw.strip()).expanduser()
    return Path.home() / ".panel-feedback"


def registry_dir(*, create: bool = True) -> Path:
    p = _registry_root()
    if create:
        p.mkdir(parents=True, exist_ok=True)
    return p


def registry_file(root: Path | None = None) -> Path:
    return (root or registry_dir()) / REGISTRY_FILE_NAME


def discovery_file(pid: int, root: Path | None = None) -> Path:
    return (root or registry_dir()) / f"port-{int(pid)}.json"


def workspace_key(workspace: str) -> str:
    # Stable across window reloads (the pid is not).
    norm = str(workspace or "").strip() or "default"
    return hashlib.sha1(norm.encode("utf-8")).hexdigest()[:16]  # noqa: S324


def default_state_file(workspace: str, root: Path | None = None) -> Path:
    return (root or registry_dir(create=False)) / "state" / f"{workspace_key(workspace)}.json"
