"""Shared window registry and per-process discovery files.

Layout (under `~/.panel-feedback/` unless PANEL_FEEDBACK_DIR is set):
- `ports.json`      one entry per live window process: {"windows": [...]}
- `port-<pid>.json` one small record per process, for helpers that already know the pid

There is no cross-process lock. Two windows starting at the same moment can each
read the file before the other's write lands, and one registration is lost. Writes
go through a temp file + rename so readers never see a truncated file.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .paths import discovery_file, registry_dir, registry_file

_LOGGER = logging.getLogger("panel_feedback.registry")


def _now_ms() -> int:
    return int(time.time() * 1000)


_STILL_ACTIVE = 259


def _win_pid_alive(pid: int) -> bool:
    """OpenProcess + GetExitCodeProcess; `os.kill` would terminate the process on Windows."""
    import ctypes

    kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
    # PROCESS_QUERY_LIMITED_INFORMATION
    handle = kernel32.OpenProcess(0x1000, False, pid)
    if not handle:
        return False
    try:
        exit_code = ctypes.c_ulong()
        if not kernel32.GetExitCodeProcess(handle, ctypes.byref(exit_code)):
            return True
        return exit_code.value == _STILL_ACTIVE
    finally:
        kernel32.CloseHandle(handle)


def pid_alive(pid: int) -> bool:
    """Liveness probe. POSIX uses signal 0 (nothing is delivered)."""
    try:
        pid_i = int(pid)
    except Exception:
        return False
    if pid_i <= 0:
        return False
    if sys.platform == "win32":
        return _win_pid_alive(pid_i)
    try:
        os.kill(pid_i, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else.
        return True
    except OSError:
        return False
    return True


def _as_int(raw: Any, default: int = 0) -> int:
    try:
        return int(raw)
    except Exception:
        return default


@dataclass(frozen=True, slots=True)
class RegistryEntry:
    port: int
    workspace_path: str
    last_active_at: int
    owner_pid: int
    host_session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "port": int(self.port),
            "workspace": self.workspace_path,
            "lastActive": int(self.last_active_at),
            "pid": int(self.owner_pid),
        }
        if self.host_session_id:
            out["vscodePid"] = self.host_session_id
        return out

    @classmethod
    def from_dict(cls, data: Any) -> RegistryEntry | None:
        if not isinstance(data, dict):
            return None
        port = _as_int(data.get("port"))
        pid = _as_int(data.get("pid"))
        if not (0 < port <= 65535) or pid <= 0:
            return None
        session = data.get("vscodePid")
        return cls(
            port=port,
            workspace_path=str(data.get("workspace") or ""),
            last_active_at=_as_int(data.get("lastActive")),
            owner_pid=pid,
            host_session_id=str(session) if session else None,
        )


@dataclass(frozen=True, slots=True)
class DiscoveryRecord:
    port: int
    workspace_path: str
    owner_pid: int
    host_session_id: str | None = None
    panel_port: int | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "port": int(self.port),
            "workspace": self.workspace_path,
            "pid": int(self.owner_pid),
            "vscodePid": self.host_session_id or "",
        }
        if self.panel_port:
            out["panelPort"] = int(self.panel_port)
        return out

    @classmethod
    def from_dict(cls, data: Any) -> DiscoveryRecord | None:
        if not isinstance(data, dict):
            return None
        port = _as_int(data.get("port"))
        pid = _as_int(data.get("pid"))
        if not (0 < port <= 65535) or pid <= 0:
            return None
        panel_port = _as_int(data.get("panelPort"))
        return cls(
            port=port,
            workspace_path=str(data.get("workspace") or ""),
            owner_pid=pid,
            host_session_id=str(data.get("vscodePid") or "") or None,
            panel_port=panel_port if 0 < panel_port <= 65535 else None,
        )


def _read_json(path: Path) -> Any:
    try:
        if not path.exists():
            return None
        raw = path.read_text(encoding="utf-8", errors="replace")
        return json.loads(raw)
    except Exception as exc:  # noqa: BLE001
        _LOGGER.warning("failed to read %s: %s", path, exc)
        return None


def write_json_atomic(path: Path, payload: Any) -> bool:
    """Write JSON via temp file + rename. Returns False (logged) on I/O failure."""
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", encoding="utf-8")
        os.replace(tmp, path)
        return True
    except Exception as exc:  # noqa: BLE001
        _LOGGER.error("failed to write %s: %s", path, exc)
        with contextlib.suppress(Exception):
            tmp.unlink(missing_ok=True)
        return False


class RegistryStore:
    """Data access for the shared `ports.json` registry.

    Fail-open on read: a missing or corrupt file is an empty registry.
    Failed writes are logged and otherwise ignored.
    """

    def __init__(self, root: Path | None = None) -> None:
        self.root = Path(root) if root is not None else registry_dir(create=False)

    @property
    def path(self) -> Path:
        return registry_file(self.root)

    def read(self) -> list[RegistryEntry]:
        data = _read_json(self.path)
        if not isinstance(data, dict):
            return []
        raw_windows = data.get("windows")
        if not isinstance(raw_windows, list):
            return []
        out: list[RegistryEntry] = []
        for item in raw_windows:
            entry = RegistryEntry.from_dict(item)
            if entry is not None:
                out.append(entry)
        return out

    def write(self, entries: list[RegistryEntry]) -> bool:
        return write_json_atomic(self.path, {"windows": [e.to_dict() for e in entries]})

    def live_entries(self) -> list[RegistryEntry]:
        return [e for e in self.read() if pid_alive(e.owner_pid)]

    def register(self, entry: RegistryEntry) -> bool:
        entries = self.live_entries()
        # Same pid: restart without a clean shutdown.
        entries = [e for e in entries if e.owner_pid != entry.owner_pid]
        entries.append(entry)
        _LOGGER.debug("register port=%s pid=%s windows=%s", entry.port, entry.owner_pid, len(entries))
        return self.write(entries)

    def touch(self, port: int, pid: int, *, now_ms: int | None = None) -> bool:
        entries = self.live_entries()
        ts = _now_ms() if now_ms is None else int(now_ms)
        found = False
        updated: list[RegistryEntry] = []
        for e in entries:
            if e.port == int(port) and e.owner_pid == int(pid):
                found = True
                updated.append(
                    RegistryEntry(
                        port=e.port,
                        workspace_path=e.workspace_path,
                        last_active_at=ts,
                        owner_pid=e.owner_pid,
                        host_session_id=e.host_session_id,
                    )
                )
            else:
                updated.append(e)
        if not found:
            return False
        return self.write(updated)

    def unregister(self, port: int, pid: int) -> bool:
        entries = self.live_entries()
        kept = [e for e in entries if not (e.port == int(port) and e.owner_pid == int(pid))]
        return self.write(kept)


def write_discovery_record(record: DiscoveryRecord, root: Path | None = None) -> bool:
    return write_json_atomic(discovery_file(record.owner_pid, root), record.to_dict())


def read_discovery_record(pid: int, root: Path | None = None) -> DiscoveryRecord | None:
    return DiscoveryRecord.from_dict(_read_json(discovery_file(pid, root)))


def delete_discovery_record(pid: int, root: Path | None = None) -> None:
    try:
        discovery_file(pid, root).unlink(missing_ok=True)
    except Exception as exc:  # noqa: BLE001
        _LOGGER.error("failed to delete discovery file for pid=%s: %s", pid, exc)
