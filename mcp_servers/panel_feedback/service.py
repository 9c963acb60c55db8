from __future__ import annotations

import logging
import os
import time
from typing import Any

from .broker import FeedbackUI, RequestBroker
from .config import FeedbackConfig
from .listener import FeedbackListener
from .panel import FeedbackPanel
from .panel_gateway import PanelGateway
from .persistence import StateStore
from .registry import (
    DiscoveryRecord,
    RegistryEntry,
    RegistryStore,
    delete_discovery_record,
    write_discovery_record,
)

_LOGGER = logging.getLogger("panel_feedback.service")


def _now_ms() -> int:
    return int(time.time() * 1000)


class FeedbackService:
    """One window's feedback service: listener + broker + registry bookkeeping.

    The hosting process owns exactly one instance and must call `stop()` on
    shutdown so the registry entry and discovery file are removed.

    Lifecycle:
    - `set_context(store)` attaches durable state (may be called before or after start).
    - `start()` binds an ephemeral loopback port, registers, restores pending requests.
    - `stop()` unregisters and closes everything. Pending requests stay persisted.
    """

    def __init__(
        self,
        config: FeedbackConfig | None = None,
        *,
        ui: FeedbackUI | None = None,
        registry: RegistryStore | None = None,
        serve_panel: bool = True,
    ) -> None:
        self.config = config or FeedbackConfig.from_env()
        self.ui: FeedbackUI = ui if ui is not None else FeedbackPanel()
        self.registry = registry or RegistryStore(self.config.registry_dir)
        self.pid = int(os.getpid())

        self.broker = RequestBroker(
            self.ui,
            on_submit=self._touch_registry,
            retention_ms=self.config.retention_ms,
        )
        self.listener = FeedbackListener(self.broker, host=self.config.host)
        self.panel_gateway: PanelGateway | None = None
        if serve_panel and isinstance(self.ui, FeedbackPanel):
            self.panel_gateway = PanelGateway(self.ui, host=self.config.host, port=self.config.panel_port)

        self._store: StateStore | None = None
        self._started = False
        self._registered = False
        self._started_at_ms = 0

    @property
    def port(self) -> int:
        return self.listener.port

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def set_context(self, store: StateStore | None = None) -> None:
        self._store = store if store is not None else StateStore(self.config.state_file)
        self.broker.attach_store(self._store)
        if self._started:
            self.broker.restore()

    async def start(self) -> int:
        """Returns the bound port, or 0 when the listener could not bind (logged)."""
        if self._started:
            return self.port
        self._started_at_ms = _now_ms()
        if isinstance(self.ui, FeedbackPanel):
            self.ui.reopen()
        try:
            await self.listener.start()
        except OSError as exc:
            _LOGGER.error("failed to start feedback listener: %s", exc)

        if self.panel_gateway is not None:
            try:
                await self.panel_gateway.start()
            except Exception as exc:  # noqa: BLE001
                _LOGGER.error("failed to start panel gateway: %s", exc)

        if self.listener.listening:
            self._register()

        self._started = True
        if self._store is not None:
            self.broker.restore()
        # Requests left in memory by an earlier stop().
        self.broker.resume()
        return self.port

    async def stop(self) -> None:
        if self._registered:
            self._unregister()
        await self.broker.close()
        if self.panel_gateway is not None:
            await self.panel_gateway.stop()
        await self.listener.stop()
        if isinstance(self.ui, FeedbackPanel):
            self.ui.close()
        self._started = False

    # ─────────────────────────────────────────────────────────────────────────
    # Registry
    # ─────────────────────────────────────────────────────────────────────────

    def _register(self) -> None:
        entry = RegistryEntry(
            port=self.port,
            workspace_path=self.config.workspace_path,
            last_active_at=_now_ms(),
            owner_pid=self.pid,
            host_session_id=self.config.host_session_id or None,
        )
        self.registry.register(entry)
        panel_port = self.panel_gateway.port if self.panel_gateway is not None else 0
        write_discovery_record(
            DiscoveryRecord(
                port=self.port,
                workspace_path=self.config.workspace_path,
                owner_pid=self.pid,
                host_session_id=self.config.host_session_id or None,
                panel_port=panel_port or None,
            ),
            self.registry.root,
        )
        self._registered = True
        _LOGGER.info("registered window port=%s pid=%s workspace=%s", self.port, self.pid, self.config.workspace_path)

    def _unregister(self) -> None:
        self.registry.unregister(self.port, self.pid)
        delete_discovery_record(self.pid, self.registry.root)
        self._registered = False

    def _touch_registry(self) -> None:
        # Only on submit: focus changes must not reorder routing.
        if self._registered:
            self.registry.touch(self.port, self.pid)

    def status(self) -> dict[str, Any]:
        return {
            "listening": self.listener.listening,
            "host": self.config.host,
            "port": self.port,
            "pid": self.pid,
            "workspace": self.config.workspace_path,
            **({"vscodePid": self.config.host_session_id} if self.config.host_session_id else {}),
            **({"panelPort": self.panel_gateway.port} if self.panel_gateway and self.panel_gateway.port else {}),
            "pendingRequests": self.broker.pending_ids(),
            **({"serverStartedAtMs": self._started_at_ms} if self._started_at_ms else {}),
        }
