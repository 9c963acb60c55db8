"""Request broker: submit/poll state machine for questions awaiting a human answer.

A request is created by `submit`, displayed through the UI collaborator on a
separate asyncio task, and resolved exactly once (`completed` or `error`).
The first `poll` that observes a terminal status returns it and evicts the
request; later polls see "Request not found".
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from .content import parse_response
from .persistence import StateStore

_LOGGER = logging.getLogger("panel_feedback.broker")

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"
_STATUSES = {STATUS_PENDING, STATUS_COMPLETED, STATUS_ERROR}

NOT_FOUND_ERROR = "Request not found"
STATE_KEY = "pendingRequests"
DEFAULT_RETENTION_MS = 7 * 24 * 60 * 60 * 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


class SubmitError(ValueError):
    """Caller error on submit (missing id, missing message, duplicate id)."""


class FeedbackUI(Protocol):
    """What the broker needs from the panel."""

    def show_message(
        self, message: str, options: list[str] | None = None, request_id: str | None = None
    ) -> Awaitable[str]: ...

    def update_history(self) -> None: ...

    def clear_history(self) -> None: ...


@dataclass(slots=True)
class PendingRequest:
    id: str
    params: dict[str, Any]
    status: str = STATUS_PENDING
    result: dict[str, Any] | None = None
    error: str | None = None
    created_at: int = field(default_factory=_now_ms)

    @property
    def is_terminal(self) -> bool:
        return self.status != STATUS_PENDING

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "params": self.params,
            "status": self.status,
            "createdAt": int(self.created_at),
        }
        if self.result is not None:
            out["result"] = self.result
        if self.error is not None:
            out["error"] = self.error
        return out

    @classmethod
    def from_dict(cls, data: Any) -> PendingRequest | None:
        if not isinstance(data, dict):
            return None
        rid = data.get("id")
        if not isinstance(rid, str) or not rid:
            return None
        status = data.get("status")
        if status not in _STATUSES:
            return None
        params = data.get("params")
        try:
            created_at = int(data.get("createdAt") or 0)
        except Exception:
            return None
        result = data.get("result")
        error = data.get("error")
        return cls(
            id=rid,
            params=params if isinstance(params, dict) else {},
            status=str(status),
            result=result if isinstance(result, dict) else None,
            error=str(error) if error is not None else None,
            created_at=created_at,
        )


def tool_arguments(params: Any) -> dict[str, Any]:
    """Accept both `{message, ...}` and the tool-call shape `{name, arguments: {message, ...}}`."""
    if not isinstance(params, dict):
        return {}
    nested = params.get("arguments")
    if isinstance(nested, dict):
        return nested
    return params


def message_and_options(params: Any) -> tuple[str, list[str] | None]:
    args = tool_arguments(params)
    message = args.get("message")
    raw_options = args.get("predefined_options")
    options: list[str] | None = None
    if isinstance(raw_options, list):
        options = [str(o) for o in raw_options if isinstance(o, (str, int, float))]
    return (message if isinstance(message, str) else ""), options


class RequestBroker:
    """Owns the in-flight request table of one window process.

    All mutation happens on the event loop; no locking.
    """

    def __init__(
        self,
        ui: FeedbackUI,
        *,
        on_submit: Callable[[], Any] | None = None,
        retention_ms: int = DEFAULT_RETENTION_MS,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._ui = ui
        self._on_submit = on_submit
        self._retention_ms = int(retention_ms)
        self._clock = clock
        self._requests: dict[str, PendingRequest] = {}
        self._store: StateStore | None = None
        self._tasks: dict[str, asyncio.Task[None]] = {}

    # ─────────────────────────────────────────────────────────────────────────
    # Persistence
    # ─────────────────────────────────────────────────────────────────────────

    def attach_store(self, store: StateStore | None) -> None:
        self._store = store

    def _persist(self) -> None:
        if self._store is None:
            return
        snapshot = [r.to_dict() for r in self._requests.values()]
        self._store.update(STATE_KEY, snapshot)

    def restore(self) -> int:
        """Reinstate recent pending requests from the store and re-show them.

        Must run on the event loop. Returns the number of restored requests.
        """
        if self._store is None:
            return 0
        stored = self._store.get(STATE_KEY, [])
        if not isinstance(stored, list):
            stored = []
        now = self._clock()
        restored: list[PendingRequest] = []
        for item in stored:
            req = PendingRequest.from_dict(item)
            if req is None or req.status != STATUS_PENDING:
                continue
            if now - req.created_at >= self._retention_ms:
                continue
            if req.id in self._requests:
                continue
            self._requests[req.id] = req
            restored.append(req)
        self._persist()
        for req in restored:
            self._schedule_display(req)
        _LOGGER.info("restored %s pending requests", len(restored))
        return len(restored)

    # ─────────────────────────────────────────────────────────────────────────
    # Submit / poll
    # ─────────────────────────────────────────────────────────────────────────

    def submit(self, request_id: Any, params: Any) -> dict[str, Any]:
        rid = request_id if isinstance(request_id, str) else ""
        if not rid.strip():
            raise SubmitError("requestId is required")
        args = tool_arguments(params)
        message = args.get("message")
        if not isinstance(message, str) or not message.strip():
            raise SubmitError("params.message is required")
        if rid in self._requests:
            raise SubmitError(f"Duplicate requestId: {rid}")

        if self._on_submit is not None:
            try:
                self._on_submit()
            except Exception:  # noqa: BLE001
                _LOGGER.exception("submit activity hook failed")

        req = PendingRequest(id=rid, params=dict(params), created_at=self._clock())
        self._requests[rid] = req
        self._persist()
        self._schedule_display(req)
        _LOGGER.info("accepted request=%s", rid)
        return {"status": "accepted", "requestId": rid}

    def poll(self, request_id: Any) -> dict[str, Any]:
        rid = request_id if isinstance(request_id, str) else ""
        req = self._requests.get(rid)
        if req is None:
            return {"status": STATUS_ERROR, "error": NOT_FOUND_ERROR}

        if req.status == STATUS_COMPLETED:
            self._requests.pop(rid, None)
            self._persist()
            return {"status": STATUS_COMPLETED, "data": req.result}
        if req.status == STATUS_ERROR:
            self._requests.pop(rid, None)
            self._persist()
            return {"status": STATUS_ERROR, "error": req.error or "Unknown error"}
        return {"status": STATUS_PENDING}

    def get(self, request_id: str) -> PendingRequest | None:
        return self._requests.get(request_id)

    def pending_ids(self) -> list[str]:
        return [rid for rid, r in self._requests.items() if r.status == STATUS_PENDING]

    def __len__(self) -> int:
        return len(self._requests)

    # ─────────────────────────────────────────────────────────────────────────
    # Resolution (called once per request)
    # ─────────────────────────────────────────────────────────────────────────

    def complete(self, request_id: str, content: list[dict[str, Any]]) -> bool:
        req = self._requests.get(request_id)
        if req is None:
            _LOGGER.warning("complete for unknown request=%s ignored", request_id)
            return False
        if req.is_terminal:
            _LOGGER.warning("request=%s already %s; second resolution ignored", request_id, req.status)
            return False
        req.status = STATUS_COMPLETED
        req.result = {"content": content}
        self._persist()
        _LOGGER.info("completed request=%s parts=%s", request_id, len(content))
        return True

    def fail(self, request_id: str, message: str) -> bool:
        req = self._requests.get(request_id)
        if req is None:
            _LOGGER.warning("fail for unknown request=%s ignored", request_id)
            return False
        if req.is_terminal:
            _LOGGER.warning("request=%s already %s; second resolution ignored", request_id, req.status)
            return False
        req.status = STATUS_ERROR
        req.error = str(message or "Unknown error")
        self._persist()
        _LOGGER.info("failed request=%s error=%s", request_id, req.error)
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # Display
    # ─────────────────────────────────────────────────────────────────────────

    def _schedule_display(self, req: PendingRequest) -> None:
        task = asyncio.get_running_loop().create_task(self._display(req), name=f"feedback-{req.id}")
        self._tasks[req.id] = task

        def _forget(done: asyncio.Task[None], rid: str = req.id) -> None:
            if self._tasks.get(rid) is done:
                del self._tasks[rid]

        task.add_done_callback(_forget)

    def resume(self) -> int:
        """Re-show pending requests that have no display task (e.g. after `close()`).

        Must run on the event loop. Returns the number of requests re-shown.
        """
        orphans = [r for r in self._requests.values() if r.status == STATUS_PENDING and r.id not in self._tasks]
        for req in orphans:
            self._schedule_display(req)
        if orphans:
            _LOGGER.info("re-showing %s pending requests", len(orphans))
        return len(orphans)

    async def _display(self, req: PendingRequest) -> None:
        message, options = message_and_options(req.params)
        try:
            answer = await self._ui.show_message(message, options, req.id)
        except Exception as exc:  # noqa: BLE001
            self.fail(req.id, str(exc) or exc.__class__.__name__)
            return
        self.complete(req.id, parse_response(answer, req.id))

    async def call_tool(self, arguments: Any) -> list[dict[str, Any]]:
        """Legacy synchronous path: display and await the answer in-line.

        Does not touch the request table (separate id namespace).
        """
        message, options = message_and_options(arguments)
        answer = await self._ui.show_message(message, options)
        return parse_response(answer)

    async def close(self) -> None:
        """Cancel display tasks. Pending requests stay persisted for the next start."""
        tasks = list(self._tasks.values())
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
