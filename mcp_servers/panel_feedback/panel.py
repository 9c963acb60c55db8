"""Feedback panel state (no rendering).

Holds the chat history and the single outstanding question of one window and
speaks the view protocol:

- to the view:   showMessage {message, options, requestId, history}
                 updateHistory {history}
- from the view: submit {value, images}, optionSelected {value}, clearHistory, ready

An answer with images is handed to the broker as the JSON envelope
`{"text": ..., "images": [...]}`; a text-only answer as the bare string.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

_LOGGER = logging.getLogger("panel_feedback.panel")

ViewSink = Callable[[dict[str, Any]], None]


class PanelError(Exception):
    pass


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True)
class ChatMessage:
    role: str  # "ai" or "user"
    content: str
    timestamp: int
    images: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"role": self.role, "content": self.content, "timestamp": int(self.timestamp)}
        if self.images:
            out["images"] = list(self.images)
        return out


class FeedbackPanel:
    def __init__(self) -> None:
        self._view: ViewSink | None = None
        self._history: list[ChatMessage] = []
        self._answer: asyncio.Future[str] | None = None
        self._superseded: list[asyncio.Future[str]] = []
        self._current_message = ""
        self._current_options: list[str] = []
        self._current_request_id: str | None = None
        self._closed = False

    # ─────────────────────────────────────────────────────────────────────────
    # View attachment
    # ─────────────────────────────────────────────────────────────────────────

    def attach_view(self, sink: ViewSink) -> None:
        self._view = sink
        if self.has_pending_question():
            self._post_current_question()
        else:
            self.update_history()

    def detach_view(self, sink: ViewSink | None = None) -> None:
        # Bound methods compare equal but are not identical.
        if sink is None or self._view == sink:
            self._view = None

    @property
    def view_attached(self) -> bool:
        return self._view is not None

    def _post(self, payload: dict[str, Any]) -> None:
        view = self._view
        if view is None:
            return
        try:
            view(payload)
        except Exception:  # noqa: BLE001
            _LOGGER.exception("panel view post failed type=%s", payload.get("type"))

    # ─────────────────────────────────────────────────────────────────────────
    # UI collaborator API
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def history(self) -> list[dict[str, Any]]:
        return [m.to_dict() for m in self._history]

    @property
    def current_request_id(self) -> str | None:
        return self._current_request_id

    def has_pending_question(self) -> bool:
        return self._answer is not None and not self._answer.done()

    def show_message(
        self, message: str, options: list[str] | None = None, request_id: str | None = None
    ) -> asyncio.Future[str]:
        if self._closed:
            raise PanelError("Feedback panel is closed")

        self._current_message = message
        self._current_options = list(options or [])
        self._current_request_id = request_id
        self._history.append(ChatMessage(role="ai", content=message, timestamp=_now_ms()))

        previous = self._answer
        if previous is not None and not previous.done():
            # Only the newest question receives the next answer.
            self._superseded.append(previous)
            _LOGGER.info("question superseded by request=%s", request_id)

        fut: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._answer = fut
        self._post_current_question()
        return fut

    def _post_current_question(self) -> None:
        self._post(
            {
                "type": "showMessage",
                "message": self._current_message,
                "options": list(self._current_options),
                "requestId": self._current_request_id,
                "history": self.history,
            }
        )

    def update_history(self) -> None:
        self._post({"type": "updateHistory", "history": self.history})

    def clear_history(self) -> None:
        self._history = []
        self.update_history()

    # ─────────────────────────────────────────────────────────────────────────
    # View messages
    # ─────────────────────────────────────────────────────────────────────────

    def handle_view_message(self, msg: Any) -> bool:
        """Apply one message from the view. Returns True when it answered a question."""
        if not isinstance(msg, dict):
            return False
        mtype = str(msg.get("type") or "")
        if mtype == "submit":
            raw_images = msg.get("images")
            images = [i for i in raw_images if isinstance(i, str)] if isinstance(raw_images, list) else []
            return self.submit_answer(str(msg.get("value") or ""), images)
        if mtype == "optionSelected":
            return self.submit_answer(str(msg.get("value") or ""), [])
        if mtype == "clearHistory":
            self.clear_history()
            return False
        if mtype == "ready":
            if self.has_pending_question():
                self._post_current_question()
            else:
                self.update_history()
            return False
        _LOGGER.debug("ignoring view message type=%s", mtype)
        return False

    def submit_answer(self, text: str, images: list[str] | None = None) -> bool:
        fut = self._answer
        if fut is None or fut.done():
            _LOGGER.debug("answer without an open question ignored")
            return False
        imgs = list(images or [])
        self._history.append(ChatMessage(role="user", content=text, timestamp=_now_ms(), images=imgs or None))
        self.update_history()
        fut.set_result(json.dumps({"text": text, "images": imgs}, ensure_ascii=False) if imgs else text)
        self._answer = None
        return True

    def close(self) -> None:
        self._closed = True
        for fut in [*self._superseded, self._answer]:
            if fut is not None and not fut.done():
                fut.cancel()
        self._superseded.clear()
        self._answer = None
        self._view = None

    def reopen(self) -> None:
        """Accept questions again after `close()`. History is kept."""
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed
