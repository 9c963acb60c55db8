"""Normalize a panel answer into a content list (text and image parts)."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

_LOGGER = logging.getLogger("panel_feedback.content")

_DATA_URL_RE = re.compile(r"^data:([^;]+);base64,(.+)\Z")
_SAMPLE_CHARS = 80


@dataclass(frozen=True, slots=True)
class ContentPart:
    """Single content item returned to the helper."""

    type: str  # "text" or "image"
    text: str | None = None
    data: str | None = None  # base64 payload, no data: prefix
    mime_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.type == "image":
            return {"type": "image", "data": self.data, "mimeType": self.mime_type}
        return {"type": "text", "text": self.text or ""}

    @classmethod
    def from_text(cls, text: str) -> ContentPart:
        return cls(type="text", text=text)

    @classmethod
    def from_image(cls, mime_type: str, data_b64: str) -> ContentPart:
        return cls(type="image", data=data_b64, mime_type=mime_type)


def split_data_url(raw: Any) -> tuple[str, str] | None:
    """`data:<mime>;base64,<payload>` -> (mime, payload), else None."""
    if not isinstance(raw, str):
        return None
    m = _DATA_URL_RE.match(raw)
    if not m:
        return None
    return m.group(1), m.group(2)


def _sample(raw: Any) -> str:
    text = raw if isinstance(raw, str) else repr(raw)
    return text[:_SAMPLE_CHARS]


def parse_response_parts(raw: str, request_id: str | None = None) -> list[ContentPart]:
    parts: list[ContentPart] = []

    try:
        envelope = json.loads(raw)
    except Exception:
        envelope = None

    if isinstance(envelope, dict):
        text = envelope.get("text")
        if isinstance(text, str) and text:
            parts.append(ContentPart.from_text(text))

        images = envelope.get("images")
        if isinstance(images, list):
            parsed = 0
            failed = 0
            for item in images:
                split = split_data_url(item)
                if split is None:
                    failed += 1
                    _LOGGER.debug("image data url parse failed request=%s sample=%r", request_id, _sample(item))
                    continue
                parts.append(ContentPart.from_image(*split))
                parsed += 1
            _LOGGER.debug("parsed images request=%s count=%s failed=%s", request_id, parsed, failed)
    else:
        # Bare string answer (quick-reply option or text without images).
        parts.append(ContentPart.from_text(raw if isinstance(raw, str) else str(raw)))

    if not parts:
        parts.append(ContentPart.from_text(""))

    _LOGGER.debug(
        "parse_response done request=%s types=%s count=%s",
        request_id,
        [p.type for p in parts],
        len(parts),
    )
    return parts


def parse_response(raw: str, request_id: str | None = None) -> list[dict[str, Any]]:
    """Answer string -> wire content list. Never empty, never raises."""
    return [p.to_dict() for p in parse_response_parts(raw, request_id)]
