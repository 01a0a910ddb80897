from __future__ import annotations

import enum
import json
import logging
from pathlib import Path
from typing import Sequence

from .models import ChatMessage

logger = logging.getLogger(__name__)


class ExportError(RuntimeError):
    """Raised when a chat cannot be written to disk."""


class ExportFormat(enum.Enum):
    PLAINTEXT = "Plaintext"
    JSON = "JSON"
    MARKDOWN = "Markdown"

    @property
    def extension(self) -> str:
        return {
            ExportFormat.PLAINTEXT: "txt",
            ExportFormat.JSON: "json",
            ExportFormat.MARKDOWN: "md",
        }[self]

    @property
    def file_filter(self) -> str:
        return f"{self.value} file (*.{self.extension})"


def _role_label(message: ChatMessage) -> str:
    if message.is_user:
        return "User"
    return "Thoughts" if message.is_thought else "Assistant"


def render_plaintext(messages: Sequence[ChatMessage]) -> str:
    lines = [
        f"{m.created_at} - {_role_label(m)} ({m.model}): {m.content}"
        for m in messages
    ]
    return "\n".join(lines) + ("\n" if lines else "")


def render_json(messages: Sequence[ChatMessage]) -> str:
    return json.dumps([m.to_dict() for m in messages], ensure_ascii=False, indent=2)


def render_markdown(messages: Sequence[ChatMessage]) -> str:
    blocks = []
    for message in messages:
        heading = f"### {_role_label(message)} ({message.model}) · {message.created_at}"
        body = message.content
        if message.is_thought:
            body = "\n".join(f"> {line}" for line in body.splitlines())
        if message.attachments:
            files = "\n".join(f"- `{a.path}`" for a in message.attachments)
            body = f"{body}\n\nAttachments:\n{files}" if body else f"Attachments:\n{files}"
        blocks.append(f"{heading}\n\n{body}".rstrip())
    return "\n\n".join(blocks) + ("\n" if blocks else "")


_RENDERERS = {
    ExportFormat.PLAINTEXT: render_plaintext,
    ExportFormat.JSON: render_json,
    ExportFormat.MARKDOWN: render_markdown,
}


def export_messages(messages: Sequence[ChatMessage], fmt: ExportFormat, path: Path) -> int:
    path = Path(path)
    logger.info("Exporting %d messages to %s (format: %s)", len(messages), path, fmt.value)
    text = _RENDERERS[fmt](messages)
    try:
        path.write_text(text, encoding="utf-8")
    except OSError as exc:
        raise ExportError(f"Failed to export chat to {path}: {exc}") from exc
    logger.info("Export complete")
    return len(messages)
