from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal


def utc_now_iso() -> str:
    # タイムゾーン付き ISO 文字列（秒精度）で現在時刻を取得するユーティリティ
    return datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat()


ChatRole = Literal["user", "assistant"]
AttachmentKind = Literal["image", "audio", "video", "document"]

DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_TITLE = "New Chat"
MAX_SUMMARY_LENGTH = 24
DEFAULT_TOP_K = 40


def _clamp(value: float, low: float, high: float) -> float:
    if math.isnan(value):
        return low
    return max(low, min(high, value))


def _positive_int(value: float, fallback: int) -> int:
    try:
        return max(1, int(value))
    except (TypeError, ValueError, OverflowError):
        return fallback


@dataclass
class ChatSettings:
    """Generation parameters owned by a single chat."""

    model: str = DEFAULT_MODEL
    temperature: float = 1.0
    top_p: float = 0.95
    top_k: int = DEFAULT_TOP_K
    system_prompt: str = ""
    thinking_enabled: bool = True

    def normalized(self) -> "ChatSettings":
        return replace(
            self,
            model=(self.model or DEFAULT_MODEL).strip() or DEFAULT_MODEL,
            temperature=_clamp(float(self.temperature), 0.0, 2.0),
            top_p=_clamp(float(self.top_p), 0.0, 1.0),
            top_k=_positive_int(self.top_k, DEFAULT_TOP_K),
        )

    def to_dict(self) -> dict:
        return {
            "model": self.model,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "top_k": self.top_k,
            "system_prompt": self.system_prompt,
            "thinking_enabled": self.thinking_enabled,
        }

    @classmethod
    def from_dict(cls, payload: dict | None, defaults: "ChatSettings | None" = None) -> "ChatSettings":
        base = defaults or cls()
        if not isinstance(payload, dict):
            return replace(base)

        def number(key: str, fallback, cast):
            try:
                value = float(payload.get(key, fallback))
            except (TypeError, ValueError, OverflowError):
                return fallback
            # 1e999 や Infinity は JSON から inf として読み込まれる
            return cast(value) if math.isfinite(value) else fallback

        model = payload.get("model")
        system_prompt = payload.get("system_prompt")
        thinking = payload.get("thinking_enabled")
        return cls(
            model=model if isinstance(model, str) and model.strip() else base.model,
            temperature=number("temperature", base.temperature, float),
            top_p=number("top_p", base.top_p, float),
            top_k=number("top_k", base.top_k, int),
            system_prompt=system_prompt if isinstance(system_prompt, str) else base.system_prompt,
            thinking_enabled=thinking if isinstance(thinking, bool) else base.thinking_enabled,
        ).normalized()


@dataclass(frozen=True)
class Attachment:
    path: Path
    kind: AttachmentKind

    @classmethod
    def from_path(cls, path: str | Path) -> "Attachment":
        from .attachments import classify

        resolved = Path(path)
        return cls(path=resolved, kind=classify(resolved))

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def exists(self) -> bool:
        return self.path.exists()

    def to_dict(self) -> dict:
        return {"path": str(self.path), "kind": self.kind}

    @classmethod
    def from_dict(cls, payload: dict) -> "Attachment":
        return cls(path=Path(payload["path"]), kind=payload.get("kind", "document"))


@dataclass(eq=False)
class ChatMessage:
    role: ChatRole
    content: str
    model: str = DEFAULT_MODEL
    created_at: str = field(default_factory=utc_now_iso)
    attachments: list[Attachment] = field(default_factory=list)
    is_error: bool = False
    is_thought: bool = False
    # 生成中フラグは保存しない（再起動後は常に False）
    is_generating: bool = False

    @property
    def is_user(self) -> bool:
        return self.role == "user"

    @property
    def is_empty(self) -> bool:
        return not self.content and not self.attachments

    def to_dict(self) -> dict:
        return {
            "role": self.role,
            "content": self.content,
            "model": self.model,
            "created_at": self.created_at,
            "attachments": [attachment.to_dict() for attachment in self.attachments],
            "is_error": self.is_error,
            "is_thought": self.is_thought,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "ChatMessage":
        attachments = []
        for raw in payload.get("attachments", []):
            if isinstance(raw, dict) and isinstance(raw.get("path"), str):
                attachments.append(Attachment.from_dict(raw))
        return cls(
            role=payload["role"],
            content=payload.get("content", ""),
            model=payload.get("model", DEFAULT_MODEL),
            created_at=payload.get("created_at", utc_now_iso()),
            attachments=attachments,
            is_error=bool(payload.get("is_error", False)),
            is_thought=bool(payload.get("is_thought", False)),
        )


def make_summary(prompt: str) -> str:
    """Short chat title built from the first line of the first prompt."""

    first_line = prompt.strip().split("\n", 1)[0]
    if not first_line:
        return ""
    summary = first_line[:MAX_SUMMARY_LENGTH]
    summary = summary[0].upper() + summary[1:]
    if len(first_line) > MAX_SUMMARY_LENGTH:
        summary += "…"
    return summary


@dataclass(eq=False)
class Conversation:
    conversation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    summary: str = ""
    settings: ChatSettings = field(default_factory=ChatSettings)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    messages: list[ChatMessage] = field(default_factory=list)

    @property
    def display_title(self) -> str:
        return self.summary or DEFAULT_TITLE

    def append_message(self, message: ChatMessage) -> None:
        self.messages.append(message)
        self.touch()
        if not self.summary and message.is_user and message.content.strip():
            # 初回のユーザ発話から会話タイトルを自動生成
            self.summary = make_summary(message.content)

    def touch(self) -> None:
        self.updated_at = utc_now_iso()

    def last_message_preview(self) -> str | None:
        for message in reversed(self.messages):
            if not message.content:
                continue
            if message.is_user:
                return f"You: {message.content}"
            return message.content
        return None

    def to_dict(self) -> dict:
        return {
            "conversation_id": self.conversation_id,
            "summary": self.summary,
            "settings": self.settings.to_dict(),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "messages": [message.to_dict() for message in self.messages],
        }

    @classmethod
    def from_dict(cls, payload: dict, default_settings: ChatSettings | None = None) -> "Conversation":
        messages = [ChatMessage.from_dict(m) for m in payload.get("messages", []) if isinstance(m, dict)]
        summary = payload.get("summary")
        return cls(
            conversation_id=payload["conversation_id"],
            summary=summary if isinstance(summary, str) else "",
            settings=ChatSettings.from_dict(payload.get("settings"), default_settings),
            created_at=payload.get("created_at", utc_now_iso()),
            updated_at=payload.get("updated_at", utc_now_iso()),
            messages=messages,
        )
