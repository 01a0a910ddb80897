"""
Thin adapter over the ``google-genai`` SDK.

Turns a chat's message list into API ``Content`` objects, builds the
generation config from per-chat settings and yields the response as a
sequence of text chunks, flagging the ones that belong to the model's
thinking process.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Iterator

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from . import attachments
from .models import ChatMessage, ChatSettings

logger = logging.getLogger(__name__)

THOUGHTS_PREFIX = "MY INNER REFLECTIONS: "
THOUGHTS_SUFFIX = "\n--- end of inner reflections ---\n"

# SDK のエラーと httpx の通信エラーはどちらも GenerationError にまとめる
TRANSPORT_ERRORS = (genai_errors.APIError, httpx.HTTPError, OSError, ValueError)


class GeminiClientError(RuntimeError):
    """Base class for failures talking to the Gemini API."""


class MissingApiKeyError(GeminiClientError):
    def __init__(self) -> None:
        super().__init__("API key not set.")


class GenerationError(GeminiClientError):
    """Raised when the API rejects a request or the transport fails."""


@dataclass(frozen=True)
class ResponseChunk:
    text: str
    is_thought: bool = False


def build_contents(
    messages: Iterable[ChatMessage],
    include_thoughts: bool = False,
    prefill: str | None = None,
) -> tuple[list[types.Content], list[tuple[Path, str]]]:
    """
    Convert chat history into API contents.

    Consecutive messages from the same author are merged into one turn.
    Attachments that cannot be converted are skipped and returned as
    ``(path, reason)`` pairs so the caller can report them.
    """

    contents: list[types.Content] = []
    problems: list[tuple[Path, str]] = []
    parts_buffer: list[types.Part] = []
    current_role: str | None = None

    def flush() -> None:
        if parts_buffer and current_role is not None:
            contents.append(types.Content(role=current_role, parts=list(parts_buffer)))
        parts_buffer.clear()

    for message in messages:
        if message.is_error or message.is_generating or message.is_empty:
            continue
        text = message.content
        if message.is_thought:
            if not include_thoughts:
                continue
            text = f"{THOUGHTS_PREFIX}{text}{THOUGHTS_SUFFIX}"

        role = "user" if message.is_user else "model"
        if current_role is not None and role != current_role:
            flush()
        current_role = role

        for attachment in message.attachments:
            try:
                part = attachments.to_part(attachment.path)
            except attachments.AttachmentError as exc:
                logger.error("Failed to convert file %s: %s", attachment.path, exc)
                problems.append((attachment.path, str(exc)))
                continue
            parts_buffer.append(types.Part.from_text(text=f"File with name: {attachment.name}"))
            parts_buffer.append(part)

        if text:
            parts_buffer.append(types.Part.from_text(text=text))

    flush()

    if prefill:
        # 再生成時は既存テキストの続きから応答させる
        contents.append(types.Content(role="model", parts=[types.Part.from_text(text=prefill)]))
    return contents, problems


def build_config(settings: ChatSettings) -> types.GenerateContentConfig:
    settings = settings.normalized()
    if settings.thinking_enabled:
        thinking = types.ThinkingConfig(include_thoughts=True)
    else:
        thinking = types.ThinkingConfig(thinking_budget=0)

    kwargs: dict[str, Any] = {
        "temperature": settings.temperature,
        "top_p": settings.top_p,
        "top_k": settings.top_k,
        "thinking_config": thinking,
    }
    if settings.system_prompt.strip():
        kwargs["system_instruction"] = settings.system_prompt
    return types.GenerateContentConfig(**kwargs)


def iter_response_chunks(response: Any) -> Iterator[ResponseChunk]:
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return
    content = getattr(candidates[0], "content", None)
    for part in getattr(content, "parts", None) or []:
        text = getattr(part, "text", None)
        if text:
            yield ResponseChunk(text=text, is_thought=bool(getattr(part, "thought", False)))


def format_error_message(exc: BaseException) -> str:
    """Human readable error text for the transcript and error dialogs."""

    cause = exc.__cause__ if isinstance(exc, GenerationError) and exc.__cause__ else exc
    if isinstance(cause, genai_errors.APIError):
        header = " ".join(str(value) for value in (cause.code, cause.status) if value)
        message = cause.message or ""
        text = f"{header}: {message}" if header and message else header or message
        details = getattr(cause, "details", None)
        if isinstance(details, (dict, list)) and details:
            text = f"{text}\n\n{json.dumps(details, indent=2, ensure_ascii=False)}"
        return text or cause.__class__.__name__

    text = str(cause).strip()
    if not text:
        return cause.__class__.__name__
    try:
        parsed = json.loads(text)
    except ValueError:
        return text.replace("\\n", "\n")
    if isinstance(parsed, (dict, list)):
        return json.dumps(parsed, indent=2, ensure_ascii=False)
    return text


class GeminiClient:
    def __init__(
        self,
        api_key: str,
        http_timeout_ms: int | None = None,
        client: Any | None = None,
        proxy: str | None = None,
    ) -> None:
        self._api_key = (api_key or "").strip()
        self._http_timeout_ms = http_timeout_ms
        self._proxy = (proxy or "").strip() or None
        self._client = client

    @property
    def has_api_key(self) -> bool:
        return bool(self._api_key) or self._client is not None

    def _ensure_client(self) -> Any:
        if self._client is not None:
            return self._client
        if not self._api_key:
            raise MissingApiKeyError()
        logger.debug("Creating Gemini client with key %s...", self._api_key[:4])
        self._client = genai.Client(api_key=self._api_key, http_options=self.http_options())
        return self._client

    def http_options(self) -> types.HttpOptions | None:
        options: dict[str, Any] = {}
        if self._http_timeout_ms:
            options["timeout"] = self._http_timeout_ms
        if self._proxy:
            logger.info("Routing API requests through a proxy")
            options["client_args"] = {"proxy": self._proxy}
        return types.HttpOptions(**options) if options else None

    def generate(
        self,
        settings: ChatSettings,
        contents: list[types.Content],
        stream: bool = True,
        cancel_event: threading.Event | None = None,
    ) -> Iterator[ResponseChunk]:
        client = self._ensure_client()
        config = build_config(settings)
        cancel_event = cancel_event or threading.Event()
        logger.info(
            "Requesting completion from %s (%d turn(s), streaming=%s)",
            settings.model,
            len(contents),
            stream,
        )
        if stream:
            yield from self._generate_stream(client, settings.model, contents, config, cancel_event)
        else:
            yield from self._generate_once(client, settings.model, contents, config, cancel_event)

    def _generate_stream(self, client, model, contents, config, cancel_event) -> Iterator[ResponseChunk]:
        total = 0
        try:
            responses = client.models.generate_content_stream(
                model=model, contents=contents, config=config
            )
            try:
                for response in responses:
                    if cancel_event.is_set():
                        logger.info("Stopping generation")
                        break
                    for chunk in iter_response_chunks(response):
                        total += len(chunk.text)
                        yield chunk
            finally:
                close = getattr(responses, "close", None)
                if callable(close):
                    close()
        except TRANSPORT_ERRORS as exc:
            raise GenerationError(str(exc)) from exc
        logger.info("Completion request complete, response length: %d", total)

    def _generate_once(self, client, model, contents, config, cancel_event) -> Iterator[ResponseChunk]:
        try:
            response = client.models.generate_content(model=model, contents=contents, config=config)
        except TRANSPORT_ERRORS as exc:
            raise GenerationError(str(exc)) from exc
        if cancel_event.is_set():
            logger.info("Non-streaming generation cancelled by user")
            return
        chunks = list(iter_response_chunks(response))
        logger.info(
            "Non-streaming completion complete, response length: %d",
            sum(len(chunk.text) for chunk in chunks),
        )
        yield from chunks

    def list_models(self) -> list[str]:
        client = self._ensure_client()
        names: list[str] = []
        try:
            for model in client.models.list():
                actions = getattr(model, "supported_actions", None) or []
                if "generateContent" not in actions:
                    continue
                name = getattr(model, "name", "") or ""
                names.append(name.removeprefix("models/"))
        except TRANSPORT_ERRORS as exc:
            raise GenerationError(str(exc)) from exc
        logger.info("Listed %d generative model(s)", len(names))
        return sorted(set(names))
