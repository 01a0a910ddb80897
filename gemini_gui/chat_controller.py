from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Iterable

from .gemini_client import ResponseChunk
from .models import Attachment, ChatMessage, ChatSettings, Conversation

logger = logging.getLogger(__name__)


@dataclass
class GenerationRequest:
    conversation_id: str
    messages: list[ChatMessage]
    settings: ChatSettings
    prefill: str = ""
    cancel_event: threading.Event = field(default_factory=threading.Event)


class ChatController:
    """
    Message-level state machine for one chat.

    The controller only mutates the conversation; sending the request and
    rendering are left to the caller. Thought chunks are collected in their
    own message so the answer can be shown below them.
    """

    def __init__(self, conversation: Conversation) -> None:
        self._conversation = conversation
        self._request: GenerationRequest | None = None
        self._thought: ChatMessage | None = None
        self._answer: ChatMessage | None = None

    @property
    def conversation(self) -> Conversation:
        return self._conversation

    @property
    def messages(self) -> list[ChatMessage]:
        return self._conversation.messages

    @property
    def is_generating(self) -> bool:
        return self._request is not None

    @property
    def active_request(self) -> GenerationRequest | None:
        return self._request

    # Requests ------------------------------------------------------------
    def send(self, text: str, attachments: Iterable[Attachment] = ()) -> GenerationRequest | None:
        files = list(attachments)
        if self.is_generating or (not text.strip() and not files):
            return None

        # 古いエラーメッセージは送信前に取り除く
        self._conversation.messages = [m for m in self.messages if not m.is_error]
        model = self._conversation.settings.model
        self._conversation.append_message(
            ChatMessage(role="user", content=text.rstrip(), model=model, attachments=files)
        )
        placeholder = ChatMessage(role="assistant", content="", model=model, is_generating=True)
        self._conversation.append_message(placeholder)
        return self._start(placeholder)

    def retry(self) -> GenerationRequest | None:
        if self.is_generating or not self.messages or not self.messages[-1].is_error:
            return None
        user_index = next(
            (i for i in range(len(self.messages) - 1, -1, -1) if self.messages[i].is_user),
            None,
        )
        if user_index is None:
            return None
        prompt = self.messages[user_index]
        del self.messages[user_index:]
        logger.debug("Retrying prompt at index %d", user_index)
        return self.send(prompt.content, prompt.attachments)

    def regenerate(self, index: int, prefill: str = "") -> GenerationRequest | None:
        if self.is_generating or not 0 <= index < len(self.messages):
            return None
        target = self.messages[index]
        if target.is_user or target.is_thought:
            return None

        del self.messages[index + 1 :]
        # 古い思考過程は新しい応答で置き換える
        while index > 0 and self.messages[index - 1].is_thought:
            del self.messages[index - 1]
            index -= 1
        target.content = prefill
        target.is_error = False
        target.is_generating = True
        target.model = self._conversation.settings.model
        self._conversation.touch()
        return self._start(target, prefill)

    def stop(self) -> None:
        if self._request is not None:
            self._request.cancel_event.set()

    # Response handling ---------------------------------------------------
    def apply_chunk(self, chunk: ResponseChunk) -> None:
        if not self.is_generating:
            return
        if chunk.is_thought:
            self._thought_message().content += chunk.text
        else:
            if self._thought is not None:
                self._thought.is_generating = False
            self._answer_message().content += chunk.text
        self._conversation.touch()

    def finish(self) -> None:
        if self._thought is not None:
            self._thought.is_generating = False
        answer = self._answer
        if answer is not None:
            answer.is_generating = False
            if answer.is_empty and answer in self.messages:
                self.messages.remove(answer)
        self._reset()
        self._conversation.touch()

    def fail(self, error_text: str) -> None:
        if self._thought is not None:
            self._thought.is_generating = False
        answer = self._answer
        if answer is None:
            answer = ChatMessage(role="assistant", content="", model=self._current_model())
            self._conversation.append_message(answer)
        answer.content = error_text
        answer.is_error = True
        answer.is_generating = False
        self._reset()
        self._conversation.touch()

    # Editing -------------------------------------------------------------
    def edit(self, index: int, content: str) -> bool:
        if self.is_generating or not 0 <= index < len(self.messages):
            return False
        self.messages[index].content = content
        self._conversation.touch()
        return True

    def remove(self, index: int) -> bool:
        if self.is_generating or not 0 <= index < len(self.messages):
            return False
        del self.messages[index]
        self._conversation.touch()
        return True

    # Internal helpers ----------------------------------------------------
    def _start(self, answer: ChatMessage, prefill: str = "") -> GenerationRequest:
        self._answer = answer
        self._thought = None
        self._request = GenerationRequest(
            conversation_id=self._conversation.conversation_id,
            messages=[replace(m, attachments=list(m.attachments)) for m in self.messages],
            settings=replace(self._conversation.settings),
            prefill=prefill,
        )
        return self._request

    def _thought_message(self) -> ChatMessage:
        if self._thought is not None:
            return self._thought
        answer = self._answer
        if answer is not None and not answer.content and answer is self.messages[-1]:
            # 空のプレースホルダをそのまま思考メッセージに変える
            answer.is_thought = True
            self._thought = answer
            self._answer = None
            return answer
        thought = ChatMessage(
            role="assistant",
            content="",
            model=self._current_model(),
            is_thought=True,
            is_generating=True,
        )
        position = self.messages.index(answer) if answer in self.messages else len(self.messages)
        self.messages.insert(position, thought)
        self._thought = thought
        return thought

    def _answer_message(self) -> ChatMessage:
        if self._answer is None:
            self._answer = ChatMessage(
                role="assistant", content="", model=self._current_model(), is_generating=True
            )
            self.messages.append(self._answer)
        return self._answer

    def _current_model(self) -> str:
        if self._request is not None:
            return self._request.settings.model
        return self._conversation.settings.model

    def _reset(self) -> None:
        self._request = None
        self._thought = None
        self._answer = None
