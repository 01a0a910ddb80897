from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from pathlib import Path

from .models import ChatSettings, Conversation

logger = logging.getLogger(__name__)

HISTORY_VERSION = 1


class HistoryStoreError(RuntimeError):
    """Raised when the chat history cannot be written."""


class ConversationStore:
    """
    Local chat history persisted as a single JSON document.

    The store always holds at least one chat once ``delete`` has been called,
    mirroring the sidebar which never shows an empty list.
    """

    def __init__(
        self,
        path: Path,
        max_conversations: int = 100,
        default_settings: ChatSettings | None = None,
    ) -> None:
        self._path = path
        self._max_conversations = max(1, max_conversations)
        self._default_settings = default_settings or ChatSettings()
        self._conversations: list[Conversation] = []
        self._selected_id: str | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def default_settings(self) -> ChatSettings:
        return self._default_settings

    @default_settings.setter
    def default_settings(self, settings: ChatSettings) -> None:
        self._default_settings = settings

    @property
    def max_conversations(self) -> int:
        return self._max_conversations

    @max_conversations.setter
    def max_conversations(self, value: int) -> None:
        self._max_conversations = max(1, value)

    # Persistence ---------------------------------------------------------
    def load(self) -> list[Conversation]:
        self._conversations = []
        self._selected_id = None
        if not self._path.exists():
            return self.list()

        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            conversations = [
                Conversation.from_dict(item, self._default_settings)
                for item in payload.get("conversations", [])
            ]
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            self._quarantine(exc)
            return self.list()

        self._conversations = conversations
        self._sort()
        selected = payload.get("selected_id")
        if isinstance(selected, str) and self.get(selected) is not None:
            self._selected_id = selected
        elif self._conversations:
            self._selected_id = self._conversations[0].conversation_id
        logger.info("Loaded %d conversation(s) from %s", len(self._conversations), self._path)
        return self.list()

    def save(self) -> None:
        self._sort()
        self._trim()
        payload = {
            "version": HISTORY_VERSION,
            "selected_id": self._selected_id,
            "conversations": [conversation.to_dict() for conversation in self._conversations],
        }
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as exc:
            raise HistoryStoreError(f"Failed to save chat history to {self._path}: {exc}") from exc
        logger.debug("Saved %d conversation(s)", len(self._conversations))

    # Queries -------------------------------------------------------------
    def list(self) -> list[Conversation]:
        return list(self._conversations)

    def get(self, conversation_id: str) -> Conversation | None:
        for conversation in self._conversations:
            if conversation.conversation_id == conversation_id:
                return conversation
        return None

    @property
    def selected(self) -> Conversation | None:
        if self._selected_id is None:
            return None
        return self.get(self._selected_id)

    # Mutations -----------------------------------------------------------
    def create(self, settings: ChatSettings | None = None) -> Conversation:
        conversation = Conversation(settings=(settings or self._default_settings).normalized())
        self._conversations.insert(0, conversation)
        self._selected_id = conversation.conversation_id
        logger.debug("Created conversation %s", conversation.conversation_id)
        return conversation

    def ensure_one(self) -> Conversation:
        selected = self.selected
        if selected is not None:
            return selected
        if self._conversations:
            self._selected_id = self._conversations[0].conversation_id
            return self._conversations[0]
        return self.create()

    def select(self, conversation_id: str) -> Conversation:
        conversation = self.get(conversation_id)
        if conversation is None:
            raise KeyError(conversation_id)
        self._selected_id = conversation_id
        return conversation

    def delete(self, conversation_id: str) -> Conversation:
        """Remove a chat and return the chat that should be shown next."""

        index = next(
            (i for i, c in enumerate(self._conversations) if c.conversation_id == conversation_id),
            None,
        )
        if index is None:
            raise KeyError(conversation_id)
        del self._conversations[index]
        logger.info("Deleted conversation %s", conversation_id)

        if not self._conversations:
            return self.create()
        if self._selected_id == conversation_id:
            # 削除したチャットの位置に近いものを選択し直す
            neighbour = self._conversations[min(index, len(self._conversations) - 1)]
            self._selected_id = neighbour.conversation_id
        return self.ensure_one()

    def touch(self, conversation: Conversation) -> None:
        conversation.touch()
        self._sort()

    # Internal helpers ----------------------------------------------------
    def _sort(self) -> None:
        self._conversations.sort(key=lambda c: c.updated_at, reverse=True)

    def _trim(self) -> None:
        if len(self._conversations) <= self._max_conversations:
            return
        keep = self._conversations[: self._max_conversations]
        selected = self.selected
        if selected is not None and selected not in keep:
            keep = keep[:-1] + [selected]
        dropped = len(self._conversations) - len(keep)
        self._conversations = keep
        self._sort()
        logger.info("Trimmed %d old conversation(s) from history", dropped)

    def _quarantine(self, exc: Exception) -> None:
        stamp = datetime.now().strftime("%Y%m%d%H%M%S")
        target = self._path.with_name(f"{self._path.name}.corrupt-{stamp}")
        logger.warning("Chat history %s is unreadable (%s); moving it to %s", self._path, exc, target)
        try:
            os.replace(self._path, target)
        except OSError as move_exc:
            logger.error("Failed to move corrupt history aside: %s", move_exc)
