from __future__ import annotations

from datetime import datetime
from typing import Iterable

from PySide6.QtCore import Qt, Signal
from PySide6.QtWidgets import (
    QApplication,
    QListWidget,
    QListWidgetItem,
    QMessageBox,
    QPushButton,
    QHBoxLayout,
    QVBoxLayout,
    QWidget,
)

from ..models import Conversation

PREVIEW_LENGTH = 60


class HistoryPanel(QWidget):
    conversation_selected = Signal(str)
    new_conversation_requested = Signal()
    edit_requested = Signal(str)
    delete_requested = Signal(str)

    def __init__(self, parent: QWidget | None = None) -> None:
        super().__init__(parent)
        self._conversations: list[Conversation] = []

        self._list = QListWidget(self)
        self._list.setWordWrap(True)
        # クリックイベント中に会話ロードを行うため、selectionChanged で拾う
        self._list.itemSelectionChanged.connect(self._on_selection_changed)

        self._new_button = QPushButton("➕ New Chat", self)
        self._new_button.setToolTip("Create a new chat")
        self._new_button.setMinimumHeight(32)
        self._new_button.clicked.connect(self.new_conversation_requested.emit)

        self._edit_button = QPushButton("✏ Edit", self)
        self._edit_button.setToolTip("Edit the model settings of this chat")
        self._edit_button.clicked.connect(self._on_edit_clicked)
        self._edit_button.setEnabled(False)

        self._delete_button = QPushButton("🗑 Delete", self)
        self._delete_button.setToolTip("Remove chat. Hold Shift to skip the confirmation")
        self._delete_button.clicked.connect(self._on_delete_clicked)
        self._delete_button.setEnabled(False)

        buttons = QHBoxLayout()
        buttons.addWidget(self._edit_button)
        buttons.addWidget(self._delete_button)

        layout = QVBoxLayout()
        layout.addWidget(self._new_button)
        layout.addLayout(buttons)
        layout.addWidget(self._list, stretch=1)
        layout.setContentsMargins(4, 4, 4, 4)
        layout.setSpacing(8)
        self.setLayout(layout)

    def set_conversations(self, conversations: Iterable[Conversation], selected_id: str | None = None) -> None:
        selected_id = selected_id or self.current_conversation_id
        self._conversations = list(conversations)
        # リストを再構築する間は選択シグナルを止めて無限ループを防ぐ
        self._list.blockSignals(True)
        self._list.clear()
        for conversation in self._conversations:
            item = QListWidgetItem(self._format_entry(conversation))
            item.setData(Qt.UserRole, conversation.conversation_id)
            item.setToolTip(conversation.display_title)
            self._list.addItem(item)
            if conversation.conversation_id == selected_id:
                self._list.setCurrentItem(item)
        if not self._list.currentItem() and self._list.count() > 0:
            self._list.setCurrentRow(0)
        self._list.blockSignals(False)
        self._update_button_states()

    @property
    def current_conversation_id(self) -> str | None:
        item = self._list.currentItem()
        if not item:
            return None
        return item.data(Qt.UserRole)

    def entry_text(self, row: int) -> str:
        item = self._list.item(row)
        return item.text() if item else ""

    def count(self) -> int:
        return self._list.count()

    def _format_entry(self, conversation: Conversation) -> str:
        try:
            dt = datetime.fromisoformat(conversation.updated_at).astimezone()
            timestamp = dt.strftime("%Y-%m-%d %H:%M")
        except ValueError:
            timestamp = conversation.updated_at
        preview = conversation.last_message_preview() or "No recent messages"
        preview = " ".join(preview.split())
        if len(preview) > PREVIEW_LENGTH:
            preview = preview[: PREVIEW_LENGTH - 1] + "…"
        return f"{conversation.display_title}  ({timestamp})\n{preview}"

    def _conversation(self, conversation_id: str) -> Conversation | None:
        for conversation in self._conversations:
            if conversation.conversation_id == conversation_id:
                return conversation
        return None

    def _on_selection_changed(self) -> None:
        conversation_id = self.current_conversation_id
        self._update_button_states()
        if conversation_id:
            self.conversation_selected.emit(conversation_id)

    def _on_edit_clicked(self) -> None:
        conversation_id = self.current_conversation_id
        if conversation_id:
            self.edit_requested.emit(conversation_id)

    def _on_delete_clicked(self) -> None:
        conversation_id = self.current_conversation_id
        if not conversation_id:
            return
        conversation = self._conversation(conversation_id)
        shift_held = bool(QApplication.keyboardModifiers() & Qt.ShiftModifier)
        needs_confirmation = conversation is not None and bool(conversation.messages) and not shift_held
        if needs_confirmation and not self._confirm_delete(conversation):
            return
        self.delete_requested.emit(conversation_id)

    def _confirm_delete(self, conversation: Conversation) -> bool:
        answer = QMessageBox.warning(
            self,
            "Remove Chat",
            "Do you really want to remove this chat? You cannot undo this action later.\n"
            "Hold Shift to skip this warning.\n\n"
            f"Remove chat \"{conversation.display_title}\"?",
            QMessageBox.Yes | QMessageBox.No,
            QMessageBox.No,
        )
        return answer == QMessageBox.Yes

    def _update_button_states(self) -> None:
        is_selected = self.current_conversation_id is not None
        self._edit_button.setEnabled(is_selected)
        self._delete_button.setEnabled(is_selected)
