from __future__ import annotations

import html
import time
import uuid
from typing import Iterable

import markdown
from PySide6.QtCore import QEvent, QObject, Qt, QTimer, QUrl, Signal
from PySide6.QtGui import QDesktopServices, QFont, QGuiApplication, QTextCursor
from PySide6.QtWidgets import (
    QHBoxLayout,
    QInputDialog,
    QLabel,
    QPlainTextEdit,
    QPushButton,
    QTextBrowser,
    QVBoxLayout,
    QWidget,
)

from ..models import Attachment, ChatMessage, Conversation
from .attachment_bar import AttachmentBar

ASSISTANT_LABEL = "Gemini"
MARKDOWN_EXTENSIONS = ["fenced_code", "tables", "nl2br"]

# 空のチャットに表示する例文 (見出し, 続き)
SUGGESTIONS = (
    ("Tell me a fun fact", "about the Roman empire"),
    ("Show me a code snippet", "of a web server in Python"),
    ("Tell me a joke", "about crabs"),
    ("Give me ideas", "for a birthday present"),
)


def render_markdown(text: str) -> str:
    md = markdown.Markdown(extensions=MARKDOWN_EXTENSIONS)
    # モデル応答に含まれる生の HTML はタグとして解釈せずエスケープする
    md.preprocessors.deregister("html_block")
    md.inlinePatterns.deregister("html")
    content = md.convert(text)
    # QTextBrowser と競合しないよう外側の <p> を外す
    if content.startswith("<p>") and content.endswith("</p>") and content.count("<p>") == 1:
        content = content[3:-4]
    return content


class ConversationWidget(QWidget):
    message_submitted = Signal(str, object)
    attach_requested = Signal()
    stop_requested = Signal()
    retry_requested = Signal()
    regenerate_requested = Signal(int, str)
    edit_requested = Signal(int, str)
    remove_requested = Signal(int)

    def __init__(self, parent: QWidget | None = None) -> None:
        super().__init__(parent)
        self._current_conversation: Conversation | None = None
        self._is_busy = False
        self._busy_since: float | None = None
        # 操作リンクにはこのトークンを付け、付いていないリンクは無視する
        self._action_token = uuid.uuid4().hex

        self._title_label = QLabel("", self)
        self._title_label.setStyleSheet("font-weight: 600; font-size: 15px;")
        self._model_label = QLabel("", self)
        self._model_label.setStyleSheet("color: #666666;")

        top_layout = QHBoxLayout()
        top_layout.addWidget(self._title_label)
        top_layout.addStretch()
        top_layout.addWidget(self._model_label)
        top_layout.setContentsMargins(8, 0, 8, 0)

        self._transcript = QTextBrowser(self)
        self._transcript.setOpenLinks(False)
        self._transcript.setMinimumHeight(300)
        self._transcript.anchorClicked.connect(self._handle_anchor)

        self._font = QFont()
        self._font.setPointSize(12)
        self._transcript.setFont(self._font)

        self._status_label = QLabel("", self)
        self._status_label.setObjectName("StatusLabel")
        self._status_label.setStyleSheet("color: #666666;")

        self._busy_timer = QTimer(self)
        self._busy_timer.setInterval(100)
        self._busy_timer.timeout.connect(self._update_busy_status)

        self._attachment_bar = AttachmentBar(self)

        self._input = QPlainTextEdit(self)
        self._input.setPlaceholderText("Ask me anything… (Enter to send, Shift+Enter for a new line)")
        self._input.setFixedHeight(100)
        self._input.installEventFilter(self)

        self._attach_button = QPushButton("➕ Attach", self)
        self._attach_button.setToolTip("Pick files")
        self._attach_button.clicked.connect(self.attach_requested.emit)

        self._send_button = QPushButton("Send", self)
        self._send_button.clicked.connect(self._handle_submit)

        self._stop_button = QPushButton("■ Stop", self)
        self._stop_button.setToolTip("Stop generating")
        self._stop_button.clicked.connect(self.stop_requested.emit)

        self._retry_button = QPushButton("↻ Retry", self)
        self._retry_button.setToolTip("Send the last prompt again")
        self._retry_button.clicked.connect(self.retry_requested.emit)

        self._regenerate_button = QPushButton("⟳ Regenerate", self)
        self._regenerate_button.setToolTip("Generate the last answer again")
        self._regenerate_button.clicked.connect(self._regenerate_last)

        controls_layout = QVBoxLayout()
        controls_layout.setSpacing(6)
        controls_layout.addWidget(self._attach_button)
        controls_layout.addWidget(self._send_button)
        controls_layout.addWidget(self._stop_button)
        controls_layout.addWidget(self._retry_button)
        controls_layout.addWidget(self._regenerate_button)
        controls_layout.addStretch()

        input_row = QHBoxLayout()
        input_row.addWidget(self._input, stretch=1)
        input_row.addLayout(controls_layout)
        input_row.setSpacing(8)

        layout = QVBoxLayout()
        layout.addLayout(top_layout)
        layout.addWidget(self._transcript, stretch=1)
        layout.addWidget(self._status_label)
        layout.addWidget(self._attachment_bar)
        layout.addLayout(input_row)
        layout.setContentsMargins(8, 8, 8, 8)
        layout.setSpacing(10)
        self.setLayout(layout)
        self._refresh_controls()

    # Public API ---------------------------------------------------------
    @property
    def conversation_id(self) -> str | None:
        if self._current_conversation is None:
            return None
        return self._current_conversation.conversation_id

    @property
    def draft_text(self) -> str:
        return self._input.toPlainText()

    @property
    def draft_attachments(self) -> list[Attachment]:
        return self._attachment_bar.attachments

    def set_font_size(self, size: int) -> None:
        self._font.setPointSize(max(6, min(size, 72)))
        self._transcript.setFont(self._font)
        self._input.setFont(self._font)

    def display_conversation(self, conversation: Conversation) -> None:
        self._current_conversation = conversation
        self.refresh()

    def refresh(self) -> None:
        conversation = self._current_conversation
        if conversation is None:
            self._transcript.clear()
            return
        self._title_label.setText(conversation.display_title)
        self._model_label.setText(conversation.settings.model)
        if conversation.messages:
            self._render_messages(conversation.messages)
        else:
            self._render_suggestions(conversation.settings.model)
        self._refresh_controls()

    def add_attachments(self, attachments: Iterable[Attachment]) -> None:
        self._attachment_bar.add_attachments(attachments)

    def set_busy(self, is_busy: bool, status_text: str | None = None) -> None:
        self._is_busy = is_busy
        if is_busy:
            self._busy_since = time.monotonic()
            self._busy_timer.start()
        else:
            self._busy_since = None
            self._busy_timer.stop()
        self._refresh_controls()
        if status_text:
            self._status_label.setText(status_text)
        elif not is_busy:
            self._status_label.clear()

    def set_status_text(self, text: str) -> None:
        self._status_label.setText(text)

    def set_draft(self, text: str, attachments: Iterable[Attachment] = ()) -> None:
        self._input.setPlainText(text)
        self._input.moveCursor(QTextCursor.End)
        self._attachment_bar.set_attachments(attachments)

    def transcript_html(self) -> str:
        return self._transcript.toHtml()

    def transcript_text(self) -> str:
        return self._transcript.toPlainText()

    # Qt overrides -------------------------------------------------------
    def eventFilter(self, watched: QObject, event: QEvent) -> bool:  # type: ignore[override]
        if watched is self._input and event.type() == QEvent.KeyPress:
            if event.key() in (Qt.Key_Return, Qt.Key_Enter) and not (event.modifiers() & Qt.ShiftModifier):
                if not self._is_busy:
                    self._handle_submit()
                return True
        return super().eventFilter(watched, event)

    # Internal helpers ---------------------------------------------------
    def _handle_submit(self) -> None:
        self._submit(self._input.toPlainText().strip())

    def _submit(self, text: str) -> None:
        attachments = self._attachment_bar.attachments
        if self._is_busy or (not text and not attachments):
            return
        self._input.clear()
        self._attachment_bar.clear()
        # MainWindow が受け取って API 呼び出しを開始する
        self.message_submitted.emit(text, attachments)

    def _regenerate_last(self) -> None:
        messages = self._current_conversation.messages if self._current_conversation else []
        if messages:
            self.regenerate_requested.emit(len(messages) - 1, "")

    def _action_href(self, action: str, index: int = 0) -> str:
        return f"action:{action}/{index}/{self._action_token}"

    def _handle_anchor(self, url: QUrl) -> None:
        if url.scheme() in ("http", "https", "mailto"):
            QDesktopServices.openUrl(url)
            return
        parts = url.path().split("/")
        if url.scheme() != "action" or len(parts) != 3 or parts[2] != self._action_token:
            return
        action = parts[0]
        index = int(parts[1]) if parts[1].isdigit() else -1
        messages = self._current_conversation.messages if self._current_conversation else []
        if action == "retry":
            self.retry_requested.emit()
        elif action == "suggest":
            if 0 <= index < len(SUGGESTIONS):
                self._submit(" ".join(SUGGESTIONS[index]))
        elif not 0 <= index < len(messages):
            return
        elif action == "copy":
            QGuiApplication.clipboard().setText(messages[index].content)
            self.set_status_text("Copied!")
        elif action == "remove":
            self.remove_requested.emit(index)
        elif action == "edit":
            text, ok = QInputDialog.getMultiLineText(
                self, "Edit message", "Edit the message in the context, without regenerating it:",
                messages[index].content,
            )
            if ok:
                self.edit_requested.emit(index, text)
        elif action == "regenerate":
            prefill, ok = QInputDialog.getMultiLineText(
                self, "Regenerate", "Prepend text to response (the model continues after it):", ""
            )
            if ok:
                self.regenerate_requested.emit(index, prefill)

    def _render_messages(self, messages: Iterable[ChatMessage]) -> None:
        scrollbar = self._transcript.verticalScrollBar()
        at_bottom = scrollbar.value() >= scrollbar.maximum() - 4
        blocks = [self._format_message(message, index) for index, message in enumerate(messages)]
        self._transcript.setHtml("".join(blocks))
        if at_bottom:
            self._transcript.moveCursor(QTextCursor.End)
            scrollbar.setValue(scrollbar.maximum())

    def _render_suggestions(self, model: str) -> None:
        cells = [
            f'<td style="padding: 8px;"><a href="{self._action_href("suggest", index)}">'
            f"<b>{html.escape(title)}</b><br>{html.escape(detail)}</a></td>"
            for index, (title, detail) in enumerate(SUGGESTIONS)
        ]
        rows = "".join(f"<tr>{''.join(cells[i : i + 2])}</tr>" for i in range(0, len(cells), 2))
        self._transcript.setHtml(
            f'<h2 align="center">{html.escape(model.replace("-", " "))}</h2>'
            f'<table align="center" cellspacing="6">{rows}</table>'
        )

    def _format_message(self, message: ChatMessage, index: int) -> str:
        if message.is_user:
            role_html = '<b style="color:#1a73e8">👤 You</b>'
        else:
            role_html = (
                f'<b style="color:#188038">✨ {ASSISTANT_LABEL}</b> '
                f'<span style="color:#888888">{html.escape(message.model)}</span>'
            )

        if message.is_thought:
            title = "💭 Thinking…" if message.is_generating else "💭 Thoughts"
            content = (
                f'<div style="color:#777777; font-style:italic;"><b>{title}</b><br>'
                f"{render_markdown(message.content)}</div>"
            )
        elif message.is_error:
            content = (
                f'<span style="color:#d93025">{html.escape(message.content).replace(chr(10), "<br>")}</span>'
                f'<br><a href="{self._action_href("retry")}">Retry</a>'
            )
        elif message.is_generating and not message.content:
            content = '<span style="color:#888888">…</span>'
        elif message.is_user:
            # ユーザー入力は Markdown として扱わずエスケープのみ
            content = html.escape(message.content).replace("\n", "<br>")
        else:
            content = render_markdown(message.content)

        if message.attachments:
            files = " ".join(
                f"📎 {html.escape(a.name)}" if a.exists else f"⚠ {html.escape(a.name)} (FILE NOT FOUND)"
                for a in message.attachments
            )
            content = f'{content}<br><span style="color:#555555">{files}</span>'

        actions = ""
        if not message.is_generating and not message.is_error and not self._is_busy:
            links = []
            if message.content:
                links.append(f'<a href="{self._action_href("copy", index)}">Copy</a>')
            links.append(f'<a href="{self._action_href("edit", index)}">Edit</a>')
            links.append(f'<a href="{self._action_href("remove", index)}">Remove</a>')
            if not message.is_user and not message.is_thought:
                links.append(f'<a href="{self._action_href("regenerate", index)}">Regenerate</a>')
            actions = f'<br><small>{" · ".join(links)}</small>'

        return (
            f'<div style="margin-bottom: 12px;"><p style="margin-bottom:0px;">{role_html}</p>'
            f"{content}{actions}</div>"
        )

    def _update_busy_status(self) -> None:
        if self._busy_since is None:
            return
        elapsed = time.monotonic() - self._busy_since
        self._status_label.setText(f"Generating… {elapsed:.1f}s")

    def _refresh_controls(self) -> None:
        messages = self._current_conversation.messages if self._current_conversation else []
        last = messages[-1] if messages else None
        idle = not self._is_busy and last is not None and not last.is_generating
        self._send_button.setDisabled(self._is_busy)
        self._stop_button.setVisible(self._is_busy)
        self._retry_button.setVisible(idle and last.is_error)
        self._regenerate_button.setVisible(
            idle and not last.is_user and not last.is_error and not last.is_thought
        )
