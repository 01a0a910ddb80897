from __future__ import annotations

import logging
from typing import Iterable

from PySide6.QtCore import Qt, Signal
from PySide6.QtGui import QPixmap
from PySide6.QtWidgets import (
    QFrame,
    QHBoxLayout,
    QLabel,
    QScrollArea,
    QToolButton,
    QVBoxLayout,
    QWidget,
)

from ..models import Attachment

logger = logging.getLogger(__name__)

PREVIEW_HEIGHT = 72
KIND_ICONS = {"video": "🎬", "audio": "🎶", "document": "📎", "image": "🖼"}


class AttachmentChip(QFrame):
    remove_requested = Signal(object)

    def __init__(self, attachment: Attachment, parent: QWidget | None = None) -> None:
        super().__init__(parent)
        self._attachment = attachment
        exists = attachment.exists
        self.setFrameShape(QFrame.StyledPanel)
        self.setStyleSheet(
            "AttachmentChip { border: 1px solid %s; border-radius: 6px; }"
            % ("#888888" if exists else "#e69500")
        )

        preview = QLabel(self)
        preview.setAlignment(Qt.AlignCenter)
        preview.setFixedSize(int(PREVIEW_HEIGHT * 1.2), PREVIEW_HEIGHT)
        pixmap = self._load_thumbnail() if exists and attachment.kind == "image" else None
        if pixmap is not None:
            preview.setPixmap(pixmap)
        else:
            icon = KIND_ICONS.get(attachment.kind, "📎") if exists else "⚠"
            preview.setText(icon)
            preview.setStyleSheet("font-size: 32px;")

        name = attachment.name if exists else f"{attachment.name} (FILE NOT FOUND)"
        label = QLabel(name, self)
        label.setToolTip(str(attachment.path))
        label.setStyleSheet("font-size: 10px;")
        label.setMaximumWidth(int(PREVIEW_HEIGHT * 1.6))

        header = QHBoxLayout()
        header.addStretch()
        remove = QToolButton(self)
        remove.setText("✕")
        remove.setToolTip("Remove attachment")
        remove.clicked.connect(lambda: self.remove_requested.emit(self._attachment))
        header.addWidget(remove)

        layout = QVBoxLayout()
        layout.setContentsMargins(4, 2, 4, 4)
        layout.setSpacing(2)
        layout.addLayout(header)
        layout.addWidget(preview, alignment=Qt.AlignCenter)
        layout.addWidget(label)
        self.setLayout(layout)

    @property
    def attachment(self) -> Attachment:
        return self._attachment

    def _load_thumbnail(self) -> QPixmap | None:
        pixmap = QPixmap(str(self._attachment.path))
        if pixmap.isNull():
            logger.warning("Failed to load image preview: %s", self._attachment.path)
            return None
        return pixmap.scaled(
            int(PREVIEW_HEIGHT * 1.2),
            PREVIEW_HEIGHT,
            Qt.KeepAspectRatio,
            Qt.SmoothTransformation,
        )


class AttachmentBar(QScrollArea):
    """Horizontal strip of the files attached to the message being written."""

    def __init__(self, parent: QWidget | None = None) -> None:
        super().__init__(parent)
        self._attachments: list[Attachment] = []
        self.setWidgetResizable(True)
        self.setFrameShape(QFrame.NoFrame)
        self.setVerticalScrollBarPolicy(Qt.ScrollBarAlwaysOff)
        self.setFixedHeight(PREVIEW_HEIGHT + 64)

        self._container = QWidget(self)
        self._layout = QHBoxLayout(self._container)
        self._layout.setContentsMargins(0, 0, 0, 0)
        self._layout.addStretch()
        self.setWidget(self._container)
        self.setVisible(False)

    @property
    def attachments(self) -> list[Attachment]:
        return list(self._attachments)

    def add_attachments(self, attachments: Iterable[Attachment]) -> None:
        known = {a.path for a in self._attachments}
        for attachment in attachments:
            if attachment.path in known:
                continue
            known.add(attachment.path)
            self._attachments.append(attachment)
        self._rebuild()

    def set_attachments(self, attachments: Iterable[Attachment]) -> None:
        self._attachments = []
        self.add_attachments(attachments)

    def clear(self) -> None:
        self.set_attachments([])

    def remove_attachment(self, attachment: Attachment) -> None:
        self._attachments = [a for a in self._attachments if a != attachment]
        self._rebuild()

    def _rebuild(self) -> None:
        while self._layout.count() > 1:
            item = self._layout.takeAt(0)
            widget = item.widget()
            if widget is not None:
                widget.deleteLater()
        for attachment in self._attachments:
            chip = AttachmentChip(attachment, self._container)
            chip.remove_requested.connect(self.remove_attachment)
            self._layout.insertWidget(self._layout.count() - 1, chip)
        self.setVisible(bool(self._attachments))
