from __future__ import annotations

import logging
from copy import deepcopy
from pathlib import Path
from typing import Any, Iterable

from PySide6.QtCore import Signal
from PySide6.QtWidgets import (
    QCheckBox,
    QComboBox,
    QDialog,
    QDialogButtonBox,
    QDoubleSpinBox,
    QFileDialog,
    QFormLayout,
    QGroupBox,
    QHBoxLayout,
    QLineEdit,
    QMessageBox,
    QPlainTextEdit,
    QPushButton,
    QSpinBox,
    QVBoxLayout,
    QWidget,
)

from ..exporter import ExportFormat
from ..models import DEFAULT_MODEL, ChatSettings
from ..settings import (
    SettingsError,
    get_bool_setting,
    get_int_setting,
    get_str_setting,
    import_settings,
    set_setting,
)

logger = logging.getLogger(__name__)

KNOWN_MODELS = (
    "gemini-2.5-pro",
    "gemini-2.5-flash",
    "gemini-2.5-flash-lite",
    "gemini-2.0-flash",
)


def _model_combo(parent: QWidget, selected: str, models: Iterable[str] = KNOWN_MODELS) -> QComboBox:
    combo = QComboBox(parent)
    combo.setEditable(True)
    set_model_choices(combo, models, selected)
    return combo


def set_model_choices(combo: QComboBox, models: Iterable[str], selected: str | None = None) -> None:
    current = selected or combo.currentText() or DEFAULT_MODEL
    combo.blockSignals(True)
    combo.clear()
    names = list(dict.fromkeys([*models, current]))
    combo.addItems(names)
    combo.setCurrentText(current)
    combo.blockSignals(False)


class SettingsDialog(QDialog):
    """Global settings: API key, default model and app behaviour."""

    models_refresh_requested = Signal(str)

    def __init__(self, settings: dict[str, Any], parent: QWidget | None = None) -> None:
        super().__init__(parent)
        self.setWindowTitle("Settings")
        self.setMinimumWidth(480)
        self._settings = deepcopy(settings)

        self._api_key = QLineEdit(self)
        self._api_key.setEchoMode(QLineEdit.Password)
        self._api_key.setPlaceholderText("Paste your Gemini API key")

        self._show_key = QCheckBox("Show", self)
        self._show_key.toggled.connect(
            lambda checked: self._api_key.setEchoMode(QLineEdit.Normal if checked else QLineEdit.Password)
        )
        key_row = QHBoxLayout()
        key_row.addWidget(self._api_key, stretch=1)
        key_row.addWidget(self._show_key)

        self._proxy = QLineEdit(self)
        self._proxy.setPlaceholderText("http://host:port (optional)")

        self._model = _model_combo(self, DEFAULT_MODEL)
        self._refresh_button = QPushButton("Refresh", self)
        self._refresh_button.setToolTip("Fetch the list of models available to this key")
        self._refresh_button.clicked.connect(self._request_models)
        model_row = QHBoxLayout()
        model_row.addWidget(self._model, stretch=1)
        model_row.addWidget(self._refresh_button)

        self._streaming = QCheckBox("Stream responses", self)
        self._include_thoughts = QCheckBox("Include thoughts in history", self)
        self._include_thoughts.setToolTip("Send earlier thoughts back to the model as context")
        self._inherit_model = QCheckBox("Editing a chat's model also changes the default", self)

        self._font_size = QSpinBox(self)
        self._font_size.setRange(8, 32)

        form = QFormLayout()
        form.addRow("API key", key_row)
        form.addRow("Proxy", self._proxy)
        form.addRow("Default model", model_row)
        form.addRow("", self._streaming)
        form.addRow("", self._include_thoughts)
        form.addRow("", self._inherit_model)
        form.addRow("Font size", self._font_size)

        self._load_button = QPushButton("Load settings…", self)
        self._load_button.clicked.connect(self._load_from_file)

        buttons = QDialogButtonBox(QDialogButtonBox.Ok | QDialogButtonBox.Cancel, self)
        buttons.addButton(self._load_button, QDialogButtonBox.ResetRole)
        buttons.accepted.connect(self.accept)
        buttons.rejected.connect(self.reject)

        layout = QVBoxLayout()
        layout.addLayout(form)
        layout.addWidget(buttons)
        self.setLayout(layout)
        self._populate(self._settings)

    def settings(self) -> dict[str, Any]:
        result = deepcopy(self._settings)
        set_setting(result, "api.api_key", self._api_key.text().strip())
        set_setting(result, "api.proxy", self._proxy.text().strip())
        set_setting(result, "api.default_model", self._model.currentText().strip() or DEFAULT_MODEL)
        set_setting(result, "api.use_streaming", self._streaming.isChecked())
        set_setting(result, "api.include_thoughts_in_history", self._include_thoughts.isChecked())
        set_setting(result, "api.inherit_chat_model", self._inherit_model.isChecked())
        set_setting(result, "ui.font_size", self._font_size.value())
        return result

    def set_available_models(self, models: Iterable[str]) -> None:
        set_model_choices(self._model, models)
        self._refresh_button.setEnabled(True)

    def set_refresh_failed(self, message: str) -> None:
        self._refresh_button.setEnabled(True)
        QMessageBox.warning(self, "Request failed", message)

    def _populate(self, settings: dict[str, Any]) -> None:
        self._api_key.setText(get_str_setting(settings, "api.api_key", ""))
        self._proxy.setText(get_str_setting(settings, "api.proxy", ""))
        self._model.setCurrentText(get_str_setting(settings, "api.default_model", DEFAULT_MODEL))
        self._streaming.setChecked(get_bool_setting(settings, "api.use_streaming", True))
        self._include_thoughts.setChecked(
            get_bool_setting(settings, "api.include_thoughts_in_history", False)
        )
        self._inherit_model.setChecked(get_bool_setting(settings, "api.inherit_chat_model", True))
        font_size = get_int_setting(settings, "ui.font_size", 12) or 12
        self._font_size.setValue(max(8, min(font_size, 32)))

    def _request_models(self) -> None:
        self._refresh_button.setEnabled(False)
        self.models_refresh_requested.emit(self._api_key.text().strip())

    def _load_from_file(self) -> None:
        filename, _ = QFileDialog.getOpenFileName(self, "Load settings", "", "JSON file (*.json)")
        if not filename:
            return
        try:
            loaded = import_settings(Path(filename))
        except SettingsError as exc:
            logger.error("Failed to load settings: %s", exc)
            QMessageBox.critical(self, "Failed to load settings", str(exc))
            return
        self._settings = loaded
        self._populate(loaded)


class ChatSettingsDialog(QDialog):
    """Per-chat model parameters plus chat export."""

    export_requested = Signal(object)

    def __init__(
        self,
        title: str,
        settings: ChatSettings,
        models: Iterable[str] = KNOWN_MODELS,
        parent: QWidget | None = None,
    ) -> None:
        super().__init__(parent)
        self.setWindowTitle(f'Editing Chat "{title}"')
        self.setMinimumWidth(480)

        self._model = _model_combo(self, settings.model, models)

        self._temperature = QDoubleSpinBox(self)
        self._temperature.setRange(0.0, 2.0)
        self._temperature.setSingleStep(0.05)
        self._temperature.setValue(settings.temperature)

        self._top_p = QDoubleSpinBox(self)
        self._top_p.setRange(0.0, 1.0)
        self._top_p.setSingleStep(0.01)
        self._top_p.setValue(settings.top_p)

        self._top_k = QSpinBox(self)
        self._top_k.setRange(1, 1000)
        self._top_k.setValue(settings.top_k)

        self._thinking = QCheckBox("Show the thinking process", self)
        self._thinking.setChecked(settings.thinking_enabled)

        self._system_prompt = QPlainTextEdit(self)
        self._system_prompt.setPlaceholderText("System prompt (optional)")
        self._system_prompt.setPlainText(settings.system_prompt)
        self._system_prompt.setFixedHeight(120)

        model_box = QGroupBox("Model", self)
        form = QFormLayout(model_box)
        form.addRow("Model", self._model)
        form.addRow("Temperature", self._temperature)
        form.addRow("Top-P", self._top_p)
        form.addRow("Top-K", self._top_k)
        form.addRow("", self._thinking)
        form.addRow("System prompt", self._system_prompt)

        self._export_format = QComboBox(self)
        for fmt in ExportFormat:
            self._export_format.addItem(fmt.value, fmt)
        self._export_button = QPushButton("Save As…", self)
        self._export_button.clicked.connect(
            lambda: self.export_requested.emit(self._export_format.currentData())
        )
        export_box = QGroupBox("Export chat history to a file", self)
        export_row = QHBoxLayout(export_box)
        export_row.addWidget(self._export_format, stretch=1)
        export_row.addWidget(self._export_button)

        buttons = QDialogButtonBox(QDialogButtonBox.Ok | QDialogButtonBox.Cancel, self)
        buttons.accepted.connect(self.accept)
        buttons.rejected.connect(self.reject)

        layout = QVBoxLayout()
        layout.addWidget(model_box)
        layout.addWidget(export_box)
        layout.addWidget(buttons)
        self.setLayout(layout)

    def chat_settings(self) -> ChatSettings:
        return ChatSettings(
            model=self._model.currentText().strip() or DEFAULT_MODEL,
            temperature=self._temperature.value(),
            top_p=self._top_p.value(),
            top_k=self._top_k.value(),
            system_prompt=self._system_prompt.toPlainText(),
            thinking_enabled=self._thinking.isChecked(),
        ).normalized()
