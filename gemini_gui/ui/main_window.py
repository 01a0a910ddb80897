from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from PySide6.QtCore import QObject, QThread, Qt, Slot
from PySide6.QtGui import QAction, QCloseEvent, QDragEnterEvent, QDropEvent, QIcon, QKeySequence
from PySide6.QtWidgets import QDialog, QFileDialog, QMainWindow, QMessageBox, QSplitter

from ..attachments import file_dialog_filters, partition_supported
from ..chat_controller import ChatController, GenerationRequest
from ..config import AppConfig
from ..exporter import ExportError, ExportFormat, export_messages
from ..gemini_client import GeminiClient, ResponseChunk
from ..history_store import ConversationStore, HistoryStoreError
from ..models import Attachment, Conversation
from ..resources import icon_path
from ..settings import (
    SettingsError,
    default_chat_settings,
    get_bool_setting,
    get_int_setting,
    import_settings,
    resolve_api_key,
    resolve_proxy,
    set_setting,
)
from .conversation_widget import ConversationWidget
from .history_panel import HistoryPanel
from .settings_dialog import KNOWN_MODELS, ChatSettingsDialog, SettingsDialog
from .workers import GenerationWorker, ModelListWorker, detach_thread

logger = logging.getLogger(__name__)

APP_TITLE = "Gemini GUI"
STATUS_TIMEOUT_MS = 6000
THREAD_SHUTDOWN_MS = 3000


def _make_client(settings: dict, api_key: str | None = None) -> GeminiClient:
    return GeminiClient(api_key or resolve_api_key(settings), proxy=resolve_proxy(settings))


class MainWindow(QMainWindow):
    def __init__(self, config: AppConfig, client: GeminiClient | None = None) -> None:
        super().__init__()
        self._config = config
        self._client = client or _make_client(config.settings)
        self._store = ConversationStore(
            config.paths.history_path,
            max_conversations=config.max_conversations,
            default_settings=default_chat_settings(config.settings),
        )
        self._store.load()
        self._store.ensure_one()

        self._controllers: dict[str, ChatController] = {}
        self._jobs: dict[str, tuple[QThread, GenerationWorker]] = {}
        self._model_job: tuple[QThread, ModelListWorker] | None = None
        self._settings_dialog: SettingsDialog | None = None
        self._known_models: list[str] = list(KNOWN_MODELS)
        self._drafts: dict[str, tuple[str, list[Attachment]]] = {}

        self.setWindowTitle(APP_TITLE)
        self.resize(1100, 760)
        self.setAcceptDrops(True)
        icon = icon_path()
        if icon is not None:
            self.setWindowIcon(QIcon(str(icon)))

        self._history_panel = HistoryPanel(self)
        self._conversation_widget = ConversationWidget(self)

        splitter = QSplitter(Qt.Horizontal, self)
        splitter.addWidget(self._history_panel)
        splitter.addWidget(self._conversation_widget)
        splitter.setStretchFactor(0, 1)
        splitter.setStretchFactor(1, 3)
        splitter.setSizes([280, 820])
        self.setCentralWidget(splitter)

        self._build_menu()
        self._connect_signals()
        self._apply_font_size()
        self._refresh_history()
        self._show_conversation(self._store.ensure_one())

    # Properties ---------------------------------------------------------
    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def conversation_widget(self) -> ConversationWidget:
        return self._conversation_widget

    @property
    def history_panel(self) -> HistoryPanel:
        return self._history_panel

    @property
    def is_busy(self) -> bool:
        return bool(self._jobs)

    def controller_for(self, conversation: Conversation) -> ChatController:
        controller = self._controllers.get(conversation.conversation_id)
        if controller is None or controller.conversation is not conversation:
            controller = ChatController(conversation)
            self._controllers[conversation.conversation_id] = controller
        return controller

    # Setup ----------------------------------------------------------------
    def _build_menu(self) -> None:
        file_menu = self.menuBar().addMenu("&File")

        new_action = QAction("New chat", self)
        new_action.setShortcut(QKeySequence.New)
        new_action.triggered.connect(self._create_conversation)
        file_menu.addAction(new_action)

        export_action = QAction("Export chat…", self)
        export_action.setShortcut(QKeySequence.SaveAs)
        export_action.triggered.connect(self._export_current_conversation)
        file_menu.addAction(export_action)

        file_menu.addSeparator()

        load_action = QAction("Load settings…", self)
        load_action.triggered.connect(self._load_settings_from_file)
        file_menu.addAction(load_action)

        settings_action = QAction("Settings…", self)
        settings_action.setShortcut(QKeySequence.Preferences)
        settings_action.triggered.connect(self._open_settings)
        file_menu.addAction(settings_action)

        file_menu.addSeparator()

        quit_action = QAction("Quit", self)
        quit_action.setShortcut(QKeySequence.Quit)
        quit_action.triggered.connect(self.close)
        file_menu.addAction(quit_action)

    def _connect_signals(self) -> None:
        panel = self._history_panel
        panel.conversation_selected.connect(self._on_conversation_selected)
        panel.new_conversation_requested.connect(self._create_conversation)
        panel.edit_requested.connect(self._edit_chat_settings)
        panel.delete_requested.connect(self._delete_conversation)

        view = self._conversation_widget
        view.message_submitted.connect(self._on_message_submitted)
        view.attach_requested.connect(self._pick_attachments)
        view.stop_requested.connect(self._stop_current)
        view.retry_requested.connect(self._retry_current)
        view.regenerate_requested.connect(self._regenerate_message)
        view.edit_requested.connect(self._edit_message)
        view.remove_requested.connect(self._remove_message)

    # Conversation management ----------------------------------------------
    def _current_conversation(self) -> Conversation:
        return self._store.ensure_one()

    def _refresh_history(self) -> None:
        selected = self._store.selected
        self._history_panel.set_conversations(
            self._store.list(), selected.conversation_id if selected else None
        )

    def _show_conversation(self, conversation: Conversation) -> None:
        previous = self._conversation_widget.conversation_id
        if previous and previous != conversation.conversation_id and self._store.get(previous) is not None:
            self._drafts[previous] = (
                self._conversation_widget.draft_text,
                self._conversation_widget.draft_attachments,
            )
        self._conversation_widget.display_conversation(conversation)
        if previous != conversation.conversation_id:
            text, attachments = self._drafts.pop(conversation.conversation_id, ("", []))
            self._conversation_widget.set_draft(text, attachments)
        self._conversation_widget.set_busy(self.controller_for(conversation).is_generating)

    @Slot(str)
    def _on_conversation_selected(self, conversation_id: str) -> None:
        try:
            conversation = self._store.select(conversation_id)
        except KeyError:
            logger.warning("Selected conversation %s no longer exists", conversation_id)
            return
        self._show_conversation(conversation)

    @Slot()
    def _create_conversation(self) -> None:
        conversation = self._store.create(default_chat_settings(self._config.settings))
        self._refresh_history()
        self._show_conversation(conversation)

    @Slot(str)
    def _delete_conversation(self, conversation_id: str) -> None:
        controller = self._controllers.pop(conversation_id, None)
        if controller is not None:
            controller.stop()
        job = self._jobs.get(conversation_id)
        if job is not None:
            job[1].cancel()
        self._drafts.pop(conversation_id, None)
        try:
            next_conversation = self._store.delete(conversation_id)
        except KeyError:
            logger.warning("Tried to delete unknown conversation %s", conversation_id)
            return
        self._persist()
        self._refresh_history()
        self._show_conversation(next_conversation)

    @Slot(str)
    def _edit_chat_settings(self, conversation_id: str) -> None:
        conversation = self._store.get(conversation_id)
        if conversation is None:
            return
        dialog = ChatSettingsDialog(
            conversation.display_title, conversation.settings, self._known_models, self
        )
        dialog.export_requested.connect(
            lambda fmt: self._export_conversation(conversation, fmt)
        )
        if dialog.exec() != QDialog.Accepted:
            return
        conversation.settings = dialog.chat_settings()
        if get_bool_setting(self._config.settings, "api.inherit_chat_model", True):
            # 直近に選んだモデルを新しいチャットの既定にする
            set_setting(self._config.settings, "api.default_model", conversation.settings.model)
            self._save_settings()
            self._store.default_settings = default_chat_settings(self._config.settings)
        logger.info("Updated settings of conversation %s", conversation_id)
        self._persist()
        if conversation is self._store.selected:
            self._conversation_widget.refresh()

    # Messaging ------------------------------------------------------------
    @Slot(str, object)
    def _on_message_submitted(self, text: str, attachments: list[Attachment]) -> None:
        conversation = self._current_conversation()
        controller = self.controller_for(conversation)
        request = controller.send(text, attachments)
        if request is None:
            # 生成中は送信できないので下書きに戻す
            self._conversation_widget.set_draft(text, attachments)
            return
        self._store.touch(conversation)
        self._start_generation(controller, request)

    @Slot()
    def _retry_current(self) -> None:
        controller = self.controller_for(self._current_conversation())
        self._start_generation(controller, controller.retry())

    @Slot(int, str)
    def _regenerate_message(self, index: int, prefill: str) -> None:
        controller = self.controller_for(self._current_conversation())
        self._start_generation(controller, controller.regenerate(index, prefill))

    @Slot(int, str)
    def _edit_message(self, index: int, content: str) -> None:
        controller = self.controller_for(self._current_conversation())
        if controller.edit(index, content):
            self._after_local_change(controller.conversation)

    @Slot(int)
    def _remove_message(self, index: int) -> None:
        controller = self.controller_for(self._current_conversation())
        if controller.remove(index):
            self._after_local_change(controller.conversation)

    @Slot()
    def _stop_current(self) -> None:
        conversation = self._current_conversation()
        self.controller_for(conversation).stop()
        self._conversation_widget.set_status_text("Stopping…")

    def _after_local_change(self, conversation: Conversation) -> None:
        self._store.touch(conversation)
        self._persist()
        self._refresh_history()
        self._conversation_widget.refresh()

    def _start_generation(self, controller: ChatController, request: GenerationRequest | None) -> None:
        if request is None:
            return
        conversation_id = request.conversation_id
        stream = get_bool_setting(self._config.settings, "api.use_streaming", True)
        include_thoughts = get_bool_setting(
            self._config.settings, "api.include_thoughts_in_history", False
        )

        thread = QThread(self)
        worker = GenerationWorker(self._client, request, stream=stream, include_thoughts=include_thoughts)
        worker.moveToThread(thread)
        thread.started.connect(worker.run)
        worker.chunk_received.connect(self._on_chunk_received)
        worker.attachment_skipped.connect(self._on_attachment_skipped)
        worker.finished.connect(self._on_generation_finished)
        worker.failed.connect(self._on_generation_failed)
        worker.finished.connect(thread.quit)
        worker.failed.connect(thread.quit)
        thread.finished.connect(worker.deleteLater)
        thread.finished.connect(self._on_job_thread_finished)

        self._jobs[conversation_id] = (thread, worker)
        logger.debug("Starting generation thread for %s", conversation_id)
        thread.start()

        self._refresh_history()
        if self._conversation_widget.conversation_id == conversation_id:
            self._conversation_widget.refresh()
            self._conversation_widget.set_busy(True)

    @Slot()
    def _on_job_thread_finished(self) -> None:
        thread = self.sender()
        # 同じチャットで次の生成が始まっている場合は残す
        for conversation_id, (job_thread, _) in list(self._jobs.items()):
            if job_thread is thread:
                del self._jobs[conversation_id]
                job_thread.deleteLater()

    @Slot(str, str, bool)
    def _on_chunk_received(self, conversation_id: str, text: str, is_thought: bool) -> None:
        controller = self._controllers.get(conversation_id)
        if controller is None:
            return
        controller.apply_chunk(ResponseChunk(text=text, is_thought=is_thought))
        if self._conversation_widget.conversation_id == conversation_id:
            self._conversation_widget.refresh()

    @Slot(str, str)
    def _on_attachment_skipped(self, name: str, reason: str) -> None:
        self.statusBar().showMessage(f"Skipped {name}: {reason}", STATUS_TIMEOUT_MS)

    @Slot(str)
    def _on_generation_finished(self, conversation_id: str) -> None:
        controller = self._controllers.get(conversation_id)
        if controller is None:
            return
        controller.finish()
        self._finish_generation(controller)

    @Slot(str, str)
    def _on_generation_failed(self, conversation_id: str, message: str) -> None:
        logger.error("Generation failed for %s: %s", conversation_id, message)
        controller = self._controllers.get(conversation_id)
        if controller is None:
            return
        controller.fail(message)
        self._finish_generation(controller)

    def _finish_generation(self, controller: ChatController) -> None:
        conversation = controller.conversation
        if self._store.get(conversation.conversation_id) is None:
            return
        self._store.touch(conversation)
        self._persist()
        self._save_settings()
        self._refresh_history()
        if self._conversation_widget.conversation_id == conversation.conversation_id:
            self._conversation_widget.refresh()
            self._conversation_widget.set_busy(False)

    # Attachments ----------------------------------------------------------
    @Slot()
    def _pick_attachments(self) -> None:
        filenames, _ = QFileDialog.getOpenFileNames(self, "Pick files", "", file_dialog_filters())
        if filenames:
            self.add_attachment_paths(filenames)

    def add_attachment_paths(self, paths: Iterable[Path | str]) -> list[Path]:
        accepted, rejected = partition_supported(paths)
        if accepted:
            self._conversation_widget.add_attachments(Attachment.from_path(path) for path in accepted)
        if rejected:
            skipped = ", ".join(f"{path.name} ({reason})" for path, reason in rejected)
            self.statusBar().showMessage(f"Skipped: {skipped}", STATUS_TIMEOUT_MS)
        return accepted

    def dragEnterEvent(self, event: QDragEnterEvent) -> None:  # type: ignore[override]
        if event.mimeData().hasUrls():
            event.acceptProposedAction()
        else:
            super().dragEnterEvent(event)

    def dropEvent(self, event: QDropEvent) -> None:  # type: ignore[override]
        urls = event.mimeData().urls()
        paths = [Path(url.toLocalFile()) for url in urls if url.isLocalFile()]
        if not paths:
            super().dropEvent(event)
            return
        event.acceptProposedAction()
        self.add_attachment_paths(paths)

    # Export -----------------------------------------------------------------
    @Slot()
    def _export_current_conversation(self) -> None:
        filters = ";;".join(fmt.file_filter for fmt in ExportFormat)
        conversation = self._current_conversation()
        filename, selected_filter = QFileDialog.getSaveFileName(
            self, "Export chat", self._export_basename(conversation), filters
        )
        if not filename:
            return
        fmt = next((f for f in ExportFormat if f.file_filter == selected_filter), None)
        if fmt is None:
            fmt = next(
                (f for f in ExportFormat if filename.lower().endswith(f".{f.extension}")),
                ExportFormat.PLAINTEXT,
            )
        path = Path(filename)
        if not path.suffix:
            path = path.with_name(f"{path.name}.{fmt.extension}")
        self._write_export(conversation, fmt, path)

    def _export_conversation(self, conversation: Conversation, fmt: ExportFormat) -> None:
        filename, _ = QFileDialog.getSaveFileName(
            self,
            "Export chat",
            f"{self._export_basename(conversation)}.{fmt.extension}",
            fmt.file_filter,
        )
        if filename:
            self._write_export(conversation, fmt, Path(filename))

    def _write_export(self, conversation: Conversation, fmt: ExportFormat, path: Path) -> None:
        try:
            count = export_messages(conversation.messages, fmt, path)
        except ExportError as exc:
            logger.error("Export failed: %s", exc)
            QMessageBox.critical(self, "Export failed", str(exc))
            return
        self.statusBar().showMessage(f"Exported {count} message(s) to {path}", STATUS_TIMEOUT_MS)

    @staticmethod
    def _export_basename(conversation: Conversation) -> str:
        title = "".join(c for c in conversation.display_title if c.isalnum() or c in " -_").strip()
        return title or "chat"

    # Settings -------------------------------------------------------------
    @Slot()
    def _open_settings(self) -> None:
        dialog = SettingsDialog(self._config.settings, self)
        dialog.set_available_models(self._known_models)
        dialog.models_refresh_requested.connect(self._refresh_models)
        self._settings_dialog = dialog
        try:
            accepted = dialog.exec() == QDialog.Accepted
        finally:
            self._settings_dialog = None
        if accepted:
            self.apply_settings(dialog.settings())

    @Slot()
    def _load_settings_from_file(self) -> None:
        filename, _ = QFileDialog.getOpenFileName(self, "Load settings", "", "JSON file (*.json)")
        if not filename:
            return
        try:
            settings = import_settings(Path(filename))
        except SettingsError as exc:
            logger.error("Failed to load settings: %s", exc)
            QMessageBox.critical(self, "Failed to load settings", str(exc))
            return
        self.apply_settings(settings)
        self.statusBar().showMessage(f"Loaded settings from {filename}", STATUS_TIMEOUT_MS)

    def apply_settings(self, settings: dict) -> None:
        old_connection = (resolve_api_key(self._config.settings), resolve_proxy(self._config.settings))
        self._config.settings = settings
        self._save_settings()
        if (resolve_api_key(settings), resolve_proxy(settings)) != old_connection:
            # 実行中のジョブは古いクライアントを使い続ける
            self._client = _make_client(settings)
        self._store.default_settings = default_chat_settings(settings)
        self._store.max_conversations = self._config.max_conversations
        self._apply_font_size()
        logger.info("Settings applied")

    def _apply_font_size(self) -> None:
        size = get_int_setting(self._config.settings, "ui.font_size", 12) or 12
        self._conversation_widget.set_font_size(size)

    @Slot(str)
    def _refresh_models(self, api_key: str) -> None:
        if self._model_job is not None:
            return
        client = _make_client(self._config.settings, api_key)
        thread = QThread(self)
        worker = ModelListWorker(client)
        worker.moveToThread(thread)
        thread.started.connect(worker.run)
        worker.finished.connect(self._on_models_listed)
        worker.failed.connect(self._on_models_failed)
        worker.finished.connect(thread.quit)
        worker.failed.connect(thread.quit)
        thread.finished.connect(worker.deleteLater)
        thread.finished.connect(self._clear_model_job)
        self._model_job = (thread, worker)
        thread.start()

    @Slot(list)
    def _on_models_listed(self, models: list) -> None:
        if models:
            self._known_models = list(models)
        if self._settings_dialog is not None:
            self._settings_dialog.set_available_models(self._known_models)

    @Slot(str)
    def _on_models_failed(self, message: str) -> None:
        logger.error("Failed to list models: %s", message)
        if self._settings_dialog is not None:
            self._settings_dialog.set_refresh_failed(message)

    @Slot()
    def _clear_model_job(self) -> None:
        if self._model_job is not None and self._model_job[0] is self.sender():
            self._model_job[0].deleteLater()
            self._model_job = None

    # Persistence ----------------------------------------------------------
    def _persist(self) -> None:
        try:
            self._store.save()
        except HistoryStoreError as exc:
            logger.error("%s", exc)
            self.statusBar().showMessage(str(exc), STATUS_TIMEOUT_MS)

    def _save_settings(self) -> None:
        try:
            self._config.save_settings()
        except OSError as exc:
            logger.error("Failed to save settings: %s", exc)
            self.statusBar().showMessage(f"Failed to save settings: {exc}", STATUS_TIMEOUT_MS)

    def _shutdown_thread(self, thread: QThread, worker: QObject) -> None:
        # 実行中のスロットが戻った時点でイベントループを抜ける
        thread.quit()
        if not thread.wait(THREAD_SHUTDOWN_MS):
            # 応答待ちで止まっているスレッドはウィンドウと一緒に破棄しない
            logger.warning("Background request is still running, leaving it to finish on exit")
            detach_thread(thread, worker)

    def closeEvent(self, event: QCloseEvent) -> None:  # type: ignore[override]
        for controller in self._controllers.values():
            if controller.is_generating:
                controller.stop()
                # 途中までの応答は残しておく
                controller.finish()
        for thread, worker in list(self._jobs.values()):
            worker.cancel()
            self._shutdown_thread(thread, worker)
        self._jobs.clear()
        if self._model_job is not None:
            self._shutdown_thread(*self._model_job)
            self._model_job = None
        self._persist()
        self._save_settings()
        super().closeEvent(event)
