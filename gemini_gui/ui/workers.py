from __future__ import annotations

import logging

from PySide6.QtCore import QObject, QThread, Signal, Slot

from ..chat_controller import GenerationRequest
from ..gemini_client import GeminiClient, build_contents, format_error_message

logger = logging.getLogger(__name__)

# ウィンドウを閉じた後も終了待ちのスレッドを保持する
_detached_threads: list[tuple[QThread, QObject]] = []


def detach_thread(thread: QThread, worker: QObject) -> None:
    """Keep a worker thread that is still running alive after its owner closes."""

    thread.setParent(None)
    _detached_threads.append((thread, worker))


def wait_for_detached_threads() -> None:
    while _detached_threads:
        thread, _ = _detached_threads.pop()
        logger.info("Waiting for a background request to finish")
        thread.wait()


class GenerationWorker(QObject):
    chunk_received = Signal(str, str, bool)  # conversation_id, text, is_thought
    attachment_skipped = Signal(str, str)  # file name, reason
    finished = Signal(str)
    failed = Signal(str, str)

    def __init__(
        self,
        client: GeminiClient,
        request: GenerationRequest,
        stream: bool = True,
        include_thoughts: bool = False,
    ) -> None:
        super().__init__()
        self._client = client
        self._request = request
        self._stream = stream
        self._include_thoughts = include_thoughts

    @property
    def conversation_id(self) -> str:
        return self._request.conversation_id

    def cancel(self) -> None:
        self._request.cancel_event.set()

    @Slot()
    def run(self) -> None:
        conversation_id = self._request.conversation_id
        try:
            # 添付ファイルの読み込みも含め GUI スレッドを塞がないよう別スレッドで処理
            contents, problems = build_contents(
                self._request.messages, self._include_thoughts, self._request.prefill
            )
            for path, reason in problems:
                self.attachment_skipped.emit(path.name, reason)
            for chunk in self._client.generate(
                self._request.settings,
                contents,
                stream=self._stream,
                cancel_event=self._request.cancel_event,
            ):
                self.chunk_received.emit(conversation_id, chunk.text, chunk.is_thought)
        except Exception as exc:
            self.failed.emit(conversation_id, format_error_message(exc))
            return
        self.finished.emit(conversation_id)


class ModelListWorker(QObject):
    finished = Signal(list)
    failed = Signal(str)

    def __init__(self, client: GeminiClient) -> None:
        super().__init__()
        self._client = client

    @Slot()
    def run(self) -> None:
        try:
            models = self._client.list_models()
        except Exception as exc:
            self.failed.emit(format_error_message(exc))
            return
        self.finished.emit(models)
