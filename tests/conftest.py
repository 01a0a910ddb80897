import os

# Qt ウィジェットをディスプレイなしで生成する
os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

import pytest
from PIL import Image
from PySide6.QtWidgets import QApplication

from gemini_gui.models import ChatMessage, ChatSettings, Conversation


@pytest.fixture(scope="session")
def qapp():
    app = QApplication.instance() or QApplication([])
    yield app


@pytest.fixture
def no_env_api_key(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)


@pytest.fixture
def app_root(tmp_path, monkeypatch):
    """Isolated data directory so nothing is written to the real home."""
    root = tmp_path / "home"
    monkeypatch.setenv("GEMINI_GUI_HOME", str(root))
    return root


@pytest.fixture
def make_image(tmp_path):
    def _make(name: str, fmt: str, size=(4, 3)):
        path = tmp_path / name
        Image.new("RGB", size, (200, 30, 30)).save(path, format=fmt)
        return path

    return _make


@pytest.fixture
def conversation():
    conv = Conversation(settings=ChatSettings(model="gemini-2.5-flash"))
    conv.append_message(ChatMessage(role="user", content="hello there"))
    conv.append_message(ChatMessage(role="assistant", content="Hi! How can I help?"))
    return conv
