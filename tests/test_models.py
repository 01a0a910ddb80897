from pathlib import Path

import pytest

from gemini_gui.attachments import AttachmentError
from gemini_gui.models import (
    DEFAULT_TITLE,
    Attachment,
    ChatMessage,
    ChatSettings,
    Conversation,
    make_summary,
)


@pytest.mark.parametrize(
    "prompt, expected",
    [
        ("hello world", "Hello world"),
        ("  what is rust?\nsecond line", "What is rust?"),
        ("a" * 30, "A" + "a" * 23 + "…"),
        ("b" * 24, "B" + "b" * 23),
        ("   ", ""),
        ("ünïcode", "Ünïcode"),
    ],
)
def test_make_summary(prompt, expected):
    assert make_summary(prompt) == expected


def test_first_user_message_sets_summary():
    conversation = Conversation()
    assert conversation.display_title == DEFAULT_TITLE
    conversation.append_message(ChatMessage(role="assistant", content="greetings"))
    assert conversation.summary == ""
    conversation.append_message(ChatMessage(role="user", content="explain closures please"))
    conversation.append_message(ChatMessage(role="user", content="another question"))
    assert conversation.display_title == "Explain closures please"


def test_last_message_preview(conversation):
    assert conversation.last_message_preview() == "Hi! How can I help?"
    conversation.append_message(ChatMessage(role="user", content="thanks"))
    conversation.append_message(ChatMessage(role="assistant", content=""))
    assert conversation.last_message_preview() == "You: thanks"
    assert Conversation().last_message_preview() is None


def test_chat_settings_from_dict_is_lenient():
    defaults = ChatSettings(model="gemini-2.5-pro", top_k=10)
    settings = ChatSettings.from_dict(
        {"model": "", "temperature": "hot", "top_p": 0.5, "thinking_enabled": "yes"}, defaults
    )
    assert settings.model == "gemini-2.5-pro"
    assert settings.temperature == defaults.temperature
    assert settings.top_p == 0.5
    assert settings.top_k == 10
    assert settings.thinking_enabled is True
    assert ChatSettings.from_dict(None) == ChatSettings()


def test_message_from_dict_never_restores_generating_flag():
    message = ChatMessage(role="assistant", content="partial", is_generating=True, is_thought=True)
    payload = message.to_dict()
    assert "is_generating" not in payload
    restored = ChatMessage.from_dict(payload)
    assert restored.is_generating is False
    assert restored.is_thought is True


def test_message_from_dict_drops_malformed_attachments():
    restored = ChatMessage.from_dict(
        {"role": "user", "content": "x", "attachments": [{"path": 3}, "junk", {"path": "/tmp/a.png"}]}
    )
    assert [a.path for a in restored.attachments] == [Path("/tmp/a.png")]


def test_attachment_from_path_classifies(tmp_path):
    assert Attachment.from_path(tmp_path / "clip.MP4").kind == "video"
    assert Attachment.from_path(tmp_path / "notes.md").kind == "document"
    with pytest.raises(AttachmentError):
        Attachment.from_path(tmp_path / "archive.zip")


def test_conversation_round_trip_keeps_settings(conversation):
    conversation.settings = ChatSettings(model="gemini-2.5-pro", system_prompt="Be terse")
    restored = Conversation.from_dict(conversation.to_dict())
    assert restored.conversation_id == conversation.conversation_id
    assert restored.settings == conversation.settings
    assert [m.content for m in restored.messages] == [m.content for m in conversation.messages]


def test_chat_settings_from_dict_rejects_non_finite_numbers():
    settings = ChatSettings.from_dict(
        {"temperature": float("nan"), "top_p": float("inf"), "top_k": 10**400}
    )
    assert settings == ChatSettings()
    assert ChatSettings(top_k=float("inf"), temperature=float("nan")).normalized().top_k == 40
