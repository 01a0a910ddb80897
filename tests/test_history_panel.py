from gemini_gui.models import ChatMessage, Conversation
from gemini_gui.ui.history_panel import HistoryPanel


def _conversations():
    empty = Conversation(updated_at="2024-05-01T10:00:00+00:00")
    busy = Conversation(updated_at="2024-05-01T09:00:00+00:00")
    busy.messages.append(ChatMessage(role="user", content="tell me about   rust\nplease " * 10))
    busy.summary = "Tell me about rust"
    return empty, busy


def test_entries_show_title_and_preview(qapp):
    empty, busy = _conversations()
    panel = HistoryPanel()
    panel.set_conversations([empty, busy])
    assert panel.count() == 2
    first_title, first_preview = panel.entry_text(0).split("\n")
    assert first_title.startswith("New Chat  (2024-05-01 ")
    assert first_preview == "No recent messages"
    second_preview = panel.entry_text(1).split("\n")[1]
    assert second_preview.startswith("You: tell me about rust please")
    assert len(second_preview) == 60
    assert second_preview.endswith("…")
    assert panel.current_conversation_id == empty.conversation_id


def test_selection_is_kept_across_rebuilds(qapp):
    empty, busy = _conversations()
    panel = HistoryPanel()
    panel.set_conversations([empty, busy], busy.conversation_id)
    panel.set_conversations([busy, empty])
    assert panel.current_conversation_id == busy.conversation_id


def test_clicking_a_row_selects_the_chat(qapp):
    empty, busy = _conversations()
    panel = HistoryPanel()
    panel.set_conversations([empty, busy])
    selected = []
    panel.conversation_selected.connect(selected.append)
    panel._list.setCurrentRow(1)
    assert selected == [busy.conversation_id]


def test_empty_chat_is_deleted_without_confirmation(qapp, monkeypatch):
    empty, busy = _conversations()
    panel = HistoryPanel()
    panel.set_conversations([empty, busy], empty.conversation_id)
    monkeypatch.setattr(panel, "_confirm_delete", lambda conversation: _unexpected_confirmation())
    deleted = []
    panel.delete_requested.connect(deleted.append)
    panel._delete_button.click()
    assert deleted == [empty.conversation_id]


def test_non_empty_chat_asks_first(qapp, monkeypatch):
    empty, busy = _conversations()
    panel = HistoryPanel()
    panel.set_conversations([empty, busy], busy.conversation_id)
    answers = iter([False, True])
    asked = []

    def confirm(conversation):
        asked.append(conversation)
        return next(answers)

    monkeypatch.setattr(panel, "_confirm_delete", confirm)
    deleted = []
    panel.delete_requested.connect(deleted.append)
    panel._delete_button.click()
    assert deleted == []
    panel._delete_button.click()
    assert deleted == [busy.conversation_id]
    assert asked == [busy, busy]


def test_edit_button_requests_chat_settings(qapp):
    empty, _ = _conversations()
    panel = HistoryPanel()
    panel.set_conversations([empty])
    requested = []
    panel.edit_requested.connect(requested.append)
    panel._edit_button.click()
    assert requested == [empty.conversation_id]


def _unexpected_confirmation():
    raise AssertionError("confirmation should not be requested")
