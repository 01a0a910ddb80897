import json

import pytest

from gemini_gui.history_store import ConversationStore, HistoryStoreError
from gemini_gui.models import ChatMessage, ChatSettings


@pytest.fixture
def store(tmp_path):
    return ConversationStore(tmp_path / "history" / "conversations.json", max_conversations=10)


def test_save_and_load_round_trip(store):
    first = store.create(ChatSettings(model="gemini-2.5-pro"))
    first.append_message(ChatMessage(role="user", content="hello"))
    second = store.create()
    store.select(first.conversation_id)
    store.save()

    reloaded = ConversationStore(store.path)
    conversations = reloaded.load()
    assert {c.conversation_id for c in conversations} == {
        first.conversation_id,
        second.conversation_id,
    }
    assert reloaded.selected.conversation_id == first.conversation_id
    assert reloaded.get(first.conversation_id).settings.model == "gemini-2.5-pro"
    assert reloaded.get(first.conversation_id).messages[0].content == "hello"


def test_document_layout(store):
    store.create()
    store.save()
    payload = json.loads(store.path.read_text(encoding="utf-8"))
    assert payload["version"] == 1
    assert payload["selected_id"] == store.selected.conversation_id
    assert len(payload["conversations"]) == 1


def test_load_missing_file_is_empty(store):
    assert store.load() == []
    assert store.selected is None


def test_corrupt_history_is_quarantined(store):
    store.path.parent.mkdir(parents=True)
    store.path.write_text("{broken", encoding="utf-8")
    assert store.load() == []
    assert not store.path.exists()
    assert len(list(store.path.parent.glob("conversations.json.corrupt-*"))) == 1


def test_ensure_one_creates_with_default_settings(tmp_path):
    store = ConversationStore(
        tmp_path / "h.json", default_settings=ChatSettings(model="gemini-2.0-flash")
    )
    conversation = store.ensure_one()
    assert conversation.settings.model == "gemini-2.0-flash"
    assert store.ensure_one() is conversation


def test_select_unknown_raises(store):
    with pytest.raises(KeyError):
        store.select("missing")


def test_delete_last_conversation_creates_new_one(store):
    only = store.create()
    replacement = store.delete(only.conversation_id)
    assert replacement is not only
    assert store.list() == [replacement]
    assert store.selected is replacement


def test_delete_selects_neighbour(store):
    a = store.create()
    b = store.create()
    c = store.create()
    store.select(b.conversation_id)
    next_conversation = store.delete(b.conversation_id)
    assert next_conversation in (a, c)
    assert store.selected is next_conversation
    assert b not in store.list()


def test_delete_unknown_raises(store):
    store.create()
    with pytest.raises(KeyError):
        store.delete("missing")


def test_trim_keeps_selected_conversation(tmp_path):
    store = ConversationStore(tmp_path / "h.json", max_conversations=2)
    oldest = store.create()
    middle = store.create()
    store.create()
    store.select(oldest.conversation_id)
    store.save()
    conversations = store.list()
    assert len(conversations) == 2
    assert oldest in conversations
    assert middle not in conversations


def test_touch_moves_conversation_to_front(store):
    old = store.create()
    old.updated_at = "2000-01-01T00:00:00+00:00"
    newer = store.create()
    newer.updated_at = "2001-01-01T00:00:00+00:00"
    assert store.list()[0] is newer
    store.touch(old)
    assert store.list()[0] is old


def test_save_failure_raises(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    store = ConversationStore(blocker / "conversations.json")
    store.create()
    with pytest.raises(HistoryStoreError):
        store.save()


def test_infinite_chat_settings_load_with_defaults(store):
    store.path.parent.mkdir(parents=True)
    store.path.write_text(
        '{"conversations": [{"conversation_id": "abc", '
        '"settings": {"top_k": 1e999, "temperature": -Infinity}, "messages": []}]}',
        encoding="utf-8",
    )
    conversation = store.load()[0]
    assert conversation.settings.top_k == 40
    assert conversation.settings.temperature == 1.0
    assert store.path.exists()
