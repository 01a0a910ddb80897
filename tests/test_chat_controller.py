import pytest

from gemini_gui.chat_controller import ChatController
from gemini_gui.gemini_client import ResponseChunk
from gemini_gui.models import Attachment, ChatMessage, ChatSettings, Conversation


@pytest.fixture
def controller():
    return ChatController(Conversation(settings=ChatSettings(model="gemini-2.5-flash")))


def _roles(controller):
    return [
        ("thought" if m.is_thought else "error" if m.is_error else m.role, m.content)
        for m in controller.messages
    ]


def test_send_appends_prompt_and_placeholder(controller, tmp_path):
    attachment = Attachment(tmp_path / "a.png", "image")
    request = controller.send("hello  \n", [attachment])
    assert request is not None
    assert controller.is_generating
    user, placeholder = controller.messages
    assert user.content == "hello"
    assert user.attachments == [attachment]
    assert placeholder.is_generating and placeholder.content == ""
    assert controller.conversation.summary == "Hello"
    assert request.settings == controller.conversation.settings
    assert request.settings is not controller.conversation.settings
    assert len(request.messages) == 2


def test_send_rejects_empty_and_concurrent_requests(controller):
    assert controller.send("   ") is None
    assert controller.send("one") is not None
    assert controller.send("two") is None
    assert len(controller.messages) == 2


def test_streamed_answer_is_accumulated(controller):
    controller.send("hi")
    controller.apply_chunk(ResponseChunk("Hel"))
    controller.apply_chunk(ResponseChunk("lo"))
    controller.finish()
    assert _roles(controller) == [("user", "hi"), ("assistant", "Hello")]
    assert not controller.is_generating
    assert not controller.messages[-1].is_generating


def test_thoughts_precede_the_answer(controller):
    controller.send("why?")
    controller.apply_chunk(ResponseChunk("let me ", is_thought=True))
    controller.apply_chunk(ResponseChunk("think", is_thought=True))
    thought = controller.messages[-1]
    assert thought.is_thought and thought.is_generating
    controller.apply_chunk(ResponseChunk("Because."))
    assert not thought.is_generating
    controller.finish()
    assert _roles(controller) == [
        ("user", "why?"),
        ("thought", "let me think"),
        ("assistant", "Because."),
    ]


def test_empty_answer_is_removed_on_finish(controller):
    controller.send("hi")
    controller.finish()
    assert _roles(controller) == [("user", "hi")]


def test_stop_sets_cancel_event(controller):
    request = controller.send("hi")
    controller.stop()
    assert request.cancel_event.is_set()


def test_fail_turns_placeholder_into_error(controller):
    controller.send("hi")
    controller.fail("400 INVALID_ARGUMENT: bad key")
    assert _roles(controller) == [("user", "hi"), ("error", "400 INVALID_ARGUMENT: bad key")]
    assert not controller.is_generating


def test_fail_after_thoughts_keeps_them(controller):
    controller.send("hi")
    controller.apply_chunk(ResponseChunk("hmm", is_thought=True))
    controller.fail("quota exceeded")
    assert _roles(controller) == [("user", "hi"), ("thought", "hmm"), ("error", "quota exceeded")]


def test_retry_resends_last_prompt(controller):
    controller.send("hi")
    controller.fail("oops")
    request = controller.retry()
    assert request is not None
    assert [m.content for m in controller.messages] == ["hi", ""]
    assert not any(m.is_error for m in controller.messages)


def test_retry_requires_trailing_error(controller):
    controller.send("hi")
    controller.apply_chunk(ResponseChunk("fine"))
    controller.finish()
    assert controller.retry() is None


def test_next_send_clears_old_errors(controller):
    controller.send("hi")
    controller.fail("oops")
    controller.send("again")
    assert [m.content for m in controller.messages] == ["hi", "again", ""]


def test_regenerate_with_prefill_replaces_answer_and_thoughts(controller):
    controller.send("poem")
    controller.apply_chunk(ResponseChunk("plan", is_thought=True))
    controller.apply_chunk(ResponseChunk("old poem"))
    controller.finish()
    controller.conversation.append_message(ChatMessage(role="user", content="later"))

    request = controller.regenerate(2, prefill="Roses")
    assert request.prefill == "Roses"
    assert _roles(controller) == [("user", "poem"), ("assistant", "Roses")]

    controller.apply_chunk(ResponseChunk("new plan", is_thought=True))
    controller.apply_chunk(ResponseChunk(" are red"))
    controller.finish()
    assert _roles(controller) == [
        ("user", "poem"),
        ("thought", "new plan"),
        ("assistant", "Roses are red"),
    ]


def test_regenerate_only_targets_answers(controller):
    controller.send("q")
    controller.apply_chunk(ResponseChunk("t", is_thought=True))
    controller.apply_chunk(ResponseChunk("a"))
    controller.finish()
    assert controller.regenerate(0) is None
    assert controller.regenerate(1) is None
    assert controller.regenerate(9) is None


def test_edit_and_remove(controller):
    controller.send("q")
    assert controller.edit(0, "changed") is False
    controller.apply_chunk(ResponseChunk("a"))
    controller.finish()
    assert controller.edit(0, "changed") is True
    assert controller.remove(1) is True
    assert _roles(controller) == [("user", "changed")]
    assert controller.remove(5) is False
