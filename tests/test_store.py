from turnpilot.schemas import Message, ThoughtStep
from turnpilot.store import ConversationStore, conversation_payload, message_payload


def recording_store():
    events = []
    store = ConversationStore()
    store.add_listener(lambda cid, kind, payload: events.append((cid, kind, payload)))
    return store, events


def test_update_messages_only_notifies_changed_messages():
    store, events = recording_store()
    convo = store.create()
    first = store.append_message(convo.id, Message(role="user", content="a"))
    second = store.append_message(convo.id, Message(role="model", content="b", is_planning=True))
    events.clear()

    changed = store.update_messages(convo.id, lambda m: True, lambda m: m.stripped())

    assert changed == 1
    assert [kind for _, kind, _ in events] == ["message_updated"]
    assert events[0][2]["message"]["id"] == second.id
    assert store.find_message(convo.id, first.id) == first


def test_update_message_by_id_and_truncate():
    store, events = recording_store()
    convo = store.create()
    user = store.append_message(convo.id, Message(role="user", content="q"))
    reply = store.append_message(convo.id, Message(role="model", content=""))

    updated = store.update_message(convo.id, reply.id, content="answer")
    assert updated.content == "answer"
    assert store.update_message(convo.id, "missing", content="x") is None

    removed = store.truncate(convo.id, 1)
    assert [m.id for m in removed] == [reply.id]
    assert store.messages(convo.id) == [user]
    assert events[-1][1] == "messages_truncated"


def test_stripped_resets_transient_fields_only():
    message = Message(
        role="model",
        content="text",
        is_planning=True,
        tool_in_use="url",
        thoughts=[ThoughtStep(step="x")],
        thinking_duration=1.5,
    )
    assert message.has_transient_state()
    assert message.has_exclusive_flag()
    clean = message.stripped()
    assert not clean.has_transient_state()
    assert clean.thoughts is None
    assert clean.thinking_duration == 1.5
    assert clean.content == "text"


def test_payloads():
    store = ConversationStore()
    convo = store.create("Chat")
    store.append_message(convo.id, Message(role="user", content="hi"))
    summary = conversation_payload(store.get(convo.id))
    assert summary["message_count"] == 1
    assert "messages" not in summary
    full = conversation_payload(store.get(convo.id), include_messages=True)
    assert full["messages"][0]["content"] == "hi"
    assert "memory_updated" not in message_payload(store.messages(convo.id)[0])
