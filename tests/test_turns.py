import asyncio

import pytest

from turnpilot.errors import StreamFailure
from turnpilot.orchestrator import STOP_NOTICE, stop_notice
from turnpilot.schemas import (
    Attachments,
    CodeSnippet,
    ConversationTurn,
    ImageAttachment,
    Message,
    TurnState,
    Usage,
)
from turnpilot.writers import wait_for_background
from tests.fakes import FakeLMStudioClient, FakePubChemClient, FakeTavilyClient, FakeUrlReader, wait_until


def turn(conversation_id, prompt="Hi", **kwargs):
    return ConversationTurn(conversation_id=conversation_id, prompt=prompt, **kwargs)


@pytest.mark.asyncio
async def test_send_settles_model_message_with_token_counts(orchestrator_factory):
    lm = FakeLMStudioClient(chunks=["Hello", " there"], usage=Usage(prompt_token_count=300, candidates_token_count=7))
    env = orchestrator_factory(fake_lm=lm)
    convo = env.orchestrator.create_conversation()

    message_id = await env.orchestrator.send(turn(convo.id, "x" * 400))
    await wait_for_background()

    messages = env.store.messages(convo.id)
    assert [m.role for m in messages] == ["user", "model"]
    model = messages[1]
    assert model.id == message_id
    assert model.content == "Hello there"
    assert model.model_used == "test-model"
    assert model.input_tokens == 100
    assert model.system_tokens == 200
    assert model.output_tokens == 7
    assert model.generation_time is not None
    assert not any(m.has_transient_state() for m in messages)
    assert env.orchestrator.status(convo.id).state == TurnState.IDLE
    assert not env.orchestrator.controller(convo.id).timers_running


@pytest.mark.asyncio
async def test_first_turn_title_is_committed_and_stripped(orchestrator_factory):
    lm = FakeLMStudioClient(chunks=["TITLE: Trip Pl", "anning\nHere is", "..."])
    env = orchestrator_factory(fake_lm=lm)
    convo = env.orchestrator.create_conversation()

    await env.orchestrator.send(turn(convo.id, "Plan a trip to Rome"))

    conversation = env.store.require(convo.id)
    assert conversation.title == "Trip Planning"
    assert conversation.is_generating_title is False
    assert conversation.messages[-1].content == "Here is..."
    system = lm.stream_calls[0]["messages"][0]["content"]
    assert "Conversation Title Directive" in system


@pytest.mark.asyncio
async def test_later_turns_do_not_extract_titles(orchestrator_factory):
    lm = FakeLMStudioClient(chunks=["TITLE: Not a title\nBody"])
    env = orchestrator_factory(fake_lm=lm)
    convo = env.orchestrator.create_conversation("Existing")
    env.store.append_message(convo.id, Message(role="user", content="Earlier"))
    env.store.append_message(convo.id, Message(role="model", content="Answer"))

    await env.orchestrator.send(turn(convo.id, "Next"))

    assert env.store.require(convo.id).title == "Existing"
    assert env.store.messages(convo.id)[-1].content == "TITLE: Not a title\nBody"
    history = lm.stream_calls[0]["messages"]
    assert [m["role"] for m in history] == ["system", "user", "assistant", "user"]


@pytest.mark.asyncio
async def test_cancel_after_partial_text_appends_stop_notice(orchestrator_factory):
    lm = FakeLMStudioClient(chunks=["Hello", " world"])
    lm.pause_after = 1
    env = orchestrator_factory(fake_lm=lm)
    convo = env.orchestrator.create_conversation()

    task = asyncio.create_task(env.orchestrator.send(turn(convo.id, "Say hello")))
    await asyncio.wait_for(lm.paused.wait(), timeout=1)
    assert env.orchestrator.stop(convo.id) is True

    messages = env.store.messages(convo.id)
    assert messages[-1].content == "Hello\n\n*Response generation stopped.*"
    assert not any(m.has_transient_state() for m in messages)
    assert env.orchestrator.status(convo.id).is_loading is False

    lm.release.set()
    await asyncio.wait_for(task, timeout=1)
    await wait_for_background()

    assert env.store.messages(convo.id)[-1].content == "Hello\n\n*Response generation stopped.*"
    assert lm.calls_for("SYSTEM (WRITER: Memory)") == []
    assert env.orchestrator.status(convo.id).state == TurnState.IDLE
    assert not env.orchestrator.controller(convo.id).timers_running


def test_stop_notice_trims_partial_text():
    assert stop_notice("Hello\n") == "Hello\n\n*Response generation stopped.*"
    assert stop_notice("  Hello  ") == "Hello\n\n*Response generation stopped.*"
    assert stop_notice(" \n") == STOP_NOTICE


@pytest.mark.asyncio
async def test_cancel_during_planning_leaves_only_stop_notice(orchestrator_factory):
    lm = FakeLMStudioClient()
    lm.plan_gate = asyncio.Event()
    env = orchestrator_factory(fake_lm=lm)
    convo = env.orchestrator.create_conversation()

    task = asyncio.create_task(env.orchestrator.send(turn(convo.id)))
    await wait_until(lambda: lm.calls_for("SYSTEM (PLANNER)"))
    assert env.orchestrator.stop(convo.id) is True
    lm.plan_gate.set()
    await asyncio.wait_for(task, timeout=1)

    messages = env.store.messages(convo.id)
    assert [m.role for m in messages] == ["user", "model"]
    assert messages[-1].content == STOP_NOTICE
    assert lm.stream_calls == []
    assert env.store.require(convo.id).is_generating_title is False


@pytest.mark.asyncio
async def test_stop_without_running_turn_returns_false(orchestrator_factory):
    env = orchestrator_factory()
    convo = env.orchestrator.create_conversation()
    assert env.orchestrator.stop(convo.id) is False


@pytest.mark.asyncio
async def test_entry_guards_reject_without_side_effects(orchestrator_factory):
    env = orchestrator_factory()
    convo = env.orchestrator.create_conversation()

    assert await env.orchestrator.send(turn(convo.id, "   ")) is None
    assert env.store.messages(convo.id) == []

    env_no_key = orchestrator_factory(llm_api_key=None)
    other = env_no_key.orchestrator.create_conversation()
    assert await env_no_key.orchestrator.send(turn(other.id, "Hello")) is None
    assert env_no_key.store.messages(other.id) == []
    assert env_no_key.lm.calls == []


@pytest.mark.asyncio
async def test_second_send_is_rejected_while_turn_runs(orchestrator_factory):
    lm = FakeLMStudioClient(chunks=["One", " two"])
    lm.pause_after = 1
    env = orchestrator_factory(fake_lm=lm)
    convo = env.orchestrator.create_conversation()

    task = asyncio.create_task(env.orchestrator.send(turn(convo.id, "First")))
    await asyncio.wait_for(lm.paused.wait(), timeout=1)
    assert env.orchestrator.is_running(convo.id)
    assert await env.orchestrator.send(turn(convo.id, "Second")) is None
    lm.release.set()
    await task

    assert [m.content for m in env.store.messages(convo.id)] == ["First", "One two"]


@pytest.mark.asyncio
async def test_attachment_only_turn_is_accepted(orchestrator_factory):
    env = orchestrator_factory()
    convo = env.orchestrator.create_conversation()
    image = ImageAttachment(base64="aGVsbG8=", mime_type="image/png")

    message_id = await env.orchestrator.send(turn(convo.id, "", attachments=Attachments(images=[image])))

    assert message_id is not None
    user = env.store.messages(convo.id)[0]
    assert user.images and user.images[0].base64 == "aGVsbG8="
    assert user.analysis_completed is True


@pytest.mark.asyncio
async def test_planner_failure_falls_back_to_web_search(orchestrator_factory):
    lm = FakeLMStudioClient(plan_response=RuntimeError("planner down"))
    env = orchestrator_factory(fake_lm=lm)
    convo = env.orchestrator.create_conversation()

    await env.orchestrator.send(turn(convo.id, "What happened today?"))

    assert env.store.messages(convo.id)[-1].content == "Test answer."
    statuses = [p for _, kind, p in env.events if kind == "status"]
    assert any(s["is_searching_web"] for s in statuses)
    assert statuses[-1]["is_searching_web"] is False


@pytest.mark.asyncio
async def test_url_reader_without_url_fails_without_network(orchestrator_factory):
    reader = FakeUrlReader()
    env = orchestrator_factory(url_reader=reader)
    convo = env.orchestrator.create_conversation()

    await env.orchestrator.send(turn(convo.id, "Summarize this", tool="urlReader"))

    model = env.store.messages(convo.id)[-1]
    assert model.content == "Sorry, I couldn't use that tool. Error: No valid URL was provided for the URL Reader tool."
    assert model.is_error is True
    assert model.generation_time is None
    assert reader.calls == []
    assert env.lm.stream_calls == []
    assert env.orchestrator.status(convo.id).error == model.content
    assert any(kind == "turn_error" for _, kind, _ in env.events)
    assert not env.orchestrator.controller(convo.id).timers_running


@pytest.mark.asyncio
async def test_url_reader_builds_effective_prompt(orchestrator_factory):
    reader = FakeUrlReader(content="Rome is in Italy.")
    env = orchestrator_factory(url_reader=reader)
    convo = env.orchestrator.create_conversation()

    await env.orchestrator.send(
        turn(convo.id, "Where is it?", tool="urlReader", attachments=Attachments(url="https://example.com/rome"))
    )

    assert reader.calls == ["https://example.com/rome"]
    sent = env.lm.stream_calls[0]["messages"][-1]["content"]
    assert sent == (
        "[URL: https://example.com/rome]\n\n[EXTRACTED CONTENT]:\nRome is in Italy.\n\n[QUESTION]:\nWhere is it?"
    )
    user = env.store.messages(convo.id)[0]
    assert user.url == "https://example.com/rome"
    assert user.content == "Where is it?"


@pytest.mark.asyncio
async def test_molecule_request_attaches_structure(orchestrator_factory):
    lm = FakeLMStudioClient(plan_response={"isMoleculeRequest": True, "moleculeName": "caffeine"})
    pubchem = FakePubChemClient()
    env = orchestrator_factory(fake_lm=lm, pubchem=pubchem)
    convo = env.orchestrator.create_conversation()

    await env.orchestrator.send(turn(convo.id, "Show me caffeine in 3D"))

    model = env.store.messages(convo.id)[-1]
    assert pubchem.calls == ["caffeine"]
    assert model.molecule is not None and model.molecule.name == "caffeine"
    assert model.is_molecule_request is False
    assert "3D model and key properties for caffeine" in lm.stream_calls[0]["messages"][-1]["content"]


@pytest.mark.asyncio
async def test_molecule_lookup_failure_message(orchestrator_factory):
    env = orchestrator_factory(pubchem=FakePubChemClient(missing=True))
    convo = env.orchestrator.create_conversation()

    await env.orchestrator.send(turn(convo.id, "unobtainium", tool="chemistry"))

    assert env.store.messages(convo.id)[-1].content == (
        'Sorry, I couldn\'t find a 3D model for "unobtainium". Please check the spelling or try a different compound.'
    )


@pytest.mark.asyncio
async def test_stream_error_becomes_error_message(orchestrator_factory):
    lm = FakeLMStudioClient(chunks=["Partial"], stream_error=StreamFailure("connection dropped"))
    env = orchestrator_factory(fake_lm=lm)
    convo = env.orchestrator.create_conversation()

    await env.orchestrator.send(turn(convo.id))
    await wait_for_background()

    messages = env.store.messages(convo.id)
    assert len(messages) == 2
    model = messages[-1]
    assert model.content == "Sorry, I encountered an error: The response stream was interrupted: connection dropped"
    assert model.is_error is True
    assert model.generation_time is None
    assert lm.calls_for("SYSTEM (WRITER: Memory)") == []
    assert env.orchestrator.status(convo.id).state == TurnState.IDLE


@pytest.mark.asyncio
async def test_retry_truncates_and_resends_without_duplicate_user(orchestrator_factory):
    env = orchestrator_factory()
    convo = env.orchestrator.create_conversation()
    first_id = await env.orchestrator.send(turn(convo.id, "Tell me a joke"))
    user_id = env.store.messages(convo.id)[0].id

    retry_id = await env.orchestrator.retry(convo.id)

    messages = env.store.messages(convo.id)
    assert [m.role for m in messages] == ["user", "model"]
    assert messages[0].id == user_id
    assert retry_id == messages[1].id != first_id
    assert len(env.lm.stream_calls) == 2
    resent = env.lm.stream_calls[1]["messages"]
    assert [m["role"] for m in resent] == ["system", "user"]
    assert resent[-1]["content"] == "Tell me a joke"


@pytest.mark.asyncio
async def test_retry_without_answer_is_rejected(orchestrator_factory):
    env = orchestrator_factory()
    convo = env.orchestrator.create_conversation()
    env.store.append_message(convo.id, Message(role="user", content="Hi"))
    assert await env.orchestrator.retry(convo.id) is None
    assert len(env.store.messages(convo.id)) == 1


@pytest.mark.asyncio
async def test_at_most_one_message_carries_an_exclusive_flag(orchestrator_factory):
    lm = FakeLMStudioClient(chunks=["A", "B", "C"])
    env = orchestrator_factory(fake_lm=lm)
    convo = env.orchestrator.create_conversation()
    seen = []

    def check(cid, _kind, _payload):
        if env.store.get(cid) is not None:
            seen.append(sum(1 for m in env.store.messages(cid) if m.has_exclusive_flag()))

    env.store.add_listener(check)
    image = ImageAttachment(base64="aGVsbG8=")
    await env.orchestrator.send(turn(convo.id, "What is this?", attachments=Attachments(images=[image])))

    assert seen
    assert max(seen) == 1
    assert seen[-1] == 0


@pytest.mark.asyncio
async def test_thinking_ticker_records_duration(orchestrator_factory):
    lm = FakeLMStudioClient(
        plan_response={
            "needsThinking": True,
            "thoughts": [{"phase": "Analyze", "step": "Break down the problem", "concise_step": "Analyzing..."}],
        },
        chunks=["Done"],
        delay_seconds=0.2,
    )
    env = orchestrator_factory(fake_lm=lm, thinking_tick_ms=10)
    convo = env.orchestrator.create_conversation()

    await env.orchestrator.send(turn(convo.id, "Solve this"))
    await wait_for_background()

    model = env.store.messages(convo.id)[-1]
    assert model.thinking_duration is not None and model.thinking_duration > 0
    assert model.thoughts is None
    assert "[Reasoning Plan]" in lm.stream_calls[0]["messages"][0]["content"]
    statuses = [p for _, kind, p in env.events if kind == "status"]
    assert any(s["is_thinking"] for s in statuses)
    assert not env.orchestrator.controller(convo.id).timers_running


@pytest.mark.asyncio
async def test_long_tool_use_watchdog_flags_message(orchestrator_factory):
    env = orchestrator_factory(url_reader=FakeUrlReader(delay_seconds=0.1), long_tool_use_s=0.01)
    convo = env.orchestrator.create_conversation()

    await env.orchestrator.send(
        turn(convo.id, "Read it", tool="urlReader", attachments=Attachments(url="https://example.com"))
    )

    statuses = [p for _, kind, p in env.events if kind == "status"]
    assert any(s["is_long_tool_use"] for s in statuses)
    assert statuses[-1]["is_long_tool_use"] is False
    assert env.store.messages(convo.id)[-1].is_long_tool_use is False


@pytest.mark.asyncio
async def test_web_search_attaches_sources_and_counts_whole_prompt(orchestrator_factory):
    lm = FakeLMStudioClient(
        plan_response={"needsWebSearch": True, "searchPlan": [{"phase": "Search", "step": "Look up news"}]},
        usage=Usage(prompt_token_count=500, candidates_token_count=20),
    )
    tavily = FakeTavilyClient(
        api_key="tv-key",
        search_response={"results": [{"url": "https://news.test/a", "title": "A", "content": "Fresh news"}]},
    )
    env = orchestrator_factory(fake_lm=lm, fake_tavily=tavily)
    convo = env.orchestrator.create_conversation()

    await env.orchestrator.send(turn(convo.id, "Latest news?"))

    model = env.store.messages(convo.id)[-1]
    assert [s.uri for s in model.sources] == ["https://news.test/a"]
    assert model.input_tokens == 500
    assert model.system_tokens is None
    assert model.search_plan is None
    assert tavily.search_calls[0]["query"] == "Latest news?"
    assert "Fresh news" in lm.stream_calls[0]["messages"][0]["content"]


@pytest.mark.asyncio
async def test_code_context_is_retrieved_into_system_instruction(orchestrator_factory):
    lm = FakeLMStudioClient(plan_response={"needsCodeContext": True}, relevant_ids=["snip-1"])
    env = orchestrator_factory(fake_lm=lm)
    env.services.code_store.snippets.append(
        CodeSnippet(id="snip-1", description="Adds two numbers", language="python", code="def add(a, b): ...")
    )
    convo = env.orchestrator.create_conversation()

    await env.orchestrator.send(turn(convo.id, "Fix the add function from before"))

    system = lm.stream_calls[0]["messages"][0]["content"]
    assert "Retrieved Code Snippets" in system
    assert "def add(a, b): ..." in system


@pytest.mark.asyncio
async def test_summaries_written_on_twentieth_message(orchestrator_factory):
    def summaries(_user_text):
        return {
            "summaries": [
                {"convo_index": 0, "user_input": "q0", "summary": "First answer."},
                {"convo_index": 9, "user_input": "Latest", "summary": "Last answer."},
            ]
        }

    lm = FakeLMStudioClient(summary_response=summaries)
    env = orchestrator_factory(fake_lm=lm)
    convo = env.orchestrator.create_conversation()
    for i in range(9):
        env.store.append_message(convo.id, Message(role="user", content=f"q{i}"))
        env.store.append_message(convo.id, Message(role="model", content=f"a{i}"))

    message_id = await env.orchestrator.send(turn(convo.id, "Latest"))
    await wait_for_background()

    conversation = env.store.require(convo.id)
    assert len(conversation.messages) == 20
    assert [s.serial_number for s in conversation.summaries] == [1, 10]
    assert conversation.summaries[1].model_message_id == message_id
    assert conversation.summaries[0].user_message_id == conversation.messages[0].id


@pytest.mark.asyncio
async def test_summaries_skipped_off_interval(orchestrator_factory):
    env = orchestrator_factory()
    convo = env.orchestrator.create_conversation()
    for i in range(8):
        env.store.append_message(convo.id, Message(role="user", content=f"q{i}"))
        env.store.append_message(convo.id, Message(role="model", content=f"a{i}"))

    await env.orchestrator.send(turn(convo.id, "Another"))
    await wait_for_background()

    assert len(env.store.messages(convo.id)) == 18
    assert env.lm.calls_for("SYSTEM (WRITER: Summarizer)") == []
    assert env.store.require(convo.id).summaries == []


@pytest.mark.asyncio
async def test_writers_update_memory_and_code_after_settlement(orchestrator_factory):
    lm = FakeLMStudioClient(
        chunks=["Here you go:\n```python\nprint('hi')\n```\n"],
        memory_response={"new_memories": ["The user is learning Python."]},
    )
    env = orchestrator_factory(fake_lm=lm)
    convo = env.orchestrator.create_conversation()

    message_id = await env.orchestrator.send(turn(convo.id, "I'm learning Python, show me hello world"))
    await wait_for_background()

    assert env.services.memory.facts == ["The user is learning Python."]
    assert env.store.find_message(convo.id, message_id).memory_updated is True
    snippets = env.services.code_store.snippets
    assert [(s.language, s.code) for s in snippets] == [("python", "print('hi')\n")]
    assert snippets[0].description == "Stored snippet."


@pytest.mark.asyncio
async def test_delete_conversation_cancels_running_turn(orchestrator_factory):
    lm = FakeLMStudioClient(chunks=["Hello", " world"])
    lm.pause_after = 1
    env = orchestrator_factory(fake_lm=lm)
    convo = env.orchestrator.create_conversation()

    task = asyncio.create_task(env.orchestrator.send(turn(convo.id)))
    await asyncio.wait_for(lm.paused.wait(), timeout=1)
    assert await env.orchestrator.delete_conversation(convo.id) is True
    lm.release.set()
    await asyncio.wait_for(task, timeout=1)

    assert env.store.get(convo.id) is None
    assert env.orchestrator.active_conversation_id is None
