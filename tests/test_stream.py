import pytest

from turnpilot.schemas import GroundingSource, ImageAttachment, Message, Usage
from turnpilot.stream import StreamConsumer, StreamContext, history_messages, strip_title
from tests.fakes import FakeLMStudioClient, FakeTavilyClient


def seeded(env, first_turn: bool = True):
    convo = env.store.create()
    env.store.update_conversation(convo.id, is_generating_title=first_turn)
    env.store.append_message(convo.id, Message(role="user", content="Plan a trip"))
    placeholder = env.store.append_message(convo.id, Message(role="model", is_planning=True))
    return convo, placeholder


async def consume(consumer: StreamConsumer, ctx: StreamContext):
    return [message async for message in consumer.run(ctx)]


def test_strip_title_only_removes_first_line():
    assert strip_title("TITLE: Trip\nHello\nTITLE: again") == "Hello\nTITLE: again"
    assert strip_title("No title here") == "No title here"


def test_history_skips_empty_model_messages():
    messages = [
        Message(role="user", content="hi"),
        Message(role="model", content="   "),
        Message(role="model", content="", images=[ImageAttachment(base64="aGk=")]),
        Message(role="model", content="hello"),
    ]
    history = history_messages(messages)
    assert [item["role"] for item in history] == ["user", "assistant", "assistant"]
    assert history[0]["content"] == "hi"
    assert history[-1]["content"] == "hello"


@pytest.mark.asyncio
async def test_first_turn_extracts_title_and_hides_it(orchestrator_factory):
    env = orchestrator_factory(
        fake_lm=FakeLMStudioClient(chunks=["TITLE: Trip Planning\n", "Here is", " a plan."], usage=Usage(prompt_token_count=9))
    )
    convo, placeholder = seeded(env)
    consumer = StreamConsumer(env.services.gateway, env.store, convo.id, placeholder.id, True, lambda: False)
    updates = await consume(consumer, StreamContext(model="test-model", system_instruction="sys", content="Plan a trip"))

    assert [m.content for m in updates][:3] == ["", "Here is", "Here is a plan."]
    assert consumer.title == "Trip Planning"
    assert consumer.usage.prompt_token_count == 9
    stored = env.store.get(convo.id)
    assert stored.title == "Trip Planning"
    assert stored.is_generating_title is False
    assert env.store.find_message(convo.id, placeholder.id).content == "Here is a plan."


@pytest.mark.asyncio
async def test_title_extraction_gives_up_on_plain_text(orchestrator_factory):
    env = orchestrator_factory(fake_lm=FakeLMStudioClient(chunks=["x" * 60, "TITLE: Late\n"]))
    convo, placeholder = seeded(env)
    consumer = StreamConsumer(env.services.gateway, env.store, convo.id, placeholder.id, True, lambda: False)
    await consume(consumer, StreamContext(model="test-model", system_instruction="sys", content="hi"))

    stored = env.store.get(convo.id)
    assert consumer.title is None
    assert stored.title == "New Chat"
    assert stored.is_generating_title is False


@pytest.mark.asyncio
async def test_later_turns_keep_title_lines(orchestrator_factory):
    env = orchestrator_factory(fake_lm=FakeLMStudioClient(chunks=["TITLE: Ignored\nBody"]))
    convo, placeholder = seeded(env, first_turn=False)
    consumer = StreamConsumer(env.services.gateway, env.store, convo.id, placeholder.id, False, lambda: False)
    updates = await consume(consumer, StreamContext(model="test-model", system_instruction="sys", content="hi"))

    assert updates[-1].content == "TITLE: Ignored\nBody"
    assert env.store.get(convo.id).title == "New Chat"


@pytest.mark.asyncio
async def test_cancel_check_runs_before_each_chunk(orchestrator_factory):
    env = orchestrator_factory(fake_lm=FakeLMStudioClient(chunks=["one ", "two ", "three"]))
    convo, placeholder = seeded(env, first_turn=False)
    seen = []

    def is_cancelled():
        return len(seen) >= 1

    consumer = StreamConsumer(env.services.gateway, env.store, convo.id, placeholder.id, False, is_cancelled)
    async for message in consumer.run(StreamContext(model="test-model", system_instruction="sys", content="hi")):
        seen.append(message.content)

    assert seen == ["one "]
    assert consumer.cancelled is True
    assert env.store.find_message(convo.id, placeholder.id).content == "one "


@pytest.mark.asyncio
async def test_web_search_attaches_sources(orchestrator_factory):
    tavily = FakeTavilyClient(
        api_key="tvly-test",
        search_response={"results": [{"url": "https://example.com/a", "title": "A", "content": "alpha"}]},
    )
    env = orchestrator_factory(fake_lm=FakeLMStudioClient(chunks=["Answer [1]"]), fake_tavily=tavily, tavily_api_key="tvly-test")
    convo, placeholder = seeded(env, first_turn=False)
    consumer = StreamConsumer(env.services.gateway, env.store, convo.id, placeholder.id, False, lambda: False)
    await consume(
        consumer, StreamContext(model="test-model", system_instruction="sys", content="latest news", web_search=True)
    )

    stored = env.store.find_message(convo.id, placeholder.id)
    assert stored.sources == [GroundingSource(uri="https://example.com/a", title="A")]
    assert tavily.search_calls[0]["query"] == "latest news"
    system_prompt = env.lm.stream_calls[0]["messages"][0]["content"]
    assert "[Web Search Results]" in system_prompt


@pytest.mark.asyncio
async def test_missing_message_is_recreated(orchestrator_factory):
    env = orchestrator_factory(fake_lm=FakeLMStudioClient(chunks=["Hello"]))
    convo, placeholder = seeded(env, first_turn=False)
    env.store.truncate(convo.id, 1)
    consumer = StreamConsumer(env.services.gateway, env.store, convo.id, placeholder.id, False, lambda: False)
    await consume(consumer, StreamContext(model="test-model", system_instruction="sys", content="hi"))

    messages = env.store.messages(convo.id)
    assert len(messages) == 2
    assert messages[-1].content == "Hello"
    assert consumer.message_id == messages[-1].id
