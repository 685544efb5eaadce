"""
Unit tests for core/greeting.py
"""

import pytest
import core.greeting as greeting_module
import core.session_guard as session_guard_module
from core.conversation import MessageType, Role, user_message
from core.errors import ValidationError
from core.greeting import GreetingFlow
from core.option_graph import GREETING_MESSAGES
from core.session_guard import SessionGuard
from storage.conversation_store import InMemoryConversationStore


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def no_pacing(monkeypatch):
    """Canned replies appear instantly"""
    monkeypatch.setattr(greeting_module, "OPTIONS_DELAY_S", 0)
    monkeypatch.setattr(session_guard_module, "REVEAL_DELAY_S", 0)


@pytest.fixture
def store():
    return InMemoryConversationStore()


@pytest.fixture
def busy():
    return set()


@pytest.fixture
def flow(store, busy):
    guard = SessionGuard(store, lambda: "s1")
    return GreetingFlow(guard, lambda sid: sid in busy)


# =============================================================================
# maybe_greet
# =============================================================================

@pytest.mark.asyncio
async def test_greets_empty_chat_once(flow, store):
    options = await flow.maybe_greet("s1")
    history = await store.load_history("s1")

    assert len(history) == 2
    assert history[0].content == GREETING_MESSAGES["greeting"]
    assert history[0].is_greeting and not history[0].streaming
    assert history[1].id == options.id
    assert history[1].message_type is MessageType.CANDIDATE_RESPONSES
    assert history[1].candidate_options == ["upload-video", "show-examples", "how-it-works"]

    assert await flow.maybe_greet("s1") is None
    assert len(await store.load_history("s1")) == 2


@pytest.mark.asyncio
async def test_no_greeting_for_non_empty_chat(flow, store):
    await store.append_message("s1", user_message("hi"))
    assert await flow.maybe_greet("s1") is None


@pytest.mark.asyncio
async def test_no_greeting_while_busy(flow, busy):
    busy.add("s1")
    assert await flow.maybe_greet("s1") is None


@pytest.mark.asyncio
async def test_no_greeting_for_inactive_session(flow, store):
    assert await flow.maybe_greet("other") is None
    assert await store.load_history("other") == []


# =============================================================================
# choose
# =============================================================================

@pytest.mark.asyncio
async def test_choose_plays_reply_and_follow_up_options(flow, store):
    options = await flow.maybe_greet("s1")
    choice = await flow.choose("s1", options.id, "how-it-works")

    history = await store.load_history("s1")
    assert history[1].candidate_selected == "how-it-works"
    assert history[2].role is Role.USER
    assert history[2].content == "How does it work?"
    assert history[3].content == GREETING_MESSAGES["how_it_works"]
    assert history[4].id == choice.options_message_id
    assert history[4].candidate_options == ["upload-video-followup", "show-examples-followup-2"]
    assert not choice.starts_analysis


@pytest.mark.asyncio
async def test_choose_terminal_option_has_no_follow_up(flow, store):
    options = await flow.maybe_greet("s1")
    choice = await flow.choose("s1", options.id, "upload-video")
    follow_up = choice.options_message_id
    choice = await flow.choose("s1", follow_up, "how-it-works-followup")
    terminal_options = choice.options_message_id
    choice = await flow.choose("s1", terminal_options, "upload-video-terminal")
    assert choice.options_message_id is None


@pytest.mark.asyncio
async def test_choose_demo_returns_without_reply(flow, store):
    options = await flow.maybe_greet("s1")
    examples = await flow.choose("s1", options.id, "show-examples")
    before = len(await store.load_history("s1"))

    choice = await flow.choose("s1", examples.options_message_id, "demo-tennis-serve")
    assert choice.starts_analysis
    assert choice.option.demo_video_url.endswith("Serve.mp4")
    assert len(await store.load_history("s1")) == before


@pytest.mark.asyncio
async def test_choose_rejects_unoffered_option(flow):
    options = await flow.maybe_greet("s1")
    with pytest.raises(ValidationError):
        await flow.choose("s1", options.id, "demo-tennis-serve")


@pytest.mark.asyncio
async def test_choose_rejects_second_answer(flow):
    options = await flow.maybe_greet("s1")
    await flow.choose("s1", options.id, "show-examples")
    with pytest.raises(ValidationError):
        await flow.choose("s1", options.id, "how-it-works")


@pytest.mark.asyncio
async def test_choose_rejects_plain_message(flow, store):
    message = user_message("hi")
    await store.append_message("s1", message)
    with pytest.raises(ValidationError):
        await flow.choose("s1", message.id, "upload-video")
