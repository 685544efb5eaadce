"""
Scenario tests for the follow-up entry points of AnalysisOrchestrator.

- Quick/pro choice card: presentation, selection, task creation, failures
- Silent technique task for non-racket sports
- Retry from the history before the regenerated turn, refused while another run is active
- Technique (vision) analysis with a swing-context follow-up, failures and
  stops that leave the chat run alone
- Demo greeting options starting a real analysis
"""

import asyncio
import json

import httpx
import pytest

import core.dispatcher as dispatcher_module
import core.greeting as greeting_module
import core.session_guard as session_guard_module
import core.streaming_client as streaming_client_module
from config.app_config import DEFAULT_VIDEO_PROMPT, QUICK_ANALYSIS_ERROR
from core.conversation import (
    AnalysisOption,
    AnalysisOptionsState,
    MessageType,
    PreAnalysis,
    Role,
    TaskType,
    VideoAsset,
    assistant_message,
    user_message,
)
from core.coordinator import PipelineListeners, RunOutcome
from core.dispatcher import PRO_CHOICE_TEXT, QUICK_CHOICE_TEXT
from core.errors import AnalysisServiceError, TaskCreationError, ValidationError, VisionAnalysisError
from core.orchestrator import AnalysisOrchestrator
from core.swing_context import SWING_CONTEXT_HEADER
from services.service_client import ServiceClient
from storage.conversation_store import InMemoryConversationStore
from tests.fakes import READ_URL, FakeService, wait_until
from utils.video_utils import estimate_pro_analysis_time

FOREHAND_URL = "https://videos.example.com/forehand.mp4"

VISION_METADATA = {
    "uid": "user-1",
    "sport": "tennis",
    "swing_type": "forehand",
    "dominant_hand": "right",
    "player_height_mm": 1800,
}


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def no_pacing(monkeypatch):
    """Canned text and follow-up messages appear without delays"""
    monkeypatch.setattr(session_guard_module, "REVEAL_DELAY_S", 0)
    monkeypatch.setattr(streaming_client_module, "STUDIO_PROMPT_DELAY_S", 0)
    monkeypatch.setattr(dispatcher_module, "LIBRARY_MESSAGE_DELAY_S", 0)
    monkeypatch.setattr(greeting_module, "OPTIONS_DELAY_S", 0)


@pytest.fixture
def store():
    return InMemoryConversationStore()


@pytest.fixture
def service():
    return FakeService()


@pytest.fixture
def errors():
    return []


@pytest.fixture
def orchestrator(store, service, errors):
    listeners = PipelineListeners(on_error=lambda sid, message: errors.append(message))
    orch = AnalysisOrchestrator(store=store, service=service, listeners=listeners)
    orch.switch_session("s1")
    return orch


@pytest.fixture
def pro_video():
    """20 MB local clip"""
    return VideoAsset(local_handle=b"\0" * (20 * 1024 * 1024), filename="match.mp4")


@pytest.fixture
def pro_pre_analysis():
    return PreAnalysis(sport="tennis", duration_seconds=30, is_pro_eligible=True)


async def present_pro_options(orchestrator, store, pro_video, pro_pre_analysis):
    run = await orchestrator.submit("s1", "", video=pro_video, pre_analysis=pro_pre_analysis)
    assert run.outcome is RunOutcome.OPTIONS
    return await store.get_message("s1", run.assistant_id)


# =============================================================================
# Choice card
# =============================================================================

@pytest.mark.asyncio
async def test_pro_eligible_upload_presents_options(orchestrator, store, service, pro_video, pro_pre_analysis):
    options_message = await present_pro_options(orchestrator, store, pro_video, pro_pre_analysis)

    history = await store.load_history("s1")
    text, media, options = history
    assert text.content == DEFAULT_VIDEO_PROMPT
    assert media.video_ref == READ_URL
    assert media.input_tokens == 30 * 300
    assert options.id == options_message.id
    assert options.message_type is MessageType.ANALYSIS_OPTIONS
    assert options.streaming is False
    assert options.analysis_options.selected_option is None
    assert options.analysis_options.video_url == READ_URL
    assert options.analysis_options.user_prompt == DEFAULT_VIDEO_PROMPT

    assert service.analysis_requests == []
    assert service.tasks == []
    assert not orchestrator.is_busy("s1")


@pytest.mark.asyncio
async def test_select_pro_creates_task_and_streams(orchestrator, store, service, pro_video, pro_pre_analysis):
    options_message = await present_pro_options(orchestrator, store, pro_video, pro_pre_analysis)

    run = await orchestrator.select_option("s1", options_message.id, AnalysisOption.PRO)

    assert run.outcome is RunOutcome.COMPLETED
    assert run.task_id == "task-1"
    task = service.tasks[0]
    assert task.task_type is TaskType.STATISTICS
    assert task.sport == "tennis"
    assert task.video_url == READ_URL
    assert task.video_length == 30

    history = await store.load_history("s1")
    options, choice, library, reply, studio = history[2:]
    assert options.analysis_options.selected_option is AnalysisOption.PRO
    assert choice.role is Role.USER and choice.content == PRO_CHOICE_TEXT
    assert library.content.startswith("🎯 I've added this video to your **Library** (in the sidebar) for PRO Analysis")
    assert estimate_pro_analysis_time(30) in library.content
    assert reply.id == run.assistant_id
    assert reply.content == "Your serve looks solid."
    assert studio.studio_prompt == {"video_url": READ_URL, "task_id": "task-1", "analysis_type": "statistics"}

    request = service.analysis_requests[0]
    assert request.video_url == READ_URL
    assert request.prompt == DEFAULT_VIDEO_PROMPT
    assert request.settings.domain_expertise == "tennis"
    assert request.history_json is None


@pytest.mark.asyncio
async def test_select_quick_skips_task(orchestrator, store, service, pro_video, pro_pre_analysis):
    options_message = await present_pro_options(orchestrator, store, pro_video, pro_pre_analysis)

    run = await orchestrator.select_option("s1", options_message.id, AnalysisOption.QUICK)

    assert run.outcome is RunOutcome.COMPLETED
    assert service.tasks == []
    history = await store.load_history("s1")
    choice, reply, studio = history[3:]
    assert choice.content == QUICK_CHOICE_TEXT
    assert reply.content == "Your serve looks solid."
    assert studio.studio_prompt["task_id"] is None


@pytest.mark.asyncio
async def test_second_selection_is_ignored(orchestrator, store, service, pro_video, pro_pre_analysis):
    options_message = await present_pro_options(orchestrator, store, pro_video, pro_pre_analysis)
    await orchestrator.select_option("s1", options_message.id, AnalysisOption.QUICK)

    assert await orchestrator.select_option("s1", options_message.id, AnalysisOption.PRO) is None
    assert service.tasks == []
    assert len(service.analysis_requests) == 1
    assert not orchestrator.is_busy("s1")


@pytest.mark.asyncio
async def test_select_without_findable_video_resets_choice_and_streams(orchestrator, store, service):
    await store.append_message("s1", user_message("Rate my rally"))
    options = assistant_message(
        message_type=MessageType.ANALYSIS_OPTIONS,
        analysis_options=AnalysisOptionsState(PreAnalysis("tennis", is_pro_eligible=True), video_url=None, user_prompt=""),
    )
    await store.append_message("s1", options)

    run = await orchestrator.select_option("s1", options.id, AnalysisOption.PRO)

    assert run.outcome is RunOutcome.COMPLETED
    assert run.task_id is None
    assert service.tasks == []
    request = service.analysis_requests[0]
    assert request.video_url is None
    assert request.prompt == "Rate my rally"

    stored = await store.get_message("s1", options.id)
    assert stored.analysis_options.selected_option is None
    history = await store.load_history("s1")
    assert history[-1].id == run.assistant_id
    assert history[-1].content == "Your serve looks solid."
    assert all(m.studio_prompt is None for m in history)


@pytest.mark.asyncio
async def test_select_on_plain_message_is_ignored(orchestrator, store):
    run = await orchestrator.submit("s1", "hello")
    assert await orchestrator.select_option("s1", run.assistant_id, AnalysisOption.QUICK) is None
    assert not orchestrator.is_busy("s1")


@pytest.mark.asyncio
async def test_task_failure_still_streams_quick_analysis(orchestrator, store, service, pro_video, pro_pre_analysis):
    service.task_error = TaskCreationError("tasks unavailable", 500)
    options_message = await present_pro_options(orchestrator, store, pro_video, pro_pre_analysis)

    run = await orchestrator.select_option("s1", options_message.id, AnalysisOption.PRO)

    assert run.outcome is RunOutcome.COMPLETED
    assert run.task_id is None
    history = await store.load_history("s1")
    assert not any("Library" in m.content for m in history)
    assert history[-1].studio_prompt["task_id"] is None


@pytest.mark.asyncio
async def test_selection_stream_failure_leaves_apology(orchestrator, store, service, errors, pro_video, pro_pre_analysis):
    options_message = await present_pro_options(orchestrator, store, pro_video, pro_pre_analysis)
    service.stream_error = AnalysisServiceError("gateway timeout", 504)
    service.chunks = []

    run = await orchestrator.select_option("s1", options_message.id, AnalysisOption.QUICK)

    assert run.outcome is RunOutcome.FAILED
    reply = await store.get_message("s1", run.assistant_id)
    assert reply.content == QUICK_ANALYSIS_ERROR
    assert reply.is_incomplete is True
    assert reply.streaming is False
    assert len(errors) == 1
    assert not orchestrator.is_busy("s1")


# =============================================================================
# Technique routing
# =============================================================================

@pytest.mark.asyncio
async def test_racket_sport_technique_offers_choice(orchestrator, store, service):
    pre = PreAnalysis(sport="tennis", is_technique_eligible=True)
    run = await orchestrator.submit("s1", "Check my forehand", video_url=FOREHAND_URL, pre_analysis=pre)

    assert run.outcome is RunOutcome.OPTIONS
    assert service.tasks == []
    assert service.analysis_requests == []


@pytest.mark.asyncio
async def test_other_sport_technique_creates_task_silently(orchestrator, store, service):
    pre = PreAnalysis(sport="skiing", duration_seconds=20, is_technique_eligible=True)
    run = await orchestrator.submit("s1", "How is my turn?", video_url=FOREHAND_URL, pre_analysis=pre)

    assert run.outcome is RunOutcome.COMPLETED
    assert run.task_id == "task-1"
    assert service.tasks[0].task_type is TaskType.TECHNIQUE
    assert service.analysis_requests[0].video_url == FOREHAND_URL

    history = await store.load_history("s1")
    assert not any(m.message_type is MessageType.ANALYSIS_OPTIONS for m in history)
    assert history[-1].studio_prompt == {"video_url": FOREHAND_URL, "task_id": "task-1", "analysis_type": "technique"}


# =============================================================================
# Retry
# =============================================================================

@pytest.mark.asyncio
async def test_retry_uses_history_before_turn(orchestrator, store, service):
    service.chunks = ["Answer A"]
    first = await orchestrator.submit("s1", "First question")
    service.chunks = ["Answer B"]
    second = await orchestrator.submit("s1", "Second question")

    service.chunks = ["Answer A, regenerated"]
    run = await orchestrator.retry("s1", first.assistant_id)

    assert run.outcome is RunOutcome.COMPLETED
    request = service.analysis_requests[-1]
    assert request.prompt == "First question"
    assert request.history_json is None

    history = await store.load_history("s1")
    assert [m.content for m in history] == ["First question", "Answer A, regenerated", "Second question", "Answer B"]
    assert history[1].id == first.assistant_id
    assert history[3].id == second.assistant_id
    assert not orchestrator.is_busy("s1")


@pytest.mark.asyncio
async def test_retry_later_turn_sends_earlier_history(orchestrator, service):
    service.chunks = ["Answer A"]
    await orchestrator.submit("s1", "First question")
    service.chunks = ["Answer B"]
    second = await orchestrator.submit("s1", "Second question")

    await orchestrator.retry("s1", second.assistant_id)

    request = service.analysis_requests[-1]
    assert request.prompt == "Second question"
    texts = [part["text"] for turn in json.loads(request.history_json) for part in turn["parts"]]
    assert texts == ["First question", "Answer A"]


@pytest.mark.asyncio
async def test_retry_reuses_video_reference(orchestrator, service):
    first = await orchestrator.submit("s1", "", video_url=FOREHAND_URL)
    await orchestrator.retry("s1", first.assistant_id)

    request = service.analysis_requests[-1]
    assert request.video_url == FOREHAND_URL
    assert request.prompt == DEFAULT_VIDEO_PROMPT


@pytest.mark.asyncio
async def test_retry_failure_marks_incomplete(orchestrator, store, service, errors):
    first = await orchestrator.submit("s1", "First question")
    service.stream_error = AnalysisServiceError("overloaded", 503)
    service.chunks = []

    run = await orchestrator.retry("s1", first.assistant_id)

    assert run.outcome is RunOutcome.FAILED
    message = await store.get_message("s1", first.assistant_id)
    assert message is not None
    assert message.is_incomplete is True
    assert message.streaming is False
    assert len(errors) == 1
    assert not orchestrator.is_busy("s1")


@pytest.mark.asyncio
async def test_retry_refused_while_run_active(orchestrator, service):
    first = await orchestrator.submit("s1", "First question")
    service.gate = asyncio.Event()
    pending = asyncio.ensure_future(orchestrator.submit("s1", "Second question"))
    await wait_until(lambda: len(service.analysis_requests) == 2)

    assert await orchestrator.retry("s1", first.assistant_id) is None

    service.gate.set()
    await pending
    assert len(service.analysis_requests) == 2


@pytest.mark.asyncio
async def test_retry_refused_while_another_retry_active(orchestrator, store, service):
    first = await orchestrator.submit("s1", "First question")
    second = await orchestrator.submit("s1", "Second question")
    service.gate = asyncio.Event()
    pending = asyncio.ensure_future(orchestrator.retry("s1", first.assistant_id))
    await wait_until(lambda: len(service.analysis_requests) == 3)
    assert orchestrator.session_state("s1").retrying_id == first.assistant_id

    assert await orchestrator.retry("s1", second.assistant_id) is None

    service.gate.set()
    run = await pending
    assert run.outcome is RunOutcome.COMPLETED
    assert len(service.analysis_requests) == 3
    assert orchestrator.session_state("s1").retrying_id is None


@pytest.mark.asyncio
async def test_retry_failure_clears_previous_result_fields(orchestrator, store, service):
    service.chunks = ['Nice serve <metrics>{"speed": 180}</metrics>']
    first = await orchestrator.submit("s1", "How fast was it?")
    message = await store.get_message("s1", first.assistant_id)
    assert message.result_tags == {"metrics": {"speed": 180}}
    assert message.response_seconds is not None

    service.stream_error = AnalysisServiceError("overloaded", 503)
    service.chunks = []
    run = await orchestrator.retry("s1", first.assistant_id)

    assert run.outcome is RunOutcome.FAILED
    message = await store.get_message("s1", first.assistant_id)
    assert message.is_incomplete is True
    assert message.result_tags == {}
    assert message.stream_metadata == {}
    assert message.response_seconds is None


@pytest.mark.asyncio
async def test_retry_unknown_message(orchestrator):
    assert await orchestrator.retry("s1", "missing") is None
    assert not orchestrator.is_busy("s1")


# =============================================================================
# Technique (vision) analysis
# =============================================================================

@pytest.mark.asyncio
async def test_technique_analysis_writes_result_and_follows_up(orchestrator, store, service):
    result = {"swing_type": "forehand", "sport": "tennis", "progress": 72.5}
    service.vision_updates = [
        {"status": "processing", "progress": 40, "message": "Detecting pose"},
        {"status": "done", "result": result},
    ]

    returned = await orchestrator.analyze_technique(
        "s1", "source-1", VISION_METADATA, video_url=FOREHAND_URL, follow_up_prompt="How can I improve?"
    )

    assert returned == result
    assert service.vision_calls == [(VISION_METADATA, FOREHAND_URL)]
    history = await store.load_history("s1")
    technique = history[0]
    assert technique.message_type is MessageType.TECHNIQUE_RESULT
    assert technique.streaming is False
    assert technique.vision_result == {"status": "done", "result": result, "source_message_id": "source-1"}

    assert history[1].content == "How can I improve?"
    assert service.analysis_requests[0].prompt.startswith(SWING_CONTEXT_HEADER)
    assert service.analysis_requests[0].prompt.endswith("How can I improve?")


@pytest.mark.asyncio
async def test_technique_analysis_error_status(orchestrator, store, service, errors):
    service.vision_updates = [{"status": "error", "error": "No player detected"}]

    with pytest.raises(VisionAnalysisError):
        await orchestrator.analyze_technique("s1", "source-1", VISION_METADATA, video_url=FOREHAND_URL)

    technique = (await store.load_history("s1"))[0]
    assert technique.is_incomplete is True
    assert technique.vision_result["status"] == "error"
    assert "No player detected" in technique.vision_result["error"]
    assert len(errors) == 1


@pytest.mark.asyncio
async def test_technique_analysis_unexpected_error_finalizes_message(orchestrator, store, service, errors):
    service.vision_error = RuntimeError("decoder crashed")

    with pytest.raises(RuntimeError):
        await orchestrator.analyze_technique("s1", "source-1", VISION_METADATA, video_url=FOREHAND_URL)

    technique = (await store.load_history("s1"))[0]
    assert technique.streaming is False
    assert technique.is_incomplete is True
    assert technique.vision_result == {"status": "error", "error": "decoder crashed", "source_message_id": "source-1"}
    assert errors == ["decoder crashed"]
    assert orchestrator.stop_technique("source-1") is False


@pytest.mark.asyncio
async def test_technique_analysis_unreadable_local_file(store, errors):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200)

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://analysis.test")
    service = ServiceClient(base_url="http://analysis.test", http_client=http)
    listeners = PipelineListeners(on_error=lambda sid, message: errors.append(message))
    orch = AnalysisOrchestrator(store=store, service=service, listeners=listeners)
    orch.switch_session("s1")

    with pytest.raises(VisionAnalysisError):
        await orch.analyze_technique(
            "s1", "source-1", VISION_METADATA, video=VideoAsset(local_handle="/nonexistent/swing.mp4")
        )

    technique = (await store.load_history("s1"))[0]
    assert technique.streaming is False
    assert technique.is_incomplete is True
    assert technique.vision_result["status"] == "error"
    assert "Could not read video" in technique.vision_result["error"]
    assert len(errors) == 1
    assert calls == []
    await http.aclose()


@pytest.mark.asyncio
async def test_stopping_chat_leaves_technique_running(orchestrator, service):
    service.vision_gate = asyncio.Event()
    service.gate = asyncio.Event()
    service.vision_updates = [{"status": "done", "result": {"swing_type": "forehand"}}]
    vision = asyncio.ensure_future(
        orchestrator.analyze_technique("s1", "source-1", VISION_METADATA, video_url=FOREHAND_URL)
    )
    chat = asyncio.ensure_future(orchestrator.submit("s1", "Any tips?"))
    await wait_until(lambda: service.vision_calls and service.analysis_requests)

    assert orchestrator.stop("s1")
    chat_run = await chat

    assert chat_run.outcome is RunOutcome.CANCELLED
    assert not vision.done()

    service.vision_gate.set()
    assert await vision == {"swing_type": "forehand"}


@pytest.mark.asyncio
async def test_stopping_technique_leaves_chat_running(orchestrator, store, service):
    service.vision_gate = asyncio.Event()
    service.gate = asyncio.Event()
    vision = asyncio.ensure_future(
        orchestrator.analyze_technique("s1", "source-1", VISION_METADATA, video_url=FOREHAND_URL)
    )
    chat = asyncio.ensure_future(orchestrator.submit("s1", "Any tips?"))
    await wait_until(lambda: service.vision_calls and service.analysis_requests)

    assert orchestrator.stop_technique("source-1")
    assert await vision is None

    history = await store.load_history("s1")
    technique = next(m for m in history if m.message_type is MessageType.TECHNIQUE_RESULT)
    assert technique.streaming is False
    assert technique.is_incomplete is True
    assert orchestrator.is_busy("s1")

    service.gate.set()
    chat_run = await chat
    assert chat_run.outcome is RunOutcome.COMPLETED
    assert orchestrator.stop_technique("source-1") is False
    assert orchestrator.stop_technique("unknown") is False


@pytest.mark.asyncio
async def test_technique_analysis_requires_metadata(orchestrator):
    metadata = dict(VISION_METADATA, swing_type=None)
    with pytest.raises(ValidationError):
        await orchestrator.analyze_technique("s1", "source-1", metadata, video_url=FOREHAND_URL)


@pytest.mark.asyncio
async def test_technique_analysis_requires_video(orchestrator):
    with pytest.raises(ValidationError):
        await orchestrator.analyze_technique("s1", "source-1", VISION_METADATA)


# =============================================================================
# Greeting demos
# =============================================================================

@pytest.mark.asyncio
async def test_demo_option_starts_analysis(orchestrator, store, service):
    greeting = await orchestrator.greet("s1")
    examples = await orchestrator.choose_greeting_option("s1", greeting.id, "show-examples")

    choice = await orchestrator.choose_greeting_option("s1", examples.options_message_id, "demo-padel-match")

    assert choice.starts_analysis
    assert service.download_keys == ["test/1765293768560_nthug5r97_3g2AQVBSF1M_003.mp4"]
    request = service.analysis_requests[0]
    assert request.video_url == "https://storage.test/test/1765293768560_nthug5r97_3g2AQVBSF1M_003.mp4?sig=read"

    history = await store.load_history("s1")
    user_texts = [m.content for m in history if m.role is Role.USER and m.content]
    assert user_texts[-1] == choice.option.text


@pytest.mark.asyncio
async def test_unknown_greeting_option_is_ignored(orchestrator):
    greeting = await orchestrator.greet("s1")
    assert await orchestrator.choose_greeting_option("s1", greeting.id, "not-an-option") is None
