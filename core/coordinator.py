"""
# core/coordinator.py

Module Contract
- Purpose: Accept or reject a submission, write the user turn and the assistant placeholder, and own the single failure/cancellation path for a run.
- Inputs:
  - SessionState (per-session loading/stage/token), prompt, optional VideoAsset, optional detected video URL, optional PreAnalysis, Settings
- Outputs:
  - begin(...) -> Optional[PipelineRun] (None = rejected no-op)
  - open_run(state, label) -> Optional[PipelineRun] for follow-up entry points (option selection, retry)
  - handle_cancel(run), handle_failure(run, error)
- Ordering:
  - user message(s) -> input cleared -> placeholder -> stage set
- Side effects:
  - Appends/updates/removes messages through the run's GuardedWriter; flips SessionState.loading; notifies listeners.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from config.app_config import DEFAULT_VIDEO_PROMPT, STOPPED_MARKER
from core.cancellation import CancellationToken
from core.conversation import (
    ConversationMessage,
    PreAnalysis,
    ProgressStage,
    Settings,
    VideoAsset,
    assistant_message,
    user_message,
)
from core.session_guard import GuardedWriter, SessionGuard
from utils.logging_utils import get_logger
from utils.video_utils import calculate_user_message_tokens, estimate_text_tokens

logger = get_logger("coordinator")

_STAGE_ORDER = {
    ProgressStage.IDLE: 0,
    ProgressStage.UPLOADING: 1,
    ProgressStage.PROCESSING: 2,
    ProgressStage.ANALYZING: 3,
    ProgressStage.GENERATING: 4,
}

ProgressListener = Callable[[str, ProgressStage, float], None]


def _noop(*_args) -> None:
    return None


@dataclass
class PipelineListeners:
    """Callbacks into whatever is presenting the conversation"""
    on_progress: ProgressListener = _noop
    on_input_cleared: Callable[[str], None] = _noop
    on_preview_released: Callable[[str, str], None] = _noop
    on_error: Callable[[str, str], None] = _noop


class RunOutcome(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    OPTIONS = "options"
    SIZE_LIMIT = "size_limit"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class SessionState:
    session_id: str
    listeners: PipelineListeners = field(default_factory=PipelineListeners)
    loading: bool = False
    stage: ProgressStage = ProgressStage.IDLE
    active_token: Optional[CancellationToken] = None
    retrying_id: Optional[str] = None
    upload_progress: float = 0.0

    def _publish(self) -> None:
        self.listeners.on_progress(self.session_id, self.stage, self.upload_progress)

    def set_stage(self, stage: ProgressStage) -> None:
        if _STAGE_ORDER[stage] < _STAGE_ORDER[self.stage]:
            logger.debug(f"[SUBMIT] Ignoring stage {stage.value} after {self.stage.value} ({self.session_id})")
            return
        if stage is not self.stage:
            self.stage = stage
            self._publish()

    def set_progress(self, percent: float) -> None:
        self.upload_progress = max(0.0, min(100.0, float(percent)))
        self._publish()

    def start(self, token: CancellationToken) -> None:
        self.loading = True
        self.active_token = token
        self.stage = ProgressStage.IDLE
        self.upload_progress = 0.0

    def finish(self, token: CancellationToken) -> None:
        """Reset to idle, but only for the run that owns the state."""
        if self.active_token is not token:
            return
        self.loading = False
        self.active_token = None
        self.retrying_id = None
        self.stage = ProgressStage.IDLE
        self.upload_progress = 0.0
        self._publish()


@dataclass
class PipelineRun:
    """Everything one run needs, captured at submission"""
    session_id: str
    state: SessionState
    token: CancellationToken
    writer: GuardedWriter
    settings: Settings
    prompt: str = ""
    assistant_id: Optional[str] = None
    history: List[ConversationMessage] = field(default_factory=list)
    video: Optional[VideoAsset] = None
    video_url: Optional[str] = None
    pre_analysis: Optional[PreAnalysis] = None
    media_message_id: Optional[str] = None
    swing_context: Optional[Dict[str, Any]] = None
    task_id: Optional[str] = None
    outcome: RunOutcome = RunOutcome.RUNNING
    error: Optional[str] = None

    @property
    def has_media(self) -> bool:
        return self.video is not None or bool(self.video_url)

    def set_stage(self, stage: ProgressStage) -> None:
        if self.writer.active:
            self.state.set_stage(stage)

    def report_upload(self, percent: float) -> None:
        if self.writer.active:
            self.state.set_progress(percent)


class RequestCoordinator:
    def __init__(self, guard: SessionGuard):
        self.guard = guard

    def open_run(self, state: SessionState, settings: Settings, label: str) -> Optional[PipelineRun]:
        """Claim the session for a new run; None while another run is active."""
        if not state.session_id or not self.guard.is_current(state.session_id):
            logger.debug(f"[SUBMIT] Rejected {label}: session {state.session_id} is not active")
            return None
        if state.loading:
            logger.info(f"[SUBMIT] Rejected {label}: a run is already active for {state.session_id}")
            return None
        token = CancellationToken(label=f"{state.session_id}:{label}")
        state.start(token)
        return PipelineRun(
            session_id=state.session_id,
            state=state,
            token=token,
            writer=self.guard.guard(state.session_id),
            settings=settings,
        )

    async def begin(
        self,
        state: SessionState,
        prompt: str,
        settings: Settings,
        video: Optional[VideoAsset] = None,
        video_url: Optional[str] = None,
        pre_analysis: Optional[PreAnalysis] = None,
        swing_context: Optional[Dict[str, Any]] = None,
    ) -> Optional[PipelineRun]:
        prompt = (prompt or "").strip()
        has_media = video is not None or bool(video_url)
        if not prompt and not has_media:
            logger.debug("[SUBMIT] Rejected: empty prompt and no media")
            return None

        run = self.open_run(state, settings, "submit")
        if run is None:
            return None

        try:
            run.prompt = prompt or DEFAULT_VIDEO_PROMPT
            run.video = video
            run.video_url = video_url
            run.pre_analysis = pre_analysis
            run.swing_context = swing_context

            # Authoritative history comes from the persisted log
            run.history = await run.writer.load_history()

            for message in self._user_messages(run):
                await run.writer.append(message)

            state.listeners.on_input_cleared(run.session_id)

            placeholder = assistant_message(streaming=True)
            run.assistant_id = placeholder.id
            await run.writer.append(placeholder)

            run.set_stage(ProgressStage.UPLOADING if video is not None and video.is_local else ProgressStage.PROCESSING)
            logger.info(
                f"[SUBMIT] {run.session_id}: prompt={len(run.prompt)} chars "
                f"video={'file' if video is not None else ('url' if video_url else 'none')} "
                f"history={len(run.history)}"
            )
            return run
        except BaseException:
            state.finish(run.token)
            raise

    def _user_messages(self, run: PipelineRun) -> List[ConversationMessage]:
        text = user_message(run.prompt, input_tokens=estimate_text_tokens(run.prompt))
        if not run.has_media:
            return [text]

        video = run.video
        pre = run.pre_analysis
        media = user_message(
            "",
            video_ref=run.video_url,
            preview_handle=video.preview_handle if video is not None else None,
            thumbnail_url=pre.thumbnail_ref if pre else None,
            input_tokens=calculate_user_message_tokens(
                "",
                size_bytes=video.size_bytes if video is not None else None,
                duration_seconds=pre.duration_seconds if pre else None,
                resolution=run.settings.media_resolution.value,
            ),
        )
        run.media_message_id = media.id
        return [text, media]

    # ------------------------------------------------------------------
    # Terminal paths
    # ------------------------------------------------------------------

    async def handle_cancel(self, run: PipelineRun) -> None:
        """Stop marker on partial content, otherwise drop the placeholder."""
        run.outcome = RunOutcome.CANCELLED
        if not run.assistant_id:
            return
        message = await run.writer.get(run.assistant_id)
        if message is None or not message.streaming:
            return
        if message.content.strip():
            await run.writer.update(run.assistant_id, content=message.content + STOPPED_MARKER, streaming=False)
        else:
            await run.writer.remove(run.assistant_id)
        logger.info(f"[SUBMIT] {run.session_id}: run cancelled")

    async def handle_failure(self, run: PipelineRun, error: BaseException) -> None:
        """Remove the placeholder and the fresh media message, then tell the user."""
        run.outcome = RunOutcome.FAILED
        run.error = str(error) or type(error).__name__
        logger.error(f"[SUBMIT] {run.session_id}: run failed: {type(error).__name__}: {error}")

        if not run.writer.active:
            return
        if run.assistant_id:
            await run.writer.remove(run.assistant_id)
        preview = run.video.preview_handle if run.video is not None else None
        if run.media_message_id and preview:
            await run.writer.remove(run.media_message_id)
            run.state.listeners.on_preview_released(run.session_id, preview)
        run.state.listeners.on_error(run.session_id, run.error)
