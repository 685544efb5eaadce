"""
# core/orchestrator.py

Module Contract
- Purpose: Top-level entry points for the chat surface. Wires the coordinator, upload adapter, dispatcher, streaming client, retry engine, greeting flow and title service around one conversation store.
- Inputs:
  - ConversationStore, ServiceClient, optional TitleModel, default Settings, PipelineListeners
- Outputs:
  - submit(session_id, prompt, video=None, video_url=None, pre_analysis=None, ...) -> Optional[PipelineRun]
  - select_option(session_id, message_id, option) -> Optional[PipelineRun]
  - retry(session_id, message_id) -> Optional[PipelineRun]
  - stop(session_id) / stop_technique(message_id)
  - switch_session(session_id) -> SessionState
  - analyze_technique(session_id, message_id, metadata, ...) -> Optional[dict]
  - greet(session_id) / choose_greeting_option(session_id, message_id, option_id)
- State:
  - Per-session SessionState (loading, stage, active token, retrying id, upload progress) and the current-session pointer.
  - loading and the active token are set by the coordinator and cleared only in finally blocks.
- Side effects:
  - Network I/O through ServiceClient; message writes through SessionGuard; chat titles after completed runs.
"""
from typing import Any, Dict, Optional

from config.app_config import MAX_VIDEO_MB
from core.cancellation import CancellationToken
from core.chat_titles import ChatTitleService
from core.conversation import AnalysisOption, MessageType, PreAnalysis, Settings, VideoAsset, assistant_message
from core.coordinator import PipelineListeners, PipelineRun, RequestCoordinator, RunOutcome, SessionState
from core.dispatcher import AnalysisDispatcher
from core.errors import AnalysisCancelled, ServiceError, UploadError, ValidationError, VisionAnalysisError
from core.greeting import GreetingChoice, GreetingFlow
from core.option_graph import OptionGraph
from core.retry_engine import RetryEngine
from core.session_guard import SessionGuard, SessionLockMap
from core.streaming_client import StreamingAnalysisClient
from core.swing_context import missing_vision_fields
from core.upload_adapter import UploadAdapter
from services.service_client import ServiceClient
from services.title_model import TitleModel
from storage.conversation_store import ConversationStore
from utils.logging_utils import get_logger, log_and_time
from utils.time_manager import TimeManager
from utils.video_utils import needs_conversion

logger = get_logger("orchestrator")


class AnalysisOrchestrator:
    def __init__(
        self,
        store: ConversationStore,
        service: Optional[ServiceClient] = None,
        title_model: Optional[TitleModel] = None,
        settings: Optional[Settings] = None,
        listeners: Optional[PipelineListeners] = None,
        time_manager: Optional[TimeManager] = None,
        graph: Optional[OptionGraph] = None,
        max_video_mb: float = MAX_VIDEO_MB,
    ):
        self.store = store
        self.service = service or ServiceClient()
        self.title_model = title_model
        self.settings = settings or Settings()
        self.listeners = listeners or PipelineListeners()

        self.current_session_id: Optional[str] = None
        self.sessions: Dict[str, SessionState] = {}
        self._vision_tokens: Dict[str, CancellationToken] = {}

        self.guard = SessionGuard(store, lambda: self.current_session_id)
        self.locks = SessionLockMap()
        self.coordinator = RequestCoordinator(self.guard)
        self.upload_adapter = UploadAdapter(self.service)
        self.streaming_client = StreamingAnalysisClient(self.service, time_manager)
        self.dispatcher = AnalysisDispatcher(self.service, self.streaming_client, max_video_mb)
        self.retry_engine = RetryEngine(self.coordinator, self.streaming_client)
        self.titles = ChatTitleService(store, self.locks, self.guard.is_current, title_model)
        self.greeting = GreetingFlow(self.guard, self.is_busy, graph)

        logger.debug("[ORCHESTRATOR] Initialized")

    # ------------------------------------------------------------------
    # Session state
    # ------------------------------------------------------------------

    def session_state(self, session_id: str) -> SessionState:
        state = self.sessions.get(session_id)
        if state is None:
            state = SessionState(session_id=session_id, listeners=self.listeners)
            self.sessions[session_id] = state
        return state

    def is_busy(self, session_id: str) -> bool:
        state = self.sessions.get(session_id)
        return state is not None and state.loading

    def switch_session(self, session_id: str) -> SessionState:
        """Make ``session_id`` current; runs bound to other sessions stop writing."""
        if session_id != self.current_session_id:
            logger.info(f"[SESSION] Switched {self.current_session_id} -> {session_id}")
        self.current_session_id = session_id
        return self.session_state(session_id)

    def stop(self, session_id: str) -> bool:
        state = self.sessions.get(session_id)
        if state is None or state.active_token is None:
            return False
        state.active_token.cancel()
        return True

    def stop_technique(self, message_id: str) -> bool:
        token = self._vision_tokens.get(message_id)
        if token is None:
            return False
        token.cancel("technique analysis stopped")
        return True

    # ------------------------------------------------------------------
    # First entry point
    # ------------------------------------------------------------------

    @log_and_time("Submit")
    async def submit(
        self,
        session_id: str,
        prompt: str,
        video: Optional[VideoAsset] = None,
        video_url: Optional[str] = None,
        pre_analysis: Optional[PreAnalysis] = None,
        settings: Optional[Settings] = None,
        swing_context: Optional[Dict[str, Any]] = None,
    ) -> Optional[PipelineRun]:
        """Run one submission to a terminal state. None when the submission was a no-op."""
        state = self.session_state(session_id)
        if video is not None:
            if video.is_local and not video.needs_conversion:
                video.needs_conversion = needs_conversion(video.filename, video.content_type)
            video_url = video_url or video.remote_url

        run = await self.coordinator.begin(
            state,
            prompt,
            settings or self.settings,
            video=video,
            video_url=video_url,
            pre_analysis=pre_analysis,
            swing_context=swing_context,
        )
        if run is None:
            return None

        try:
            if self.dispatcher.exceeds_size_limit(video):
                await self.dispatcher.respond_size_limit(run)
            else:
                if video is not None and video.is_local:
                    await self.upload_adapter.upload(run)
                await self.dispatcher.dispatch(run, run.video_url)
        except AnalysisCancelled:
            await self.coordinator.handle_cancel(run)
        except ServiceError as e:
            await self.coordinator.handle_failure(run, e)
        except Exception as e:
            await self.coordinator.handle_failure(run, e)
            raise
        finally:
            state.finish(run.token)

        await self._maybe_title(session_id)
        return run

    # ------------------------------------------------------------------
    # Second entry point
    # ------------------------------------------------------------------

    @log_and_time("Select Option")
    async def select_option(
        self,
        session_id: str,
        message_id: str,
        option: AnalysisOption,
        settings: Optional[Settings] = None,
    ) -> Optional[PipelineRun]:
        state = self.session_state(session_id)
        run = self.coordinator.open_run(state, settings or self.settings, "select")
        if run is None:
            return None

        try:
            await self.dispatcher.select_option(run, message_id, option)
        except ValidationError as e:
            logger.warning(f"[DISPATCH] Ignoring {option.value} on {message_id}: {e}")
            return None
        except AnalysisCancelled:
            await self.coordinator.handle_cancel(run)
        except ServiceError as e:
            # The streaming client already left the apology on the message
            run.outcome = RunOutcome.FAILED
            run.error = str(e)
            logger.error(f"[DISPATCH] {option.value} analysis failed: {type(e).__name__}: {e}")
            if run.writer.active:
                state.listeners.on_error(session_id, run.error)
        finally:
            state.finish(run.token)

        await self._maybe_title(session_id)
        return run

    async def retry(self, session_id: str, message_id: str, settings: Optional[Settings] = None) -> Optional[PipelineRun]:
        return await self.retry_engine.retry(self.session_state(session_id), message_id, settings or self.settings)

    # ------------------------------------------------------------------
    # Technique (vision) analysis
    # ------------------------------------------------------------------

    @log_and_time("Technique Analysis")
    async def analyze_technique(
        self,
        session_id: str,
        message_id: str,
        metadata: Dict[str, Any],
        video_url: Optional[str] = None,
        video: Optional[VideoAsset] = None,
        follow_up_prompt: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Score the swing in the video attached to ``message_id`` and write the
        status stream onto a technique_result message. Runs beside the normal
        pipeline with its own token; returns the vision result, or None when
        skipped or stopped.
        """
        missing = missing_vision_fields(metadata)
        if missing:
            raise ValidationError(f"Missing required metadata: {', '.join(missing)}")
        if not video_url and (video is None or not video.is_local):
            raise ValidationError("No video file or videoUrl provided")

        async with self.locks.hold(f"vision:{message_id}", owner=session_id) as acquired:
            if not acquired:
                logger.info(f"[VISION] Analysis already running for {message_id}")
                return None
            result = await self._run_vision(session_id, message_id, metadata, video_url, video)

        if result is not None and follow_up_prompt:
            if self.is_busy(session_id):
                logger.info(f"[VISION] Skipping follow-up for {session_id}: a run is active")
            else:
                await self.submit(session_id, follow_up_prompt, swing_context=result)
        return result

    async def _run_vision(
        self,
        session_id: str,
        message_id: str,
        metadata: Dict[str, Any],
        video_url: Optional[str],
        video: Optional[VideoAsset],
    ) -> Optional[Dict[str, Any]]:
        writer = self.guard.guard(session_id)
        token = CancellationToken(label=f"{session_id}:vision")
        self._vision_tokens[message_id] = token

        message = assistant_message(
            streaming=True,
            message_type=MessageType.TECHNIQUE_RESULT,
            vision_result={"status": "processing", "progress": 0, "source_message_id": message_id},
        )
        await writer.append(message)

        result = None
        try:
            updates = self.service.stream_vision_analysis(metadata, video_url=video_url, asset=video)
            async for update in token.iterate(updates):
                status = update.get("status")
                if status == "error":
                    raise VisionAnalysisError(update.get("error") or update.get("message") or "Vision analysis failed")
                if status == "done":
                    result = update.get("result") or {}
                    await writer.update(
                        message.id,
                        vision_result={"status": "done", "result": result, "source_message_id": message_id},
                        streaming=False,
                    )
                    continue
                await writer.update(
                    message.id,
                    vision_result={
                        "status": "processing",
                        "progress": update.get("progress"),
                        "message": update.get("message"),
                        "source_message_id": message_id,
                    },
                )
            if result is None:
                raise VisionAnalysisError("Vision stream ended without a result")
        except AnalysisCancelled:
            logger.info(f"[VISION] Stopped for {message_id}")
            await writer.update(message.id, streaming=False, is_incomplete=True)
            return None
        except Exception as e:
            logger.error(f"[VISION] Failed for {message_id}: {type(e).__name__}: {e}")
            error = str(e) or type(e).__name__
            await writer.update(
                message.id,
                streaming=False,
                is_incomplete=True,
                vision_result={"status": "error", "error": error, "source_message_id": message_id},
            )
            if writer.active:
                self.listeners.on_error(session_id, error)
            raise
        finally:
            self._vision_tokens.pop(message_id, None)

        logger.info(f"[VISION] Completed for {message_id}")
        return result

    # ------------------------------------------------------------------
    # Greeting
    # ------------------------------------------------------------------

    async def greet(self, session_id: str):
        return await self.greeting.maybe_greet(session_id)

    async def choose_greeting_option(self, session_id: str, message_id: str, option_id: str) -> Optional[GreetingChoice]:
        """Play a greeting option; demo options start a real analysis of the demo video."""
        try:
            choice = await self.greeting.choose(session_id, message_id, option_id)
        except ValidationError as e:
            logger.warning(f"[GREETING] Ignoring {option_id}: {e}")
            return None
        if not choice.starts_analysis:
            return choice

        option = choice.option
        video_url = option.demo_video_url
        if option.demo_video_key:
            try:
                video_url = await self.service.request_download_url(option.demo_video_key)
            except UploadError as e:
                logger.warning(f"[GREETING] Could not sign demo video {option.demo_video_key}: {e}")
        if not video_url:
            logger.error(f"[GREETING] Demo option {option.id} has no usable video")
            return choice

        await self.submit(session_id, option.text, video_url=video_url)
        return choice

    # ------------------------------------------------------------------

    async def _maybe_title(self, session_id: str) -> None:
        messages = await self.store.load_history(session_id)
        await self.titles.maybe_generate(session_id, messages, loading=self.is_busy(session_id))

    async def aclose(self) -> None:
        await self.service.aclose()
        if self.title_model is not None:
            await self.title_model.aclose()
