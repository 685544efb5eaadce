"""
# core/streaming_client.py

Module Contract
- Purpose: Run one streaming analysis request and mirror it onto a conversation message.
- Inputs:
  - StreamJob (target message, prompt, settings, video URL, history, task link, failure policy, optional swing context)
  - GuardedWriter for the run's session, the run's CancellationToken, a stage setter
- Outputs:
  - run(job, writer, token, set_stage) -> StreamResult (final content, result tags, stream metadata)
- Behavior:
  - Every chunk republishes the accumulated text (metadata trailer stripped) with streaming=True.
  - Completion: control tags stripped, result tags extracted, metadata parsed, streaming=False; for video requests a studio prompt message follows after a short delay.
  - Cancellation: partial text gets the stop marker; empty placeholders are removed (or marked incomplete for retries); AnalysisCancelled is re-raised.
  - Failure: handled per FailurePolicy, then re-raised.
- Side effects:
  - Message writes through the guard only; timing via TimeManager.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from config.app_config import QUICK_ANALYSIS_ERROR, STOPPED_MARKER, STUDIO_PROMPT_DELAY_S
from core.cancellation import CancellationToken
from core.context_utils import serialize_history, thinking_budget
from core.conversation import (
    ConversationMessage,
    MessageType,
    ProgressStage,
    Settings,
    TaskType,
    assistant_message,
)
from core.errors import AnalysisCancelled
from core.session_guard import GuardedWriter
from core.stream_text import finalize_stream_text, strip_stream_metadata
from core.swing_context import prefix_prompt
from services.service_client import AnalysisRequest, ServiceClient
from utils.logging_utils import get_logger
from utils.time_manager import TimeManager
from utils.video_utils import estimate_text_tokens

logger = get_logger("streaming_client")


class FailurePolicy(Enum):
    REMOVE = "remove"                  # fresh submission: drop the placeholder
    MARK_INCOMPLETE = "mark_incomplete"  # retry: never delete history
    SHOW_ERROR = "show_error"          # option selection: leave an apology on the message


@dataclass
class StreamJob:
    message_id: str
    prompt: str
    settings: Settings
    video_url: Optional[str] = None
    history: List[ConversationMessage] = field(default_factory=list)
    task_id: Optional[str] = None
    task_type: Optional[TaskType] = None
    studio_prompt: bool = True
    failure: FailurePolicy = FailurePolicy.REMOVE
    swing_context: Optional[Dict[str, Any]] = None

    @property
    def has_video(self) -> bool:
        return bool(self.video_url)


@dataclass
class StreamResult:
    content: str
    result_tags: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    studio_prompt_id: Optional[str] = None


async def finalize_cancelled(writer: GuardedWriter, message_id: str, partial: str, keep_empty: bool = False) -> None:
    if partial.strip():
        await writer.update(message_id, content=partial + STOPPED_MARKER, streaming=False)
    elif keep_empty:
        await writer.update(message_id, content="", streaming=False, is_incomplete=True)
    else:
        await writer.remove(message_id)


class StreamingAnalysisClient:
    """Streams analysis text onto a conversation message"""

    def __init__(self, service: ServiceClient, time_manager: TimeManager = None):
        self.service = service
        self.time_manager = time_manager or TimeManager()
        self.logger = logger

    def build_request(self, job: StreamJob) -> AnalysisRequest:
        prompt = prefix_prompt(job.prompt, job.swing_context)
        budget = thinking_budget(
            job.settings.thinking_mode,
            job.has_video,
            estimate_text_tokens(prompt),
            len(job.history),
        )
        return AnalysisRequest(
            prompt=prompt,
            settings=job.settings,
            video_url=job.video_url,
            history_json=serialize_history(job.history, job.prompt),
            thinking_budget=budget,
        )

    async def run(
        self,
        job: StreamJob,
        writer: GuardedWriter,
        token: CancellationToken,
        set_stage: Optional[Callable[[ProgressStage], None]] = None,
    ) -> StreamResult:
        if set_stage:
            set_stage(ProgressStage.ANALYZING if job.has_video else ProgressStage.GENERATING)

        request = self.build_request(job)
        self.logger.debug(f"[GENERATE] Starting analysis stream for {job.message_id} (video={job.has_video})")
        start = self.time_manager.mark_query_time()
        self.logger.debug(f"[TIME] Since last query: {self.time_manager.elapsed_since_last()}")

        raw = ""
        visible = ""
        try:
            async for chunk in token.iterate(self.service.stream_analysis(request)):
                raw += chunk
                first = self.time_manager.mark_first_token()
                if first is not None:
                    self.logger.debug(f"[STREAMING] First token arrived after {first:.2f} seconds")
                visible = strip_stream_metadata(raw)
                # A stale session drops this write; keep draining the stream
                await writer.update(job.message_id, content=visible, streaming=True)
        except AnalysisCancelled:
            self.logger.info(f"[STREAMING] Cancelled after {len(visible)} chars")
            await finalize_cancelled(writer, job.message_id, visible, keep_empty=job.failure is FailurePolicy.MARK_INCOMPLETE)
            raise
        except Exception as e:
            self.logger.error(f"[STREAMING] Error: {type(e).__name__}: {e}")
            await self._apply_failure(job, writer)
            raise

        content, tags, metadata = finalize_stream_text(raw)
        duration = self.time_manager.measure_response(start, datetime.now())
        self.logger.info(f"[TIMING] Full response duration: {duration}")
        await writer.update(
            job.message_id,
            content=content,
            streaming=False,
            is_incomplete=False,
            result_tags=tags,
            stream_metadata=metadata,
            response_seconds=self.time_manager.last_response_time.total_seconds(),
        )
        if metadata:
            self.logger.debug(f"[STREAMING] Metadata: {metadata}")

        result = StreamResult(content=content, result_tags=tags, metadata=metadata)
        if job.has_video and job.studio_prompt:
            result.studio_prompt_id = await self._append_studio_prompt(job, writer)
        return result

    async def _apply_failure(self, job: StreamJob, writer: GuardedWriter) -> None:
        if job.failure is FailurePolicy.REMOVE:
            await writer.remove(job.message_id)
        elif job.failure is FailurePolicy.MARK_INCOMPLETE:
            await writer.update(job.message_id, streaming=False, is_incomplete=True)
        else:
            await writer.update(job.message_id, content=QUICK_ANALYSIS_ERROR, streaming=False, is_incomplete=True)

    async def _append_studio_prompt(self, job: StreamJob, writer: GuardedWriter) -> Optional[str]:
        await asyncio.sleep(STUDIO_PROMPT_DELAY_S)
        message = assistant_message(
            message_type=MessageType.TECHNIQUE_STUDIO_PROMPT,
            studio_prompt={
                "video_url": job.video_url,
                "task_id": job.task_id,
                "analysis_type": job.task_type.value if job.task_type else None,
            },
        )
        if await writer.append(message):
            return message.id
        return None
