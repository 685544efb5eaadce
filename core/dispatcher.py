"""
# core/dispatcher.py

Module Contract
- Purpose: Decide what happens to a submission once its media reference is known, and run the second entry point when the user picks quick or pro.
- Inputs:
  - PipelineRun (prompt, settings, PreAnalysis, placeholder id, guard, token), resolved video URL
- Outputs:
  - decide(video_url, pre_analysis) -> DispatchDecision (pure)
  - dispatch(run, video_url): present options, or stream (creating a Task first on the silent technique path)
  - select_option(run, message_id, option): choice message, optional Task + library message, quick stream
  - respond_size_limit(run): canned explanation instead of uploading oversize files
- Side effects:
  - Task creation calls; message writes through the guard.
"""
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from config.app_config import (
    DEFAULT_VIDEO_PROMPT,
    LIBRARY_MESSAGE_DELAY_S,
    MAX_VIDEO_MB,
)
from core.cancellation import CancellationToken
from core.conversation import (
    AnalysisOption,
    AnalysisOptionsState,
    MessageType,
    PreAnalysis,
    ProgressStage,
    Role,
    TaskType,
    VideoAsset,
    assistant_message,
    user_message,
)
from core.coordinator import PipelineRun, RunOutcome
from core.errors import TaskCreationError, ValidationError
from core.session_guard import GuardedWriter
from core.streaming_client import FailurePolicy, StreamingAnalysisClient, StreamJob
from services.service_client import ServiceClient, TaskRequest
from utils.logging_utils import get_logger
from utils.video_utils import estimate_pro_analysis_time, exceeds_size_limit

logger = get_logger("dispatcher")

PRO_CHOICE_TEXT = "Let's go with the PRO Analysis!"
QUICK_CHOICE_TEXT = "I'll take the Free analysis."

TECHNIQUE_LIBRARY_MESSAGE = (
    "🎯 I've added this video to your **Library** (in the sidebar) under **Technique**. "
    "You can revisit it anytime!\n\nNow let me give you some instant feedback..."
)
STATISTICS_LIBRARY_MESSAGE = (
    "🎯 I've added this video to your **Library** (in the sidebar) for PRO Analysis. "
    "You can find the detailed results there in approximately **{estimated_time}**.\n\n"
    "In the meantime, let me give you some instant feedback..."
)

SIZE_LIMIT_MESSAGE = """## 📹 Video Size Issue

I can see you've uploaded a video that's **{size_mb:.1f} MB** in size. Unfortunately, that's quite large for me to process effectively - I work best with videos under **{limit_mb:.0f} MB**.

<details>
<summary>📊 Why This Matters</summary>

This size limitation helps ensure I can analyze your video thoroughly and provide you with detailed, accurate coaching insights. Larger files can cause processing issues and may not complete successfully.

</details>

<details>
<summary>💡 How to Fix This</summary>

**1. Trim the video**
- Focus on the most important moments or rallies you'd like me to review
- Even a 30-60 second clip can provide valuable insights!

**2. Compress the video**
- Use a video compression tool to reduce the file size while maintaining good quality

**3. Adjust media resolution**
- Change the media resolution setting to **Low** to process larger videos more efficiently

**4. Split into clips**
- Break your video into shorter segments and submit them separately

</details>

---

I'm here to help you improve, so please feel free to try again with a smaller file. 🎾"""


class DispatchKind(Enum):
    STREAM_TEXT = "stream_text"
    STREAM_MEDIA = "stream_media"
    PRESENT_OPTIONS = "present_options"


@dataclass(frozen=True)
class DispatchDecision:
    kind: DispatchKind
    auto_task: bool = False

    @property
    def streams(self) -> bool:
        return self.kind is not DispatchKind.PRESENT_OPTIONS


def decide(video_url: Optional[str], pre_analysis: Optional[PreAnalysis]) -> DispatchDecision:
    """Pure routing decision for a submission with its resolved media reference."""
    if not video_url:
        return DispatchDecision(DispatchKind.STREAM_TEXT)
    if pre_analysis is None:
        return DispatchDecision(DispatchKind.STREAM_MEDIA)
    if pre_analysis.offers_choice:
        return DispatchDecision(DispatchKind.PRESENT_OPTIONS)
    return DispatchDecision(DispatchKind.STREAM_MEDIA, auto_task=pre_analysis.wants_auto_task)


def library_message_text(pre_analysis: PreAnalysis) -> str:
    if pre_analysis.task_type is TaskType.TECHNIQUE:
        return TECHNIQUE_LIBRARY_MESSAGE
    return STATISTICS_LIBRARY_MESSAGE.format(
        estimated_time=estimate_pro_analysis_time(pre_analysis.duration_seconds)
    )


class AnalysisDispatcher:
    def __init__(self, service: ServiceClient, streaming_client: StreamingAnalysisClient, max_video_mb: float = MAX_VIDEO_MB):
        self.service = service
        self.streaming_client = streaming_client
        self.max_video_mb = max_video_mb

    # ------------------------------------------------------------------
    # First entry point
    # ------------------------------------------------------------------

    async def dispatch(self, run: PipelineRun, video_url: Optional[str]) -> DispatchDecision:
        decision = decide(video_url, run.pre_analysis)
        logger.info(f"[DISPATCH] {run.session_id}: {decision.kind.value} (auto_task={decision.auto_task})")

        if decision.kind is DispatchKind.PRESENT_OPTIONS:
            await self.present_options(run, video_url)
            run.outcome = RunOutcome.OPTIONS
            return decision

        task_type = None
        if decision.auto_task:
            run.task_id = await self.create_task(run.pre_analysis, video_url, run.token)
            task_type = run.pre_analysis.task_type if run.task_id else None

        job = StreamJob(
            message_id=run.assistant_id,
            prompt=run.prompt,
            settings=run.settings,
            video_url=video_url,
            history=run.history,
            task_id=run.task_id,
            task_type=task_type,
            failure=FailurePolicy.REMOVE,
            swing_context=run.swing_context,
        )
        await self.streaming_client.run(job, run.writer, run.token, run.set_stage)
        run.outcome = RunOutcome.COMPLETED
        return decision

    async def present_options(self, run: PipelineRun, video_url: str) -> None:
        """Turn the placeholder into a terminal quick/pro choice."""
        await run.writer.update(
            run.assistant_id,
            message_type=MessageType.ANALYSIS_OPTIONS,
            content="",
            analysis_options=AnalysisOptionsState(
                pre_analysis=run.pre_analysis,
                video_url=video_url,
                user_prompt=run.prompt,
            ),
            streaming=False,
        )

    async def create_task(
        self,
        pre_analysis: PreAnalysis,
        video_url: str,
        token: CancellationToken,
    ) -> Optional[str]:
        """Create the durable Task; failures are logged and yield None."""
        request = TaskRequest(
            task_type=pre_analysis.task_type,
            sport=pre_analysis.sport,
            video_url=video_url,
            thumbnail_url=pre_analysis.thumbnail_ref,
            video_length=pre_analysis.duration_seconds,
        )
        try:
            return await token.run(self.service.create_task(request))
        except TaskCreationError as e:
            logger.error(f"[DISPATCH] Failed to create {request.task_type.value} task: {type(e).__name__}: {e}")
            return None

    # ------------------------------------------------------------------
    # Size limit
    # ------------------------------------------------------------------

    def exceeds_size_limit(self, video: Optional[VideoAsset]) -> bool:
        if video is None or not video.is_local:
            return False
        return exceeds_size_limit(video.content_type, video.size_bytes, self.max_video_mb)

    async def respond_size_limit(self, run: PipelineRun) -> None:
        logger.info(f"[DISPATCH] {run.session_id}: video is {run.video.size_mb:.1f} MB, over {self.max_video_mb} MB")
        run.set_stage(ProgressStage.GENERATING)
        text = SIZE_LIMIT_MESSAGE.format(size_mb=run.video.size_mb, limit_mb=self.max_video_mb)
        await run.writer.reveal(run.assistant_id, text)
        run.outcome = RunOutcome.SIZE_LIMIT

    # ------------------------------------------------------------------
    # Second entry point
    # ------------------------------------------------------------------

    async def select_option(self, run: PipelineRun, message_id: str, option: AnalysisOption) -> None:
        writer = run.writer
        message = await writer.get(message_id)
        if message is None or message.analysis_options is None:
            raise ValidationError(f"Message {message_id} has no analysis options")
        options = message.analysis_options
        if options.selected_option is not None:
            raise ValidationError(f"Option already selected on {message_id}: {options.selected_option.value}")

        logger.info(f"[DISPATCH] {run.session_id}: {option.value} selected on {message_id}")
        await writer.append(user_message(PRO_CHOICE_TEXT if option is AnalysisOption.PRO else QUICK_CHOICE_TEXT))
        await writer.update(message_id, analysis_options=options.select(option))

        video_url, prompt = options.video_url, options.user_prompt
        if not video_url:
            video_url, prompt = await self._find_video_reference(writer, message_id, prompt)
        if not video_url:
            logger.error(f"[DISPATCH] Could not find video URL for {message_id}; resetting options")
            await writer.update(message_id, analysis_options=options.reset())

        pre = options.pre_analysis
        task_type = None
        if option is AnalysisOption.PRO and video_url:
            run.task_id = await self.create_task(pre, video_url, run.token)
            if run.task_id:
                task_type = pre.task_type
                await writer.append(assistant_message(library_message_text(pre)))
                await asyncio.sleep(LIBRARY_MESSAGE_DELAY_S)

        placeholder = assistant_message(streaming=True)
        await writer.append(placeholder)
        run.assistant_id = placeholder.id
        run.prompt = prompt or DEFAULT_VIDEO_PROMPT
        run.video_url = video_url

        job = StreamJob(
            message_id=placeholder.id,
            prompt=run.prompt,
            settings=run.settings.with_domain(pre.sport),
            video_url=video_url,
            task_id=run.task_id,
            task_type=task_type,
            failure=FailurePolicy.SHOW_ERROR,
        )
        await self.streaming_client.run(job, writer, run.token, run.set_stage)
        run.outcome = RunOutcome.COMPLETED

    async def _find_video_reference(
        self,
        writer: GuardedWriter,
        message_id: str,
        prompt: str,
    ) -> Tuple[Optional[str], str]:
        """Search the user turn just before the options message."""
        history = await writer.load_history()
        index = next((i for i, m in enumerate(history) if m.id == message_id), -1)
        video_url = None
        for message in reversed(history[:max(index, 0)]):
            if message.role is Role.ASSISTANT:
                break
            if message.video_ref and not video_url:
                video_url = message.video_ref
            if message.content.strip() and not prompt:
                prompt = message.content
        return video_url, prompt
