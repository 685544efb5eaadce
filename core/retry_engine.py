"""
# core/retry_engine.py

Module Contract
- Purpose: Regenerate a finished assistant message in place, from the conversation exactly as it stood before that turn.
- Inputs:
  - SessionState, target assistant message id, Settings
- Outputs:
  - retry(state, message_id, settings) -> Optional[PipelineRun] (None = refused)
- Behavior:
  - Refuses while a run or another retry is active, or when no prompt/video precedes the target.
  - History = persisted log before the target, minus the contiguous user turn that produced it.
  - Service failure marks the message incomplete and is published via on_error; nothing is ever deleted.
- Side effects:
  - Message writes through the guard; SessionState.retrying_id for the duration.
"""
from typing import List, Optional, Tuple

from core.conversation import ConversationMessage, ProgressStage, Role, Settings
from core.coordinator import PipelineRun, RequestCoordinator, RunOutcome, SessionState
from core.errors import AnalysisCancelled, ServiceError
from core.streaming_client import FailurePolicy, StreamingAnalysisClient, StreamJob
from utils.logging_utils import get_logger, log_and_time

logger = get_logger("retry_engine")


def find_retry_source(messages: List[ConversationMessage], index: int) -> Tuple[str, Optional[str]]:
    """Prompt text and video reference from the user turn before ``index``."""
    prompt, video_url = "", None
    for message in reversed(messages[:index]):
        if message.role is Role.ASSISTANT:
            break
        if message.content.strip() and not prompt:
            prompt = message.content
        if message.video_ref and not video_url:
            video_url = message.video_ref
    return prompt, video_url


def history_before_turn(messages: List[ConversationMessage], index: int) -> List[ConversationMessage]:
    """Everything strictly before the non-assistant run that precedes ``index``."""
    start = index
    while start > 0 and messages[start - 1].role is not Role.ASSISTANT:
        start -= 1
    return list(messages[:start])


class RetryEngine:
    def __init__(self, coordinator: RequestCoordinator, streaming_client: StreamingAnalysisClient):
        self.coordinator = coordinator
        self.streaming_client = streaming_client

    @log_and_time("Retry")
    async def retry(self, state: SessionState, message_id: str, settings: Settings) -> Optional[PipelineRun]:
        if state.loading or state.retrying_id:
            logger.info(f"[RETRY] Refused {message_id}: run or retry already active")
            return None

        writer = self.coordinator.guard.guard(state.session_id)
        messages = await writer.load_history()
        index = next((i for i, m in enumerate(messages) if m.id == message_id), -1)
        if index == -1 or messages[index].role is not Role.ASSISTANT:
            logger.error(f"[RETRY] Cannot find assistant message {message_id} to retry")
            return None

        prompt, video_url = find_retry_source(messages, index)
        if not prompt and not video_url:
            logger.error(f"[RETRY] No user message to retry {message_id} from")
            return None

        run = self.coordinator.open_run(state, settings, "retry")
        if run is None:
            return None
        state.retrying_id = message_id
        run.assistant_id = message_id
        run.prompt = prompt
        run.video_url = video_url
        run.history = history_before_turn(messages, index)
        logger.info(f"[RETRY] {message_id}: video={'yes' if video_url else 'no'} history={len(run.history)}")

        try:
            await run.writer.update(
                message_id,
                content="",
                is_incomplete=False,
                streaming=True,
                result_tags={},
                stream_metadata={},
                response_seconds=None,
            )
            run.set_stage(ProgressStage.PROCESSING if video_url else ProgressStage.GENERATING)

            job = StreamJob(
                message_id=message_id,
                prompt=prompt,
                settings=settings,
                video_url=video_url,
                history=run.history,
                studio_prompt=False,
                failure=FailurePolicy.MARK_INCOMPLETE,
            )
            await self.streaming_client.run(job, run.writer, run.token, run.set_stage)
            run.outcome = RunOutcome.COMPLETED
        except AnalysisCancelled:
            run.outcome = RunOutcome.CANCELLED
            logger.info(f"[RETRY] {message_id} cancelled")
        except ServiceError as e:
            run.outcome = RunOutcome.FAILED
            run.error = str(e)
            logger.error(f"[RETRY] {message_id} failed: {type(e).__name__}: {e}")
            if run.writer.active:
                state.listeners.on_error(state.session_id, run.error)
        finally:
            state.finish(run.token)
        return run
