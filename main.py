"""
# main.py

Module Contract
- Purpose: Command-line entry point. Builds the orchestrator stack over the JSON conversation store and runs one action.
- Inputs:
  - `ask PROMPT [--video PATH | --video-url URL] [--session ID] [--deep] [--resolution low|medium|high] [--sport NAME]`
  - `retry --session ID --message ID`
  - `history --session ID`
  - `sessions`
  - Environment/config via config/app_config.py (API base URL and token, conversation dir, title model)
- Outputs:
  - Streams the assistant reply to stdout as it is written to the conversation log; progress and errors to stderr.
- Key functions:
  - build_orchestrator() -> AnalysisOrchestrator wired with ServiceClient, TitleModel and a ConsoleEchoStore
  - run_ask(), run_retry(), show_history()
- Side effects:
  - Network I/O to the analysis services; writes conversation JSON files and the debug log.
"""
import argparse
import asyncio
import signal
import sys
import uuid
from typing import Dict, Optional

from config.app_config import APP_NAME, CONVERSATION_DIR, LOG_FILE, LOG_LEVEL
from core.conversation import (
    MediaResolution,
    MessageType,
    PreAnalysis,
    ProgressStage,
    Role,
    Settings,
    ThinkingMode,
    VideoAsset,
)
from core.coordinator import PipelineListeners, RunOutcome
from core.orchestrator import AnalysisOrchestrator
from services.service_client import ServiceClient
from services.title_model import TitleModel
from storage.conversation_store import JsonConversationStore
from utils.logging_utils import configure_logging, get_logger
from utils.video_utils import detect_video_url

logger = get_logger("main")

CONTENT_TYPES = {
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".webm": "video/webm",
    ".avi": "video/x-msvideo",
    ".mkv": "video/x-matroska",
}


class ConsoleEchoStore(JsonConversationStore):
    """JSON store that echoes streaming assistant text to stdout as it grows."""

    def __init__(self, directory: str = None):
        super().__init__(directory)
        self._printed: Dict[str, int] = {}

    async def update_message(self, session_id, message_id, partial):
        updated = await super().update_message(session_id, message_id, partial)
        content = partial.get("content")
        if updated and content is not None:
            printed = self._printed.get(message_id, 0)
            if content.startswith(content[:printed]) and len(content) > printed:
                sys.stdout.write(content[printed:])
                sys.stdout.flush()
            self._printed[message_id] = len(content)
            if partial.get("streaming") is False:
                sys.stdout.write("\n")
        return updated


def _print_progress(session_id: str, stage: ProgressStage, percent: float) -> None:
    if stage is ProgressStage.UPLOADING:
        print(f"[{stage.value}] {percent:.0f}%", file=sys.stderr)
    elif stage is not ProgressStage.IDLE:
        print(f"[{stage.value}]", file=sys.stderr)


def _print_error(session_id: str, message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)


def build_orchestrator(settings: Optional[Settings] = None) -> AnalysisOrchestrator:
    """Builds and returns a configured orchestrator"""
    store = ConsoleEchoStore(CONVERSATION_DIR)
    listeners = PipelineListeners(on_progress=_print_progress, on_error=_print_error)
    return AnalysisOrchestrator(
        store=store,
        service=ServiceClient(),
        title_model=TitleModel(),
        settings=settings,
        listeners=listeners,
    )


def _video_asset(path: str) -> VideoAsset:
    suffix = "." + path.rsplit(".", 1)[-1].lower() if "." in path else ""
    return VideoAsset(local_handle=path, content_type=CONTENT_TYPES.get(suffix, "video/mp4"))


async def run_ask(args) -> int:
    settings = Settings(
        thinking_mode=ThinkingMode.DEEP if args.deep else ThinkingMode.FAST,
        media_resolution=MediaResolution(args.resolution),
        domain_expertise=args.sport or "all-sports",
    )
    orchestrator = build_orchestrator(settings)
    session_id = args.session or uuid.uuid4().hex[:12]
    orchestrator.switch_session(session_id)
    print(f"{APP_NAME} session: {session_id}", file=sys.stderr)

    video = _video_asset(args.video) if args.video else None
    video_url = args.video_url or (None if video else detect_video_url(args.prompt))
    pre_analysis = PreAnalysis(sport=args.sport) if args.sport and (video or video_url) else None

    loop = asyncio.get_running_loop()
    handles_sigint = True
    try:
        # Ctrl+C stops the stream and keeps the partial reply
        loop.add_signal_handler(signal.SIGINT, orchestrator.stop, session_id)
    except NotImplementedError:
        handles_sigint = False
        logger.debug("[CLI] Signal handlers unavailable; Ctrl+C aborts immediately")

    try:
        run = await orchestrator.submit(
            session_id,
            args.prompt,
            video=video,
            video_url=video_url,
            pre_analysis=pre_analysis,
        )
    finally:
        if handles_sigint:
            loop.remove_signal_handler(signal.SIGINT)
        await orchestrator.aclose()

    if run is None:
        print("Nothing to do: empty prompt and no video.", file=sys.stderr)
        return 1
    if run.outcome is RunOutcome.OPTIONS:
        print("Analysis options offered; choose quick or pro from the chat.", file=sys.stderr)
    print(f"[{run.outcome.value}] message {run.assistant_id}", file=sys.stderr)
    return 0 if run.error is None else 2


async def run_retry(args) -> int:
    orchestrator = build_orchestrator()
    orchestrator.switch_session(args.session)
    try:
        run = await orchestrator.retry(args.session, args.message)
    finally:
        await orchestrator.aclose()
    if run is None:
        print(f"Could not retry message {args.message}", file=sys.stderr)
        return 1
    return 0 if run.error is None else 2


async def show_history(args) -> int:
    store = JsonConversationStore(CONVERSATION_DIR)
    print(f"# {await store.get_title(args.session)}")
    for message in await store.load_history(args.session):
        label = "USER" if message.role is Role.USER else "ASSISTANT"
        if message.message_type is not MessageType.PLAIN:
            label += f" ({message.message_type.value})"
        print(f"\n[{label}] {message.id}")
        if message.video_ref:
            print(f"  video: {message.video_ref}")
        if message.content:
            print(message.content)
        if message.is_incomplete:
            print("  (incomplete)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Stream sports video analysis from the command line.")
    sub = parser.add_subparsers(dest="command", required=True)

    ask = sub.add_parser("ask", help="Submit a prompt, optionally with a video")
    ask.add_argument("prompt", nargs="?", default="")
    media = ask.add_mutually_exclusive_group()
    media.add_argument("--video", help="Local video file to upload")
    media.add_argument("--video-url", help="Already-hosted video URL")
    ask.add_argument("--session", help="Conversation id (new one if omitted)")
    ask.add_argument("--deep", action="store_true", help="Use deep thinking mode")
    ask.add_argument("--resolution", choices=[r.value for r in MediaResolution], default="medium")
    ask.add_argument("--sport", help="Sport shown in the video")

    retry = sub.add_parser("retry", help="Regenerate an assistant message")
    retry.add_argument("--session", required=True)
    retry.add_argument("--message", required=True)

    history = sub.add_parser("history", help="Print a conversation")
    history.add_argument("--session", required=True)

    sub.add_parser("sessions", help="List saved conversations")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level=LOG_LEVEL, file_path=LOG_FILE, console_level="WARNING")

    if args.command == "sessions":
        for session_id in JsonConversationStore(CONVERSATION_DIR).list_sessions():
            print(session_id)
        return 0

    handlers = {"ask": run_ask, "retry": run_retry, "history": show_history}
    try:
        return asyncio.run(handlers[args.command](args))
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
