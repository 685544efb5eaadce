"""
# core/chat_titles.py

Module Contract
- Purpose: Name chats. A heuristic title from the first user message, and a model-written title once a real video analysis has been produced.
- Inputs:
  - List[ConversationMessage], loading flag, TitleModel (optional), ConversationStore, SessionLockMap, is_current(session_id)
- Outputs:
  - generate_chat_title(messages) -> str
  - should_generate_title(messages, loading) -> bool
  - ChatTitleService.maybe_generate(session_id, messages, loading) -> Optional[str] (the title written, if any)
- Side effects:
  - set_title on the store, only while the session is still current.
"""
import re
from typing import Callable, List, Optional, Set

from config.app_config import TITLE_MAX_LENGTH
from core.conversation import ConversationMessage, MessageType, Role
from core.session_guard import SessionLockMap
from services.title_model import TitleModel
from storage.conversation_store import DEFAULT_TITLE, ConversationStore
from utils.logging_utils import get_logger, log_duration

logger = get_logger("chat_titles")

VIDEO_TITLE = "Video Analysis"
REPLACEABLE_TITLES = (DEFAULT_TITLE, VIDEO_TITLE)
SUBSTANTIAL_REPLY_CHARS = 200
EXCERPT_CHARS = 200

_FIRST_SENTENCE_RE = re.compile(r"^[^.!?]+[.!?]?")


def generate_chat_title(messages: List[ConversationMessage]) -> str:
    first_user = next((m for m in messages if m.role is Role.USER), None)
    if first_user is None:
        return DEFAULT_TITLE

    content = (first_user.content or "").strip()
    if first_user.has_video and not content:
        return VIDEO_TITLE
    if not content:
        return DEFAULT_TITLE

    match = _FIRST_SENTENCE_RE.match(content)
    if match and len(match.group(0)) <= 50:
        return match.group(0)

    if len(content) > 50:
        truncated = content[:47]
        last_space = truncated.rfind(" ")
        return (truncated[:last_space] if last_space > 20 else truncated) + "..."
    return content


def _is_real_analysis(message: ConversationMessage) -> bool:
    return (
        message.role is Role.ASSISTANT
        and not message.is_greeting
        and message.message_type not in (MessageType.ANALYSIS_OPTIONS, MessageType.CANDIDATE_RESPONSES)
        and len(message.content.strip()) > SUBSTANTIAL_REPLY_CHARS
        and not message.streaming
    )


def should_generate_title(messages: List[ConversationMessage], loading: bool) -> bool:
    """A user video plus a substantial finished reply, with nothing in flight."""
    if loading:
        return False
    has_video = any(m.role is Role.USER and m.has_video for m in messages)
    return has_video and any(_is_real_analysis(m) for m in messages)


def build_title_prompt(messages: List[ConversationMessage]) -> Optional[str]:
    first_user = next((m for m in messages if m.role is Role.USER), None)
    first_reply = next((m for m in messages if m.role is Role.ASSISTANT and m.content.strip()), None)
    if first_user is None or first_reply is None:
        return None

    user_excerpt = first_user.content.strip()[:EXCERPT_CHARS]
    reply_excerpt = first_reply.content.strip()[:EXCERPT_CHARS]
    if first_user.has_video and not user_excerpt:
        return (
            "Generate a concise, descriptive title (maximum 6 words) for this video analysis "
            "conversation. The title should include what was analyzed (e.g., \"Tennis serve "
            "technique analysis\" or \"Basketball shooting form review\"). Base it on the "
            f"assistant's response:\n\nAssistant: {reply_excerpt}\n\nTitle:"
        )
    return (
        "Generate a concise, descriptive title (maximum 6 words) for this conversation:"
        f"\n\nUser: {user_excerpt}\n\nAssistant: {reply_excerpt}\n\nTitle:"
    )


def cap_title(title: str, max_length: int = TITLE_MAX_LENGTH) -> str:
    title = title.strip().strip('"').strip()
    if len(title) > max_length:
        return title[:max_length - 3] + "..."
    return title


class ChatTitleService:
    """Write one model-generated title per chat"""

    def __init__(
        self,
        store: ConversationStore,
        locks: SessionLockMap,
        is_current: Callable[[str], bool],
        title_model: Optional[TitleModel] = None,
    ):
        self.store = store
        self.locks = locks
        self.is_current = is_current
        self.title_model = title_model
        self._done: Set[str] = set()

    @log_duration("Chat title")
    async def generate_title(self, messages: List[ConversationMessage]) -> str:
        prompt = build_title_prompt(messages)
        if prompt is None or self.title_model is None or not self.title_model.available:
            return generate_chat_title(messages)
        title = await self.title_model.generate_once(prompt)
        if not title:
            return generate_chat_title(messages)
        return cap_title(title)

    async def maybe_generate(
        self,
        session_id: str,
        messages: List[ConversationMessage],
        loading: bool = False,
    ) -> Optional[str]:
        if session_id in self._done or not should_generate_title(messages, loading):
            return None

        async with self.locks.hold(f"title:{session_id}", owner="chat_titles") as acquired:
            if not acquired:
                return None
            self._done.add(session_id)

            current = await self.store.get_title(session_id)
            if current not in REPLACEABLE_TITLES:
                logger.debug(f"[TITLE] Keeping existing title for {session_id}: {current!r}")
                return None

            title = await self.generate_title(messages)
            if not self.is_current(session_id):
                logger.debug(f"[TITLE] Session {session_id} no longer current, dropping title")
                return None
            await self.store.set_title(session_id, title)
            logger.info(f"[TITLE] {session_id} -> {title!r}")
            return title
