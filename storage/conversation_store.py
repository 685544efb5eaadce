# storage/conversation_store.py
"""
Persisted conversation log.

The pipeline only depends on ConversationStore's read/write contract:
load_history, append_message, update_message, remove_message (plus title
get/set for chat titles). Two implementations ship: a JSON-file store (one
file per session, atomic save) and an in-memory store used by tests and
short-lived CLI sessions.
"""
import copy
import json
import os
import re
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.conversation import ConversationMessage
from utils.logging_utils import get_logger, log_and_time

logger = get_logger("conversation_store")

DEFAULT_TITLE = "New Chat"
_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class ConversationStore(ABC):
    @abstractmethod
    async def load_history(self, session_id: str) -> List[ConversationMessage]:
        """Ordered copies of every message in the session."""

    @abstractmethod
    async def append_message(self, session_id: str, message: ConversationMessage) -> None:
        """Append a message to the end of the session log."""

    @abstractmethod
    async def update_message(self, session_id: str, message_id: str, partial: Dict[str, Any]) -> bool:
        """Apply a partial update; False if the message does not exist."""

    @abstractmethod
    async def remove_message(self, session_id: str, message_id: str) -> bool:
        """Remove a message; False if it does not exist."""

    @abstractmethod
    async def get_title(self, session_id: str) -> str:
        """Current chat title."""

    @abstractmethod
    async def set_title(self, session_id: str, title: str) -> None:
        """Replace the chat title."""

    async def get_message(self, session_id: str, message_id: str) -> Optional[ConversationMessage]:
        for message in await self.load_history(session_id):
            if message.id == message_id:
                return message
        return None


class _Session:
    def __init__(self, title: str = DEFAULT_TITLE, messages: Optional[List[ConversationMessage]] = None):
        self.title = title
        self.messages: List[ConversationMessage] = messages or []

    def find(self, message_id: str) -> Optional[ConversationMessage]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None


class InMemoryConversationStore(ConversationStore):
    """Process-local store; nothing survives a restart"""

    def __init__(self):
        self._sessions: Dict[str, _Session] = {}

    def _session(self, session_id: str) -> _Session:
        return self._sessions.setdefault(session_id, _Session())

    def _persist(self, session_id: str) -> None:
        """Hook for subclasses that write through to disk."""

    async def load_history(self, session_id: str) -> List[ConversationMessage]:
        return copy.deepcopy(self._session(session_id).messages)

    async def append_message(self, session_id: str, message: ConversationMessage) -> None:
        session = self._session(session_id)
        if session.find(message.id) is not None:
            raise ValueError(f"Duplicate message id {message.id} in session {session_id}")
        session.messages.append(copy.deepcopy(message))
        self._persist(session_id)

    async def update_message(self, session_id: str, message_id: str, partial: Dict[str, Any]) -> bool:
        message = self._session(session_id).find(message_id)
        if message is None:
            logger.debug(f"[STORE] update on missing message {message_id} ({session_id})")
            return False
        message.apply(copy.deepcopy(partial))
        self._persist(session_id)
        return True

    async def remove_message(self, session_id: str, message_id: str) -> bool:
        session = self._session(session_id)
        message = session.find(message_id)
        if message is None:
            return False
        session.messages.remove(message)
        self._persist(session_id)
        return True

    async def get_title(self, session_id: str) -> str:
        return self._session(session_id).title

    async def set_title(self, session_id: str, title: str) -> None:
        self._session(session_id).title = title
        self._persist(session_id)


class JsonConversationStore(InMemoryConversationStore):
    """One JSON file per session under ``directory``; saves are atomic"""

    def __init__(self, directory: str = None):
        super().__init__()
        if directory is None:
            from config.app_config import CONVERSATION_DIR
            directory = CONVERSATION_DIR
        self.directory = directory
        os.makedirs(self.directory, exist_ok=True)
        logger.info(f"[ConversationStore] Using directory: {self.directory}")

    def _path(self, session_id: str) -> str:
        if not _SESSION_ID_RE.match(session_id or "") or session_id in (".", ".."):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return os.path.join(self.directory, f"{session_id}.json")

    def _session(self, session_id: str) -> _Session:
        if session_id not in self._sessions:
            self._sessions[session_id] = self._load(session_id)
        return self._sessions[session_id]

    @log_and_time("Load Conversation")
    def _load(self, session_id: str) -> _Session:
        path = self._path(session_id)
        if not os.path.exists(path):
            return _Session()
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            messages = [ConversationMessage.from_dict(m) for m in data.get("messages", [])]
            logger.debug(f"[ConversationStore] Loaded {len(messages)} messages from {path}")
            return _Session(title=data.get("title") or DEFAULT_TITLE, messages=messages)
        except (OSError, ValueError, KeyError) as e:
            logger.error(f"[ConversationStore] Error loading {path}: {e}")
            return _Session()

    @log_and_time("Save Conversation")
    def _persist(self, session_id: str) -> None:
        session = self._sessions[session_id]
        path = self._path(session_id)
        tmp_file = path + ".tmp"
        payload = {
            "session_id": session_id,
            "title": session.title,
            "updated_at": datetime.now().isoformat(),
            "messages": [m.to_dict() for m in session.messages],
        }
        with open(tmp_file, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp_file, path)
        logger.debug(f"[ConversationStore] Saved {len(session.messages)} messages to {path}")

    def list_sessions(self) -> List[str]:
        return sorted(
            name[:-5] for name in os.listdir(self.directory)
            if name.endswith(".json")
        )
