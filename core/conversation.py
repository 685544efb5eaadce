"""
# core/conversation.py

Module Contract
- Purpose: Data model shared by every pipeline stage: messages, media assets, pre-analysis signals, option state, settings and progress stages.
- Outputs:
  - Dataclasses with to_dict()/from_dict() for JSON persistence
  - Enums with string values (Role, MessageType, ProgressStage, AnalysisOption, TaskType, ThinkingMode, MediaResolution)
- Side effects:
  - None.
"""
import asyncio
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, BinaryIO, Dict, List, Optional, Union

from utils.video_utils import is_racket_sport


class Role(Enum):
    USER = "user"
    ASSISTANT = "assistant"


class MessageType(Enum):
    PLAIN = "plain"
    ANALYSIS_OPTIONS = "analysis_options"
    TECHNIQUE_RESULT = "technique_result"
    TECHNIQUE_STUDIO_PROMPT = "technique_studio_prompt"
    CANDIDATE_RESPONSES = "candidate_responses"


class ProgressStage(Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    ANALYZING = "analyzing"
    GENERATING = "generating"


class AnalysisOption(Enum):
    QUICK = "quick"
    PRO = "pro"


class TaskType(Enum):
    STATISTICS = "statistics"
    TECHNIQUE = "technique"


class ThinkingMode(Enum):
    FAST = "fast"
    DEEP = "deep"


class MediaResolution(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def new_message_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Settings:
    """Per-request analysis settings"""
    thinking_mode: ThinkingMode = ThinkingMode.FAST
    media_resolution: MediaResolution = MediaResolution.MEDIUM
    domain_expertise: str = "all-sports"

    def with_domain(self, domain: Optional[str]) -> "Settings":
        return Settings(self.thinking_mode, self.media_resolution, domain or self.domain_expertise)


@dataclass
class PreAnalysis:
    """Cheap client-side eligibility signal computed before submission"""
    sport: str
    duration_seconds: Optional[float] = None
    is_pro_eligible: bool = False
    is_technique_eligible: bool = False
    thumbnail_ref: Optional[str] = None

    @property
    def offers_choice(self) -> bool:
        """Pro-eligible, or technique-eligible on a racket sport."""
        return self.is_pro_eligible or (self.is_technique_eligible and is_racket_sport(self.sport))

    @property
    def wants_auto_task(self) -> bool:
        """Technique-eligible on a sport without the choice card."""
        return self.is_technique_eligible and not is_racket_sport(self.sport) and not self.is_pro_eligible

    @property
    def task_type(self) -> TaskType:
        if self.is_technique_eligible and not self.is_pro_eligible:
            return TaskType.TECHNIQUE
        return TaskType.STATISTICS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sport": self.sport,
            "duration_seconds": self.duration_seconds,
            "is_pro_eligible": self.is_pro_eligible,
            "is_technique_eligible": self.is_technique_eligible,
            "thumbnail_ref": self.thumbnail_ref,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PreAnalysis":
        return cls(
            sport=data.get("sport", ""),
            duration_seconds=data.get("duration_seconds"),
            is_pro_eligible=bool(data.get("is_pro_eligible", False)),
            is_technique_eligible=bool(data.get("is_technique_eligible", False)),
            thumbnail_ref=data.get("thumbnail_ref"),
        )


@dataclass
class AnalysisOptionsState:
    """Quick/pro choice attached to exactly one assistant message"""
    pre_analysis: PreAnalysis
    video_url: Optional[str]
    user_prompt: str
    selected_option: Optional[AnalysisOption] = None

    def select(self, option: AnalysisOption) -> "AnalysisOptionsState":
        if self.selected_option is not None:
            raise ValueError(f"Option already selected: {self.selected_option.value}")
        return AnalysisOptionsState(self.pre_analysis, self.video_url, self.user_prompt, option)

    def reset(self) -> "AnalysisOptionsState":
        return AnalysisOptionsState(self.pre_analysis, self.video_url, self.user_prompt, None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pre_analysis": self.pre_analysis.to_dict(),
            "video_url": self.video_url,
            "user_prompt": self.user_prompt,
            "selected_option": self.selected_option.value if self.selected_option else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisOptionsState":
        selected = data.get("selected_option")
        return cls(
            pre_analysis=PreAnalysis.from_dict(data.get("pre_analysis") or {}),
            video_url=data.get("video_url"),
            user_prompt=data.get("user_prompt", ""),
            selected_option=AnalysisOption(selected) if selected else None,
        )


@dataclass
class VideoAsset:
    """Transient media for a single submission"""
    local_handle: Optional[Union[str, Path, bytes]] = None
    remote_url: Optional[str] = None
    storage_key: Optional[str] = None
    preview_handle: Optional[str] = None
    needs_conversion: bool = False
    filename: Optional[str] = None
    content_type: str = "video/mp4"
    size_bytes: Optional[int] = None

    def __post_init__(self):
        if self.size_bytes is None and self.local_handle is not None:
            if isinstance(self.local_handle, bytes):
                self.size_bytes = len(self.local_handle)
            elif Path(self.local_handle).exists():
                self.size_bytes = Path(self.local_handle).stat().st_size
        if self.filename is None and isinstance(self.local_handle, (str, Path)):
            self.filename = Path(self.local_handle).name

    @property
    def is_local(self) -> bool:
        return self.local_handle is not None

    @property
    def size_mb(self) -> float:
        return (self.size_bytes or 0) / (1024 * 1024)

    async def aiter_chunks(self, chunk_size: int) -> AsyncIterator[bytes]:
        """Read the local video in chunks without blocking the event loop."""
        if isinstance(self.local_handle, bytes):
            for offset in range(0, len(self.local_handle), chunk_size):
                yield self.local_handle[offset:offset + chunk_size]
            return
        f = await asyncio.to_thread(open, self.local_handle, "rb")
        try:
            while True:
                chunk = await asyncio.to_thread(f.read, chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            await asyncio.to_thread(f.close)

    async def open_for_upload(self) -> Union[bytes, BinaryIO]:
        """In-memory bytes as-is, or the file opened off the event loop. The caller closes it."""
        if isinstance(self.local_handle, bytes):
            return self.local_handle
        return await asyncio.to_thread(open, self.local_handle, "rb")


@dataclass
class ConversationMessage:
    """One entry in the persisted conversation log"""
    id: str
    role: Role
    content: str = ""
    streaming: bool = False
    message_type: MessageType = MessageType.PLAIN
    video_ref: Optional[str] = None
    video_key: Optional[str] = None
    preview_handle: Optional[str] = None
    thumbnail_url: Optional[str] = None
    analysis_options: Optional[AnalysisOptionsState] = None
    result_tags: Dict[str, Any] = field(default_factory=dict)
    stream_metadata: Dict[str, Any] = field(default_factory=dict)
    studio_prompt: Optional[Dict[str, Any]] = None
    candidate_options: List[str] = field(default_factory=list)
    candidate_selected: Optional[str] = None
    vision_result: Optional[Dict[str, Any]] = None
    is_greeting: bool = False
    is_incomplete: bool = False
    input_tokens: Optional[int] = None
    response_seconds: Optional[float] = None
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def has_video(self) -> bool:
        return bool(self.video_ref or self.video_key or self.preview_handle)

    def apply(self, partial: Dict[str, Any]) -> None:
        """Apply a partial update in place; unknown keys are an error."""
        known = {f.name for f in fields(self)}
        for key, value in partial.items():
            if key not in known or key == "id":
                raise KeyError(f"Cannot update field '{key}' on ConversationMessage")
            setattr(self, key, value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "streaming": self.streaming,
            "message_type": self.message_type.value,
            "video_ref": self.video_ref,
            "video_key": self.video_key,
            "preview_handle": self.preview_handle,
            "thumbnail_url": self.thumbnail_url,
            "analysis_options": self.analysis_options.to_dict() if self.analysis_options else None,
            "result_tags": self.result_tags,
            "stream_metadata": self.stream_metadata,
            "studio_prompt": self.studio_prompt,
            "candidate_options": list(self.candidate_options),
            "candidate_selected": self.candidate_selected,
            "vision_result": self.vision_result,
            "is_greeting": self.is_greeting,
            "is_incomplete": self.is_incomplete,
            "input_tokens": self.input_tokens,
            "response_seconds": self.response_seconds,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationMessage":
        options = data.get("analysis_options")
        created = data.get("created_at")
        return cls(
            id=data["id"],
            role=Role(data.get("role", "user")),
            content=data.get("content", ""),
            streaming=bool(data.get("streaming", False)),
            message_type=MessageType(data.get("message_type") or "plain"),
            video_ref=data.get("video_ref"),
            video_key=data.get("video_key"),
            preview_handle=data.get("preview_handle"),
            thumbnail_url=data.get("thumbnail_url"),
            analysis_options=AnalysisOptionsState.from_dict(options) if options else None,
            result_tags=data.get("result_tags") or {},
            stream_metadata=data.get("stream_metadata") or {},
            studio_prompt=data.get("studio_prompt"),
            candidate_options=list(data.get("candidate_options") or []),
            candidate_selected=data.get("candidate_selected"),
            vision_result=data.get("vision_result"),
            is_greeting=bool(data.get("is_greeting", False)),
            is_incomplete=bool(data.get("is_incomplete", False)),
            input_tokens=data.get("input_tokens"),
            response_seconds=data.get("response_seconds"),
            created_at=datetime.fromisoformat(created) if isinstance(created, str) else datetime.now(),
        )


def user_message(content: str, **extra) -> ConversationMessage:
    return ConversationMessage(id=new_message_id(), role=Role.USER, content=content, **extra)


def assistant_message(content: str = "", streaming: bool = False, **extra) -> ConversationMessage:
    return ConversationMessage(id=new_message_id(), role=Role.ASSISTANT, content=content, streaming=streaming, **extra)
