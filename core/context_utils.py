"""
# core/context_utils.py

Module Contract
- Purpose: Build the prior-turn context sent with an analysis request: choose a token budget by query complexity, trim history newest-first, and format it as user/model turns.
- Inputs:
  - List[ConversationMessage] (already loaded from the persisted log), current prompt text
- Outputs:
  - get_conversation_context(...) -> List[{"role": "user"|"model", "parts": [{"text": ...}]}]
  - serialize_history(...) -> Optional[str] JSON within the payload limit
  - thinking_budget(...) -> int
- Behavior:
  - Simple follow-ups ("what about...", short questions) get SIMPLE_FOLLOWUP_TOKENS over the last N turns; everything else gets MAX_CONTEXT_TOKENS.
  - A trailing assistant placeholder (empty or still streaming) is never sent.
  - Leading model turns are dropped so the context always starts with the user.
- Side effects:
  - None (logging only).
"""
import json
import re
from typing import Dict, List, Optional

from config.app_config import (
    FALLBACK_CONTEXT_TOKENS,
    MAX_CONTEXT_TOKENS,
    MAX_HISTORY_BYTES,
    SIMPLE_FOLLOWUP_MAX_TURNS,
    SIMPLE_FOLLOWUP_TOKENS,
)
from core.conversation import ConversationMessage, Role, ThinkingMode
from utils.logging_utils import get_logger
from utils.video_utils import estimate_text_tokens

logger = get_logger("context_utils")

VIDEO_PLACEHOLDER = "[User shared a video for analysis]"

SIMPLE_FOLLOWUP_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    # Referential
    r"^what about",
    r"^how about",
    r"^and (what|how|the)",
    r"^also",
    r"^tell me more",
    r"^can you explain",
    r"^explain (that|this|more)",
    r"^more (on|about|details)",
    # Clarifying
    r"^(can|could) you (clarify|elaborate)",
    r"^what (do you mean|does that mean)",
    r"^(sorry|thanks),? (but |and )?(what|how|can)",
    # Specifics
    r"^(specifically|in particular)",
    r"^for (that|this|the)",
    r"^regarding (that|this|the)",
    # Acknowledgement + question
    r"^(ok|okay|got it|i see|thanks)[,.]?\s*(what|how|can|and|but|so)",
    # Pronoun-led
    r"^(it|that|this|they|those)\s+(is|are|was|were|looks?|seems?)",
)]

COMPLEX_QUERY_PATTERNS = [re.compile(p, re.IGNORECASE) for p in (
    r"\b(compare|comparison|versus|vs\.?|difference between)\b",
    r"\b(overall|throughout|all of|each of|entire|whole)\b",
    r"\b(summarize|summary|recap)\b",
    r"\b(first|second|third|earlier|previous|before)\b",
    r"\b(analyze|analyse|review|evaluate)\b",
)]


def is_simple_followup(prompt: str, previous: List[ConversationMessage]) -> bool:
    text = (prompt or "").strip()
    has_history = len(previous) >= 2

    if any(p.search(text) for p in COMPLEX_QUERY_PATTERNS):
        return False
    if any(p.search(text) for p in SIMPLE_FOLLOWUP_PATTERNS):
        return True
    if has_history and len(text.split()) <= 8 and text.endswith("?"):
        return True
    if has_history and estimate_text_tokens(text) < 30:
        return True
    return False


def get_query_complexity(prompt: str, previous: List[ConversationMessage]) -> str:
    return "simple" if is_simple_followup(prompt, previous) else "complex"


def trim_messages_by_tokens(
    messages: List[ConversationMessage],
    max_tokens: int = MAX_CONTEXT_TOKENS,
    max_messages: Optional[int] = None,
) -> List[ConversationMessage]:
    """Keep the newest messages that fit the budget (at least one), oldest first."""
    trimmed: List[ConversationMessage] = []
    total = 0
    for message in reversed(messages):
        if max_messages is not None and len(trimmed) >= max_messages:
            break
        cost = estimate_text_tokens(message.content)
        if total + cost > max_tokens and trimmed:
            break
        trimmed.append(message)
        total += cost
    trimmed.reverse()
    return trimmed


def trim_messages_for_simple_followup(messages: List[ConversationMessage]) -> List[ConversationMessage]:
    return trim_messages_by_tokens(messages, SIMPLE_FOLLOWUP_TOKENS, SIMPLE_FOLLOWUP_MAX_TURNS * 2)


def format_messages_for_context(messages: List[ConversationMessage]) -> List[Dict]:
    result = []
    for message in messages:
        content = (message.content or "").strip()
        if message.role is Role.USER and not content and message.has_video:
            content = VIDEO_PLACEHOLDER
        if not content:
            continue
        result.append({
            "role": "user" if message.role is Role.USER else "model",
            "parts": [{"text": content}],
        })

    # Context must open with a user turn
    while result and result[0]["role"] == "model":
        result.pop(0)
    return result


def _without_placeholder(messages: List[ConversationMessage]) -> List[ConversationMessage]:
    if not messages:
        return []
    last = messages[-1]
    if last.role is Role.ASSISTANT and (not last.content.strip() or last.streaming):
        return list(messages[:-1])
    return list(messages)


def get_conversation_context(
    messages: List[ConversationMessage],
    current_prompt: Optional[str] = None,
    include_current: bool = False,
) -> List[Dict]:
    usable = list(messages) if include_current else _without_placeholder(messages)
    if current_prompt and is_simple_followup(current_prompt, usable):
        trimmed = trim_messages_for_simple_followup(usable)
        logger.debug(f"[CONTEXT] simple follow-up: {len(usable)} -> {len(trimmed)} messages")
    else:
        trimmed = trim_messages_by_tokens(usable)
    return format_messages_for_context(trimmed)


def serialize_history(
    messages: List[ConversationMessage],
    current_prompt: Optional[str] = None,
    max_bytes: int = MAX_HISTORY_BYTES,
) -> Optional[str]:
    """JSON history for the request body, or None when empty or oversize."""
    if not messages:
        return None
    context = get_conversation_context(messages, current_prompt)
    if not context:
        return None
    payload = json.dumps(context)
    if len(payload) <= max_bytes:
        return payload

    logger.warning(f"[CONTEXT] History too large ({len(payload)} bytes), trimming to {FALLBACK_CONTEXT_TOKENS} tokens")
    context = format_messages_for_context(
        trim_messages_by_tokens(_without_placeholder(messages), FALLBACK_CONTEXT_TOKENS)
    )
    payload = json.dumps(context)
    if len(payload) <= max_bytes and context:
        return payload
    logger.warning("[CONTEXT] History still too large after trimming, sending none")
    return None


def thinking_budget(
    thinking_mode: ThinkingMode,
    has_video: bool,
    prompt_tokens: int,
    history_length: int,
) -> int:
    if thinking_mode is ThinkingMode.DEEP:
        return 8192
    if has_video:
        return 1024
    if prompt_tokens > 50 or history_length > 5:
        return 256
    return 64
