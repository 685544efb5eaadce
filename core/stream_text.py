# core/stream_text.py
"""
Cleanup of streamed analysis text.

The analysis service appends a JSON trailer after ``__STREAM_META__`` and the
model may emit control blocks (<thinking>, <reflection>) and structured
result tags (<follow_ups>, <timestamps>, <metrics>). Partial text shown while
streaming only has the trailer removed; the full cleanup runs once at the end.
"""
import json
import re
from typing import Any, Dict, Iterator, Tuple

from utils.logging_utils import get_logger

logger = get_logger("stream_text")

STREAM_META_MARKER = "__STREAM_META__"
RESULT_TAGS = ("follow_ups", "timestamps", "metrics")

_CONTROL_BLOCK_RE = re.compile(r"<(thinking|reflection|reflect)>.*?(?:</\1>|$)", re.DOTALL | re.IGNORECASE)
_RESULT_TAG_RE = re.compile(
    r"<(" + "|".join(RESULT_TAGS) + r")>\s*(.*?)\s*</\1>",
    re.DOTALL | re.IGNORECASE,
)


def strip_stream_metadata(text: str) -> str:
    """Drop everything from the metadata marker onwards."""
    if not text:
        return ""
    index = text.find(STREAM_META_MARKER)
    if index == -1:
        return text
    visible = text[:index]
    # The service writes "\n" right before the marker
    return visible[:-1] if visible.endswith("\n") else visible


def split_stream_metadata(text: str) -> Tuple[str, Dict[str, Any]]:
    """Return (visible_text, metadata) for a complete stream."""
    if not text or STREAM_META_MARKER not in text:
        return text or "", {}
    raw_meta = text[text.find(STREAM_META_MARKER) + len(STREAM_META_MARKER):].strip()
    metadata: Dict[str, Any] = {}
    if raw_meta:
        try:
            parsed = json.loads(raw_meta)
            if isinstance(parsed, dict):
                metadata = {k: v for k, v in parsed.items() if k != "__metadata__"}
        except json.JSONDecodeError as e:
            logger.warning(f"[STREAMING] Unparseable stream metadata ({e}); ignoring")
    return strip_stream_metadata(text), metadata


def strip_control_tags(text: str) -> str:
    """Remove internal reasoning blocks; an unterminated block runs to the end."""
    if not text:
        return ""
    cleaned = _CONTROL_BLOCK_RE.sub("", text)
    cleaned = re.sub(r"\n\s*\n\s*\n+", "\n\n", cleaned)
    return cleaned.strip()


def extract_result_tags(text: str) -> Tuple[str, Dict[str, Any]]:
    """Pull structured result tags out of the visible text.

    Tag bodies that parse as JSON are stored decoded, otherwise as text.
    Repeated tags are collected into a list.
    """
    if not text:
        return "", {}
    found: Dict[str, list] = {}

    def _collect(match: "re.Match") -> str:
        body = match.group(2)
        try:
            value = json.loads(body)
        except json.JSONDecodeError:
            value = body
        found.setdefault(match.group(1).lower(), []).append(value)
        return ""

    cleaned = _RESULT_TAG_RE.sub(_collect, text)
    cleaned = re.sub(r"\n\s*\n\s*\n+", "\n\n", cleaned)
    tags = {name: values[0] if len(values) == 1 else values for name, values in found.items()}
    return cleaned.strip(), tags


def finalize_stream_text(raw: str) -> Tuple[str, Dict[str, Any], Dict[str, Any]]:
    """Full cleanup for a finished stream -> (content, result_tags, metadata)."""
    visible, metadata = split_stream_metadata(raw)
    visible = strip_control_tags(visible)
    content, tags = extract_result_tags(visible)
    return content, tags, metadata


def reveal_prefixes(text: str, chunk_chars: int) -> Iterator[str]:
    """Growing prefixes of ``text`` for paced display of canned replies."""
    if not text:
        yield ""
        return
    step = max(1, chunk_chars)
    for end in range(step, len(text) + step, step):
        yield text[:min(end, len(text))]
