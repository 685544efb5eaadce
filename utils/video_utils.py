"""
# utils/video_utils.py

Module Contract
- Purpose: Small, pure helpers about media and token cost: sport classification, conversion/size checks, video URL detection, token estimates and the pro-analysis ETA string.
- Inputs:
  - Plain values (strings, sizes, durations); no I/O.
- Outputs:
  - estimate_text_tokens, estimate_video_tokens, calculate_user_message_tokens
  - estimate_pro_analysis_time, is_racket_sport, needs_conversion, exceeds_size_limit, detect_video_url
- Side effects:
  - None.
"""
import math
import re
from typing import Optional

from config.app_config import RACKET_SPORTS

CHARS_PER_TOKEN = 4
# Per-second rates for sampled frames plus audio
VIDEO_TOKENS_PER_SECOND = {"low": 100, "medium": 300, "high": 300}
# Used when only the file size is known
ASSUMED_BYTES_PER_SECOND = 1024 * 1024

CONVERSION_EXTENSIONS = (".mov", ".avi", ".mkv", ".wmv", ".flv")
CONVERSION_CONTENT_TYPES = ("video/quicktime", "video/x-msvideo", "video/x-matroska", "video/x-ms-wmv", "video/x-flv")

VIDEO_URL_RE = re.compile(
    r"https?://[^\s<>\"']*?(?:\.(?:mp4|mov|webm|m4v|avi|mkv)(?:\?[^\s<>\"']*)?|"
    r"(?:youtube\.com/watch\?v=|youtu\.be/|vimeo\.com/)[^\s<>\"']+)",
    re.IGNORECASE,
)


def is_racket_sport(sport: Optional[str]) -> bool:
    return (sport or "").strip().lower() in RACKET_SPORTS


def estimate_text_tokens(text: Optional[str]) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_video_tokens(
    size_bytes: Optional[int] = None,
    duration_seconds: Optional[float] = None,
    resolution: str = "medium",
) -> int:
    """Rough input-token cost of a video for the analysis model."""
    rate = VIDEO_TOKENS_PER_SECOND.get(resolution, VIDEO_TOKENS_PER_SECOND["medium"])
    if duration_seconds is None:
        if not size_bytes:
            return 0
        duration_seconds = size_bytes / ASSUMED_BYTES_PER_SECOND
    return int(math.ceil(max(0.0, duration_seconds) * rate))


def calculate_user_message_tokens(
    text: Optional[str],
    size_bytes: Optional[int] = None,
    duration_seconds: Optional[float] = None,
    resolution: str = "medium",
) -> int:
    tokens = estimate_text_tokens(text)
    if size_bytes or duration_seconds:
        tokens += estimate_video_tokens(size_bytes, duration_seconds, resolution)
    return tokens


def estimate_pro_analysis_time(duration_seconds: Optional[float]) -> str:
    """Human-readable ETA for a pro analysis of a video of the given length.

    Short or unknown videos get a flat range; longer ones take roughly
    0.7x their own duration.
    """
    if not duration_seconds or duration_seconds <= 0:
        return "~5-10 minutes"
    minutes = duration_seconds / 60.0
    if minutes <= 20:
        return "~5-10 minutes"

    estimate = math.ceil(minutes * 0.7)
    if estimate < 60:
        return f"~{estimate} minutes"
    hours, rest = divmod(estimate, 60)
    if rest == 0:
        return f"~{hours} hour" if hours == 1 else f"~{hours} hours"
    return f"~{hours}h {rest}m"


def needs_conversion(filename: Optional[str], content_type: Optional[str] = None) -> bool:
    name = (filename or "").lower()
    if name.endswith(CONVERSION_EXTENSIONS):
        return True
    return (content_type or "").lower() in CONVERSION_CONTENT_TYPES


def exceeds_size_limit(content_type: Optional[str], size_bytes: Optional[int], max_mb: float) -> bool:
    if not (content_type or "").startswith("video/"):
        return False
    return (size_bytes or 0) / (1024 * 1024) > max_mb


def detect_video_url(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    match = VIDEO_URL_RE.search(text)
    return match.group(0) if match else None
