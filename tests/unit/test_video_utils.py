"""
Unit tests for utils/video_utils.py
"""

import pytest
from utils.video_utils import (
    calculate_user_message_tokens,
    detect_video_url,
    estimate_pro_analysis_time,
    estimate_text_tokens,
    estimate_video_tokens,
    exceeds_size_limit,
    is_racket_sport,
    needs_conversion,
)

MB = 1024 * 1024


# =============================================================================
# Sport / format checks
# =============================================================================

@pytest.mark.parametrize("sport,expected", [
    ("tennis", True),
    ("Padel", True),
    (" pickleball ", True),
    ("skiing", False),
    (None, False),
])
def test_is_racket_sport(sport, expected):
    assert is_racket_sport(sport) is expected


def test_needs_conversion_by_extension():
    assert needs_conversion("clip.MOV")
    assert needs_conversion("match.mkv")
    assert not needs_conversion("serve.mp4", "video/mp4")


def test_needs_conversion_by_content_type():
    assert needs_conversion(None, "video/quicktime")


def test_exceeds_size_limit():
    assert exceeds_size_limit("video/mp4", 150 * MB, 100)
    assert not exceeds_size_limit("video/mp4", 20 * MB, 100)
    # Only videos are size-checked
    assert not exceeds_size_limit("image/png", 500 * MB, 100)


# =============================================================================
# URL detection
# =============================================================================

def test_detect_video_url_direct_file():
    text = "check this https://cdn.example.com/a/serve.mp4?sig=1 please"
    assert detect_video_url(text) == "https://cdn.example.com/a/serve.mp4?sig=1"


def test_detect_video_url_short_youtube_link():
    assert detect_video_url("see https://youtu.be/abc123") == "https://youtu.be/abc123"


def test_detect_video_url_none():
    assert detect_video_url("https://example.com/page") is None
    assert detect_video_url("") is None


# =============================================================================
# Token estimates
# =============================================================================

def test_estimate_text_tokens():
    assert estimate_text_tokens("") == 0
    assert estimate_text_tokens("abcd") == 1
    assert estimate_text_tokens("abcde") == 2


def test_estimate_video_tokens_by_duration():
    assert estimate_video_tokens(duration_seconds=10, resolution="medium") == 3000
    assert estimate_video_tokens(duration_seconds=10, resolution="low") == 1000


def test_estimate_video_tokens_by_size():
    """Size-only estimate assumes about one MB per second"""
    assert estimate_video_tokens(size_bytes=20 * MB) == 6000
    assert estimate_video_tokens() == 0


def test_calculate_user_message_tokens_media_only():
    assert calculate_user_message_tokens("", size_bytes=20 * MB) == 6000


def test_calculate_user_message_tokens_text_only():
    assert calculate_user_message_tokens("Analyze my serve") == 4


# =============================================================================
# Pro analysis ETA
# =============================================================================

@pytest.mark.parametrize("seconds,expected", [
    (None, "~5-10 minutes"),
    (0, "~5-10 minutes"),
    (600, "~5-10 minutes"),
    (30 * 60, "~21 minutes"),
    (120 * 60, "~1h 24m"),
])
def test_estimate_pro_analysis_time(seconds, expected):
    assert estimate_pro_analysis_time(seconds) == expected

