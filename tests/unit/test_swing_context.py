"""
Unit tests for core/swing_context.py
"""

from core.swing_context import (
    SWING_CONTEXT_HEADER,
    format_height,
    format_swing_context,
    missing_vision_fields,
    prefix_prompt,
    validate_swing_context,
)


# =============================================================================
# Validation
# =============================================================================

def test_missing_vision_fields():
    assert missing_vision_fields({"uid": "u1", "sport": "tennis"}) == [
        "swing_type", "dominant_hand", "player_height_mm",
    ]


def test_missing_vision_fields_complete():
    metadata = {"uid": "u1", "sport": "tennis", "swing_type": "serve", "dominant_hand": "right", "player_height_mm": 1800}
    assert missing_vision_fields(metadata) == []


def test_validate_swing_context():
    assert validate_swing_context(None) == "Missing required field: swingContext"
    assert validate_swing_context({"sport": "tennis"}) == "Missing required field: swingContext.swing_type"
    assert validate_swing_context({"swing_type": "serve"}) is None


# =============================================================================
# Formatting
# =============================================================================

def test_format_height():
    assert format_height(1800) == "180 cm (5'11\")"


def test_format_minimal_context_adds_limited_note():
    text = format_swing_context({"swing_type": "forehand_drive"})
    assert text.startswith("**Swing Type:** Forehand Drive")
    assert "Limited swing data" in text


def test_format_full_context_sections():
    context = {
        "swing_type": "serve",
        "sport": "tennis",
        "dominant_hand": "right",
        "player_height_mm": 1800,
        "progress": 72.5,
        "summary": {
            "top_priorities": [{"human_name": "Toss height", "score": 41, "suggestion": "Toss higher"}],
            "strengths": [{"human_name": "Racket drop", "score": 88, "observation": "Deep drop"}],
        },
        "categories": [{"name": "Preparation", "average_score": 64}],
        "metrics": {
            "wrist_speed": {"player_wrist_velocity": 12.5, "unit": "m/s"},
            "kinetic_chain": {"peaks": {"hip_success": "yes", "wrist_success": "no"}},
        },
    }
    text = format_swing_context(context)
    assert "**Overall Progress:** 72.5%" in text
    assert "### Top Priorities for Improvement" in text
    assert "- **Toss height** (score: 41.0/100)" in text
    assert "  - Suggestion: Toss higher" in text
    assert "- **Preparation**: 64.0%" in text
    assert "- Velocity: 12.50 m/s" in text
    assert "**Timing Success:** Hip: yes | Wrist: no" in text
    assert "Limited swing data" not in text


def test_prefix_prompt_with_valid_context():
    prompt = prefix_prompt("How do I improve?", {"swing_type": "serve"})
    assert prompt.startswith(SWING_CONTEXT_HEADER)
    assert prompt.endswith("How do I improve?")


def test_prefix_prompt_without_context():
    assert prefix_prompt("How do I improve?", None) == "How do I improve?"
    assert prefix_prompt("How do I improve?", {"sport": "tennis"}) == "How do I improve?"
