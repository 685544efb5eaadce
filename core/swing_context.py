# core/swing_context.py
"""
Turn a vision (swing scoring) result into a markdown block that can be
prefixed to an analysis prompt. Missing sections are skipped.
"""
from typing import Any, Dict, List, Optional

REQUIRED_VISION_FIELDS = ("uid", "sport", "swing_type", "dominant_hand", "player_height_mm")
SWING_CONTEXT_HEADER = "[SWING ANALYSIS DATA]"


def missing_vision_fields(metadata: Dict[str, Any]) -> List[str]:
    return [name for name in REQUIRED_VISION_FIELDS if metadata.get(name) is None]


def validate_swing_context(context: Any) -> Optional[str]:
    """Error message for an unusable context, None when valid."""
    if not isinstance(context, dict):
        return "Missing required field: swingContext"
    if not context.get("swing_type") or not isinstance(context.get("swing_type"), str):
        return "Missing required field: swingContext.swing_type"
    return None


def _title(text: str) -> str:
    return " ".join(word.capitalize() for word in str(text).replace("_", " ").split())


def _capitalize(text: str) -> str:
    text = str(text)
    return text[:1].upper() + text[1:]


def _feature_line(feature: Dict[str, Any]) -> str:
    name = feature.get("human_name") or feature.get("feature_name") or "Unnamed feature"
    score = feature.get("score")
    score_text = f" (score: {float(score):.1f}/100)" if score is not None else ""
    return f"- **{name}**{score_text}"


def _feature_details(feature: Dict[str, Any]) -> List[str]:
    lines = []
    if feature.get("observation"):
        lines.append(f"  - Observation: {feature['observation']}")
    if feature.get("suggestion"):
        lines.append(f"  - Suggestion: {feature['suggestion']}")
    if feature.get("value") is not None and feature.get("unit"):
        lines.append(f"  - Value: {feature['value']}{feature['unit']}")
    return lines


def format_height(height_mm: float) -> str:
    cm = f"{height_mm / 10:.0f}"
    feet = int(height_mm // 304.8)
    inches = round((height_mm % 304.8) / 25.4)
    if inches == 12:
        feet, inches = feet + 1, 0
    return f"{cm} cm ({feet}'{inches}\")"


def format_swing_context(context: Dict[str, Any]) -> str:
    lines: List[str] = []

    if context.get("swing_type"):
        lines.append(f"**Swing Type:** {_title(context['swing_type'])}")
    if context.get("sport"):
        lines.append(f"**Sport:** {_capitalize(context['sport'])}")
    if context.get("playerLevel") or context.get("player_level"):
        lines.append(f"**Player Level:** {context.get('playerLevel') or context.get('player_level')}")
    if context.get("dominant_hand"):
        lines.append(f"**Dominant Hand:** {_capitalize(context['dominant_hand'])}")
    if context.get("player_height_mm"):
        lines.append(f"**Player Height:** {format_height(float(context['player_height_mm']))}")
    if context.get("progress") is not None:
        lines.append(f"**Overall Progress:** {float(context['progress']):.1f}%")

    summary = context.get("summary") or {}
    if summary.get("top_priorities"):
        lines += ["", "### Top Priorities for Improvement"]
        for feature in summary["top_priorities"]:
            lines.append(_feature_line(feature))
            lines.extend(_feature_details(feature))

    if summary.get("strengths"):
        lines += ["", "### Strengths"]
        for feature in summary["strengths"]:
            lines.append(_feature_line(feature))
            if feature.get("observation"):
                lines.append(f"  - {feature['observation']}")

    if context.get("categories"):
        lines += ["", "### Category Scores"]
        for category in context["categories"]:
            lines.append(f"- **{category.get('name')}**: {float(category.get('average_score', 0)):.1f}%")

    metrics = context.get("metrics") or {}
    wrist = metrics.get("wrist_speed")
    if wrist:
        lines += ["", "### Wrist Speed"]
        if wrist.get("observation"):
            lines.append(wrist["observation"])
        if wrist.get("player_wrist_velocity") is not None:
            lines.append(f"- Velocity: {float(wrist['player_wrist_velocity']):.2f} {wrist.get('unit') or 'm/s'}")

    chain = metrics.get("kinetic_chain")
    if chain:
        lines += ["", "### Kinetic Chain Analysis"]
        if chain.get("description"):
            lines += [f"*{chain['description']}*", ""]
        if chain.get("observation"):
            lines.append(f"**Observation:** {chain['observation']}")
        if chain.get("suggestion"):
            lines.append(f"**Suggestion:** {chain['suggestion']}")
        peaks = chain.get("peaks") or {}
        timing = [
            f"{label}: {peaks[key]}"
            for label, key in (("Hip", "hip_success"), ("Shoulder", "shoulder_success"), ("Wrist", "wrist_success"))
            if peaks.get(key)
        ]
        if timing:
            lines.append(f"**Timing Success:** {' | '.join(timing)}")

    if context.get("all_features"):
        lines += [
            "",
            "### All Feature Details",
            "*(Reference these for specific questions about individual techniques)*",
            "",
        ]
        for feature in context["all_features"]:
            name = feature.get("human_name") or feature.get("feature_name")
            score = feature.get("score")
            score_text = f"{float(score):.1f}/100" if score is not None else "N/A"
            value_text = ""
            if feature.get("value") is not None and feature.get("unit"):
                value_text = f" = {feature['value']}{feature['unit']}"
            lines.append(f"- **{name}** [{score_text}]{value_text}")
            if feature.get("observation"):
                lines.append(f"  - {feature['observation']}")

    if len(lines) < 5:
        lines += ["", "*Note: Limited swing data available. Provide general guidance based on what is known.*"]

    return "\n".join(lines)


def prefix_prompt(prompt: str, context: Optional[Dict[str, Any]]) -> str:
    """Prepend formatted swing data to a prompt when a usable context exists."""
    if context is None or validate_swing_context(context):
        return prompt
    return f"{SWING_CONTEXT_HEADER}\n{format_swing_context(context)}\n\n{prompt}"
