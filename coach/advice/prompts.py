"""
Advice Prompts
==============

Query templates, advice-type inference, prompt assembly and parsing of
the structured JSON the generation backend returns.
"""
import json
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from coach.advice.models import AdviceType, PromptSpec, Snippet
from coach.core.errors import GenerationParseError


DEFAULT_QUERIES: Dict[AdviceType, str] = {
    AdviceType.NUTRITION: "What nutrition advice do you have for my current diet and goals?",
    AdviceType.EXERCISE: "What exercise recommendations do you have based on my activity level?",
    AdviceType.FASTING: "How can I improve my fasting routine and success rate?",
    AdviceType.SLEEP: "What sleep optimization advice do you have for me?",
    AdviceType.MOTIVATION: "How can I stay motivated to achieve my health goals?",
    AdviceType.HYDRATION: "How can I make sure I'm drinking enough water?",
    AdviceType.MEDICAL_REMINDER: (
        "What should I keep in mind about my health conditions with my current routine?"
    ),
}
GENERAL_QUERY = "What general health advice do you have for me today?"

# Checked in order; first match wins
TYPE_KEYWORDS: Tuple[Tuple[AdviceType, Tuple[str, ...]], ...] = (
    (AdviceType.NUTRITION, ("food", "eat", "nutrition", "diet", "meal", "calorie")),
    (AdviceType.EXERCISE, ("exercise", "workout", "fitness", "training")),
    (AdviceType.FASTING, ("fast",)),
    (AdviceType.SLEEP, ("sleep", "rest")),
    (AdviceType.MOTIVATION, ("motivat",)),
    (AdviceType.HYDRATION, ("water", "hydrat")),
)


def default_query(advice_type: AdviceType) -> str:
    return DEFAULT_QUERIES.get(advice_type, GENERAL_QUERY)


def infer_advice_type(query: Optional[str]) -> AdviceType:
    if not query:
        return AdviceType.GENERAL
    lowered = query.lower()
    for advice_type, keywords in TYPE_KEYWORDS:
        if any(kw in lowered for kw in keywords):
            return advice_type
    return AdviceType.GENERAL


# =============================================================================
# PROMPT
# =============================================================================

SYSTEM_INSTRUCTION = """You are a supportive, evidence-based personal health coach.
Give specific, practical advice grounded in the reference material provided.
Never diagnose or prescribe; for anything medical, recommend talking to a professional.

Respond ONLY with a JSON object of this exact shape:
{
  "title": "short title",
  "content": "2-4 sentences of advice",
  "summary": "one sentence",
  "actions": ["concrete action", "..."],
  "tags": ["keyword", "..."],
  "confidence": 0.0-1.0,
  "urgent": false,
  "important": false
}
Set "urgent" only for safety issues that need attention today, and
"important" for advice tied to a health condition or a sustained negative trend."""


def _format_snippets(snippets: Sequence[Snippet]) -> str:
    if not snippets:
        return "(no reference material found)"
    return "\n".join(
        f"[{i}] {s.title}: {s.text}" for i, s in enumerate(snippets, start=1)
    )


def build_prompt(
    query: str,
    advice_type: AdviceType,
    context: Dict[str, Any],
    snippets: Sequence[Snippet],
) -> PromptSpec:
    lines = [
        f"Advice type: {advice_type.value}",
        f"User question: {query}",
        "",
        "User context (JSON):",
        json.dumps(context, default=str, ensure_ascii=False, indent=2),
        "",
        "Reference material:",
        _format_snippets(snippets),
    ]

    disfavored = context.get("feedback", {}).get("disfavored_types", [])
    if advice_type.value in disfavored:
        lines += [
            "",
            f"Note: the user has rated past {advice_type.value} advice poorly. "
            "Keep it short, practical, and try a different angle than generic tips.",
        ]

    return PromptSpec(system_instruction=SYSTEM_INSTRUCTION, prompt="\n".join(lines))


# =============================================================================
# RESPONSE PARSING
# =============================================================================

def _strip_code_fence(text: str) -> str:
    if "```json" in text:
        start = text.find("```json") + 7
        end = text.find("```", start)
        return text[start:end].strip()
    if "```" in text:
        start = text.find("```") + 3
        end = text.find("```", start)
        return text[start:end].strip()
    return text


def _as_str_list(value: Any, limit: int = 6) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()][:limit]


def parse_advice_response(raw_text: str) -> Dict[str, Any]:
    """
    Parse and validate the backend's JSON advice object.

    Raises:
        GenerationParseError: no usable JSON object, or title/content missing
    """
    text = _strip_code_fence((raw_text or "").strip())
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", text, re.DOTALL)
        if not match:
            raise GenerationParseError("No JSON object in response", raw_text)
        json_text = re.sub(r",\s*([\]\}])", r"\1", match.group(0))
        try:
            data = json.loads(json_text)
        except json.JSONDecodeError as e:
            raise GenerationParseError(f"Invalid JSON: {e}", raw_text) from e

    if not isinstance(data, dict):
        raise GenerationParseError("Response is not a JSON object", raw_text)

    title = str(data.get("title") or "").strip()
    content = str(data.get("content") or "").strip()
    if not title or not content:
        raise GenerationParseError("Missing title or content", raw_text)

    try:
        confidence = float(data.get("confidence", 0.7))
    except (TypeError, ValueError):
        confidence = 0.5

    return {
        "title": title[:120],
        "content": content,
        "summary": str(data.get("summary") or content.split(". ")[0]).strip()[:240],
        "actions": _as_str_list(data.get("actions")),
        "tags": _as_str_list(data.get("tags"), limit=10),
        "confidence": min(1.0, max(0.0, confidence)),
        "urgent": data.get("urgent") is True,
        "important": data.get("important") is True,
    }
