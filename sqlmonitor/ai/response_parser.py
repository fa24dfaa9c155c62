"""
Best-effort extraction of an optimization from free-form model output

Nothing in this module raises; unparseable text degrades to the original
query with the raw text as explanation.
"""

import re
from typing import List, Optional, Tuple

from sqlmonitor.models.monitor_models import AIOptimizationResult

FENCE = "```"
NO_EXPLANATION = "No explanation provided"

SQL_TAG_PATTERN = re.compile(r"sql\b", re.IGNORECASE)
# Language tag alone on the opening line of a fence
LANGUAGE_TAG_PATTERN = re.compile(r"([A-Za-z][\w+#.-]*)[ \t]*\r?\n")

INDEX_MARKERS = (
    "CREATE INDEX",
    "CREATE NONCLUSTERED INDEX",
    "INDEX RECOMMENDATION",
)


def _split_language_tag(inner: str) -> Tuple[str, str]:
    if SQL_TAG_PATTERN.match(inner):
        return "sql", inner[3:].strip()
    match = LANGUAGE_TAG_PATTERN.match(inner)
    if match:
        return match.group(1).lower(), inner[match.end():].strip()
    return "", inner.strip()


def fenced_blocks(response_text: str) -> List[Tuple[str, str]]:
    """
    (language tag, body) for every complete fence pair, in order

    A closing fence is never reused as the next opening one; an unpaired
    trailing fence is ignored.
    """
    blocks = []
    position = 0
    while True:
        start = response_text.find(FENCE, position)
        if start < 0:
            break
        end = response_text.find(FENCE, start + len(FENCE))
        if end < 0:
            break
        blocks.append(_split_language_tag(response_text[start + len(FENCE):end]))
        position = end + len(FENCE)
    return blocks


def extract_optimized_query(response_text: str) -> Optional[str]:
    """SQL-tagged fence first, then the first fence of any kind"""
    blocks = fenced_blocks(response_text)
    for tag, body in blocks:
        if tag == "sql":
            return body
    if blocks:
        return blocks[0][1]
    return None


def extract_explanation(response_text: str) -> str:
    """Text after the last fence, or the whole response when unfenced"""
    last_fence = response_text.rfind(FENCE)
    if last_fence < 0:
        return response_text.strip()
    return response_text[last_fence + len(FENCE):].strip()


def extract_index_recommendations(response_text: str) -> List[str]:
    recommendations = []
    for line in response_text.splitlines():
        upper = line.upper()
        if any(marker in upper for marker in INDEX_MARKERS):
            stripped = line.strip()
            if stripped:
                recommendations.append(stripped)
    return recommendations


def parse_optimization_response(response_text: str, original_query: str) -> AIOptimizationResult:
    if not response_text or not response_text.strip():
        return AIOptimizationResult(
            optimized_query=original_query,
            explanation=NO_EXPLANATION,
        )

    optimized = extract_optimized_query(response_text)
    explanation = extract_explanation(response_text)

    return AIOptimizationResult(
        optimized_query=optimized or original_query,
        explanation=explanation or NO_EXPLANATION,
        index_recommendations=extract_index_recommendations(response_text),
        is_simulated=False,
    )
