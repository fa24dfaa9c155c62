"""
Prompt templates for query optimization and analysis

Prompt construction is deterministic: the same inputs always produce the
same messages.
"""

from enum import Enum
from typing import Dict, List, Optional

from sqlmonitor.core.constants import MAX_PLAN_CHARS
from sqlmonitor.models.monitor_models import SlowQueryObservation


class PromptType(Enum):
    """Prompt types"""
    QUERY_OPTIMIZATION = "query_optimization"
    QUERY_ANALYSIS = "query_analysis"


SYSTEM_PROMPT = (
    "You are an expert SQL query optimizer. "
    "Analyze the provided SQL query and suggest optimizations."
)

USER_PROMPTS = {
    PromptType.QUERY_OPTIMIZATION: (
        "Optimize this SQL query for a SQL Server database:\n\n{query}\n\n"
        "Database context: {database_context}"
    ),
    PromptType.QUERY_ANALYSIS: (
        "Analyze this SQL query for a SQL Server database:\n\n{query}\n\n"
        "Database context: {database_context}"
    ),
}

FORMAT_INSTRUCTIONS = (
    "Return the rewritten query in a single ```sql code block, followed by a short "
    "explanation. Put each index suggestion on its own line starting with CREATE INDEX."
)


def truncate_plan(query_plan: Optional[str], max_chars: int = MAX_PLAN_CHARS) -> Optional[str]:
    if not query_plan:
        return None
    if max_chars <= 0:
        return None
    if len(query_plan) <= max_chars:
        return query_plan
    return query_plan[:max_chars] + "\n... (plan truncated)"


def build_database_context(
    observation: Optional[SlowQueryObservation],
    database_name: str = "",
    max_plan_chars: int = MAX_PLAN_CHARS,
) -> str:
    """
    Describe where and how the query runs

    Includes database name, average duration, execution count and the
    (truncated) execution plan when an observation is available.
    """
    if observation is None:
        return database_name

    lines = [
        observation.database_name,
        f"Average duration: {observation.avg_duration_ms:.2f} ms",
        f"Execution count: {observation.execution_count}",
    ]
    plan = truncate_plan(observation.query_plan, max_plan_chars)
    if plan:
        lines.append(f"Execution plan:\n{plan}")
    return "\n".join(lines)


def build_messages(
    prompt_type: PromptType,
    query: str,
    database_context: str,
) -> List[Dict[str, str]]:
    user_prompt = USER_PROMPTS[prompt_type].format(
        query=query,
        database_context=database_context,
    )
    if prompt_type == PromptType.QUERY_OPTIMIZATION:
        user_prompt = f"{user_prompt}\n\n{FORMAT_INSTRUCTIONS}"
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": user_prompt},
    ]
