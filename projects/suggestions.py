"""AI task suggestions and gap analysis through the OpenAI API."""

import json
import logging

from django.conf import settings
from openai import OpenAI, OpenAIError

logger = logging.getLogger(__name__)

SUGGESTION_SYSTEM_PROMPT = (
    "You are an SEO expert who creates actionable, specific task suggestions "
    "based on proven SEO methodologies. Always respond with valid JSON."
)
GAPS_SYSTEM_PROMPT = (
    "You are an SEO strategist who identifies gaps and provides actionable "
    "recommendations. Always respond with valid JSON."
)

FRAMEWORK = """PILLARS:
- Technical
- On-Page & Content
- Off-Page
- Analytics

PHASES:
- Foundation (basic setup and fundamentals)
- Growth (scaling and optimization)
- Authority (advanced strategies and leadership)"""


class SuggestionError(Exception):
    """The LLM call failed or returned something unusable."""


class SuggestionsNotConfigured(SuggestionError):
    """No OpenAI API key is configured."""


def get_client():
    api_key = getattr(settings, "OPENAI_API_KEY", "")
    if not api_key:
        raise SuggestionsNotConfigured(
            "OpenAI API key is not configured. Set OPENAI_API_KEY."
        )
    return OpenAI(api_key=api_key)


def _task_lines(tasks, with_progress=False):
    lines = []
    for task in tasks:
        line = (
            f"- {task.task_name} ({task.pillar or 'Unclassified'}, "
            f"{task.phase or 'Unphased'}) - {task.status}"
        )
        if with_progress:
            line += f" ({task.progress or 0}% complete)"
        lines.append(line)
    return "\n".join(lines) or "- (no tasks yet)"


def _complete_json(client, system_prompt, prompt, temperature, max_tokens):
    """Run one JSON-mode chat completion and return the decoded object."""
    try:
        response = client.chat.completions.create(
            model=getattr(settings, "OPENAI_MODEL", "gpt-4o"),
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            response_format={"type": "json_object"},
            temperature=temperature,
            max_tokens=max_tokens,
        )
    except OpenAIError as exc:
        logger.error("OpenAI request failed: %s", exc)
        raise SuggestionError("AI request failed") from exc

    content = response.choices[0].message.content if response.choices else None
    if not content:
        raise SuggestionError("No response content from OpenAI")
    try:
        result = json.loads(content)
    except json.JSONDecodeError as exc:
        logger.error("OpenAI returned invalid JSON: %.200s", content)
        raise SuggestionError("AI response was not valid JSON") from exc
    if not isinstance(result, dict):
        raise SuggestionError("AI response was not a JSON object")
    return result


def _normalize_suggestion(raw):
    return {
        "task_name": str(raw.get("taskName") or raw.get("task_name") or "").strip(),
        "pillar": raw.get("pillar", ""),
        "phase": raw.get("phase", ""),
        "description": raw.get("description", ""),
        "estimated_hours": raw.get("estimatedHours", raw.get("estimated_hours")),
        "priority": raw.get("priority", "Medium"),
        "reasoning": raw.get("reasoning", ""),
    }


def generate_task_suggestions(project, target_audience="", website_type="", client=None):
    """Ask the model for five new tasks that fill holes in *project*."""
    if client is None:
        client = get_client()

    context = ""
    if target_audience:
        context += f"Target audience: {target_audience}\n"
    if website_type:
        context += f"Website type: {website_type}\n"

    prompt = f"""You are an SEO expert creating task suggestions for a project called "{project.name}".
{context}
Existing tasks:
{_task_lines(project.tasks.all())}

Generate 5 strategic SEO task suggestions based on the SEO Masterplan framework:

{FRAMEWORK}

For each suggestion, consider what is missing from existing tasks, the
natural progression from current work, and ROI potential.

Respond with JSON in this exact format:
{{"suggestions": [{{"taskName": "...", "pillar": "...", "phase": "...",
"description": "...", "estimatedHours": 0, "priority": "High, Medium, or Low",
"reasoning": "..."}}]}}"""

    result = _complete_json(client, SUGGESTION_SYSTEM_PROMPT, prompt, 0.7, 2000)
    suggestions = [
        _normalize_suggestion(item)
        for item in result.get("suggestions", [])
        if isinstance(item, dict)
    ]
    logger.info("Generated %d suggestions for project %s", len(suggestions), project.pk)
    return [s for s in suggestions if s["task_name"]]


def analyze_project_gaps(project, client=None):
    """Return ``{"gaps", "recommendations", "priority_actions"}`` lists."""
    if client is None:
        client = get_client()

    prompt = f"""Analyze this SEO project for gaps and provide recommendations:

Project: {project.name}
Current tasks:
{_task_lines(project.tasks.all(), with_progress=True)}

Analyze across the SEO Masterplan framework:

{FRAMEWORK}

Respond with JSON:
{{"gaps": ["specific areas missing or underrepresented"],
"recommendations": ["strategic advice for improvement"],
"priorityActions": ["immediate next steps to take"]}}"""

    result = _complete_json(client, GAPS_SYSTEM_PROMPT, prompt, 0.6, 1500)
    return {
        "gaps": list(result.get("gaps") or []),
        "recommendations": list(result.get("recommendations") or []),
        "priority_actions": list(result.get("priorityActions") or result.get("priority_actions") or []),
    }
