"""Prompt assembly for documentation generation.

The orchestrator accepts any callable with the same signature
returning (system_prompt, user_message).
"""

from src.executor.schemas import DOCUMENT_CATEGORIES, GenerationRequest

SYSTEM_PROMPT = (
    "You are a senior software architect writing project documentation. "
    "Write clear, well-structured markdown. Start every requested document "
    "with a level-1 heading (# Title) and use level-2 and deeper headings "
    "inside it. Do not add commentary before the first document."
)

_DETAIL_LABELS = {
    "project_name": "Project name",
    "project_type": "Project type",
    "project_goal": "Project goal",
    "features": "Key features",
    "tech_stack": "Technology stack",
}


def build_prompt(request: GenerationRequest) -> tuple[str, str]:
    """Build (system_prompt, user_message) for a request."""
    details = request.project_details.model_dump()
    lines = ["## Project details", ""]
    for key, value in details.items():
        if not value:
            continue
        label = _DETAIL_LABELS.get(key, key.replace("_", " ").capitalize())
        lines.append(f"- **{label}**: {value}")

    lines += ["", "## Documents to write", ""]
    for key in request.selected_docs.selected():
        lines.append(f"- {DOCUMENT_CATEGORIES[key]}")

    lines += [
        "",
        "Write each document in the order listed, each under its own level-1 heading.",
    ]
    return SYSTEM_PROMPT, "\n".join(lines)
