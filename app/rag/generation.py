"""
Prompt assembly for the Dewey chat backend.

Builds the single-string prompt sent to the model's generate endpoint. The
section order is fixed: system instructions, user context, retrieved
evidence, chronological dialogue, then the current ask. Reordering changes
model behavior.
"""
from typing import List, Optional

from app.models import ASSISTANT, CitationSource, Turn, UserProfile
from app.logging_config import get_logger

logger = get_logger(__name__)

RELATED_RESOURCES_MARKER = "\n\nSome related resources:\n"

USER_CONTEXT_HEADER = "User context (use this when addressing the user and framing advice):\n"

CLOSING_INSTRUCTION = (
    "Use all of the above context (system instructions, conversation history, and any "
    "retrieved information) to respond thoughtfully to the user's latest prompt, which is "
    "below. Provide an integrated response written in your established coaching voice. "
    "Do not label speakers. When appropriate, connect the response to earlier insights or "
    "tensions already identified in the conversation."
)

SUMMARY_INSTRUCTION = "Please provide a concise summary of the following conversation history:"


def content_for_prompt(turn: Turn) -> str:
    """Turn content with any appended related-resources listing removed."""
    if turn.role != ASSISTANT:
        return turn.content

    idx = turn.content.find(RELATED_RESOURCES_MARKER)
    if idx == -1:
        return turn.content
    return turn.content[:idx].rstrip()


def build_user_context_block(profile: Optional[UserProfile]) -> str:
    """User-context block listing only non-empty profile fields; '' if all are empty."""
    if profile is None:
        return ""

    lines = []
    if profile.preferred_name.strip():
        lines.append(f"Preferred name: {profile.preferred_name.strip()}")
    if profile.school_or_office.strip():
        lines.append(f"School or office: {profile.school_or_office.strip()}")
    if profile.role.strip():
        lines.append(f"Role: {profile.role.strip()}")
    if profile.context.strip():
        lines.append(f"Context about school/office: {profile.context.strip()}")

    if not lines:
        return ""
    return USER_CONTEXT_HEADER + "\n".join(lines) + "\n\n"


def build_prompt(
    system_message: str,
    profile: Optional[UserProfile],
    rag_context: str,
    history: List[Turn],
    current_user_text: str
) -> str:
    """
    Assemble the full model prompt.

    Args:
        system_message: System instructions; section omitted when empty
        profile: User profile for the user-context block
        rag_context: Pre-formatted retrieved context, included verbatim
        history: Prior turns only, excluding the pending user turn
        current_user_text: The message being answered

    Returns:
        Prompt string ending with "Assistant:"
    """
    prompt = ""

    if system_message:
        prompt += f"System: {system_message}\n\n"

    prompt += build_user_context_block(profile)

    if rag_context:
        prompt += rag_context

    for turn in history:
        label = "User" if turn.role != ASSISTANT else "Assistant"
        prompt += f"{label}: {content_for_prompt(turn)}\n\n"

    prompt += f"{CLOSING_INSTRUCTION}\n\nUser: {current_user_text}\n\nAssistant:"
    logger.debug(f"Built prompt: {len(prompt)} characters, {len(history)} prior turns")
    return prompt


def build_summary_prompt(history: List[Turn]) -> str:
    """Prompt asking the model to summarize prior turns; '' when there is nothing to summarize."""
    if not history:
        return ""

    history_text = "\n\n".join(f"{turn.role}: {content_for_prompt(turn)}" for turn in history)
    return f"{SUMMARY_INSTRUCTION}\n\n{history_text}\n\nSummary:"


def format_related_resources(sources: List[CitationSource]) -> str:
    """Markdown links appended to a finished reply; '' when there are no linkable sources."""
    links = [f"- [{s.source_name}]({s.url})" for s in sources if s.url and s.url != "#"]
    if not links:
        return ""
    return RELATED_RESOURCES_MARKER + "\n".join(links)
