"""System instruction builder."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable

from chatloom.tools.base import ToolDeclaration

DEFAULT_PERSONALITY_PROMPT = (
    "You are {name}, a friendly and capable assistant. Answer clearly and "
    "directly, and adapt to what you know about the user."
)


def build_system_instruction(
    personality_prompt: str | None = None,
    assistant_name: str = "Loom",
    conversation_title: str | None = None,
    message_count: int | None = None,
    tools: Iterable[ToolDeclaration] | None = None,
    now: datetime | None = None,
    incognito: bool = False,
) -> str:
    """
    Build the system instruction for a turn.

    Assembles the persona, date/time and conversation info, the memory
    directive rules and tool guidance into a single string.
    """
    now = now or datetime.now().astimezone()
    sections: list[str] = []

    sections.append(
        (personality_prompt or DEFAULT_PERSONALITY_PROMPT).replace("{name}", assistant_name)
    )

    info = [
        f"- Current date: {now.strftime('%Y-%m-%d')}",
        f"- Current time: {now.strftime('%H:%M:%S %Z').strip()}",
    ]
    if conversation_title:
        info.append(f'- Current conversation title: "{conversation_title}"')
    if message_count is not None and message_count >= 0:
        info.append(f"- Messages in this conversation (excluding this one): {message_count}")
    sections.append("## Conversation\n\n" + "\n".join(info))

    sections.append(PERSONALIZATION_SECTION)
    sections.append(FORMATTING_SECTION)
    if not incognito:
        sections.append(MEMORY_SECTION)

    tool_list = list(tools or [])
    if tool_list:
        lines = [f"- **{t.name}**: {t.description}" for t in tool_list]
        sections.append(TOOLS_SECTION + "\n\n### Available Functions\n\n" + "\n".join(lines))

    return "\n\n".join(sections)


PERSONALIZATION_SECTION = """## Personalization

- Actively use the PRIOR KNOWLEDGE ABOUT THE USER to shape tone, suggestions and answers.
- Weave remembered facts in naturally. Never say "memory X" or "I remembered Y".
- If a preferred name is recorded, use it."""

FORMATTING_SECTION = """## Formatting

- Use standard Markdown for emphasis, lists and links. Do not use HTML tags for formatting.
- Use single backticks for inline code and fenced blocks for longer code."""

MEMORY_SECTION = """## Memory Management

Memory tags go at the very END of your reply and are never shown to the user.

1. Create: when the user's LATEST message contains a new, factual, relevant detail worth remembering:
   [MEMORIZE: "memory content"]
   Be selective. Do not memorize questions, small talk or your own answers.
2. Update: when the user's LATEST message corrects a memory listed in the prior knowledge:
   [UPDATE_MEMORY original: "exact old memory content" new: "new memory content"]
   The original content must be IDENTICAL to one of the listed memories.
3. Delete (rare): when a memory has become obsolete rather than outdated:
   [DELETE_MEMORY: "exact memory content"]

Rules:
- Put each tag on its own, one after another, after the rest of your reply.
- If there is nothing to create, update or delete, include no tags at all."""

TOOLS_SECTION = """## Tool Use

- When a request is best served by one of your functions, call it with correct arguments.
- Interpret function results for the user instead of pasting them raw.
- If a function fails or returns an error, say so and suggest alternatives.
- When a function returns a file, it is attached to the conversation for you to analyze."""
