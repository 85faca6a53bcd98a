from __future__ import annotations

from typing import Any

from .commands import describe_commands
from .document import Document

WELCOME_MESSAGE = (
    "I build lessons directly on your canvas.\n\n"
    'Try: "Create a lesson about [topic]" or "Add a quiz about [topic]"'
)
STATUS_THINKING = "Thinking..."
STATUS_RUNNING = "Working on your canvas..."
ATTACHMENT_ONLY_DISPLAY = "Analyze these documents"
ATTACHMENT_ONLY_PROMPT = "Please analyze the attached documents."
MAX_BLOCK_PREVIEW_CHARS = 160
MAX_ATTACHMENT_CHARS = 8000

HTML_ONLY_INSTRUCTION = "IMPORTANT: Return ONLY raw HTML code. No markdown, no ```, no explanation."

STREAM_BLOCK_PROMPTS = {
    "header": (
        "Create an HTML title/header section for a lesson about: {prompt}\n\n"
        f"{HTML_ONLY_INSTRUCTION}\n\n"
        "Requirements:\n"
        "- A gradient banner (#667eea to #764ba2) with rounded corners and generous padding\n"
        "- White h1 title and a one-line description\n"
        "- Inline styles only"
    ),
    "section": (
        "Create an HTML content section about: {prompt}\n\n"
        f"{HTML_ONLY_INSTRUCTION}\n\n"
        "Requirements:\n"
        "- 3-5 informative paragraphs or a short list of key concepts\n"
        "- Card layout with a subtle background (#f8fafc), rounded corners, padding\n"
        "- A small heading with an emoji icon\n"
        "- Inline styles only"
    ),
    "quiz": (
        "Create an HTML quiz section about: {prompt}\n\n"
        f"{HTML_ONLY_INSTRUCTION}\n\n"
        "Requirements:\n"
        "- A header reading \"Check Your Understanding\"\n"
        "- 2-3 numbered questions, each in a card with a light blue background (#eff6ff)\n"
        "- Options labelled A) to D)\n"
        "- Inline styles only"
    ),
}

AGENT_RULES = """You CREATE content directly on the lesson canvas by issuing commands.

Respond with exactly one JSON object and nothing else:
{
  "reasoning": "short private note about what you will do",
  "commands": [{"name": "<command>", "params": {...}}],
  "message": "1-2 sentence reply shown in chat"
}

Rules:
- Keep "message" short. Never dump lesson content into the chat; put it on the canvas.
- Block positions start at 0 and refer to the canvas as listed below.
- Commands run in order, so later positions should account for earlier inserts and deletes.
- HTML content must use inline styles and must not contain script tags.
- When the user only asks a question, answer in "message" with an empty "commands" list."""

CHAT_SYSTEM_PROMPT = (
    "You are a friendly teaching assistant helping a user design a lesson. "
    "Answer concisely in plain text or markdown."
)


def _block_preview(content: str) -> str:
    flattened = " ".join(content.split())
    if len(flattened) > MAX_BLOCK_PREVIEW_CHARS:
        return flattened[:MAX_BLOCK_PREVIEW_CHARS] + "..."
    return flattened


def build_document_context(document: Document) -> str:
    lines = [f"Lesson: {document.icon} {document.title}", f"Blocks ({len(document)}):"]
    for index, block in enumerate(document.blocks):
        preview = _block_preview(block.content) or "(empty)"
        lines.append(f"[{index}] {block.type}: {preview}")
    return "\n".join(lines)


def build_agent_system_prompt(document: Document) -> str:
    return (
        f"{AGENT_RULES}\n\n"
        f"Available commands:\n{describe_commands()}\n\n"
        f"Current canvas:\n{build_document_context(document)}"
    )


def build_stream_block_prompt(prompt: str, style: str) -> str:
    template = STREAM_BLOCK_PROMPTS.get(style) or STREAM_BLOCK_PROMPTS["section"]
    return template.format(prompt=prompt)


def stream_block_placeholder(style: str) -> str:
    return f'<div style="padding: 20px; text-align: center; color: #888;">Generating {style}...</div>'


def stream_block_failure(detail: str) -> str:
    return f'<div style="padding: 20px; color: #b91c1c;">Generation failed: {detail}</div>'


def format_attachments(attachments: list[dict[str, Any]]) -> str:
    if not attachments:
        return ""
    sections = ["[ATTACHED DOCUMENTS]"]
    for item in attachments:
        name = str(item.get("name") or "document")
        text = str(item.get("text") or "")[:MAX_ATTACHMENT_CHARS]
        sections.append(f"--- {name} ---\n{text}")
    return "\n\n".join(sections)


def command_status_line(name: str, success: bool) -> str:
    mark = "done" if success else "failed"
    return f"{STATUS_RUNNING} {name} {mark}"


def error_line(detail: str) -> str:
    return f"Error: {detail}"
