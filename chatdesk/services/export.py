"""Render conversations as JSON, Markdown or plain text."""

from chatdesk.core.exceptions import InvalidOperationError
from chatdesk.schemas.content import extract_text
from chatdesk.schemas.conversations import Conversation, Message

EXPORT_EXTENSIONS = {"json": "json", "markdown": "md", "txt": "txt"}


def _usage_line(msg: Message) -> str | None:
    if not msg.tokens and not msg.cost:
        return None
    tokens = msg.tokens if msg.tokens else "N/A"
    cost = f"${msg.cost:.6f}" if msg.cost is not None else "N/A"
    return f"Tokens: {tokens}, Cost: {cost}"


def _attachment_line(msg: Message) -> str | None:
    if not msg.attachments:
        return None
    return "Attachments: " + ", ".join(a.name for a in msg.attachments)


def to_markdown(conversation: Conversation) -> str:
    lines = [
        f"# {conversation.title}",
        "",
        f"**Created:** {conversation.created_at:%Y-%m-%d}",
        f"**Updated:** {conversation.updated_at:%Y-%m-%d}",
        "",
    ]
    for msg in conversation.messages:
        lines.append(f"## {'You' if msg.role == 'user' else 'Assistant'}")
        lines.append(f"*{msg.created_at:%Y-%m-%d %H:%M:%S}*")
        lines.append("")
        if msg.model:
            lines.extend([f"*Model: {msg.model}*", ""])
        if msg.reasoning and msg.reasoning.strip():
            lines.extend(["### Thinking", "", "```", msg.reasoning, "```", ""])
        lines.extend([extract_text(msg.content), ""])
        attachments = _attachment_line(msg)
        if attachments:
            lines.extend([f"*{attachments}*", ""])
        usage = _usage_line(msg)
        if usage:
            lines.extend([f"*{usage}*", ""])
        lines.extend(["---", ""])
    return "\n".join(lines)


def to_text(conversation: Conversation) -> str:
    lines = [
        conversation.title,
        "=" * len(conversation.title),
        "",
        f"Created: {conversation.created_at:%Y-%m-%d}",
        f"Updated: {conversation.updated_at:%Y-%m-%d}",
        "",
    ]
    for msg in conversation.messages:
        lines.append(f"{'YOU' if msg.role == 'user' else 'ASSISTANT'} [{msg.created_at:%Y-%m-%d %H:%M:%S}]")
        if msg.model:
            lines.append(f"Model: {msg.model}")
        lines.append("-" * 50)
        if msg.reasoning and msg.reasoning.strip():
            lines.extend(["", "[THINKING]", msg.reasoning, "[/THINKING]", ""])
        lines.extend([extract_text(msg.content), ""])
        attachments = _attachment_line(msg)
        if attachments:
            lines.append(attachments)
        usage = _usage_line(msg)
        if usage:
            lines.append(usage)
        lines.append("")
    return "\n".join(lines)


def render(conversation: Conversation, format: str) -> str:
    if format == "json":
        return conversation.model_dump_json(indent=2)
    if format == "markdown":
        return to_markdown(conversation)
    if format == "txt":
        return to_text(conversation)
    raise InvalidOperationError(f"Unsupported export format: {format}")
