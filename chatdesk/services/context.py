from chatdesk.schemas.conversations import Message
from chatdesk.schemas.content import extract_text


def prepare_context(
    messages: list[Message],
    max_messages: int,
    max_messages_with_attachments: int,
) -> list[Message]:
    """Trim history to the window submitted with the next request.

    Keeps the last ``max_messages`` turns. Only the newest
    ``max_messages_with_attachments`` of those keep their multimodal
    blocks; older turns in the window are reduced to their text. A turn
    whose text is empty stays in the window as ``""`` so user/assistant
    pairing is preserved.
    """
    if max_messages <= 0:
        return []

    window = messages[-max_messages:]
    keep_from = len(window) - max(max_messages_with_attachments, 0)

    prepared = []
    for i, msg in enumerate(window):
        if i >= keep_from or isinstance(msg.content, str):
            prepared.append(msg)
        else:
            prepared.append(msg.model_copy(update={"content": extract_text(msg.content)}))
    return prepared
