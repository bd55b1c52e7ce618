"""Message content: plain text or an ordered list of typed multimodal blocks.

Block shapes follow the OpenAI/OpenRouter multimodal chat format so they can
be sent on the wire unchanged.
"""

import re
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageURL(BaseModel):
    url: str  # https URL or data:image/...;base64,...
    detail: Literal["low", "high", "auto"] | None = None


class ImageBlock(BaseModel):
    type: Literal["image_url"] = "image_url"
    image_url: ImageURL


class FileData(BaseModel):
    filename: str
    file_data: str  # data:application/pdf;base64,...


class FileBlock(BaseModel):
    type: Literal["file"] = "file"
    file: FileData


AudioFormat = Literal["wav", "mp3", "aiff", "aac", "ogg", "flac", "m4a", "pcm16", "pcm24"]


class InputAudio(BaseModel):
    data: str  # raw base64, no data URI prefix
    format: AudioFormat


class AudioBlock(BaseModel):
    type: Literal["input_audio"] = "input_audio"
    input_audio: InputAudio


class VideoURL(BaseModel):
    url: str


class VideoBlock(BaseModel):
    type: Literal["video_url"] = "video_url"
    video_url: VideoURL


ContentBlock = Annotated[
    Union[TextBlock, ImageBlock, FileBlock, AudioBlock, VideoBlock],
    Field(discriminator="type"),
]

MessageContent = Union[str, list[ContentBlock]]


class FileAttachment(BaseModel):
    """Display metadata for a file attached to a message.

    ``path`` is the durable asset path (``assets/<filename>``) and survives
    restarts. ``preview`` is a process-local data URI that is never persisted.
    """

    name: str
    mime_type: str
    size: int
    path: str
    preview: str | None = Field(default=None, exclude=True)


def extract_text(content: MessageContent) -> str:
    """Return the visible text of a content value, text blocks joined by newlines."""
    if isinstance(content, str):
        return content
    return "\n".join(block.text for block in content if isinstance(block, TextBlock))


def normalize_for_wire(content: MessageContent) -> list[ContentBlock]:
    if isinstance(content, str):
        return [TextBlock(text=content)]
    return content


def has_media(content: MessageContent) -> bool:
    """True if the content carries any non-text block."""
    if isinstance(content, str):
        return False
    return any(not isinstance(block, TextBlock) for block in content)


# DeepSeek-style fullwidth tokens (<｜end▁of▁sentence｜>) and ASCII <|...|> tokens
_FULLWIDTH_TOKEN = re.compile(r"<｜[^｜]*｜>")
_PIPE_TOKEN = re.compile(r"<\|[^|]*\|>")


def sanitize_content(text: str) -> str:
    """Strip model special tokens from a finished response."""
    if not text:
        return text
    cleaned = _FULLWIDTH_TOKEN.sub("", text)
    cleaned = _PIPE_TOKEN.sub("", cleaned)
    return cleaned.strip()
