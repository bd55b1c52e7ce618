"""Attachment validation and encoding into wire-format content blocks."""

import base64
import io
import math
import re
from dataclasses import dataclass

import structlog
from PIL import Image

from chatdesk.core.exceptions import AttachmentError
from chatdesk.schemas.content import (
    AudioBlock,
    ContentBlock,
    FileBlock,
    FileData,
    ImageBlock,
    ImageURL,
    InputAudio,
    MessageContent,
    TextBlock,
    VideoBlock,
    VideoURL,
)

logger = structlog.get_logger()

SUPPORTED_MIME_TYPES = {
    "image": frozenset({"image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp"}),
    "document": frozenset({"application/pdf"}),
    "audio": frozenset({
        "audio/wav", "audio/mp3", "audio/mpeg", "audio/aiff",
        "audio/aac", "audio/ogg", "audio/flac", "audio/m4a",
    }),
    "video": frozenset({"video/mp4", "video/mpeg", "video/mov", "video/webm"}),
}

FILE_SIZE_LIMITS = {
    "image": 10 * 1024 * 1024,
    "document": 20 * 1024 * 1024,
    "audio": 25 * 1024 * 1024,
    "video": 50 * 1024 * 1024,
}

MAX_FILES_PER_MESSAGE = 5

# Images above this are re-encoded as JPEG before they go on the wire
COMPRESSION_TARGET_BYTES = int(3.5 * 1024 * 1024)
MAX_IMAGE_DIMENSION = 4096
JPEG_QUALITIES = (90, 80, 70, 60)

_AUDIO_FORMATS = {
    "audio/wav": "wav",
    "audio/mp3": "mp3",
    "audio/mpeg": "mp3",
    "audio/aiff": "aiff",
    "audio/aac": "aac",
    "audio/ogg": "ogg",
    "audio/flac": "flac",
    "audio/m4a": "m4a",
}

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9.-]")
_EXTENSION = re.compile(r"\.[^.]+$")


@dataclass
class UploadedFile:
    """File bytes handed to the engine before they are stored or encoded."""

    name: str
    mime_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


def file_category(mime_type: str) -> str:
    for category, types in SUPPORTED_MIME_TYPES.items():
        if mime_type in types:
            return category
    return "unknown"


def validate_files(files: list[UploadedFile]) -> None:
    """Raise AttachmentError for too many files, unsupported types or oversize files."""
    if len(files) > MAX_FILES_PER_MESSAGE:
        raise AttachmentError(f"Too many files. Maximum {MAX_FILES_PER_MESSAGE} files per message.")

    for f in files:
        category = file_category(f.mime_type)
        if category == "unknown":
            raise AttachmentError(
                f"Unsupported file type: {f.mime_type}.",
                details={"file": f.name},
            )
        limit = FILE_SIZE_LIMITS[category]
        if f.size > limit:
            raise AttachmentError(
                f'File "{f.name}" is too large ({f.size / (1024 * 1024):.2f}MB). '
                f"Maximum size for {category} files is {limit // (1024 * 1024)}MB.",
                details={"file": f.name, "limit_bytes": limit},
            )


def compress_image(f: UploadedFile) -> UploadedFile:
    """Re-encode an oversize image as JPEG so its base64 form stays within provider limits.

    Images at or under ``COMPRESSION_TARGET_BYTES`` are returned unchanged.
    Larger ones are capped at ``MAX_IMAGE_DIMENSION`` on the long side, scaled
    down further when they are more than twice the target, then saved at
    falling JPEG quality until the result fits or the lowest quality is reached.
    """
    if file_category(f.mime_type) != "image" or f.size <= COMPRESSION_TARGET_BYTES:
        return f

    try:
        img = Image.open(io.BytesIO(f.data))
        img.load()
    except (OSError, Image.DecompressionBombError) as exc:
        raise AttachmentError(f'Image "{f.name}" could not be read: {exc}', details={"file": f.name})

    width, height = img.size
    if width > MAX_IMAGE_DIMENSION or height > MAX_IMAGE_DIMENSION:
        ratio = min(MAX_IMAGE_DIMENSION / width, MAX_IMAGE_DIMENSION / height)
        width, height = int(width * ratio), int(height * ratio)
    if f.size > COMPRESSION_TARGET_BYTES * 2:
        reduction = math.sqrt(COMPRESSION_TARGET_BYTES / f.size)
        width, height = int(width * reduction), int(height * reduction)
    width, height = max(width, 1), max(height, 1)
    if (width, height) != img.size:
        img = img.resize((width, height), Image.Resampling.LANCZOS)
    img = img.convert("RGB")

    data = b""
    for quality in JPEG_QUALITIES:
        buffer = io.BytesIO()
        img.save(buffer, format="JPEG", quality=quality)
        data = buffer.getvalue()
        if len(data) <= COMPRESSION_TARGET_BYTES:
            break

    name = f.name if f.mime_type in ("image/jpeg", "image/jpg") else _EXTENSION.sub(".jpg", f.name)
    logger.info(
        "image_compressed",
        file=f.name,
        original_size=f.size,
        compressed_size=len(data),
        width=width,
        height=height,
    )
    return UploadedFile(name=name, mime_type="image/jpeg", data=data)


def encode(f: UploadedFile) -> ContentBlock:
    """Encode one file as the content block its category uses on the wire.

    Oversize images are compressed first; the stored asset keeps the original bytes.
    """
    category = file_category(f.mime_type)
    if category == "image":
        f = compress_image(f)
    b64 = base64.b64encode(f.data).decode("ascii")
    data_uri = f"data:{f.mime_type};base64,{b64}"

    if category == "image":
        return ImageBlock(image_url=ImageURL(url=data_uri))
    if category == "document":
        return FileBlock(file=FileData(filename=f.name, file_data=data_uri))
    if category == "audio":
        # Audio takes bare base64 plus a format tag
        return AudioBlock(input_audio=InputAudio(data=b64, format=_AUDIO_FORMATS.get(f.mime_type, "wav")))
    if category == "video":
        return VideoBlock(video_url=VideoURL(url=data_uri))
    raise AttachmentError(f"Unsupported file type: {f.mime_type}.", details={"file": f.name})


def encode_all(files: list[UploadedFile]) -> list[ContentBlock]:
    return [encode(f) for f in files]


def build_content(text: str, blocks: list[ContentBlock]) -> MessageContent:
    """Text first, then one block per file in attachment order."""
    if not blocks:
        return text
    content: list[ContentBlock] = []
    if text.strip():
        content.append(TextBlock(text=text.strip()))
    content.extend(blocks)
    return content


def asset_filename(original_name: str, message_id: str, index: int, timestamp_ms: int) -> str:
    """``{timestamp}_{index}_{message_id}_{sanitized name}``"""
    sanitized = _UNSAFE_FILENAME_CHARS.sub("_", original_name)
    return f"{timestamp_ms}_{index}_{message_id}_{sanitized}"


def preview_data_uri(mime_type: str, data: bytes) -> str | None:
    """Inline preview for image attachments; other types have none."""
    if file_category(mime_type) != "image":
        return None
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"
