import uuid
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from chatdesk.schemas.content import FileAttachment, MessageContent

# pending → streaming → finalized | stopped   (failed attempts are removed)
MessageStatus = Literal["pending", "streaming", "finalized", "stopped"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return f"msg-{uuid.uuid4().hex}"


def new_conversation_id() -> str:
    return f"conv-{uuid.uuid4().hex}"


class Message(BaseModel):
    id: str = Field(default_factory=new_message_id)
    role: Literal["user", "assistant"]
    content: MessageContent = ""
    created_at: datetime = Field(default_factory=utcnow)
    edited_at: datetime | None = None
    model: str | None = None
    tokens: int | None = None
    cost: float | None = None
    reasoning: str | None = None
    status: MessageStatus = "finalized"
    attachments: list[FileAttachment] | None = None

    @model_validator(mode="after")
    def _user_turns_carry_no_model_output(self) -> "Message":
        if self.role == "user" and (self.model is not None or self.reasoning is not None):
            raise ValueError("user messages cannot carry a model or reasoning text")
        return self

    @property
    def is_streaming(self) -> bool:
        return self.status in ("pending", "streaming")


class Conversation(BaseModel):
    id: str = Field(default_factory=new_conversation_id)
    title: str = "New Chat"
    messages: list[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    starred: bool = False
    project_id: str | None = None

    def index_of(self, message_id: str) -> int:
        for i, msg in enumerate(self.messages):
            if msg.id == message_id:
                return i
        return -1


class ConversationSummary(BaseModel):
    id: str
    title: str
    starred: bool
    project_id: str | None = None
    created_at: datetime
    updated_at: datetime
    message_count: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0


# ── Request bodies ───────────────────────────────────────────────────────────


class GenerationOptions(BaseModel):
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, ge=1)


class FileUpload(BaseModel):
    name: str
    mime_type: str
    data: str = Field(description="Base64-encoded file bytes")


class ConversationCreate(BaseModel):
    title: str = "New Chat"
    project_id: str | None = None


class ConversationUpdate(BaseModel):
    title: str | None = None
    starred: bool | None = None


class SendMessageRequest(BaseModel):
    text: str = ""
    model: str | None = None
    reasoning_enabled: bool = False
    options: GenerationOptions | None = None
    files: list[FileUpload] = Field(default_factory=list)


class EditMessageRequest(BaseModel):
    content: str
    options: GenerationOptions | None = None


class ExportRequest(BaseModel):
    format: Literal["json", "markdown", "txt"] = "json"


class ExportResponse(BaseModel):
    path: str | None = None


class SessionStateResponse(BaseModel):
    active_conversation_id: str | None = None
    selected_model: str | None = None
    is_loading: bool = False
    error: str | None = None
    generating: list[str] = Field(default_factory=list)


class SessionUpdate(BaseModel):
    active_conversation_id: str | None = None
    selected_model: str | None = None
