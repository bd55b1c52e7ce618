"""SQLite-backed durable store for conversations."""

import asyncio
import json
import re
from datetime import datetime, timezone
from pathlib import Path

import structlog
from pydantic import TypeAdapter
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from chatdesk.config import settings
from chatdesk.core.database import ConversationRow, MessageRow
from chatdesk.core.exceptions import PersistenceError
from chatdesk.schemas.content import FileAttachment, MessageContent
from chatdesk.schemas.conversations import Conversation, Message
from chatdesk.services.export import EXPORT_EXTENSIONS, render

logger = structlog.get_logger()

_content_adapter = TypeAdapter(MessageContent)
_attachments_adapter = TypeAdapter(list[FileAttachment])

_UNSAFE_TITLE_CHARS = re.compile(r"[^\w\- ]")


def _as_utc(dt: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)


def _message_from_row(row: MessageRow) -> Message:
    attachments = None
    if row.attachments_json:
        attachments = _attachments_adapter.validate_json(row.attachments_json)
    return Message(
        id=row.id,
        role=row.role,
        content=_content_adapter.validate_json(row.content_json),
        created_at=_as_utc(row.created_at),
        edited_at=_as_utc(row.edited_at),
        model=row.model,
        tokens=row.tokens,
        cost=row.cost,
        reasoning=row.reasoning,
        status=row.status,
        attachments=attachments,
    )


def _message_to_row(conversation_id: str, position: int, msg: Message) -> MessageRow:
    attachments_json = None
    if msg.attachments is not None:
        attachments_json = _attachments_adapter.dump_json(msg.attachments).decode()
    return MessageRow(
        id=msg.id,
        conversation_id=conversation_id,
        position=position,
        role=msg.role,
        content_json=_content_adapter.dump_json(msg.content).decode(),
        status=msg.status,
        model=msg.model,
        tokens=msg.tokens,
        cost=msg.cost,
        reasoning=msg.reasoning,
        attachments_json=attachments_json,
        created_at=msg.created_at,
        edited_at=msg.edited_at,
    )


def export_filename(conversation: Conversation, format: str) -> str:
    title = _UNSAFE_TITLE_CHARS.sub("", conversation.title).strip().replace(" ", "_")[:50] or "conversation"
    return f"{title}_{conversation.id}.{EXPORT_EXTENSIONS[format]}"


class ConversationRepository:
    def __init__(self, session_factory: async_sessionmaker, export_dir: str | None = None):
        self._session_factory = session_factory
        self._export_dir = Path(export_dir or settings.chatdesk_export_dir)

    async def load_all(self) -> list[Conversation]:
        """Every stored conversation, most recently updated first."""
        async with self._session_factory() as session:
            conv_rows = (
                await session.execute(select(ConversationRow).order_by(ConversationRow.updated_at.desc()))
            ).scalars().all()
            msg_rows = (
                await session.execute(
                    select(MessageRow).order_by(MessageRow.conversation_id, MessageRow.position)
                )
            ).scalars().all()

        by_conversation: dict[str, list[Message]] = {}
        for row in msg_rows:
            try:
                by_conversation.setdefault(row.conversation_id, []).append(_message_from_row(row))
            except ValueError:
                logger.warning("message_row_invalid", conversation_id=row.conversation_id, message_id=row.id)

        conversations = [
            Conversation(
                id=row.id,
                title=row.title,
                starred=row.starred,
                project_id=row.project_id,
                created_at=_as_utc(row.created_at),
                updated_at=_as_utc(row.updated_at),
                messages=by_conversation.get(row.id, []),
            )
            for row in conv_rows
        ]
        logger.info("conversations_loaded", count=len(conversations))
        return conversations

    async def save(self, conversation: Conversation) -> None:
        """Write the whole conversation, replacing any stored version."""
        try:
            async with self._session_factory() as session:
                await session.merge(
                    ConversationRow(
                        id=conversation.id,
                        title=conversation.title,
                        starred=conversation.starred,
                        project_id=conversation.project_id,
                        created_at=conversation.created_at,
                        updated_at=conversation.updated_at,
                    )
                )
                await session.execute(delete(MessageRow).where(MessageRow.conversation_id == conversation.id))
                session.add_all(
                    _message_to_row(conversation.id, i, msg) for i, msg in enumerate(conversation.messages)
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Failed to save conversation {conversation.id}.",
                details={"conversation_id": conversation.id, "reason": str(exc)},
            ) from exc
        logger.debug("conversation_saved", conversation_id=conversation.id, messages=len(conversation.messages))

    async def delete(self, conversation_id: str, project_id: str | None = None) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(delete(MessageRow).where(MessageRow.conversation_id == conversation_id))
                stmt = delete(ConversationRow).where(ConversationRow.id == conversation_id)
                if project_id is not None:
                    stmt = stmt.where(ConversationRow.project_id == project_id)
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Failed to delete conversation {conversation_id}.",
                details={"conversation_id": conversation_id, "reason": str(exc)},
            ) from exc
        logger.info("conversation_deleted", conversation_id=conversation_id)

    async def export(self, conversation: Conversation, format: str = "json") -> Path | None:
        """Render to the export directory; None if the file could not be written."""
        body = render(conversation, format)
        target = self._export_dir / export_filename(conversation, format)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(body, encoding="utf-8")

        try:
            await asyncio.to_thread(_write)
        except OSError:
            logger.exception("conversation_export_failed", conversation_id=conversation.id, format=format)
            return None
        logger.info("conversation_exported", conversation_id=conversation.id, format=format, path=str(target))
        return target
