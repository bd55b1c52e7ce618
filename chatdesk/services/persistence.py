"""Dirty tracking and write-through of conversation snapshots."""

import asyncio
from collections.abc import Callable

import structlog

from chatdesk.schemas.conversations import Conversation
from chatdesk.services.repository import ConversationRepository

logger = structlog.get_logger()

AUTOSAVE_INTERVAL = 30.0  # seconds


class PersistenceBridge:
    """Tracks which conversations need a durable write and performs the writes.

    Each dirty id carries a revision counter. A write clears the id only if
    the revision it started with is still current when it finishes, so a
    mutation that lands while a save is awaiting leaves the id dirty.

    Saves and deletes of one conversation are serialized by a per-id lock,
    and deleted ids are remembered so a save queued behind the delete is
    dropped instead of writing the record back.
    """

    def __init__(self, repository: ConversationRepository):
        self._repository = repository
        self._revisions: dict[str, int] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._deleted: set[str] = set()

    @property
    def repository(self) -> ConversationRepository:
        return self._repository

    @property
    def dirty_ids(self) -> set[str]:
        return set(self._revisions)

    def mark_dirty(self, conversation_id: str) -> None:
        if conversation_id in self._deleted:
            return
        self._revisions[conversation_id] = self._revisions.get(conversation_id, 0) + 1

    def is_dirty(self, conversation_id: str) -> bool:
        return conversation_id in self._revisions

    def is_deleted(self, conversation_id: str) -> bool:
        return conversation_id in self._deleted

    def discard(self, conversation_id: str) -> None:
        self._revisions.pop(conversation_id, None)

    def _lock(self, conversation_id: str) -> asyncio.Lock:
        return self._locks.setdefault(conversation_id, asyncio.Lock())

    async def delete(self, conversation_id: str, project_id: str | None = None) -> None:
        """Forget the id and delete its record once any running save has finished."""
        self._deleted.add(conversation_id)
        self.discard(conversation_id)
        async with self._lock(conversation_id):
            await self._repository.delete(conversation_id, project_id)
        self._locks.pop(conversation_id, None)

    async def flush_one(self, conversation: Conversation) -> bool:
        """Write one conversation now. Returns False if the write failed."""
        if conversation.id in self._deleted:
            return True
        revision = self._revisions.get(conversation.id)
        try:
            async with self._lock(conversation.id):
                if conversation.id in self._deleted:
                    logger.debug("conversation_flush_skipped", conversation_id=conversation.id, reason="deleted")
                    return True
                await self._repository.save(conversation)
        except Exception:
            logger.exception("conversation_flush_failed", conversation_id=conversation.id)
            if revision is None:
                self.mark_dirty(conversation.id)
            return False

        if self._revisions.get(conversation.id) == revision:
            self._revisions.pop(conversation.id, None)
        else:
            logger.debug("conversation_changed_during_flush", conversation_id=conversation.id)
        return True

    async def flush_all(self, conversations: list[Conversation]) -> int:
        """Write every dirty conversation independently; returns how many succeeded."""
        pending = [c for c in conversations if c.id in self._revisions]
        if not pending:
            return 0
        results = await asyncio.gather(*(self.flush_one(c) for c in pending))
        saved = sum(1 for ok in results if ok)
        logger.info("conversations_flushed", saved=saved, failed=len(pending) - saved)
        return saved


class AutoSaver:
    """Periodically flushes dirty conversations in the background."""

    def __init__(
        self,
        bridge: PersistenceBridge,
        snapshot_fn: Callable[[], list[Conversation]],
        interval: float = AUTOSAVE_INTERVAL,
    ):
        self._bridge = bridge
        self._snapshot_fn = snapshot_fn
        self._interval = interval
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background flush task."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("autosaver_started", interval=self._interval)

    async def stop(self) -> None:
        """Stop the loop and flush whatever is still dirty."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._bridge.flush_all(self._snapshot_fn())
        logger.info("autosaver_stopped")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._interval)
                await self._bridge.flush_all(self._snapshot_fn())
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("autosaver_error")
