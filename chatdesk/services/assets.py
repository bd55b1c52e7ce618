"""Filesystem storage for message attachments."""

import asyncio
import shutil
from pathlib import Path

import structlog

from chatdesk.config import settings
from chatdesk.core.exceptions import NotFoundError

logger = structlog.get_logger()

ASSET_PREFIX = "assets/"


def _filename_from_path(asset_path: str) -> str:
    """``assets/<filename>`` -> ``<filename>``, refusing anything that leaves the directory."""
    name = Path(asset_path.removeprefix(ASSET_PREFIX)).name
    if not name or name in (".", ".."):
        raise NotFoundError(f"Invalid asset path: {asset_path}")
    return name


class AssetStore:
    """Stores attachment bytes per conversation.

    Layout under the data directory:
      conversations/<conversation_id>/assets/<filename>
      projects/<project_id>/conversations/<conversation_id>/assets/<filename>
    """

    def __init__(self, base_dir: str | None = None):
        self._base = Path(base_dir or settings.chatdesk_data_dir)

    @property
    def conversations_dir(self) -> Path:
        return self._base / "conversations"

    @property
    def projects_dir(self) -> Path:
        return self._base / "projects"

    def assets_dir(self, conversation_id: str, project_id: str | None = None) -> Path:
        if project_id:
            return self.projects_dir / project_id / "conversations" / conversation_id / "assets"
        return self.conversations_dir / conversation_id / "assets"

    def _find_assets_dir(self, conversation_id: str) -> Path | None:
        """Global location first, then every project."""
        global_dir = self.assets_dir(conversation_id)
        if global_dir.is_dir():
            return global_dir
        if self.projects_dir.is_dir():
            for project in sorted(self.projects_dir.iterdir()):
                candidate = self.assets_dir(conversation_id, project.name)
                if candidate.is_dir():
                    return candidate
        return None

    async def save(
        self, conversation_id: str, filename: str, data: bytes, project_id: str | None = None
    ) -> str:
        """Write bytes and return the durable relative path (``assets/<filename>``)."""
        name = _filename_from_path(filename)
        target_dir = self.assets_dir(conversation_id, project_id)

        def _write() -> None:
            target_dir.mkdir(parents=True, exist_ok=True)
            (target_dir / name).write_bytes(data)

        await asyncio.to_thread(_write)
        logger.info("asset_saved", conversation_id=conversation_id, filename=name, size=len(data))
        return f"{ASSET_PREFIX}{name}"

    async def load(self, conversation_id: str, path: str) -> bytes:
        name = _filename_from_path(path)

        def _read() -> bytes:
            assets_dir = self._find_assets_dir(conversation_id)
            if assets_dir is None or not (assets_dir / name).is_file():
                raise NotFoundError(f"Asset {path} not found for conversation {conversation_id}.")
            return (assets_dir / name).read_bytes()

        return await asyncio.to_thread(_read)

    async def delete(self, conversation_id: str, path: str) -> None:
        name = _filename_from_path(path)

        def _remove() -> bool:
            assets_dir = self._find_assets_dir(conversation_id)
            if assets_dir is None:
                return False
            target = assets_dir / name
            if not target.exists():
                return False
            target.unlink()
            return True

        if await asyncio.to_thread(_remove):
            logger.info("asset_deleted", conversation_id=conversation_id, filename=name)

    async def delete_all(self, conversation_id: str) -> None:
        def _remove_all() -> None:
            assets_dir = self._find_assets_dir(conversation_id)
            while assets_dir is not None:
                shutil.rmtree(assets_dir)
                assets_dir = self._find_assets_dir(conversation_id)

        await asyncio.to_thread(_remove_all)
        logger.info("assets_deleted", conversation_id=conversation_id)
