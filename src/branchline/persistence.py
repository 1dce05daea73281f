"""Snapshot persistence.

The engine treats the in-memory record as the source of truth and hands a
full snapshot to a gateway after each visible mutation. Gateways must make a
snapshot write atomic per conversation.
"""

import asyncio
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from .config import Settings
from .errors import PersistenceError, UnknownConversation
from .models import ConversationRecord, ConversationSnapshot
from .tree import refresh_path, repair_interrupted

logger = logging.getLogger(__name__)


class PersistenceGateway(Protocol):
    async def save_conversation(self, snapshot: ConversationSnapshot) -> None: ...

    async def load_conversation(self, conversation_id: str) -> ConversationSnapshot: ...

    async def delete_conversation(self, conversation_id: str) -> None: ...

    async def list_conversations(self) -> list[str]: ...


def snapshot_of(record: ConversationRecord) -> ConversationSnapshot:
    """Deep copy of the durable part of a record."""
    return ConversationSnapshot(
        id=record.id,
        title=record.title,
        model=record.model,
        project_id=record.project_id,
        has_error=record.has_error,
        created_at=record.created_at,
        updated_at=record.updated_at,
        tree=record.tree.model_copy(deep=True, update={"stream_target": None}),
    )


def record_from_snapshot(snapshot: ConversationSnapshot, settings: Settings) -> ConversationRecord:
    """Rebuild a live record. Loaded conversations are always idle."""
    tree = snapshot.tree.model_copy(deep=True, update={"stream_target": None})
    repair_interrupted(tree, settings.stopped_marker)
    refresh_path(tree)
    return ConversationRecord(
        id=snapshot.id,
        title=snapshot.title,
        model=snapshot.model,
        project_id=snapshot.project_id,
        has_error=snapshot.has_error,
        created_at=snapshot.created_at,
        updated_at=snapshot.updated_at,
        tree=tree,
    )


class MemoryGateway:
    """Keeps serialized snapshots in a dict."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}

    async def save_conversation(self, snapshot: ConversationSnapshot) -> None:
        self._store[snapshot.id] = snapshot.model_dump_json()

    async def load_conversation(self, conversation_id: str) -> ConversationSnapshot:
        data = self._store.get(conversation_id)
        if data is None:
            raise UnknownConversation(conversation_id)
        return ConversationSnapshot.model_validate_json(data)

    async def delete_conversation(self, conversation_id: str) -> None:
        self._store.pop(conversation_id, None)

    async def list_conversations(self) -> list[str]:
        return sorted(self._store)


class JsonDirectoryGateway:
    """One ``<id>.json`` file per conversation, replaced atomically on save."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        # Writes for one conversation land in call order
        return self._locks.setdefault(conversation_id, asyncio.Lock())

    def path_for(self, conversation_id: str) -> Path:
        if not conversation_id or "/" in conversation_id or conversation_id.startswith("."):
            raise PersistenceError(f"Invalid conversation id: {conversation_id!r}")
        return self.directory / f"{conversation_id}.json"

    async def save_conversation(self, snapshot: ConversationSnapshot) -> None:
        async with self._lock_for(snapshot.id):
            await asyncio.to_thread(self._write, snapshot)

    async def load_conversation(self, conversation_id: str) -> ConversationSnapshot:
        return await asyncio.to_thread(self.read, conversation_id)

    async def delete_conversation(self, conversation_id: str) -> None:
        path = self.path_for(conversation_id)
        async with self._lock_for(conversation_id):
            await asyncio.to_thread(path.unlink, missing_ok=True)
        self._locks.pop(conversation_id, None)

    async def list_conversations(self) -> list[str]:
        return await asyncio.to_thread(self.list_ids)

    def list_ids(self) -> list[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))

    def read(self, conversation_id: str) -> ConversationSnapshot:
        path = self.path_for(conversation_id)
        if not path.exists():
            raise UnknownConversation(conversation_id)
        try:
            return ConversationSnapshot.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            raise PersistenceError(f"Cannot read {path}: {e}") from e

    def _write(self, snapshot: ConversationSnapshot) -> None:
        path = self.path_for(snapshot.id)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{snapshot.id}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(snapshot.model_dump_json(indent=2))
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise PersistenceError(f"Cannot write {path}: {e}") from e
        logger.debug("Saved conversation %s to %s", snapshot.id, path)
