"""Command and query surface used by the UI layer.

Every command mutates the tree synchronously, before its first ``await``, so
two commands on the same conversation never interleave mid-mutation. The
only suspension points are persistence calls and the stream tasks started by
``start_generation``. Streams are keyed by conversation id, not by which
conversation has focus, so they keep writing while another one is shown.
"""

import asyncio
import logging

from .config import Settings, get_settings
from .deletion import DeletionEngine
from .editor import VersionEditor, placeholder_parts
from .errors import InvalidState, UnknownConversation
from .models import CancelReason, ConversationRecord, GenerationStatus, Part, Role
from .persistence import MemoryGateway, PersistenceGateway, record_from_snapshot, snapshot_of
from .provider import ModelProvider
from .stream import StreamCoordinator, StreamOutcome
from . import tree as ops

logger = logging.getLogger(__name__)


def truncate(text: str, max_len: int) -> str:
    """Truncate text with ellipsis."""
    text = " ".join(text.split())
    if len(text) > max_len:
        return text[:max_len] + "..."
    return text


class ChatEngine:
    """Owns conversation records and drives their generations."""

    def __init__(
        self,
        provider: ModelProvider,
        persistence: PersistenceGateway | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.provider = provider
        self.persistence = persistence if persistence is not None else MemoryGateway()
        self.settings = settings or get_settings()
        self.conversations: dict[str, ConversationRecord] = {}
        self.focused_id: str | None = None
        self._tasks: dict[str, asyncio.Task] = {}

    # Conversations

    def get(self, conversation_id: str) -> ConversationRecord:
        record = self.conversations.get(conversation_id)
        if record is None:
            raise UnknownConversation(conversation_id)
        return record

    async def create_conversation(
        self, model: str, title: str | None = None, project_id: str | None = None
    ) -> ConversationRecord:
        record = ConversationRecord(
            title=title or self.settings.default_title, model=model, project_id=project_id
        )
        self.conversations[record.id] = record
        await self._persist(record)
        return record

    async def load_conversation(self, conversation_id: str) -> ConversationRecord:
        if conversation_id in self.conversations:
            return self.conversations[conversation_id]
        snapshot = await self.persistence.load_conversation(conversation_id)
        record = record_from_snapshot(snapshot, self.settings)
        self.conversations[record.id] = record
        return record

    async def delete_conversation(self, conversation_id: str) -> None:
        record = self.get(conversation_id)
        self._require_idle(record, "delete a conversation")
        del self.conversations[conversation_id]
        if self.focused_id == conversation_id:
            self.focused_id = None
        try:
            await self.persistence.delete_conversation(conversation_id)
        except Exception as e:
            logger.warning("Failed to delete stored conversation %s: %s", conversation_id, e)
        logger.info("Deleted conversation %s", conversation_id)

    def list_conversations(self) -> list[ConversationRecord]:
        return sorted(self.conversations.values(), key=lambda r: r.updated_at, reverse=True)

    def focus(self, conversation_id: str) -> ConversationRecord:
        """Switch the visible conversation. In-flight streams keep running."""
        record = self.get(conversation_id)
        self.focused_id = conversation_id
        return record

    # Tree commands

    async def add_branch(self, conversation_id: str, role: Role, parts: list[Part]) -> str:
        record = self.get(conversation_id)
        if role == Role.USER:
            self._require_idle(record, "send a message")
        branch_id = ops.add_branch(record.tree, role, parts)
        await self._after_mutation(record)
        return branch_id

    async def add_version(
        self,
        conversation_id: str,
        branch_id: str,
        parts: list[Part],
        inherit_continuation: bool,
    ) -> str:
        record = self.get(conversation_id)
        version_id = ops.add_version(record.tree, branch_id, parts, inherit_continuation)
        await self._after_mutation(record)
        return version_id

    async def switch_version(self, conversation_id: str, branch_id: str, direction: int) -> bool:
        record = self.get(conversation_id)
        changed = ops.switch_version(record.tree, branch_id, direction)
        if changed:
            await self._after_mutation(record)
        return changed

    async def delete_version(self, conversation_id: str, branch_id: str) -> None:
        record = self.get(conversation_id)
        DeletionEngine(record).delete_version(branch_id)
        await self._after_mutation(record)

    async def delete_branch(self, conversation_id: str, branch_id: str) -> None:
        record = self.get(conversation_id)
        DeletionEngine(record).delete_branch(branch_id)
        await self._after_mutation(record)

    # Edits and generations

    async def send_message(self, conversation_id: str, parts: list[Part]) -> asyncio.Task:
        """Append a user turn plus an empty reply and start generating into it."""
        record = self.get(conversation_id)
        self._require_idle(record, "send a message")
        if not ops.has_content(parts):
            raise InvalidState("Message cannot be empty")

        user_id = ops.add_branch(record.tree, Role.USER, parts)
        reply_id = ops.add_branch(record.tree, Role.MODEL, placeholder_parts())
        if record.title == self.settings.default_title and record.tree.root_id == user_id:
            text = ops.version_text(record.tree.branches[user_id].current_version)
            if text.strip():
                record.title = truncate(text, self.settings.title_max_length)

        task = self.start_generation(conversation_id, reply_id)
        await self._after_mutation(record)
        return task

    async def edit_user_message(
        self, conversation_id: str, branch_id: str, parts: list[Part]
    ) -> asyncio.Task | None:
        record = self.get(conversation_id)
        reply_id = VersionEditor(record).edit_user_message(branch_id, parts)
        if reply_id is None:
            return None
        task = self.start_generation(conversation_id, reply_id)
        await self._after_mutation(record)
        return task

    async def edit_ai_message(self, conversation_id: str, branch_id: str, parts: list[Part]) -> bool:
        record = self.get(conversation_id)
        version_id = VersionEditor(record).edit_ai_message(branch_id, parts)
        if version_id is None:
            return False
        await self._after_mutation(record)
        return True

    async def regenerate(self, conversation_id: str, branch_id: str) -> asyncio.Task:
        record = self.get(conversation_id)
        VersionEditor(record).regenerate(branch_id)
        task = self.start_generation(conversation_id, branch_id)
        await self._after_mutation(record)
        return task

    def start_generation(self, conversation_id: str, branch_id: str) -> asyncio.Task:
        """Stream a reply into the active (empty) version of a model branch.

        Rejected unless the conversation is idle. Must be called from a
        running event loop; returns the task driving the stream.
        """
        record = self.get(conversation_id)
        self._require_idle(record, "start a generation")
        branch = ops.get_branch(record.tree, branch_id)
        if branch.role != Role.MODEL:
            raise InvalidState(f"Branch {branch_id} is not a model reply")
        if ops.has_content(branch.current_version.parts):
            raise InvalidState(f"Branch {branch_id} already has content; regenerate instead")
        history = ops.history_before(record.tree, branch_id)

        coordinator = StreamCoordinator(record, branch_id, self.provider, history, self.settings)
        coordinator.arm()
        task = asyncio.create_task(self._drive(record, coordinator))
        self._tasks[conversation_id] = task
        task.add_done_callback(lambda t: self._forget_task(conversation_id, t))
        return task

    async def cancel_generation(self, conversation_id: str) -> bool:
        """Ask the active stream to stop and wait until it has settled."""
        record = self.get(conversation_id)
        coordinator = record.active_stream
        if coordinator is None:
            return False
        coordinator.cancel(CancelReason.USER)
        task = self._tasks.get(conversation_id)
        if task is not None:
            await task
        return True

    async def wait_idle(self, conversation_id: str) -> StreamOutcome | None:
        task = self._tasks.get(conversation_id)
        if task is None:
            return None
        return await task

    async def acknowledge_error(self, conversation_id: str) -> None:
        record = self.get(conversation_id)
        if record.has_error:
            record.has_error = False
            await self._after_mutation(record)

    async def aclose(self) -> None:
        """Cancel every stream and wait for them to settle."""
        for record in self.conversations.values():
            if record.active_stream is not None:
                record.active_stream.cancel(CancelReason.USER)
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    # Queries

    def current_path(self, conversation_id: str) -> list[str]:
        return list(self.get(conversation_id).tree.current_path)

    def version_count(self, conversation_id: str, branch_id: str) -> int:
        return len(ops.get_branch(self.get(conversation_id).tree, branch_id).versions)

    def current_version_index(self, conversation_id: str, branch_id: str) -> int:
        return ops.get_branch(self.get(conversation_id).tree, branch_id).current_version_index

    def generation_status(self, conversation_id: str) -> GenerationStatus:
        return self.get(conversation_id).generation_status

    def has_error(self, conversation_id: str) -> bool:
        return self.get(conversation_id).has_error

    def index_document(self, conversation_id: str) -> dict:
        """What a full-text indexer consumes for this conversation."""
        record = self.get(conversation_id)
        return {
            "id": record.id,
            "title": record.title,
            "project_id": record.project_id,
            "text": ops.path_text(record.tree),
            "updated_at": record.updated_at.isoformat(),
        }

    # Internals

    def _require_idle(self, record: ConversationRecord, action: str) -> None:
        if record.generation_status != GenerationStatus.IDLE:
            raise InvalidState(
                f"Cannot {action} while generation is {record.generation_status.value}"
            )

    async def _drive(self, record: ConversationRecord, coordinator: StreamCoordinator) -> StreamOutcome:
        try:
            return await coordinator.run()
        finally:
            # Runs on task cancellation too
            await self._persist(record)

    def _forget_task(self, conversation_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(conversation_id) is task:
            del self._tasks[conversation_id]

    async def _after_mutation(self, record: ConversationRecord) -> None:
        record.touch()
        await self._persist(record)

    async def _persist(self, record: ConversationRecord) -> None:
        """Save a snapshot. Failures are logged and surfaced as ``record.notice`` only."""
        try:
            await self.persistence.save_conversation(snapshot_of(record))
        except Exception as e:
            logger.warning("Failed to save conversation %s: %s", record.id, e)
            record.notice = f"Could not save conversation: {e}"
        else:
            record.notice = None
