"""Creating new versions from user edits and regenerations."""

import logging

from .errors import InvalidState
from .deletion import DeletionEngine
from .models import (
    ConversationRecord,
    ConversationTree,
    GenerationStatus,
    HistoryMessage,
    Part,
    Role,
    TextPart,
)
from .tree import (
    add_branch,
    add_version,
    get_branch,
    has_content,
    history_before,
    is_streaming_branch,
    parts_equal,
)

logger = logging.getLogger(__name__)


def placeholder_parts() -> list[Part]:
    """Content of a reply version before its first chunk arrives."""
    return [TextPart(text="")]


class VersionEditor:
    """Turns edits and regenerate requests into new versions.

    Editing a user message drops the old follow-up (it has to be generated
    again for the new input); editing a reply keeps it.
    """

    def __init__(self, record: ConversationRecord) -> None:
        self.record = record

    @property
    def tree(self) -> ConversationTree:
        return self.record.tree

    def _require_idle(self, action: str) -> None:
        if self.record.generation_status != GenerationStatus.IDLE:
            raise InvalidState(
                f"Cannot {action} while generation is {self.record.generation_status.value}"
            )

    def edit_user_message(self, branch_id: str, parts: list[Part]) -> str | None:
        """Add an edited version of a user message.

        Returns the id of the empty reply branch that now needs a generation,
        or None when the edit is identical to the active version.
        """
        branch = get_branch(self.tree, branch_id)
        if branch.role != Role.USER:
            raise InvalidState(f"Branch {branch_id} is not a user message")
        if not has_content(parts):
            raise InvalidState("Message cannot be empty")
        if parts_equal(branch.current_version.parts, parts):
            return None
        self._require_idle("edit a message")
        if branch_id not in self.tree.current_path:
            raise InvalidState(f"Branch {branch_id} is not on the current path")

        add_version(self.tree, branch_id, parts, inherit_continuation=False)
        reply_id = add_branch(self.tree, Role.MODEL, placeholder_parts(), parent_id=branch_id)
        logger.debug("Edited user branch %s, reply pending in %s", branch_id, reply_id)
        return reply_id

    def edit_ai_message(self, branch_id: str, parts: list[Part]) -> str | None:
        """Add an edited version of a reply, keeping the turns that follow it.

        Returns the new version id, or None for a no-op edit.
        """
        branch = get_branch(self.tree, branch_id)
        if branch.role != Role.MODEL:
            raise InvalidState(f"Branch {branch_id} is not a model reply")
        if not has_content(parts):
            raise InvalidState("Message cannot be empty")
        if parts_equal(branch.current_version.parts, parts):
            return None
        if is_streaming_branch(self.tree, branch_id):
            raise InvalidState(f"Branch {branch_id} is still streaming")

        return add_version(self.tree, branch_id, parts, inherit_continuation=True)

    def regenerate(self, branch_id: str) -> str:
        """Open a fresh, empty reply version on a model branch.

        A previous version that only holds an error message is removed so
        failed attempts do not pile up.
        """
        branch = get_branch(self.tree, branch_id)
        if branch.role != Role.MODEL:
            raise InvalidState(f"Only model replies can be regenerated, {branch_id} is {branch.role.value}")
        self._require_idle("regenerate")
        if branch_id not in self.tree.current_path:
            raise InvalidState(f"Branch {branch_id} is not on the current path")

        previous = branch.current_version
        version_id = add_version(self.tree, branch_id, placeholder_parts(), inherit_continuation=False)

        if previous.metadata.is_error:
            DeletionEngine(self.record).remove_version(branch_id, previous.id)
            logger.debug("Dropped error version %s from branch %s", previous.id, branch_id)
        return version_id

    def prompt_history(self, branch_id: str) -> list[HistoryMessage]:
        return history_before(self.tree, branch_id)
