"""Removal of versions and whole branches."""

import logging

from .errors import InvalidState
from .models import Branch, ConversationRecord, ConversationTree, GenerationStatus, Version
from .tree import get_branch, refresh_path

logger = logging.getLogger(__name__)


def collect_subtree(tree: ConversationTree, branch_id: str) -> set[str]:
    """The branch plus everything reachable through any of its versions."""
    found: set[str] = set()
    stack = [branch_id]
    while stack:
        current = stack.pop()
        if current in found or current not in tree.branches:
            continue
        found.add(current)
        for version in tree.branches[current].versions:
            if version.continuation:
                stack.append(version.continuation)
    return found


class DeletionEngine:
    """The only component allowed to remove branches or versions from a tree."""

    def __init__(self, record: ConversationRecord) -> None:
        self.record = record

    @property
    def tree(self) -> ConversationTree:
        return self.record.tree

    def delete_version(self, branch_id: str) -> None:
        """Remove the active version; the last version takes the whole branch with it."""
        branch = get_branch(self.tree, branch_id)
        self.remove_version(branch_id, branch.current_version.id)

    def delete_branch(self, branch_id: str) -> None:
        """Remove a branch and every downstream branch across all version forks."""
        get_branch(self.tree, branch_id)
        doomed = collect_subtree(self.tree, branch_id)
        self._ensure_not_streaming(doomed)

        self._drop(doomed)
        refresh_path(self.tree)
        logger.debug("Deleted branch %s and %d downstream branch(es)", branch_id, len(doomed) - 1)

    def remove_version(self, branch_id: str, version_id: str) -> None:
        """Remove one version by id, with its continuation unless a sibling shares it."""
        tree = self.tree
        branch = get_branch(tree, branch_id)
        index = next((i for i, v in enumerate(branch.versions) if v.id == version_id), None)
        if index is None:
            raise InvalidState(f"Version {version_id} not found in branch {branch_id}")

        if len(branch.versions) == 1:
            self.delete_branch(branch_id)
            return

        version = branch.versions[index]
        doomed = self._orphaned_by(branch, version)
        self._ensure_not_streaming(doomed | {branch_id})

        del branch.versions[index]
        if branch.current_version_index == index:
            branch.current_version_index = min(index, len(branch.versions) - 1)
        elif branch.current_version_index > index:
            branch.current_version_index -= 1

        self._drop(doomed)
        refresh_path(tree)
        logger.debug("Removed version %s from branch %s", version_id, branch_id)

    def _orphaned_by(self, branch: Branch, version: Version) -> set[str]:
        child_id = version.continuation
        if child_id is None:
            return set()
        shared = any(
            other.continuation == child_id for other in branch.versions if other is not version
        )
        if shared:
            return set()
        return collect_subtree(self.tree, child_id)

    def _ensure_not_streaming(self, branch_ids: set[str]) -> None:
        target = self.tree.stream_target
        if (
            target is not None
            and self.record.generation_status != GenerationStatus.IDLE
            and target.branch_id in branch_ids
        ):
            raise InvalidState(
                f"Cannot delete branch {target.branch_id} while a reply streams into it"
            )

    def _drop(self, doomed: set[str]) -> None:
        tree = self.tree
        for branch_id in doomed:
            tree.branches.pop(branch_id, None)
        for branch in tree.branches.values():
            for version in branch.versions:
                if version.continuation in doomed:
                    version.continuation = None
        if tree.root_id in doomed:
            tree.root_id = None
