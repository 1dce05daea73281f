"""Operations on a ConversationTree.

The tree is an arena: branches live in ``tree.branches`` keyed by id and
versions point forward to the branch that continues them. ``current_path``
is never edited directly; every mutation that can change an active
continuation finishes with ``refresh_path``.
"""

import logging
from collections.abc import Iterable

from .errors import InvalidState, NotStreaming, UnknownBranch
from .models import (
    Branch,
    ConversationTree,
    HistoryMessage,
    ImagePart,
    Part,
    Reasoning,
    ReasoningDetail,
    Role,
    StreamTarget,
    TextPart,
    Usage,
    Version,
    VersionMetadata,
)

logger = logging.getLogger(__name__)


def get_branch(tree: ConversationTree, branch_id: str) -> Branch:
    branch = tree.branches.get(branch_id)
    if branch is None:
        raise UnknownBranch(branch_id)
    return branch


def derive_path(tree: ConversationTree) -> list[str]:
    """Walk from the root through each active version's continuation."""
    path: list[str] = []
    seen: set[str] = set()
    branch_id = tree.root_id

    while branch_id is not None and branch_id not in seen:
        branch = tree.branches.get(branch_id)
        if branch is None:
            break
        path.append(branch_id)
        seen.add(branch_id)
        branch_id = branch.current_version.continuation

    return path


def refresh_path(tree: ConversationTree) -> list[str]:
    tree.current_path = derive_path(tree)
    return tree.current_path


def is_streaming_branch(tree: ConversationTree, branch_id: str) -> bool:
    return tree.stream_target is not None and tree.stream_target.branch_id == branch_id


def _ensure_not_streaming(tree: ConversationTree, branch_id: str, action: str) -> None:
    if is_streaming_branch(tree, branch_id):
        raise InvalidState(f"Cannot {action} branch {branch_id} while a reply streams into it")


def add_branch(
    tree: ConversationTree,
    role: Role,
    parts: Iterable[Part],
    parent_id: str | None = None,
) -> str:
    """Append a branch with a single version.

    The branch continues the active version of ``parent_id``, or of the last
    branch on the current path when no parent is given. The parent's active
    version must not already have a continuation.
    """
    if parent_id is None:
        parent_id = tree.current_path[-1] if tree.current_path else None
        if parent_id is None and tree.root_id is not None:
            raise InvalidState("Current path is empty but the tree has a root")
    else:
        parent = get_branch(tree, parent_id)
        if parent.current_version.continuation is not None:
            raise InvalidState(f"Active version of branch {parent_id} is already continued")

    branch = Branch(role=role, parent_id=parent_id, versions=[Version(parts=list(parts))])
    tree.branches[branch.id] = branch

    if parent_id is None:
        tree.root_id = branch.id
    else:
        tree.branches[parent_id].current_version.continuation = branch.id

    refresh_path(tree)
    logger.debug("Added %s branch %s after %s", role.value, branch.id, parent_id)
    return branch.id


def add_version(
    tree: ConversationTree,
    branch_id: str,
    parts: Iterable[Part],
    inherit_continuation: bool,
) -> str:
    """Append a version to a branch and make it active.

    With ``inherit_continuation`` the new version points at the same
    follow-up branch as the version it replaces, so the rest of the
    conversation stays on the path. Without it the new version is terminal.
    """
    branch = get_branch(tree, branch_id)
    _ensure_not_streaming(tree, branch_id, "add a version to")

    previous = branch.current_version
    version = Version(
        parts=list(parts),
        continuation=previous.continuation if inherit_continuation else None,
    )
    branch.versions.append(version)
    branch.current_version_index = len(branch.versions) - 1

    refresh_path(tree)
    logger.debug(
        "Added version %s to branch %s (inherit=%s)", version.id, branch_id, inherit_continuation
    )
    return version.id


def switch_version(tree: ConversationTree, branch_id: str, direction: int) -> bool:
    """Move the active version by one step, clamped at both ends.

    Returns False when already at the boundary.
    """
    if direction not in (1, -1):
        raise InvalidState(f"Version direction must be +1 or -1, got {direction}")
    branch = get_branch(tree, branch_id)
    _ensure_not_streaming(tree, branch_id, "switch versions of")

    index = max(0, min(len(branch.versions) - 1, branch.current_version_index + direction))
    if index == branch.current_version_index:
        return False

    branch.current_version_index = index
    refresh_path(tree)
    return True


def open_stream(tree: ConversationTree, branch_id: str) -> StreamTarget:
    """Mark the branch's active version as the live streaming target."""
    branch = get_branch(tree, branch_id)
    target = StreamTarget(branch_id=branch_id, version_id=branch.current_version.id)
    tree.stream_target = target
    return target


def close_stream(tree: ConversationTree, target: StreamTarget) -> None:
    """Clear the streaming target if it is still the very object ``target``."""
    if tree.stream_target is target:
        tree.stream_target = None


def _target_version(tree: ConversationTree, branch_id: str) -> Version:
    branch = get_branch(tree, branch_id)
    version = branch.current_version
    target = tree.stream_target
    if target is None or (target.branch_id, target.version_id) != (branch_id, version.id):
        raise NotStreaming(f"Branch {branch_id} is not the target of an active stream")
    return version


def append_content(tree: ConversationTree, branch_id: str, delta: Part) -> None:
    """Append a streamed delta to the live target version.

    Text extends the trailing text part (or opens one); images always add a
    new part, replacing an empty text placeholder if that is all there is at
    the tail.
    """
    version = _target_version(tree, branch_id)
    parts = version.parts
    last = parts[-1] if parts else None

    if isinstance(delta, TextPart):
        if isinstance(last, TextPart):
            parts[-1] = TextPart(text=last.text + delta.text)
        else:
            parts.append(TextPart(text=delta.text))
    elif isinstance(delta, ImagePart):
        if isinstance(last, TextPart) and not last.text:
            parts.pop()
        parts.append(ImagePart(url=delta.url))
    else:
        raise TypeError(f"Unsupported content part: {type(delta).__name__}")


def find_version(tree: ConversationTree, target: StreamTarget) -> Version | None:
    branch = tree.branches.get(target.branch_id)
    if branch is None:
        return None
    return next((v for v in branch.versions if v.id == target.version_id), None)


def replace_content(
    tree: ConversationTree,
    target: StreamTarget,
    parts: Iterable[Part],
    metadata: VersionMetadata | None = None,
) -> bool:
    """Overwrite a stream's version with a terminal message.

    Addresses the version by id so a superseded stream can still settle its
    own version. Returns False if the version no longer exists.
    """
    version = find_version(tree, target)
    if version is None:
        return False
    version.parts = list(parts)
    if metadata is not None:
        previous = version.metadata
        version.metadata = metadata.model_copy(
            update={
                "usage": metadata.usage or previous.usage,
                "reasoning": metadata.reasoning or previous.reasoning,
            }
        )
    return True


def record_usage(tree: ConversationTree, branch_id: str, usage: Usage) -> None:
    version = _target_version(tree, branch_id)
    version.metadata = version.metadata.model_copy(update={"usage": usage})


def _patch_reasoning(tree: ConversationTree, branch_id: str, **changes) -> Reasoning:
    version = _target_version(tree, branch_id)
    current = version.metadata.reasoning or Reasoning()
    reasoning = current.model_copy(update=changes)
    version.metadata = version.metadata.model_copy(update={"reasoning": reasoning})
    return reasoning


def append_reasoning(tree: ConversationTree, branch_id: str, delta: str) -> None:
    """Extend the streamed reasoning text of the live target version."""
    current = _target_version(tree, branch_id).metadata.reasoning
    text = current.stream_text if current else ""
    _patch_reasoning(tree, branch_id, stream_text=text + delta)


def add_reasoning_detail(tree: ConversationTree, branch_id: str, detail: ReasoningDetail) -> None:
    current = _target_version(tree, branch_id).metadata.reasoning
    details = list(current.details) if current else []
    _patch_reasoning(tree, branch_id, details=[*details, detail])


def set_reasoning_summary(tree: ConversationTree, branch_id: str, summary: str) -> None:
    _patch_reasoning(tree, branch_id, summary=summary)


def has_content(parts: Iterable[Part]) -> bool:
    """True if any part carries an image or non-empty text."""
    for part in parts:
        if isinstance(part, ImagePart):
            return True
        if isinstance(part, TextPart) and part.text:
            return True
    return False


def parts_equal(a: list[Part], b: list[Part]) -> bool:
    """Part-by-part comparison in render order."""
    if len(a) != len(b):
        return False
    for left, right in zip(a, b):
        if isinstance(left, TextPart) and isinstance(right, TextPart):
            if left.text != right.text:
                return False
        elif isinstance(left, ImagePart) and isinstance(right, ImagePart):
            if left.url != right.url:
                return False
        else:
            return False
    return True


def version_text(version: Version) -> str:
    return "".join(part.text for part in version.parts if isinstance(part, TextPart))


def path_messages(tree: ConversationTree) -> list[HistoryMessage]:
    """The conversation as currently displayed, as prompt messages."""
    messages = []
    for branch_id in tree.current_path:
        branch = tree.branches[branch_id]
        messages.append(
            HistoryMessage(role=branch.role, parts=list(branch.current_version.parts))
        )
    return messages


def history_before(tree: ConversationTree, branch_id: str) -> list[HistoryMessage]:
    """Prompt history: everything on the current path strictly before ``branch_id``."""
    if branch_id not in tree.current_path:
        raise InvalidState(f"Branch {branch_id} is not on the current path")
    index = tree.current_path.index(branch_id)
    return path_messages(tree)[:index]


def path_text(tree: ConversationTree) -> str:
    """Plain text of the current path, one message per line, for search indexing."""
    lines = []
    for branch_id in tree.current_path:
        text = version_text(tree.branches[branch_id].current_version)
        if text:
            lines.append(text)
    return "\n".join(lines)


def reachable_branches(tree: ConversationTree) -> set[str]:
    """Every branch reachable from the root through any version."""
    seen: set[str] = set()
    stack = [tree.root_id] if tree.root_id else []
    while stack:
        branch_id = stack.pop()
        if branch_id in seen or branch_id not in tree.branches:
            continue
        seen.add(branch_id)
        for version in tree.branches[branch_id].versions:
            if version.continuation:
                stack.append(version.continuation)
    return seen


def check_invariants(tree: ConversationTree) -> None:
    """Raise InvalidState describing the first broken invariant, if any."""
    if (tree.root_id is None) != (not tree.branches):
        raise InvalidState("Root id and branch map disagree about emptiness")

    for branch_id, branch in tree.branches.items():
        if branch.id != branch_id:
            raise InvalidState(f"Branch {branch.id} stored under key {branch_id}")
        if not branch.versions:
            raise InvalidState(f"Branch {branch_id} has no versions")
        if not 0 <= branch.current_version_index < len(branch.versions):
            raise InvalidState(
                f"Branch {branch_id} index {branch.current_version_index} "
                f"out of range for {len(branch.versions)} versions"
            )
        for version in branch.versions:
            child_id = version.continuation
            if child_id is None:
                continue
            child = tree.branches.get(child_id)
            if child is None:
                raise InvalidState(f"Version {version.id} continues into missing branch {child_id}")
            if child.parent_id != branch_id:
                raise InvalidState(f"Branch {child_id} parent is {child.parent_id}, not {branch_id}")

    if tree.current_path != derive_path(tree):
        raise InvalidState("Current path diverges from the active versions")

    orphans = set(tree.branches) - reachable_branches(tree)
    if orphans:
        raise InvalidState(f"Unreachable branches: {sorted(orphans)}")


def repair_interrupted(tree: ConversationTree, marker: str) -> int:
    """Give versions left empty by an interrupted stream the stopped marker."""
    repaired = 0
    for branch in tree.branches.values():
        for version in branch.versions:
            if not has_content(version.parts):
                version.parts = [TextPart(text=marker)]
                repaired += 1
    if repaired:
        logger.info("Repaired %d interrupted version(s)", repaired)
    return repaired
