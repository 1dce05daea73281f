"""JSON and plain-text views of a stored conversation."""

import json

from .models import Branch, ConversationRecord, ImagePart, TextPart, Version
from .tree import reachable_branches


def part_to_dict(part: TextPart | ImagePart) -> dict:
    if isinstance(part, TextPart):
        return {"type": "text", "text": part.text}
    return {"type": "image", "url": part.url}


def version_to_dict(version: Version) -> dict:
    usage = version.metadata.usage
    reasoning = version.metadata.reasoning
    return {
        "id": version.id,
        "timestamp": version.timestamp.isoformat(),
        "parts": [part_to_dict(p) for p in version.parts],
        "continuation": version.continuation,
        "is_error": version.metadata.is_error,
        "usage": usage.model_dump() if usage else None,
        "reasoning": reasoning.model_dump() if reasoning else None,
    }


def path_to_list(record: ConversationRecord) -> list[dict]:
    """The displayed conversation, one entry per branch on the current path."""
    messages = []
    for branch_id in record.tree.current_path:
        branch = record.tree.branches[branch_id]
        messages.append(
            {
                "branch_id": branch.id,
                "role": branch.role.value,
                "version_index": branch.current_version_index,
                "total_versions": len(branch.versions),
                **version_to_dict(branch.current_version),
            }
        )
    return messages


def compute_metadata(record: ConversationRecord) -> dict:
    """Compute summary metadata for the conversation."""
    tree = record.tree
    return {
        "conversation_id": record.id,
        "title": record.title,
        "model": record.model,
        "project_id": record.project_id,
        "created": record.created_at.isoformat(),
        "updated": record.updated_at.isoformat(),
        "path_length": len(tree.current_path),
        "total_branches": len(tree.branches),
        "total_versions": sum(len(b.versions) for b in tree.branches.values()),
        "has_error": record.has_error,
    }


def render_json(record: ConversationRecord, compact: bool = False) -> str:
    """Render conversation metadata and current path as JSON string."""
    ordered = {"metadata": compute_metadata(record), "messages": path_to_list(record)}
    return json.dumps(ordered, indent=None if compact else 2, ensure_ascii=False)


def _preview(version: Version, width: int) -> str:
    chunks = []
    for part in version.parts:
        if isinstance(part, TextPart):
            chunks.append(part.text)
        else:
            chunks.append("[image]")
    text = " ".join(" ".join(chunks).split())
    return text if len(text) <= width else text[:width] + "..."


def render_outline(record: ConversationRecord, width: int = 60) -> str:
    """Indented outline of every branch and version.

    ``*`` marks active versions, ``>`` marks branches on the current path.
    """
    tree = record.tree
    lines = [f"{record.title} ({record.model})"]
    on_path = set(tree.current_path)
    reachable = reachable_branches(tree)
    printed: set[str] = set()

    def walk(branch: Branch, depth: int) -> None:
        printed.add(branch.id)
        marker = ">" if branch.id in on_path else " "
        indent = "  " * depth
        lines.append(f"{indent}{marker} {branch.role.value} {branch.id[:8]}")
        for i, version in enumerate(branch.versions):
            active = "*" if i == branch.current_version_index else " "
            lines.append(f"{indent}    {active}v{i + 1}: {_preview(version, width)}")
            child_id = version.continuation
            if child_id and child_id in reachable and child_id not in printed:
                walk(tree.branches[child_id], depth + 1)

    if tree.root_id is not None:
        walk(tree.branches[tree.root_id], 0)
    else:
        lines.append("  (empty)")
    return "\n".join(lines)
