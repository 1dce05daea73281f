"""Unit tests for the transcript module."""

import json

from conftest import text

from branchline.models import ConversationRecord, ImagePart, Reasoning, Usage
from branchline.transcript import compute_metadata, part_to_dict, render_json, render_outline
from branchline.tree import add_version, get_branch


class TestComputeMetadata:
    """Tests for compute_metadata."""

    def test_counts(self, record: ConversationRecord, chat: dict) -> None:
        """Counts cover every branch and version, not just the path."""
        add_version(record.tree, chat["reply"], text("alt"), inherit_continuation=False)
        meta = compute_metadata(record)
        assert meta["conversation_id"] == record.id
        assert meta["path_length"] == 2
        assert meta["total_branches"] == 2
        assert meta["total_versions"] == 3
        assert meta["has_error"] is False


class TestRenderJson:
    """Tests for render_json."""

    def test_messages_follow_path(self, record: ConversationRecord, chat: dict) -> None:
        """Only active versions of path branches are rendered."""
        add_version(record.tree, chat["reply"], text("alt"), inherit_continuation=False)
        data = json.loads(render_json(record))
        assert [m["role"] for m in data["messages"]] == ["user", "model"]
        reply = data["messages"][1]
        assert reply["parts"] == [{"type": "text", "text": "alt"}]
        assert reply["version_index"] == 1
        assert reply["total_versions"] == 2

    def test_usage_included(self, record: ConversationRecord, chat: dict) -> None:
        """Version usage is carried through."""
        version = get_branch(record.tree, chat["reply"]).current_version
        version.metadata.usage = Usage(prompt_tokens=1, completion_tokens=2, total_tokens=3)
        data = json.loads(render_json(record))
        assert data["messages"][1]["usage"]["total_tokens"] == 3

    def test_reasoning_included(self, record: ConversationRecord, chat: dict) -> None:
        """Reasoning rides along with the reply; user turns have none."""
        version = get_branch(record.tree, chat["reply"]).current_version
        version.metadata.reasoning = Reasoning(stream_text="thinking", summary="short")
        data = json.loads(render_json(record))
        assert data["messages"][0]["reasoning"] is None
        assert data["messages"][1]["reasoning"]["stream_text"] == "thinking"
        assert data["messages"][1]["reasoning"]["summary"] == "short"

    def test_compact(self, record: ConversationRecord, chat: dict) -> None:
        """Compact output is a single line."""
        assert "\n" not in render_json(record, compact=True)

    def test_image_part(self) -> None:
        """Images render as url entries."""
        assert part_to_dict(ImagePart(url="u")) == {"type": "image", "url": "u"}


class TestRenderOutline:
    """Tests for render_outline."""

    def test_marks_path_and_active_versions(
        self, record: ConversationRecord, chat: dict
    ) -> None:
        """Inactive forks are listed without markers."""
        add_version(record.tree, chat["user"], text("edited"), inherit_continuation=False)
        outline = render_outline(record)
        lines = outline.splitlines()
        assert lines[0] == "Test (test-model)"
        assert lines[1].startswith("> user")
        assert "     v1: hi" in outline
        assert "    *v2: edited" in outline
        assert "  model" in outline
        assert "> model" not in outline

    def test_empty(self, record: ConversationRecord) -> None:
        """An empty tree is labelled as such."""
        assert "(empty)" in render_outline(record)

    def test_width(self, record: ConversationRecord, chat: dict) -> None:
        """Previews are cut at the given width."""
        add_version(record.tree, chat["reply"], text("a" * 50), inherit_continuation=True)
        assert "a" * 10 + "..." in render_outline(record, width=10)
