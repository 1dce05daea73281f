"""Tests for the stream coordinator."""

import asyncio

import pytest
from conftest import HangingProvider, QueueProvider, ScriptedProvider, chunk, text, wait_for

from branchline.config import Settings
from branchline.editor import placeholder_parts
from branchline.errors import InvalidState, ProviderAborted, ProviderError, StreamTimeout
from branchline.models import (
    CancelReason,
    ConversationRecord,
    GenerationStatus,
    ImagePart,
    ReasoningDetail,
    Role,
    TextPart,
    Usage,
)
from branchline.provider import ChunkKind, StreamChunk
from branchline.stream import CancelToken, StreamCoordinator, StreamOutcome
from branchline.tree import add_branch, get_branch, history_before


@pytest.fixture
def pending(record: ConversationRecord) -> str:
    """User 'hi' followed by an empty reply branch; returns the reply id."""
    add_branch(record.tree, Role.USER, text("hi"))
    return add_branch(record.tree, Role.MODEL, placeholder_parts())


def make_coordinator(
    record: ConversationRecord, branch_id: str, provider, settings: Settings
) -> StreamCoordinator:
    history = history_before(record.tree, branch_id)
    return StreamCoordinator(record, branch_id, provider, history, settings)


def reply_parts(record: ConversationRecord, branch_id: str) -> list:
    return get_branch(record.tree, branch_id).current_version.parts


class TestCancelToken:
    """Tests for CancelToken."""

    @pytest.mark.asyncio
    async def test_first_reason_wins(self) -> None:
        """Later cancels do not overwrite the reason."""
        token = CancelToken()
        token.cancel(CancelReason.TIMEOUT)
        token.cancel(CancelReason.USER)
        assert token.cancelled
        assert token.reason == CancelReason.TIMEOUT
        with pytest.raises(ProviderAborted):
            token.raise_if_cancelled()


class TestCompletion:
    """Successful streams."""

    @pytest.mark.asyncio
    async def test_deltas_accumulate(
        self, record: ConversationRecord, pending: str, settings: Settings
    ) -> None:
        """Text deltas concatenate into the placeholder version."""
        provider = ScriptedProvider([chunk("He"), chunk("llo")])
        coordinator = make_coordinator(record, pending, provider, settings)
        outcome = await coordinator.run()

        assert outcome == StreamOutcome.COMPLETED
        assert reply_parts(record, pending) == [TextPart(text="Hello")]
        assert record.generation_status == GenerationStatus.IDLE
        assert record.has_error is False
        assert record.tree.stream_target is None
        assert record.active_stream is None
        assert provider.calls[0]["model"] == "test-model"
        assert [m.role for m in provider.calls[0]["history"]] == [Role.USER]

    @pytest.mark.asyncio
    async def test_status_transitions(
        self, record: ConversationRecord, pending: str, settings: Settings
    ) -> None:
        """idle -> sending on arm, receiving on first chunk, idle at the end."""
        provider = QueueProvider()
        coordinator = make_coordinator(record, pending, provider, settings)
        coordinator.arm()
        assert record.generation_status == GenerationStatus.SENDING

        task = asyncio.create_task(coordinator.run())
        provider.push(chunk("He"))
        await wait_for(lambda: record.generation_status == GenerationStatus.RECEIVING)
        provider.push(chunk("llo"), None)
        assert await task == StreamOutcome.COMPLETED
        assert record.generation_status == GenerationStatus.IDLE

    @pytest.mark.asyncio
    async def test_image_and_usage_chunks(
        self, record: ConversationRecord, pending: str, settings: Settings
    ) -> None:
        """Images replace the placeholder; usage lands in version metadata."""
        usage = Usage(prompt_tokens=3, completion_tokens=5, total_tokens=8)
        provider = ScriptedProvider(
            [
                StreamChunk(kind=ChunkKind.IMAGE, content="data:image/png;base64,AAA"),
                StreamChunk(kind=ChunkKind.USAGE, usage=usage),
            ]
        )
        await make_coordinator(record, pending, provider, settings).run()

        version = get_branch(record.tree, pending).current_version
        assert version.parts == [ImagePart(url="data:image/png;base64,AAA")]
        assert version.metadata.usage == usage

    @pytest.mark.asyncio
    async def test_slow_stream_not_timed_out(
        self, record: ConversationRecord, pending: str, settings: Settings
    ) -> None:
        """The watchdog only guards the first chunk."""
        provider = QueueProvider()
        coordinator = make_coordinator(record, pending, provider, settings)
        task = asyncio.create_task(coordinator.run())
        provider.push(chunk("a"))
        await asyncio.sleep(settings.first_chunk_timeout * 3)
        provider.push(chunk("b"), None)
        assert await task == StreamOutcome.COMPLETED
        assert reply_parts(record, pending) == text("ab")

    @pytest.mark.asyncio
    async def test_arm_twice(
        self, record: ConversationRecord, pending: str, settings: Settings
    ) -> None:
        """A coordinator drives exactly one generation."""
        coordinator = make_coordinator(record, pending, ScriptedProvider(), settings)
        await coordinator.run()
        with pytest.raises(InvalidState):
            coordinator.arm()


class TestFailures:
    """Timeouts and provider errors."""

    @pytest.mark.asyncio
    async def test_first_chunk_timeout(
        self, record: ConversationRecord, pending: str, settings: Settings
    ) -> None:
        """No chunk within the timeout writes the timeout message and flags an error."""
        coordinator = make_coordinator(record, pending, HangingProvider(), settings)
        outcome = await coordinator.run()

        assert outcome == StreamOutcome.TIMED_OUT
        assert isinstance(coordinator.error, StreamTimeout)
        version = get_branch(record.tree, pending).current_version
        assert version.parts[0].text.startswith("Request timed out")
        assert version.metadata.is_error
        assert version.metadata.error_kind == "timeout"
        assert record.has_error is True
        assert record.generation_status == GenerationStatus.IDLE

    @pytest.mark.asyncio
    async def test_usage_before_content_still_times_out(
        self, record: ConversationRecord, pending: str, settings: Settings
    ) -> None:
        """A usage-only first chunk neither disarms the watchdog nor moves to receiving."""
        usage = Usage(prompt_tokens=4, total_tokens=4)
        provider = QueueProvider()
        coordinator = make_coordinator(record, pending, provider, settings)
        coordinator.arm()
        task = asyncio.create_task(coordinator.run())
        provider.push(StreamChunk(kind=ChunkKind.USAGE, usage=usage))
        await wait_for(
            lambda: get_branch(record.tree, pending).current_version.metadata.usage is not None
        )
        assert record.generation_status == GenerationStatus.SENDING
        assert coordinator.content_chunks == 0

        outcome = await asyncio.wait_for(task, timeout=1.0)
        assert outcome == StreamOutcome.TIMED_OUT
        version = get_branch(record.tree, pending).current_version
        assert version.metadata.error_kind == "timeout"
        assert version.metadata.usage == usage
        assert record.generation_status == GenerationStatus.IDLE

    @pytest.mark.asyncio
    async def test_provider_error(
        self, record: ConversationRecord, pending: str, settings: Settings
    ) -> None:
        """A provider exception becomes a formatted error message."""
        provider = ScriptedProvider([RuntimeError("boom")])
        coordinator = make_coordinator(record, pending, provider, settings)
        outcome = await coordinator.run()

        assert outcome == StreamOutcome.FAILED
        assert type(coordinator.error) is ProviderError
        assert str(coordinator.error) == "Sorry, an error occurred: boom"
        assert reply_parts(record, pending) == text("Sorry, an error occurred: boom")
        assert record.has_error is True
        assert record.generation_status == GenerationStatus.IDLE

    @pytest.mark.asyncio
    async def test_error_overwrites_partial_content(
        self, record: ConversationRecord, pending: str, settings: Settings
    ) -> None:
        """Partial output is replaced by the error message."""
        provider = ScriptedProvider([chunk("par"), RuntimeError("boom")])
        await make_coordinator(record, pending, provider, settings).run()
        assert reply_parts(record, pending) == text("Sorry, an error occurred: boom")

    @pytest.mark.asyncio
    async def test_empty_stream(
        self, record: ConversationRecord, pending: str, settings: Settings
    ) -> None:
        """A stream that ends without content is an error."""
        outcome = await make_coordinator(record, pending, ScriptedProvider([]), settings).run()
        assert outcome == StreamOutcome.FAILED
        assert reply_parts(record, pending) == text(settings.empty_reply_message)
        assert record.has_error is True


class TestCancellation:
    """User cancellation, task cancellation and supersession."""

    @pytest.mark.asyncio
    async def test_cancel_before_content(
        self, record: ConversationRecord, pending: str, settings: Settings
    ) -> None:
        """Cancelling before the first chunk writes the stopped marker."""
        coordinator = make_coordinator(record, pending, QueueProvider(), settings)
        task = asyncio.create_task(coordinator.run())
        await asyncio.sleep(0)
        coordinator.cancel()
        assert await task == StreamOutcome.CANCELLED
        assert reply_parts(record, pending) == text(settings.stopped_marker)
        assert record.has_error is False
        assert record.generation_status == GenerationStatus.IDLE

    @pytest.mark.asyncio
    async def test_cancel_keeps_partial_content(
        self, record: ConversationRecord, pending: str, settings: Settings
    ) -> None:
        """Content streamed before a cancel is preserved as-is."""
        provider = QueueProvider()
        coordinator = make_coordinator(record, pending, provider, settings)
        task = asyncio.create_task(coordinator.run())
        provider.push(chunk("partial"))
        await wait_for(lambda: coordinator.content_chunks == 1)
        coordinator.cancel()
        provider.push(chunk(" dropped"))
        assert await task == StreamOutcome.CANCELLED
        assert reply_parts(record, pending) == text("partial")
        assert record.has_error is False

    @pytest.mark.asyncio
    async def test_task_cancellation_settles(
        self, record: ConversationRecord, pending: str, settings: Settings
    ) -> None:
        """Cancelling the driving task still returns the record to idle."""
        coordinator = make_coordinator(record, pending, QueueProvider(), settings)
        task = asyncio.create_task(coordinator.run())
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert reply_parts(record, pending) == text(settings.stopped_marker)
        assert record.generation_status == GenerationStatus.IDLE
        assert record.tree.stream_target is None

    @pytest.mark.asyncio
    async def test_superseded_stream(
        self, record: ConversationRecord, pending: str, settings: Settings
    ) -> None:
        """A newer coordinator cancels the old one, which leaves status to the new owner."""
        old_provider, new_provider = QueueProvider(), QueueProvider()
        old = make_coordinator(record, pending, old_provider, settings)
        old_task = asyncio.create_task(old.run())
        await asyncio.sleep(0)

        new = make_coordinator(record, pending, new_provider, settings)
        new.arm()
        new_task = asyncio.create_task(new.run())

        assert await old_task == StreamOutcome.CANCELLED
        assert old.token is None
        assert record.active_stream is new
        assert record.generation_status == GenerationStatus.SENDING
        assert reply_parts(record, pending) == placeholder_parts()

        new_provider.push(chunk("fresh"), None)
        assert await new_task == StreamOutcome.COMPLETED
        assert reply_parts(record, pending) == text("fresh")
        assert record.generation_status == GenerationStatus.IDLE


class TestReasoning:
    """Reasoning chunks."""

    @pytest.mark.asyncio
    async def test_reasoning_recorded_beside_reply(
        self, record: ConversationRecord, pending: str, settings: Settings
    ) -> None:
        """Reasoning lands in metadata and leaves the reply parts alone."""
        provider = ScriptedProvider(
            [
                StreamChunk(kind=ChunkKind.REASONING, content="Let me "),
                StreamChunk(kind=ChunkKind.REASONING, content="think"),
                StreamChunk(kind=ChunkKind.REASONING_DETAIL, title="Plan", content="greet"),
                StreamChunk(kind=ChunkKind.REASONING_SUMMARY, content="Greets the user"),
                chunk("Hi"),
            ]
        )
        coordinator = make_coordinator(record, pending, provider, settings)
        assert await coordinator.run() == StreamOutcome.COMPLETED

        version = get_branch(record.tree, pending).current_version
        assert version.parts == text("Hi")
        assert coordinator.content_chunks == 1
        reasoning = version.metadata.reasoning
        assert reasoning.stream_text == "Let me think"
        assert reasoning.details == [ReasoningDetail(title="Plan", content="greet")]
        assert reasoning.summary == "Greets the user"

    @pytest.mark.asyncio
    async def test_reasoning_only_times_out(
        self, record: ConversationRecord, pending: str, settings: Settings
    ) -> None:
        """Reasoning is not a first chunk; the timeout keeps what was reasoned."""
        provider = QueueProvider()
        coordinator = make_coordinator(record, pending, provider, settings)
        task = asyncio.create_task(coordinator.run())
        provider.push(StreamChunk(kind=ChunkKind.REASONING, content="hmm"))

        assert await asyncio.wait_for(task, timeout=1.0) == StreamOutcome.TIMED_OUT
        version = get_branch(record.tree, pending).current_version
        assert version.metadata.is_error
        assert version.metadata.reasoning.stream_text == "hmm"
        assert record.generation_status == GenerationStatus.IDLE

    @pytest.mark.asyncio
    async def test_reasoning_only_stream_is_empty_reply(
        self, record: ConversationRecord, pending: str, settings: Settings
    ) -> None:
        """A stream that ends after reasoning alone is an empty reply."""
        provider = ScriptedProvider([StreamChunk(kind=ChunkKind.REASONING, content="hmm")])
        outcome = await make_coordinator(record, pending, provider, settings).run()
        assert outcome == StreamOutcome.FAILED
        assert reply_parts(record, pending) == text(settings.empty_reply_message)
