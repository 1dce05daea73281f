"""Lifecycle of one in-flight generation.

States: idle -> sending -> receiving -> idle. ``sending`` starts when the
coordinator is armed; the first content chunk (text or image) moves the
record to ``receiving`` and disarms the first-chunk watchdog. Usage and
reasoning chunks are recorded but do not count as content. Every exit path
settles the target version and hands the record back to ``idle``.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from enum import Enum

from .config import Settings
from .errors import GenerationCancelled, InvalidState, ProviderAborted, ProviderError, StreamTimeout
from .models import (
    CancelReason,
    ConversationRecord,
    GenerationStatus,
    HistoryMessage,
    ImagePart,
    ReasoningDetail,
    StreamTarget,
    TextPart,
    VersionMetadata,
)
from .provider import CONTENT_KINDS, ChunkKind, ModelProvider, StreamChunk
from .tree import (
    add_reasoning_detail,
    append_content,
    append_reasoning,
    close_stream,
    find_version,
    has_content,
    open_stream,
    record_usage,
    replace_content,
    set_reasoning_summary,
)

logger = logging.getLogger(__name__)


async def _read_next(iterator: AsyncIterator[StreamChunk]) -> StreamChunk:
    return await iterator.__anext__()


class StreamOutcome(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


class CancelToken:
    """Cooperative cancellation signal shared with the provider."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: CancelReason | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: CancelReason = CancelReason.USER) -> None:
        # First reason wins
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        """Helper for providers polling between network reads."""
        if self.cancelled:
            raise ProviderAborted(f"Generation aborted ({self.reason.value})")


class StreamCoordinator:
    """Streams a model reply into the active version of one branch."""

    def __init__(
        self,
        record: ConversationRecord,
        branch_id: str,
        provider: ModelProvider,
        history: list[HistoryMessage],
        settings: Settings,
    ) -> None:
        self.record = record
        self.branch_id = branch_id
        self.provider = provider
        self.history = history
        self.settings = settings
        self.token: CancelToken | None = None
        self.target: StreamTarget | None = None
        self.outcome: StreamOutcome | None = None
        self.error: ProviderError | None = None
        self.content_chunks = 0

    @property
    def active(self) -> bool:
        return self.token is not None

    def arm(self) -> None:
        """Enter ``sending``: take ownership of the record and open the target version.

        Any coordinator still attached to the record is cancelled first.
        """
        if self.outcome is not None or self.token is not None:
            raise InvalidState("A stream coordinator can only be armed once")

        self.record.attach_stream(self)
        self.token = CancelToken()
        self.target = open_stream(self.record.tree, self.branch_id)
        self.record.generation_status = GenerationStatus.SENDING
        logger.info(
            "Generation started for conversation %s, branch %s", self.record.id, self.branch_id
        )

    def cancel(self, reason: CancelReason = CancelReason.USER) -> None:
        if self.token is not None:
            self.token.cancel(reason)

    async def run(self) -> StreamOutcome:
        """Consume the provider stream until completion, error, timeout or cancellation.

        Provider failures never propagate out of this method; they become a
        message in the target version plus ``has_error`` on the record.
        """
        if self.token is None:
            self.arm()
        token = self.token
        target = self.target

        watchdog = asyncio.create_task(self._watchdog(token))
        cancel_waiter = asyncio.create_task(token.wait())
        stream: AsyncIterator[StreamChunk] | None = None

        try:
            stream = self.provider.stream_reply(self.history, self.record.model, token)
            iterator = stream.__aiter__()
            while True:
                try:
                    chunk = await self._next_chunk(iterator, cancel_waiter)
                except StopAsyncIteration:
                    break
                if chunk.kind in CONTENT_KINDS:
                    if self.content_chunks == 0:
                        watchdog.cancel()
                        if self._owns_record():
                            self.record.generation_status = GenerationStatus.RECEIVING
                    self.content_chunks += 1
                self._apply(chunk)

            if self._target_has_content(target):
                self._complete()
            else:
                self._fail(target, self.settings.empty_reply_message, kind="provider")
        except (GenerationCancelled, ProviderAborted):
            self._settle_cancelled(token, target)
        except asyncio.CancelledError:
            self._settle_cancelled(token, target)
            raise
        except Exception as exc:
            if token.cancelled:
                # Providers that do not raise ProviderAborted on abort
                self._settle_cancelled(token, target)
            else:
                logger.exception("Generation failed for conversation %s", self.record.id)
                detail = str(exc) or type(exc).__name__
                self._fail(target, self.settings.error_template.format(error=detail), kind="provider")
        finally:
            watchdog.cancel()
            cancel_waiter.cancel()
            await self._close_provider_stream(stream)
            close_stream(self.record.tree, target)
            self.token = None
            if self.record.release_stream(self):
                self.record.generation_status = GenerationStatus.IDLE
            self.record.touch()

        return self.outcome

    async def _next_chunk(
        self, iterator: AsyncIterator[StreamChunk], cancel_waiter: asyncio.Task
    ) -> StreamChunk:
        if cancel_waiter.done():
            raise GenerationCancelled()

        next_task = asyncio.create_task(_read_next(iterator))
        try:
            done, _ = await asyncio.wait(
                {next_task, cancel_waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            next_task.cancel()
            raise

        if cancel_waiter in done:
            # Chunks that race a cancel are dropped
            next_task.cancel()
            await asyncio.gather(next_task, return_exceptions=True)
            raise GenerationCancelled()
        return next_task.result()

    async def _watchdog(self, token: CancelToken) -> None:
        await asyncio.sleep(self.settings.first_chunk_timeout)
        if self.content_chunks == 0:
            logger.warning(
                "No content from provider after %.1fs for conversation %s",
                self.settings.first_chunk_timeout,
                self.record.id,
            )
            token.cancel(CancelReason.TIMEOUT)

    def _apply(self, chunk: StreamChunk) -> None:
        tree = self.record.tree
        if chunk.kind == ChunkKind.TEXT:
            append_content(tree, self.branch_id, TextPart(text=chunk.content))
        elif chunk.kind == ChunkKind.IMAGE:
            append_content(tree, self.branch_id, ImagePart(url=chunk.content))
        elif chunk.kind == ChunkKind.USAGE:
            if chunk.usage is not None:
                record_usage(tree, self.branch_id, chunk.usage)
        elif chunk.kind == ChunkKind.REASONING:
            append_reasoning(tree, self.branch_id, chunk.content)
        elif chunk.kind == ChunkKind.REASONING_DETAIL:
            detail = ReasoningDetail(title=chunk.title, content=chunk.content)
            add_reasoning_detail(tree, self.branch_id, detail)
        elif chunk.kind == ChunkKind.REASONING_SUMMARY:
            set_reasoning_summary(tree, self.branch_id, chunk.content)
        else:
            raise ValueError(f"Unknown chunk kind: {chunk.kind}")

    def _owns_record(self) -> bool:
        return self.record.active_stream is self

    def _taken_over(self, target: StreamTarget) -> bool:
        """A newer stream now writes into the same version."""
        current = self.record.tree.stream_target
        return (
            current is not None
            and current is not target
            and (current.branch_id, current.version_id) == (target.branch_id, target.version_id)
        )

    def _target_has_content(self, target: StreamTarget) -> bool:
        version = find_version(self.record.tree, target)
        return version is not None and has_content(version.parts)

    def _complete(self) -> None:
        self.outcome = StreamOutcome.COMPLETED
        if self._owns_record():
            self.record.has_error = False
        logger.info(
            "Generation completed for conversation %s (%d content chunks)",
            self.record.id,
            self.content_chunks,
        )

    def _fail(self, target: StreamTarget, message: str, kind: str) -> None:
        self.outcome = StreamOutcome.TIMED_OUT if kind == "timeout" else StreamOutcome.FAILED
        self.error = StreamTimeout(message) if kind == "timeout" else ProviderError(message)
        metadata = VersionMetadata(is_error=True, error_kind=kind, error_message=message)
        replace_content(self.record.tree, target, [TextPart(text=message)], metadata)
        if self._owns_record():
            self.record.has_error = True

    def _settle_cancelled(self, token: CancelToken, target: StreamTarget) -> None:
        reason = token.reason or CancelReason.USER
        produced = self._target_has_content(target)

        if reason == CancelReason.TIMEOUT and not produced:
            message = self.settings.timeout_message.format(
                seconds=self.settings.first_chunk_timeout
            )
            self._fail(target, message, kind="timeout")
            logger.info("Generation timed out for conversation %s", self.record.id)
            return

        self.outcome = StreamOutcome.CANCELLED
        if not produced and not self._taken_over(target):
            replace_content(
                self.record.tree, target, [TextPart(text=self.settings.stopped_marker)]
            )
        if self._owns_record():
            self.record.has_error = False
        logger.info(
            "Generation cancelled for conversation %s (%s)", self.record.id, reason.value
        )

    async def _close_provider_stream(self, stream: AsyncIterator[StreamChunk] | None) -> None:
        aclose = getattr(stream, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception:
            logger.debug("Provider stream raised while closing", exc_info=True)
