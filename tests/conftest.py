"""Pytest configuration and fixtures."""

import asyncio
from pathlib import Path

import pytest

from branchline.config import Settings
from branchline.engine import ChatEngine
from branchline.errors import ProviderAborted
from branchline.models import ConversationRecord, Role, TextPart
from branchline.provider import ChunkKind, StreamChunk
from branchline.tree import add_branch


def text(value: str) -> list[TextPart]:
    """Single-part text content."""
    return [TextPart(text=value)]


def chunk(content: str) -> StreamChunk:
    return StreamChunk(kind=ChunkKind.TEXT, content=content)


class ScriptedProvider:
    """Yields a fixed list of chunks; exceptions in the list are raised in place."""

    def __init__(self, items: list | None = None) -> None:
        self.items = items if items is not None else [chunk("Hello")]
        self.calls: list[dict] = []

    async def stream_reply(self, history, model, signal):
        self.calls.append({"history": history, "model": model})
        for item in self.items:
            signal.raise_if_cancelled()
            await asyncio.sleep(0)
            if isinstance(item, Exception):
                raise item
            yield item


class QueueProvider:
    """Yields whatever the test pushes; ``None`` ends the stream."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()
        self.calls: list[dict] = []

    def push(self, *items) -> None:
        for item in items:
            self.queue.put_nowait(item)

    async def stream_reply(self, history, model, signal):
        self.calls.append({"history": history, "model": model})
        while True:
            item = await self.queue.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item


class HangingProvider:
    """Never produces a chunk until cancelled."""

    def __init__(self) -> None:
        self.calls: list[dict] = []

    async def stream_reply(self, history, model, signal):
        self.calls.append({"history": history, "model": model})
        await signal.wait()
        raise ProviderAborted("aborted")
        yield  # pragma: no cover


async def wait_for(predicate, timeout: float = 1.0) -> None:
    """Yield to the loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with a short first-chunk timeout."""
    return Settings(first_chunk_timeout=0.05, data_dir=tmp_path / "conversations")


@pytest.fixture
def record() -> ConversationRecord:
    """Empty conversation record."""
    return ConversationRecord(title="Test", model="test-model")


@pytest.fixture
def chat(record: ConversationRecord) -> dict[str, str]:
    """Record with one exchange: user 'hi' followed by model 'hello'."""
    user_id = add_branch(record.tree, Role.USER, text("hi"))
    reply_id = add_branch(record.tree, Role.MODEL, text("hello"))
    return {"user": user_id, "reply": reply_id}


@pytest.fixture
def scripted() -> ScriptedProvider:
    return ScriptedProvider([chunk("He"), chunk("llo")])


@pytest.fixture
def engine(scripted: ScriptedProvider, settings: Settings) -> ChatEngine:
    return ChatEngine(scripted, settings=settings)
