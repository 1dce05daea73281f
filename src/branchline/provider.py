"""Contract for model provider clients."""

from collections.abc import AsyncIterator
from enum import Enum
from typing import TYPE_CHECKING, Protocol

from pydantic import BaseModel

from .models import HistoryMessage, Usage

if TYPE_CHECKING:
    from .stream import CancelToken


class ChunkKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    USAGE = "usage"
    REASONING = "reasoning"
    REASONING_DETAIL = "reasoning_detail"
    REASONING_SUMMARY = "reasoning_summary"


# Only these make a reply non-empty
CONTENT_KINDS = frozenset({ChunkKind.TEXT, ChunkKind.IMAGE})


class StreamChunk(BaseModel):
    """One increment of a streamed reply.

    ``content`` holds the text delta for text and reasoning chunks, the image
    URL for image chunks, the step body for reasoning details (with an
    optional ``title``) and the full text for a reasoning summary. Usage
    chunks carry token accounting only.
    """

    kind: ChunkKind
    content: str = ""
    title: str | None = None
    usage: Usage | None = None


class ModelProvider(Protocol):
    """Anything that can stream a reply for a prompt history.

    Implementations must stop promptly once ``signal.cancelled`` is set and
    raise ``ProviderAborted`` rather than a generic failure when they do.
    """

    def stream_reply(
        self,
        history: list[HistoryMessage],
        model: str,
        signal: "CancelToken",
    ) -> AsyncIterator[StreamChunk]: ...
