"""Domain models for branchline."""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal
from uuid import uuid4

from pydantic import BaseModel, Field, PrivateAttr


def new_id() -> str:
    return uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Who authored a branch."""

    USER = "user"
    MODEL = "model"


class GenerationStatus(str, Enum):
    """Per-conversation generation state."""

    IDLE = "idle"
    SENDING = "sending"
    RECEIVING = "receiving"


class CancelReason(str, Enum):
    """Why an in-flight generation was cancelled."""

    USER = "user"
    SUPERSEDED = "superseded"
    TIMEOUT = "timeout"


class TextPart(BaseModel):
    """A run of text."""

    kind: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    """An image, usually a data: URL."""

    kind: Literal["image"] = "image"
    url: str


Part = Annotated[TextPart | ImagePart, Field(discriminator="kind")]


class Usage(BaseModel):
    """Token accounting reported by the provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float | None = None


class ReasoningDetail(BaseModel):
    """One structured reasoning step reported by the provider."""

    title: str | None = None
    content: str


class Reasoning(BaseModel):
    """Model reasoning captured alongside a reply version."""

    stream_text: str = ""
    details: list[ReasoningDetail] = []
    summary: str | None = None


class VersionMetadata(BaseModel):
    usage: Usage | None = None
    reasoning: Reasoning | None = None
    is_error: bool = False
    error_kind: str | None = None  # "provider" | "timeout"
    error_message: str | None = None


class Version(BaseModel):
    """One concrete content alternative of a branch."""

    id: str = Field(default_factory=new_id)
    parts: list[Part] = []
    timestamp: datetime = Field(default_factory=utcnow)
    continuation: str | None = None  # id of the branch that follows this version
    metadata: VersionMetadata = Field(default_factory=VersionMetadata)


class Branch(BaseModel):
    """A turn slot holding one or more alternative versions."""

    id: str = Field(default_factory=new_id)
    role: Role
    parent_id: str | None = None  # branch whose versions continue into this one
    versions: list[Version]
    current_version_index: int = 0

    @property
    def current_version(self) -> Version:
        return self.versions[self.current_version_index]


class StreamTarget(BaseModel):
    """The version currently open for streaming appends."""

    branch_id: str
    version_id: str


class ConversationTree(BaseModel):
    """Arena of branches plus the materialized current path."""

    root_id: str | None = None
    branches: dict[str, Branch] = {}
    current_path: list[str] = []
    stream_target: StreamTarget | None = Field(default=None, exclude=True)


class HistoryMessage(BaseModel):
    """One prompt entry sent to the model provider."""

    role: Role
    parts: list[Part]


class ConversationRecord(BaseModel):
    """A conversation and its tree, plus live generation state."""

    id: str = Field(default_factory=new_id)
    title: str
    model: str
    project_id: str | None = None
    generation_status: GenerationStatus = GenerationStatus.IDLE
    has_error: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    tree: ConversationTree = Field(default_factory=ConversationTree)
    notice: str | None = None  # transient, e.g. last persistence failure

    _active_stream: object | None = PrivateAttr(default=None)

    @property
    def active_stream(self):
        return self._active_stream

    def attach_stream(self, coordinator) -> None:
        """Install a new stream owner, cancelling the previous one first."""
        previous = self._active_stream
        if previous is not None and previous is not coordinator:
            previous.cancel(CancelReason.SUPERSEDED)
        self._active_stream = coordinator

    def release_stream(self, coordinator) -> bool:
        """Drop the stream handle if `coordinator` still owns it."""
        if self._active_stream is coordinator:
            self._active_stream = None
            return True
        return False

    def touch(self) -> None:
        self.updated_at = utcnow()


class ConversationSnapshot(BaseModel):
    """Serializable state handed to the persistence gateway."""

    id: str
    title: str
    model: str
    project_id: str | None = None
    has_error: bool = False
    created_at: datetime
    updated_at: datetime
    tree: ConversationTree
