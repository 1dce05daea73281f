"""branchline: branching, versioned conversation store with streaming generation."""

from .config import Settings, get_settings
from .deletion import DeletionEngine
from .editor import VersionEditor
from .engine import ChatEngine
from .errors import (
    BranchlineError,
    InvalidState,
    NotStreaming,
    ProviderAborted,
    ProviderError,
    StreamTimeout,
    UnknownBranch,
    UnknownConversation,
)
from .models import (
    Branch,
    ConversationRecord,
    ConversationTree,
    GenerationStatus,
    ImagePart,
    Reasoning,
    ReasoningDetail,
    Role,
    TextPart,
    Version,
)
from .persistence import JsonDirectoryGateway, MemoryGateway
from .provider import ChunkKind, ModelProvider, StreamChunk
from .stream import CancelToken, StreamCoordinator, StreamOutcome

__all__ = [
    "Branch",
    "BranchlineError",
    "CancelToken",
    "ChatEngine",
    "ChunkKind",
    "ConversationRecord",
    "ConversationTree",
    "DeletionEngine",
    "GenerationStatus",
    "ImagePart",
    "InvalidState",
    "JsonDirectoryGateway",
    "MemoryGateway",
    "ModelProvider",
    "NotStreaming",
    "ProviderAborted",
    "ProviderError",
    "Reasoning",
    "ReasoningDetail",
    "Role",
    "Settings",
    "StreamChunk",
    "StreamCoordinator",
    "StreamOutcome",
    "StreamTimeout",
    "TextPart",
    "UnknownBranch",
    "UnknownConversation",
    "Version",
    "VersionEditor",
    "get_settings",
]
