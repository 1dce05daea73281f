"""branchline error hierarchy.

Hierarchy:
    BranchlineError
    ├── InvalidState               # command not allowed in current status or tree shape
    │   ├── NotStreaming           # append without a live stream target
    │   └── UnknownBranch
    ├── UnknownConversation
    ├── ProviderError              # model provider failure
    │   └── StreamTimeout          # first chunk never arrived
    ├── ProviderAborted            # provider observed the cancellation signal
    ├── GenerationCancelled        # stream loop unwinding after cancel
    └── PersistenceError

Structural errors (InvalidState and below) are raised before the tree is
touched. Streaming errors never leave StreamCoordinator.run().
"""


class BranchlineError(Exception):
    """Base class for all branchline errors."""


class InvalidState(BranchlineError):
    """Operation not permitted in the current generation status or tree shape."""


class NotStreaming(InvalidState):
    """Content append attempted on a version that is not the live stream target."""


class UnknownBranch(InvalidState):
    def __init__(self, branch_id: str) -> None:
        super().__init__(f"Branch not found: {branch_id}")
        self.branch_id = branch_id


class UnknownConversation(BranchlineError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id


class ProviderError(BranchlineError):
    """The model provider failed mid-generation."""


class StreamTimeout(ProviderError):
    """No content arrived before the first-chunk watchdog fired."""


class ProviderAborted(BranchlineError):
    """Raised by providers when they notice the cancellation signal."""


class GenerationCancelled(BranchlineError):
    """Cancellation observed by the stream loop. Not an error for has_error."""


class PersistenceError(BranchlineError):
    """A persistence gateway could not store or load a snapshot."""
