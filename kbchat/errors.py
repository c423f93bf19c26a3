"""Exception hierarchy shared across ingestion, retrieval and conversation layers.

Architectural role:
    Gives every layer a stable vocabulary for failures that callers are expected to
    handle explicitly (skip a chunk, refuse a request, emit an apology frame)
    instead of parsing error strings.

Failure classes:
    - `DimensionMismatch`: embedding vector length differs from the configured one.
    - `CorpusError` family: persisted index/metadata state is missing or out of sync.
    - `IngestionError`: a build run produced nothing usable.
    - `LLMError`: the language-model transport failed or returned garbage.
    - `SessionExpired` / `SessionBusy`: session lifecycle refusals.
"""


class KBChatError(Exception):
    """Base class for all kbchat errors."""


class DimensionMismatch(KBChatError):
    """Raised when a vector does not have the dimension expected by its consumer."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}"
        )


class CorpusError(KBChatError):
    """Base class for persisted corpus state problems."""


class CorpusNotFound(CorpusError):
    """Neither the index file nor the metadata file exists."""


class CorpusStateInconsistent(CorpusError):
    """Index and metadata exist only partially or disagree with each other."""


class IngestionError(KBChatError):
    """An ingestion run produced zero chunks or zero embeddings."""


class LLMError(KBChatError):
    """Language-model request failed; message is already sanitized."""


class SessionExpired(KBChatError):
    """Session was idle for longer than the configured timeout."""


class SessionBusy(KBChatError):
    """Another request for the same session is still in flight."""
