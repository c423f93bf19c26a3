"""Rolling conversation memory with count-based checkpointing.

Short-term vs long-term memory:
    - Short-term memory is `session.history`: the most recent user/assistant turns,
      injected verbatim into the next prompt.
    - Long-term memory is `session.summary`: one running summary string produced by
      the language model whenever the short-term buffer is checkpointed.

Checkpoint policy:
    Exchange-count based. Once `history` holds `threshold` messages (default 6,
    three user/assistant pairs) the whole buffer plus the prior summary is handed to
    the summarizer and the buffer is cleared.

Summary monotonicity:
    The summarizer always receives the prior summary and is instructed to merge,
    not replace. When it fails or returns nothing, neither the buffer nor the prior
    summary is touched, so a failed checkpoint never loses facts; the next turn
    retries.
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List

from kbchat.errors import LLMError
from kbchat.memory.session_store import Session


logger = logging.getLogger(__name__)

DEFAULT_CHECKPOINT_MESSAGES = 6
VALID_ROLES = ("user", "assistant")

Summarizer = Callable[[str, List[dict]], Awaitable[str]]


@dataclass
class MemoryContext:
    summary: str = ""
    recent_exchanges: List[dict] = field(default_factory=list)


class MemoryManager:
    """Memory operations over one session's state.

    Args:
        session: Session whose `history`/`summary` are read and mutated.
        summarizer: Async callable `(prior_summary, messages) -> new_summary`.
        threshold: Number of buffered messages that triggers a checkpoint.
    """

    def __init__(self, session: Session, summarizer: Summarizer, threshold: int = DEFAULT_CHECKPOINT_MESSAGES):
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.session = session
        self.summarizer = summarizer
        self.threshold = threshold

    def append(self, role: str, content: str) -> None:
        if role not in VALID_ROLES:
            raise ValueError(f"Unsupported role: {role}")
        if not content or not str(content).strip():
            return
        self.session.history.append({"role": role, "content": str(content)})

    async def maybe_checkpoint(self) -> bool:
        """Summarize and clear the buffer once it reached the threshold.

        Returns:
            `True` when a checkpoint replaced the buffer with an updated summary.
        """
        if len(self.session.history) < self.threshold:
            return False

        messages = list(self.session.history)

        try:
            updated = await self.summarizer(self.session.summary, messages)
        except LLMError as err:
            logger.warning("Memory checkpoint skipped, summarizer failed: %s", err)
            return False

        updated = (updated or "").strip()
        if not updated:
            logger.warning("Memory checkpoint skipped, summarizer returned empty text")
            return False

        self.session.summary = updated
        self.session.history = []

        logger.info(
            "Checkpointed %d messages into summary for session %s",
            len(messages), self.session.id,
        )
        return True

    async def save_context(self, question: str, answer: str) -> None:
        """Record one completed exchange, then checkpoint if needed."""
        self.append("user", question)
        self.append("assistant", answer)
        await self.maybe_checkpoint()

    def get_context(self) -> MemoryContext:
        return MemoryContext(
            summary=self.session.summary,
            recent_exchanges=list(self.session.history),
        )

    def reset(self) -> None:
        self.session.history = []
        self.session.summary = ""
