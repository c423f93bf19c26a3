"""Core request orchestration for retrieval, prompting, streaming and memory.

Architectural role:
    Provides the execution pipeline used by the HTTP and CLI layers to turn one user
    question into a streamed, memory-aware answer.

Control-flow model (`ConversationOrchestrator.respond`):
    1. Retrieve top-k chunks for the question (embedding runs in a worker thread).
    2. Build the prompt: instructions + retrieved context + memory summary + recent
       exchanges + question + answer separator.
    3. Stream deltas from the language model.
    4. Gate deltas through `StreamFilter` and emit `Token` events.
    5. On completion persist the exchange via `MemoryManager.save_context`, save the
       session, and emit `End`.
    6. On `LLMError` emit a single `Error` apology event; the session is untouched.

Cancellation policy:
    Discard. When the consumer stops iterating (client disconnect, `aclose()`, task
    cancellation) the upstream model stream is closed and no memory write happens,
    so memory never reflects a half-streamed answer.

Service context:
    `ServiceContext` replaces process-wide singletons. It is built once per process
    and owns the settings, embedder, language model, session store and the lazily
    loaded vector index. Index loading is guarded by an `asyncio.Lock` so concurrent
    first requests load it exactly once.
"""

import asyncio
import logging
from contextlib import aclosing
from typing import AsyncIterator, Optional

from kbchat.config import Settings
from kbchat.core.events import End, Error, StreamEvent, Token
from kbchat.core.stream_filter import StreamFilter
from kbchat.errors import CorpusError, DimensionMismatch, LLMError
from kbchat.llm.service import LanguageModel
from kbchat.memory.embedding_model import Embedder
from kbchat.memory.memory_manager import MemoryManager
from kbchat.memory.session_store import Session, SessionStore, build_backend
from kbchat.memory.vector_index import VectorIndex
from kbchat.prompting.prompt_builder import build_chat_prompt
from kbchat.retrieval.retriever import Retriever


logger = logging.getLogger(__name__)

APOLOGY_MESSAGE = "I'm sorry, there was an error generating a response. Please try again."
PROMPT_TOKEN_BUDGET = 12000
CHARS_PER_TOKEN_ESTIMATE = 4


def _estimate_tokens(text: str) -> int:
    """Estimate token count using a character-based heuristic."""
    if not text:
        return 0
    return max(1, len(str(text)) // CHARS_PER_TOKEN_ESTIMATE)


def _enforce_prompt_token_budget(prompt: str, budget: int = PROMPT_TOKEN_BUDGET) -> str:
    """Trim prompts that exceed the configured token budget estimate.

    Important behavior:
        - Preserves both head (instructions) and tail (question and separator).
        - Inserts a truncation marker when middle content is removed.
        - Logs a warning when truncation occurs.
    """
    if not prompt:
        return ""

    token_estimate = _estimate_tokens(prompt)
    if token_estimate <= budget:
        return prompt

    max_chars = budget * CHARS_PER_TOKEN_ESTIMATE
    marker = "\n\n[TRUNCATED: PROMPT TOKEN BUDGET]\n\n"

    head_budget = int(max_chars * 0.55)
    tail_budget = max_chars - head_budget - len(marker)

    if tail_budget <= 0:
        trimmed = prompt[-max_chars:]
    else:
        head = prompt[:head_budget].rstrip()
        tail = prompt[-tail_budget:].lstrip()
        trimmed = f"{head}{marker}{tail}"

    logger.warning(
        "Prompt exceeded budget and was truncated: est_tokens=%d -> est_tokens=%d (budget=%d)",
        token_estimate,
        _estimate_tokens(trimmed),
        budget,
    )
    return trimmed


class ServiceContext:
    """Process-wide collaborators shared by every request.

    Args:
        settings: Process configuration.
        embedder: Shared embedder; built from settings when omitted.
        llm: Language model service; built from settings when omitted.
        sessions: Session store; built from settings when omitted.
        index: Preloaded vector index; loaded from disk on first use when omitted.
    """

    def __init__(
        self,
        settings: Settings,
        embedder: Optional[Embedder] = None,
        llm: Optional[LanguageModel] = None,
        sessions: Optional[SessionStore] = None,
        index: Optional[VectorIndex] = None,
    ):
        self.settings = settings
        self.embedder = embedder or Embedder(settings.embed_model, settings.embed_dimension)
        self.llm = llm or LanguageModel.from_settings(settings)
        self.sessions = sessions or SessionStore(
            build_backend(settings.session_backend, settings.session_dir),
            timeout_seconds=settings.session_timeout_seconds,
            retention_seconds=settings.session_cookie_max_age,
        )
        self._retriever: Optional[Retriever] = None
        self._lock = asyncio.Lock()
        self.load_error: Optional[CorpusError] = None

        if index is not None:
            self._retriever = self._make_retriever(index)

    def _make_retriever(self, index: VectorIndex) -> Retriever:
        return Retriever(
            index,
            self.embedder,
            top_k=self.settings.top_k,
            preview_chars=self.settings.preview_chars,
        )

    @property
    def index_ready(self) -> bool:
        return self._retriever is not None

    @property
    def pipeline_ready(self) -> bool:
        return self.index_ready and self.llm.configured

    async def ensure_ready(self) -> Retriever:
        """Load the index once and return the shared retriever.

        Raises:
            CorpusError: Index/metadata missing or inconsistent. Not cached as
                success; a later call retries after the corpus was rebuilt.
        """
        if self._retriever is not None:
            return self._retriever

        async with self._lock:
            if self._retriever is None:
                try:
                    index = await asyncio.to_thread(
                        VectorIndex.load,
                        self.settings.index_path,
                        self.settings.metadata_path,
                        self.settings.embed_dimension,
                    )
                except CorpusError as err:
                    self.load_error = err
                    logger.error("Vector index unavailable: %s", err)
                    raise

                self.load_error = None
                self._retriever = self._make_retriever(index)

        return self._retriever

    def memory_for(self, session: Session) -> MemoryManager:
        return MemoryManager(
            session,
            self.llm.summarize,
            threshold=self.settings.memory_checkpoint_messages,
        )


class ConversationOrchestrator:
    """Composes retrieval, memory and streaming generation for one question."""

    def __init__(self, context: ServiceContext):
        self.context = context

    async def build_prompt(self, session: Session, question: str) -> str:
        retriever = await self.context.ensure_ready()
        chunks = await asyncio.to_thread(retriever.retrieve, question)

        memory = self.context.memory_for(session).get_context()

        prompt = build_chat_prompt(
            question,
            chunks,
            summary=memory.summary,
            recent_exchanges=memory.recent_exchanges,
            separator=self.context.settings.answer_separator,
        )
        return _enforce_prompt_token_budget(prompt)

    async def respond(self, session: Session, question: str) -> AsyncIterator[StreamEvent]:
        """Stream the answer to `question` as typed events.

        Yields:
            `Token` events, then exactly one `End` or `Error`.

        Side effects:
            On `End` only: appends the exchange to session memory (possibly
            checkpointing the summary) and saves the session.
        """
        try:
            prompt = await self.build_prompt(session, question)
        except (CorpusError, DimensionMismatch):
            logger.exception("Retrieval failed for session %s", session.id)
            yield Error(APOLOGY_MESSAGE)
            return

        if self.context.settings.debug:
            logger.debug("Prompt for session %s:\n%s", session.id, prompt)

        gate = StreamFilter(self.context.settings.answer_separator)
        parts = []

        try:
            async with aclosing(self.context.llm.stream_answer(prompt)) as stream:
                async for delta in stream:
                    text = gate.feed(delta)
                    if not parts:
                        text = text.lstrip("\r\n")
                    if not text:
                        continue
                    parts.append(text)
                    yield Token(text)

            tail = gate.finish()
            if not parts:
                tail = tail.lstrip("\r\n")
            if tail:
                parts.append(tail)
                yield Token(tail)
        except LLMError as err:
            logger.error("LLM error for session %s: %s", session.id, err)
            yield Error(APOLOGY_MESSAGE)
            return

        answer = "".join(parts).strip()

        await self.context.memory_for(session).save_context(question, answer)
        self.context.sessions.save(session)

        yield End(answer)

    def reset(self, session_id: str) -> None:
        self.context.sessions.reset(session_id)
