import hashlib
import re
import time

import numpy as np
import pytest

from kbchat.config import Settings
from kbchat.core.engine import ServiceContext
from kbchat.errors import LLMError
from kbchat.memory.embedding_model import Embedder
from kbchat.memory.session_store import InMemorySessionBackend, SessionStore
from kbchat.memory.vector_index import VectorIndex


DIM = 16


class FakeEncoder:
    """Bag-of-words hashing encoder with the `SentenceTransformer.encode` shape."""

    def __init__(self, dimension=DIM):
        self.dimension = dimension
        self.calls = 0

    def encode(self, texts):
        self.calls += 1
        rows = []
        for text in texts:
            vec = np.zeros(self.dimension, dtype="float32")
            for word in re.findall(r"\w+", text.lower()):
                bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % self.dimension
                vec[bucket] += 1.0
            rows.append(vec)
        return np.stack(rows)


class FakeLanguageModel:
    """Scripted stand-in for `kbchat.llm.service.LanguageModel`."""

    def __init__(self, tokens=None, fail_after=None, summary="summary", summary_error=False, configured=True):
        self.tokens = list(tokens or [])
        self.fail_after = fail_after
        self.summary = summary
        self.summary_error = summary_error
        self.configured = configured
        self.prompts = []
        self.summary_calls = []
        self.closed = False

    async def stream_answer(self, prompt):
        self.prompts.append(prompt)
        try:
            for i, token in enumerate(self.tokens):
                if self.fail_after is not None and i >= self.fail_after:
                    raise LLMError("OPENAI HTTP ERROR (500)")
                yield token
        finally:
            self.closed = True

    async def summarize(self, prior_summary, messages):
        self.summary_calls.append((prior_summary, list(messages)))
        if self.summary_error:
            raise LLMError("OPENAI HTTP ERROR (503)")
        return self.summary


class FakeClock:
    def __init__(self, start=None):
        self.now = start if start is not None else time.time()

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


CORPUS = [
    ("Hiring", "Interviews", "Structured interviews reduce hiring bias and improve candidate comparison."),
    ("Sales", "Pipeline", "A healthy sales pipeline tracks leads through qualification and closing."),
    ("Scaling", "Systems", "Document repeatable systems before scaling the team to new markets."),
    ("Sales", "Pricing", "Value based pricing anchors the offer to customer outcomes."),
]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        embed_dimension=DIM,
        top_k=4,
        data_dir=str(tmp_path / "data"),
        session_dir=str(tmp_path / "sessions"),
    )


@pytest.fixture
def encoder():
    return FakeEncoder()


@pytest.fixture
def embedder(encoder):
    return Embedder("fake-model", DIM, model=encoder)


@pytest.fixture
def populated_index(embedder):
    index = VectorIndex(DIM)
    for section, subsection, text in CORPUS:
        index.add(embedder.embed(text), text, {"section": section, "subsection": subsection, "type": "general"})
    return index


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_store(clock):
    return SessionStore(InMemorySessionBackend(), timeout_seconds=30 * 60, clock=clock)


@pytest.fixture
def llm():
    return FakeLanguageModel(tokens=["<|answer|>", "\n", "Structured ", "interviews ", "help."])


@pytest.fixture
def context(settings, embedder, llm, session_store, populated_index):
    return ServiceContext(settings, embedder=embedder, llm=llm, sessions=session_store, index=populated_index)
