import asyncio
from dataclasses import replace

import pytest

from kbchat.core.engine import (
    APOLOGY_MESSAGE,
    ConversationOrchestrator,
    ServiceContext,
    _enforce_prompt_token_budget,
)
from kbchat.core.events import End, Error, Token
from kbchat.errors import CorpusNotFound

from .conftest import FakeLanguageModel


async def collect(stream):
    return [event async for event in stream]


async def test_successful_answer_updates_memory(context, llm):
    session = context.sessions.open(None)
    events = await collect(ConversationOrchestrator(context).respond(session, "How should I interview?"))

    assert events[:-1] == [Token("Structured "), Token("interviews "), Token("help.")]
    assert events[-1] == End("Structured interviews help.")

    stored = context.sessions.open(session.id)
    assert stored.history == [
        {"role": "user", "content": "How should I interview?"},
        {"role": "assistant", "content": "Structured interviews help."},
    ]
    assert "Structured interviews reduce hiring bias" in llm.prompts[0]
    assert llm.prompts[0].endswith(context.settings.answer_separator + "\n")


async def test_echoed_prompt_is_hidden(context):
    context.llm.tokens = ["INSTRUCTIONS echo ", "<|answer|>", "\n", "Real ", "answer"]
    session = context.sessions.open(None)

    events = await collect(ConversationOrchestrator(context).respond(session, "question"))

    assert [e.text for e in events if isinstance(e, Token)] == ["Real ", "answer"]
    assert events[-1] == End("Real answer")


async def test_answer_without_separator_is_not_lost(context):
    context.llm.tokens = ["Plain ", "answer"]
    session = context.sessions.open(None)

    events = await collect(ConversationOrchestrator(context).respond(session, "question"))

    assert events == [Token("Plain answer"), End("Plain answer")]


async def test_forwarding_mode_without_separator(context):
    context.settings = replace(context.settings, answer_separator="")
    context.llm.tokens = ["a", "b"]
    session = context.sessions.open(None)

    events = await collect(ConversationOrchestrator(context).respond(session, "question"))
    assert events == [Token("a"), Token("b"), End("ab")]


async def test_mid_stream_error_leaves_memory_untouched(context):
    context.llm.tokens = ["<|answer|>", "partial ", "never"]
    context.llm.fail_after = 2
    session = context.sessions.open(None)

    events = await collect(ConversationOrchestrator(context).respond(session, "question"))

    assert events[-1] == Error(APOLOGY_MESSAGE)
    assert not any(isinstance(e, End) for e in events)
    assert context.sessions.open(session.id).history == []


async def test_cancellation_discards_exchange(context):
    context.llm.tokens = ["<|answer|>", "one ", "two ", "three"]
    session = context.sessions.open(None)

    stream = ConversationOrchestrator(context).respond(session, "question")
    first = await stream.__anext__()
    assert first == Token("one ")
    await stream.aclose()

    assert context.llm.closed
    assert session.history == []
    assert context.sessions.open(session.id).history == []


async def test_checkpoint_after_three_exchanges(context):
    context.llm.summary = "User asked about interviews."
    session = context.sessions.open(None)
    orchestrator = ConversationOrchestrator(context)

    for i in range(3):
        await collect(orchestrator.respond(session, f"question {i}"))

    stored = context.sessions.open(session.id)
    assert stored.summary == "User asked about interviews."
    assert stored.history == []

    await collect(orchestrator.respond(session, "follow up"))
    assert "User asked about interviews." in context.llm.prompts[-1]


async def test_missing_corpus_is_reported(settings, embedder, session_store):
    context = ServiceContext(settings, embedder=embedder, llm=FakeLanguageModel(tokens=["x"]), sessions=session_store)

    with pytest.raises(CorpusNotFound):
        await context.ensure_ready()
    assert not context.index_ready
    assert not context.pipeline_ready
    assert isinstance(context.load_error, CorpusNotFound)

    session = session_store.open(None)
    events = await collect(ConversationOrchestrator(context).respond(session, "question"))
    assert events == [Error(APOLOGY_MESSAGE)]


async def test_index_loaded_once_for_concurrent_requests(settings, embedder, session_store, populated_index, monkeypatch):
    populated_index.save(settings.index_path, settings.metadata_path)
    context = ServiceContext(settings, embedder=embedder, llm=FakeLanguageModel(), sessions=session_store)

    from kbchat.memory.vector_index import VectorIndex

    loads = []
    original = VectorIndex.load

    def counting_load(*args, **kwargs):
        loads.append(args)
        return original(*args, **kwargs)

    monkeypatch.setattr(VectorIndex, "load", counting_load)

    retrievers = await asyncio.gather(*(context.ensure_ready() for _ in range(5)))

    assert len(loads) == 1
    assert all(r is retrievers[0] for r in retrievers)
    assert context.index_ready


def test_prompt_budget_trims_middle():
    prompt = "HEAD " + "x" * 1000 + " TAIL"
    trimmed = _enforce_prompt_token_budget(prompt, budget=50)

    assert trimmed.startswith("HEAD")
    assert trimmed.endswith("TAIL")
    assert "[TRUNCATED: PROMPT TOKEN BUDGET]" in trimmed
    assert _enforce_prompt_token_budget("short", budget=50) == "short"
