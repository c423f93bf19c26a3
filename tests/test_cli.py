from kbchat.api import cli
from kbchat.core.engine import ServiceContext

from .conftest import FakeLanguageModel


def scripted_input(monkeypatch, lines):
    replies = iter(lines)

    def fake_input(prompt=""):
        try:
            return next(replies)
        except StopIteration:
            raise EOFError

    monkeypatch.setattr("builtins.input", fake_input)


async def test_chat_loop_answers_and_resets(monkeypatch, capsys, context):
    scripted_input(monkeypatch, ["", "How do I hire?", "reset", "exit"])

    code = await cli.run_chat(context)

    out = capsys.readouterr().out
    assert code == 0
    assert "Structured interviews help." in out
    assert "Chat history reset." in out
    assert "Knowledge chunks loaded: 4" in out


async def test_chat_loop_ends_on_eof(monkeypatch, capsys, context):
    scripted_input(monkeypatch, [])
    assert await cli.run_chat(context) == 0
    assert "Shutting down." in capsys.readouterr().out


async def test_chat_requires_corpus(capsys, settings, embedder, session_store):
    context = ServiceContext(settings, embedder=embedder, llm=FakeLanguageModel(), sessions=session_store)

    assert await cli.run_chat(context) == 1
    assert "kbchat-ingest" in capsys.readouterr().out
