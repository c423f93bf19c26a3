"""
Interactive terminal adapter for kbchat.

Architectural role:
- Provides a terminal-only interface over `ConversationOrchestrator`.
- Displays vector store status at startup for operator visibility.

Request lifecycle (per user turn):
1. Read a single line from stdin.
2. Handle local control commands (`exit`/`quit`, `reset`).
3. Forward regular questions to the orchestrator.
4. Print streamed tokens incrementally.

Error handling strategy:
- A missing or inconsistent corpus aborts startup with a readable message.
- EOF and keyboard interrupts terminate the loop without traceback output.
"""

from dotenv import load_dotenv

load_dotenv()

import asyncio
import logging
import sys

from kbchat.config import Settings
from kbchat.core.engine import ConversationOrchestrator, ServiceContext
from kbchat.core.events import Error, Token
from kbchat.errors import CorpusError, SessionExpired


RULE = "-" * 60


async def answer(orchestrator: ConversationOrchestrator, session, question: str, out=None) -> None:
    """Stream one answer to `out` (stdout by default)."""
    out = out or sys.stdout
    async for event in orchestrator.respond(session, question):
        if isinstance(event, Token):
            out.write(event.text)
            out.flush()
        elif isinstance(event, Error):
            out.write(event.message)
    out.write("\n")


async def run_chat(context: ServiceContext) -> int:
    """
    Run the interactive terminal session.

    Returns:
        Process exit code.
    """
    try:
        await context.ensure_ready()
    except CorpusError as err:
        print(f"Knowledge base unavailable: {err}")
        print("Build it first with `kbchat-ingest CORPUS`.")
        return 1

    orchestrator = ConversationOrchestrator(context)
    session = context.sessions.open(None)

    print("kbchat started. (Type 'exit' to quit, 'reset' to clear the conversation)\n")
    print(RULE)
    print(f"Knowledge chunks loaded: {len((await context.ensure_ready()).index)}")
    print(RULE)

    while True:
        try:
            question = (await asyncio.to_thread(input, "Question: ")).strip()
        except (EOFError, KeyboardInterrupt):
            print("\nShutting down.")
            break

        if not question:
            continue

        if question.lower() in ("exit", "quit"):
            print("Shutting down.")
            break

        if question.lower() == "reset":
            try:
                orchestrator.reset(session.id)
            except SessionExpired:
                pass
            session = context.sessions.open(session.id)
            print("Chat history reset.")
            continue

        print("\nResponse:\n")
        await answer(orchestrator, session, question)
        print("\n" + RULE + "\n")

    return 0


def main():
    """Entry point for `kbchat-chat`."""
    if hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(encoding="utf-8", errors="replace")

    settings = Settings.from_env()
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        code = asyncio.run(run_chat(ServiceContext(settings)))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
