"""
HTTP API adapter for the kbchat engine.

Architectural role:
- Expose the chat, reset and health endpoints over FastAPI.
- Map HTTP sessions (cookie `kbchat_session`) onto `SessionStore` sessions.
- Delegate answering to `kbchat.core.engine.ConversationOrchestrator`.
- Normalize orchestrator events to the SSE transport contract.

Endpoint responsibilities:
- `GET /`: liveness text.
- `POST /chat`: validate input, resolve the session, stream the answer.
- `POST /reset-chat`: clear the current session's memory under the same claim
  and expiry rules as `/chat`.
- `GET /health`: report whether the vector store and the answer chain are ready.

API request lifecycle (`POST /chat`):
1. Parse request JSON (`message`).
2. Claim the session named by the cookie; a second concurrent request for it
   yields HTTP 409.
3. Load the session; idle sessions are expired with HTTP 440.
4. Make sure the vector index is loaded; a missing corpus yields HTTP 503.
5. Stream `data: {"text": ...}` frames and a final `data: [DONE]`.

Error handling strategy:
- Validation and session failures return structured JSON before streaming starts.
- Once streaming started, failures surface as one apology frame followed by `[DONE]`.
- Client disconnects stop the stream; the orchestrator then skips the memory write.

Side effects:
- Loads environment variables at import time via `load_dotenv()`.
- Emits request/response debug logs only when `DEBUG == "true"`.
"""

from dotenv import load_dotenv

load_dotenv()

import argparse
import asyncio
import json
import logging
import os
from contextlib import AsyncExitStack, aclosing
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel, ValidationError
from starlette.background import BackgroundTask

from kbchat.config import Settings
from kbchat.core.engine import APOLOGY_MESSAGE, ConversationOrchestrator, ServiceContext
from kbchat.core.events import End, Error, Token
from kbchat.errors import CorpusError, SessionBusy, SessionExpired
from kbchat.memory.session_store import new_session_id


logger = logging.getLogger(__name__)

SESSION_COOKIE = "kbchat_session"


class ChatRequest(BaseModel):
    """Body of `POST /chat`."""
    message: str


def sse_frame(payload) -> str:
    """Encode one SSE `data:` frame."""
    if isinstance(payload, str):
        return f"data: {payload}\n\n"
    return f"data: {json.dumps(payload)}\n\n"


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(context: Optional[ServiceContext] = None) -> FastAPI:
    """Build the FastAPI application around one service context.

    Args:
        context: Shared collaborators; built from the environment when omitted.
    """
    app = FastAPI(title="kbchat")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.context = context or ServiceContext(Settings.from_env())

    def get_context(request: Request) -> ServiceContext:
        return request.app.state.context

    @app.get("/", response_class=PlainTextResponse)
    def root():
        return "kbchat backend is running"

    @app.post("/chat")
    async def chat(request: Request):
        ctx = get_context(request)
        settings = ctx.settings

        try:
            payload = ChatRequest.model_validate(await request.json())
        except (ValueError, ValidationError):
            return _error(400, "Message is required")

        message = payload.message
        if not message.strip():
            return _error(400, "Message is required")

        if settings.debug:
            logger.debug("Incoming message: %r", message)

        session_id = request.cookies.get(SESSION_COOKIE)
        if not ctx.sessions.is_valid_id(session_id):
            session_id = new_session_id()

        claim = AsyncExitStack()
        try:
            await claim.enter_async_context(ctx.sessions.acquire(session_id))
        except SessionBusy:
            return _error(409, "A response for this session is already in progress")

        try:
            session = await asyncio.to_thread(ctx.sessions.open, session_id)
        except SessionExpired:
            await claim.aclose()
            response = _error(440, "Session expired")
            response.delete_cookie(SESSION_COOKIE)
            return response

        try:
            await ctx.ensure_ready()
        except CorpusError:
            await claim.aclose()
            return _error(503, "Knowledge base is not available")

        orchestrator = ConversationOrchestrator(ctx)

        async def event_generator():
            """
            Yield SSE frames for one answer.

            Response formatting:
            - `Token` events become `{"text": ...}` frames.
            - An `Error` event becomes one apology frame.
            - The final sentinel frame is `[DONE]`.
            """
            try:
                async with aclosing(orchestrator.respond(session, message)) as events:
                    async for event in events:
                        if await request.is_disconnected():
                            logger.info("Client disconnected during stream for session %s", session.id)
                            return

                        if isinstance(event, Token):
                            if settings.debug:
                                logger.debug("Streaming chunk: %r", event.text)
                            yield sse_frame({"text": event.text})
                        elif isinstance(event, Error):
                            yield sse_frame({"text": event.message})
                        elif isinstance(event, End) and settings.debug:
                            logger.debug("Final answer: %r", event.answer)

                yield sse_frame("[DONE]")
            except Exception:
                logger.exception("Streaming failed for session %s", session.id)
                yield sse_frame({"text": APOLOGY_MESSAGE})
                yield sse_frame("[DONE]")
            finally:
                await claim.aclose()

        response = StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
            background=BackgroundTask(claim.aclose),
        )
        response.set_cookie(
            SESSION_COOKIE,
            session.id,
            max_age=settings.session_cookie_max_age,
            httponly=True,
            samesite="lax",
        )
        return response

    @app.post("/reset-chat")
    async def reset_chat(request: Request):
        ctx = get_context(request)
        session_id = request.cookies.get(SESSION_COOKIE)
        if not ctx.sessions.is_valid_id(session_id):
            return {"success": True, "message": "Chat history reset"}

        try:
            async with ctx.sessions.acquire(session_id):
                await asyncio.to_thread(ctx.sessions.reset, session_id)
        except SessionBusy:
            return _error(409, "A response for this session is already in progress")
        except SessionExpired:
            response = _error(440, "Session expired")
            response.delete_cookie(SESSION_COOKIE)
            return response

        return {"success": True, "message": "Chat history reset"}

    @app.get("/health")
    async def health(request: Request):
        ctx = get_context(request)
        try:
            await ctx.ensure_ready()
        except CorpusError:
            pass
        return {
            "status": "ok",
            "vectorStore": ctx.index_ready,
            "chain": ctx.pipeline_ready,
        }

    return app


def main(argv=None):
    """Entry point for `kbchat-serve`."""
    import uvicorn

    parser = argparse.ArgumentParser(description="Serve the kbchat HTTP API.")
    parser.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "5000")))
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = create_app(ServiceContext(settings))
    logger.info("Server running on port %d", args.port)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
