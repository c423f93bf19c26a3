"""Prompt assembly for retrieval-augmented answers.

This module only builds prompt strings from already retrieved context and memory
state. Retrieval, memory updates and model invocation happen outside this module.

Design constraints:
    - Deterministic construction for identical inputs.
    - Fixed ordering of prompt components.
    - No hidden side effects (no I/O, no global state mutation).

Prompt component order:
    1) Assistant instructions
    2) Knowledge base context (numbered retrieved chunks)
    3) Conversation summary
    4) Recent exchanges
    5) User question
    6) Answer separator line

Answer separator:
    The prompt always ends with the separator line. A model that echoes the prompt
    before answering therefore emits the separator right before its answer, and the
    stream filter keys on it instead of guessing the boundary from content.
"""

from typing import Iterable, List


DEFAULT_ANSWER_SEPARATOR = "<|answer|>"

INSTRUCTIONS = (
    "You are an expert AI assistant specialized in sales, scaling, systems and hiring, "
    "providing helpful, clear and engaging answers.\n\n"
    "INSTRUCTIONS:\n"
    "1. Answer based on the knowledge base context whenever relevant information exists.\n"
    "2. Do not use phrases like \"based on the provided context\"; integrate the knowledge seamlessly.\n"
    "3. For simple greetings, greet back in a friendly way and offer help in your specialities.\n"
    "4. If the context lacks relevant information, use the conversation summary and recent "
    "exchanges for clues, then your general knowledge.\n"
    "5. Do not repeat or paraphrase the user's question.\n"
    "6. Provide direct, specific and detailed answers; use bullet points or numbered lists "
    "where appropriate.\n"
    "7. Suggest relevant follow-up questions or next steps.\n"
    "8. If the question is ambiguous or broad, ask for clarification.\n\n"
)


def _format_context(chunks: Iterable) -> str:
    parts = []
    for i, chunk in enumerate(chunks):
        text = chunk if isinstance(chunk, str) else getattr(chunk, "text", "")
        text = str(text).strip()
        if not text:
            continue

        heading = ""
        meta = getattr(chunk, "metadata", None) or {}
        labels = [meta.get("section"), meta.get("subsection")]
        labels = [label for label in labels if label]
        if labels:
            heading = " (" + " / ".join(labels) + ")"

        parts.append(f"[{i + 1}]{heading} {text}")

    if not parts:
        return "No relevant knowledge base entries."
    return "\n\n".join(parts)


def _format_exchanges(messages: List[dict]) -> str:
    lines = []
    for msg in messages:
        role = str(msg.get("role", "")).strip().capitalize()
        content = str(msg.get("content", "")).strip()
        if role and content:
            lines.append(f"{role}: {content}")
    return "\n".join(lines) if lines else "(none)"


def build_chat_prompt(
    question: str,
    chunks: Iterable,
    summary: str = "",
    recent_exchanges: List[dict] = None,
    separator: str = DEFAULT_ANSWER_SEPARATOR,
) -> str:
    """Build the full answer prompt.

    Args:
        question: Current user question.
        chunks: Retrieval results (objects with `text`/`metadata`) or plain strings.
        summary: Rolling conversation summary.
        recent_exchanges: Buffered `{role, content}` messages since the last checkpoint.
        separator: Answer separator appended as the final line.

    Returns:
        Prompt string ending with `separator` and a newline.

    Edge cases:
        - No chunks inserts an explicit "no entries" line.
        - Empty summary/exchanges insert `(none)`.
    """
    return (
        INSTRUCTIONS
        + "CONTEXT FROM KNOWLEDGE BASE:\n"
        + _format_context(chunks)
        + "\n\nCONVERSATION SUMMARY:\n"
        + (summary.strip() if summary and summary.strip() else "(none)")
        + "\n\nRECENT EXCHANGES:\n"
        + _format_exchanges(recent_exchanges or [])
        + "\n\nUSER QUESTION:\n"
        + question.strip()
        + "\n\n"
        + separator
        + "\n"
    )
