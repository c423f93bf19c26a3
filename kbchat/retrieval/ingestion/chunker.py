"""Corpus segmentation into retrievable chunks.

Architectural role:
    First stage of the build-time pipeline (`build_index`). Converts raw knowledge
    base text into `Chunk` records whose text and metadata are embedded and indexed
    positionally by `kbchat.memory.vector_index`.

Chunking strategies:
    - `chunk_by_headings`: semantic segmentation of a markdown-like corpus. `## `
      lines open a section, `### ` lines open a subsection, `Q.` lines open a
      question/answer chunk, everything else accumulates into general chunks.
    - `split_into_chunks` / `chunk_plain_text`: size-bounded sliding window over whole
      lines with character overlap, for corpora that carry no heading structure.

Determinism and performance:
    Both strategies are deterministic and linear in the number of input lines.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional


logger = logging.getLogger(__name__)


SECTION_PREFIX = "## "
SUBSECTION_PREFIX = "### "
QUESTION_PREFIX = "Q."
ANSWER_PREFIX = "A."
BULLET_CHARS = "-*0123456789."

CHUNK_TYPE_GENERAL = "general"
CHUNK_TYPE_QA = "qa"


@dataclass(frozen=True)
class Chunk:
    """One retrievable span of corpus text plus its heading context."""

    text: str
    section: Optional[str] = None
    subsection: Optional[str] = None
    type: str = CHUNK_TYPE_GENERAL

    def to_metadata(self) -> dict:
        """Return the metadata entry persisted next to the index."""
        return {
            "section": self.section,
            "subsection": self.subsection,
            "type": self.type,
        }


def is_question(line: str) -> bool:
    return line.strip().startswith(QUESTION_PREFIX)


def is_answer(line: str) -> bool:
    return line.strip().startswith(ANSWER_PREFIX)


def is_bullet(line: str) -> bool:
    stripped = line.strip()
    return bool(stripped) and stripped[0] in BULLET_CHARS


def _is_heading(line: str) -> bool:
    return line.startswith(SECTION_PREFIX) or line.startswith(SUBSECTION_PREFIX)


class _ChunkBuffer:
    """Running buffer that turns accumulated lines into `Chunk` records."""

    def __init__(self):
        self.chunks: List[Chunk] = []
        self.lines: List[str] = []
        self.type: Optional[str] = None
        self.section: Optional[str] = None
        self.subsection: Optional[str] = None

    def flush(self) -> None:
        if not self.lines:
            return

        text = "\n".join(self.lines).strip()
        self.lines = []
        chunk_type = self.type
        self.type = None

        if not text:
            return

        self.chunks.append(
            Chunk(
                text=text,
                section=self.section,
                subsection=self.subsection,
                type=chunk_type or CHUNK_TYPE_GENERAL,
            )
        )


def chunk_by_headings(raw_text: str) -> List[Chunk]:
    """Split heading-structured corpus text into general and QA chunks.

    Args:
        raw_text: Full corpus text.

    Returns:
        Chunks in corpus order.

    Chunking rules:
        - A section or subsection heading flushes the running buffer.
        - Lines are discarded until both a section and a subsection are known, so
          every chunk carries a classification.
        - A `Q.` line starts a QA chunk that swallows every following line (blank
          lines included) until the next heading or question line.
        - Other non-empty lines (orphan `A.` lines excepted) accumulate into one
          general chunk until a heading or a question interrupts them.

    Edge cases:
        - Empty buffers never produce chunks.
        - The trailing buffer at end of input is flushed.
    """
    lines = (raw_text or "").split("\n")
    buffer = _ChunkBuffer()

    i = 0
    while i < len(lines):
        line = lines[i].strip()
        i += 1

        if line.startswith(SECTION_PREFIX):
            buffer.flush()
            buffer.section = line[len(SECTION_PREFIX):].strip()
            buffer.subsection = None
            continue

        if line.startswith(SUBSECTION_PREFIX):
            buffer.flush()
            buffer.subsection = line[len(SUBSECTION_PREFIX):].strip()
            continue

        if not buffer.section or not buffer.subsection:
            continue

        if is_question(line):
            buffer.flush()
            buffer.type = CHUNK_TYPE_QA
            buffer.lines.append(line)

            while i < len(lines):
                next_line = lines[i].strip()
                if _is_heading(next_line) or is_question(next_line):
                    break
                buffer.lines.append(next_line)
                i += 1

            buffer.flush()
            continue

        if is_bullet(line) or (line and not is_answer(line)):
            if buffer.type != CHUNK_TYPE_GENERAL:
                buffer.flush()
                buffer.type = CHUNK_TYPE_GENERAL
            buffer.lines.append(line)

    buffer.flush()

    logger.info("Created %d semantic chunks", len(buffer.chunks))
    return buffer.chunks


def split_into_chunks(text: str, size: int = 1000, overlap: int = 200) -> List[str]:
    """Split text into overlapping windows of whole lines.

    Args:
        text: Raw text.
        size: Character length at which a window is emitted.
        overlap: Minimum characters carried from the end of one window into the next.

    Returns:
        Chunk strings (lines joined with newlines).

    Overlap guarantee:
        Trailing lines of an emitted window are carried over until they total at
        least `overlap` characters. The first line of the window is never carried, so
        windows always advance; the overlap is shorter only when the window does not
        have enough lines.

    Edge cases:
        - Blank lines are skipped and a line is never split.
        - A tail made only of carried-over lines is not emitted again.

    Raises:
        ValueError: For non-positive `size`, negative `overlap` or `overlap >= size`.
    """
    if size <= 0:
        raise ValueError("size must be positive")
    if overlap < 0 or overlap >= size:
        raise ValueError("overlap must be in [0, size)")

    chunks: List[str] = []
    current: List[str] = []
    current_length = 0
    has_new_lines = False

    for raw_line in (text or "").split("\n"):
        if not raw_line.strip():
            continue

        current.append(raw_line)
        current_length += len(raw_line)
        has_new_lines = True

        if current_length < size:
            continue

        chunks.append("\n".join(current))

        carried: List[str] = []
        carried_length = 0
        for line in reversed(current[1:]):
            if carried_length >= overlap:
                break
            carried.insert(0, line)
            carried_length += len(line)

        current = carried
        current_length = carried_length
        has_new_lines = False

    if current and has_new_lines:
        chunks.append("\n".join(current))

    return chunks


def chunk_plain_text(text: str, size: int = 1000, overlap: int = 200) -> List[Chunk]:
    """Wrap `split_into_chunks` output into unclassified general chunks."""
    return [
        Chunk(text=piece.strip(), type=CHUNK_TYPE_GENERAL)
        for piece in split_into_chunks(text, size=size, overlap=overlap)
        if piece.strip()
    ]
