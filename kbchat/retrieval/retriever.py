"""Query-time retrieval adapter over the vector index.

Architectural role:
    Wraps `VectorIndex.search` with the query contract used by the orchestrator:
    embed the question, take the top-k nearest chunks, and return prompt-ready
    previews with their heading metadata.

Ranking model:
    No re-ranking or thresholding. Order and distances are exactly those of the flat
    L2 search (ascending distance, closer is more similar).

Determinism and performance:
    Deterministic for a fixed index and embedding model. The embedding call is
    blocking; async callers run `retrieve` in a worker thread.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from kbchat.memory.embedding_model import Embedder
from kbchat.memory.vector_index import VectorIndex


logger = logging.getLogger(__name__)

ELLIPSIS = "..."


@dataclass(frozen=True)
class RetrievalResult:
    distance: float
    text: str
    metadata: dict = field(default_factory=dict)


def truncate_preview(text: str, limit: int) -> str:
    """Cut `text` to `limit` characters, appending `...` when something was removed."""
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit] + ELLIPSIS


class Retriever:
    """Top-k similarity retrieval with bounded text previews."""

    def __init__(self, index: VectorIndex, embedder: Embedder, top_k: int = 3, preview_chars: int = 300):
        self.index = index
        self.embedder = embedder
        self.top_k = top_k
        self.preview_chars = preview_chars

    def retrieve(self, question: str, k: Optional[int] = None) -> List[RetrievalResult]:
        """Return the closest chunks for `question`.

        Args:
            question: User question.
            k: Override for the default `top_k`.

        Returns:
            Results ordered by ascending distance; `[]` for a blank question or an
            empty index.

        Raises:
            DimensionMismatch: The query embedding has the wrong length. This is
                fatal for the current query only.
        """
        if not question or not question.strip():
            return []

        if len(self.index) == 0:
            return []

        query_vector = self.embedder.embed(question)
        hits = self.index.search(query_vector, k if k is not None else self.top_k)

        results = []
        for entry_id, distance in hits:
            text, meta = self.index.entry(entry_id)
            results.append(
                RetrievalResult(
                    distance=distance,
                    text=truncate_preview(text, self.preview_chars),
                    metadata={
                        "section": meta.get("section"),
                        "subsection": meta.get("subsection"),
                        "topic": meta.get("topic"),
                    },
                )
            )

        logger.debug("Retrieved %d chunks for query", len(results))
        return results
