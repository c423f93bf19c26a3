"""Knowledge base ingestion CLI for the persisted vector index.

Architectural role:
    Converts a corpus text file into chunks, embeds every chunk, and writes the
    FAISS index plus the parallel `{metadata, texts}` file consumed by
    `kbchat.memory.vector_index.VectorIndex.load`.

Pipeline summary:
    1. Read the corpus (or an existing metadata / chunks file).
    2. Chunk it with the selected strategy.
    3. Embed chunk by chunk; a chunk with a wrong embedding dimension is skipped.
    4. Build the flat L2 index and save both artefacts atomically.

Input modes:
    - `CORPUS` text file, chunked by headings (default) or by size.
    - `--from-metadata`: re-embed the texts of the current metadata file. This is the
      only way an existing corpus is rebuilt; the server never rebuilds silently.
    - `--from-chunks FILE`: embed a JSON array of pre-split chunk strings.

Determinism and performance:
    Deterministic for a fixed corpus and embedding model. Runtime is dominated by one
    embedding call per chunk.
"""

import argparse
import json
import logging
import os
import sys
from dataclasses import replace
from typing import Iterable, List, Optional

from kbchat.config import Settings
from kbchat.errors import DimensionMismatch, IngestionError, KBChatError
from kbchat.memory.embedding_model import Embedder
from kbchat.memory.vector_index import VectorIndex, load_metadata_file
from kbchat.retrieval.ingestion.chunker import Chunk, chunk_by_headings, chunk_plain_text


logger = logging.getLogger(__name__)

PROGRESS_EVERY = 10
STRATEGIES = ("headings", "size")


def build_index(chunks: Iterable[Chunk], embedder: Embedder, dimension: int) -> VectorIndex:
    """Embed `chunks` and collect them into a new index.

    Raises:
        IngestionError: No chunks were given, or no chunk produced a usable embedding.
    """
    chunks = list(chunks)
    if not chunks:
        raise IngestionError("No chunks to embed")

    logger.info("Generating embeddings for %d chunks...", len(chunks))

    index = VectorIndex(dimension)
    skipped = 0

    for i, chunk in enumerate(chunks):
        try:
            vector = embedder.embed(chunk.text)
            index.add(vector, chunk.text, chunk.to_metadata())
        except DimensionMismatch as err:
            skipped += 1
            logger.warning("Skipping chunk %d: %s", i, err)
            continue

        if (i + 1) % PROGRESS_EVERY == 0:
            logger.info("Processed %d/%d chunks", i + 1, len(chunks))

    if len(index) == 0:
        raise IngestionError("No embeddings were generated")

    logger.info(
        "Created index with %d vectors of dimension %d (%d skipped)",
        len(index), dimension, skipped,
    )
    return index


def chunk_corpus(text: str, strategy: str = "headings", size: int = 1000, overlap: int = 200) -> List[Chunk]:
    if strategy == "headings":
        return chunk_by_headings(text)
    if strategy == "size":
        return chunk_plain_text(text, size=size, overlap=overlap)
    raise ValueError(f"Unknown chunking strategy: {strategy}")


def ingest_corpus(
    corpus_path: str,
    settings: Settings,
    strategy: str = "headings",
    embedder: Optional[Embedder] = None,
) -> VectorIndex:
    """Chunk, embed and persist one corpus file."""
    if not os.path.exists(corpus_path):
        raise IngestionError(f"Corpus file not found: {corpus_path}")

    logger.info("Reading knowledge base from %s", corpus_path)
    with open(corpus_path, "r", encoding="utf-8") as f:
        text = f.read()

    chunks = chunk_corpus(text, strategy, settings.chunk_size, settings.chunk_overlap)
    logger.info("Created %d chunks with strategy %r", len(chunks), strategy)

    return _embed_and_save(chunks, settings, embedder)


def rebuild_from_metadata(settings: Settings, embedder: Optional[Embedder] = None) -> VectorIndex:
    """Re-embed the texts stored in the current metadata file."""
    if not os.path.exists(settings.metadata_path):
        raise IngestionError(f"Metadata file not found: {settings.metadata_path}")

    metadata, texts = load_metadata_file(settings.metadata_path)
    if len(metadata) != len(texts):
        raise IngestionError(
            f"Metadata has {len(metadata)} entries but {len(texts)} texts"
        )

    chunks = []
    for meta, text in zip(metadata, texts):
        if not str(text).strip():
            continue
        chunks.append(
            Chunk(
                text=str(text),
                section=meta.get("section"),
                subsection=meta.get("subsection"),
                type=meta.get("type", "general"),
            )
        )

    return _embed_and_save(chunks, settings, embedder)


def ingest_chunk_list(chunks_path: str, settings: Settings, embedder: Optional[Embedder] = None) -> VectorIndex:
    """Embed a JSON array of pre-split chunk strings.

    Each chunk is labeled `Chunk <n>` as its section.
    """
    try:
        with open(chunks_path, "r", encoding="utf-8") as f:
            texts = json.load(f)
    except FileNotFoundError as err:
        raise IngestionError(f"Chunks file not found: {chunks_path}") from err
    except json.JSONDecodeError as err:
        raise IngestionError(f"Chunks file is not valid JSON: {chunks_path}") from err

    if not isinstance(texts, list):
        raise IngestionError("Chunks file must contain a JSON array of strings")

    chunks = [
        Chunk(text=str(text), section=f"Chunk {i + 1}")
        for i, text in enumerate(texts)
        if str(text).strip()
    ]
    return _embed_and_save(chunks, settings, embedder)


def _embed_and_save(chunks: List[Chunk], settings: Settings, embedder: Optional[Embedder]) -> VectorIndex:
    embedder = embedder or Embedder(settings.embed_model, settings.embed_dimension)
    index = build_index(chunks, embedder, settings.embed_dimension)
    index.save(settings.index_path, settings.metadata_path)
    logger.info("Saved metadata and texts to %s", settings.metadata_path)
    return index


def main(argv=None):
    """CLI entrypoint for `kbchat-ingest`.

    Error handling:
        - Uses `argparse` validation errors for invalid option combinations.
        - Exits with status 1 on ingestion failures.
    """
    parser = argparse.ArgumentParser(description="Build the kbchat vector index")
    parser.add_argument("corpus", nargs="?", help="Knowledge base text file")
    parser.add_argument("--strategy", choices=STRATEGIES, default="headings")
    parser.add_argument("--chunk-size", type=int, default=None)
    parser.add_argument("--chunk-overlap", type=int, default=None)
    parser.add_argument("--from-metadata", action="store_true", help="Re-embed the existing metadata file")
    parser.add_argument("--from-chunks", default=None, help="JSON array of pre-split chunk strings")
    parser.add_argument("--data-dir", default=None, help="Override KBCHAT_DATA_DIR")

    args = parser.parse_args(argv)

    sources = [bool(args.corpus), args.from_metadata, bool(args.from_chunks)]
    if sum(sources) != 1:
        parser.error("Pass exactly one of CORPUS, --from-metadata or --from-chunks.")

    settings = Settings.from_env()
    overrides = {}
    if args.chunk_size is not None:
        overrides["chunk_size"] = args.chunk_size
    if args.chunk_overlap is not None:
        overrides["chunk_overlap"] = args.chunk_overlap
    if args.data_dir:
        overrides["data_dir"] = args.data_dir
    if overrides:
        settings = replace(settings, **overrides)

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.from_metadata:
            index = rebuild_from_metadata(settings)
        elif args.from_chunks:
            index = ingest_chunk_list(args.from_chunks, settings)
        else:
            index = ingest_corpus(args.corpus, settings, strategy=args.strategy)
    except (KBChatError, ValueError) as err:
        logger.error("Ingestion failed: %s", err)
        sys.exit(1)

    print(f"{len(index)} chunks indexed.")


if __name__ == "__main__":
    main()
