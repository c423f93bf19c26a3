"""Knowledge base ingestion subpackage.

Architectural role:
    Hosts the chunker and the `kbchat-ingest` CLI that converts a corpus into chunks,
    embeddings and the persisted vector index.

FAISS interaction:
    No direct index operations in package init; writes go through
    `kbchat.memory.vector_index.VectorIndex.save`.
"""
