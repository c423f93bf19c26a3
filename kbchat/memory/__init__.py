"""Memory subsystem package.

Architectural role:
    Groups the stateful components used by the application:
    - `embedding_model`: shared sentence embedding model and the `Embedder` contract.
    - `vector_index`: persisted flat L2 index with parallel metadata.
    - `session_store`: per-session state, expiry and in-flight exclusion.
    - `memory_manager`: rolling summary plus recent-exchange buffer per session.

This package centralizes persistence-facing behavior so retrieval, core and API
layers depend on a stable memory interface.
"""
