"""Retrieval package.

Architectural role:
    Provides query-time retrieval over the knowledge base index and the offline
    ingestion tooling that builds that index.

Scope:
    - `retriever`: top-k retrieval with bounded previews.
    - `ingestion`: corpus chunking and index building.
"""
