"""Exact flat L2 vector index with positional metadata.

Architectural role:
    Stores the corpus vectors produced at build time and answers k-nearest-neighbor
    queries at request time. Chunk text and metadata live in parallel lists joined
    to FAISS ids by position; the id is the insertion ordinal.

Search model:
    `faiss.IndexFlatL2` exhaustive scan. FAISS reports squared L2 distances; this
    module returns the Euclidean norm. Vectors are normalized upstream, so the
    ranking matches cosine similarity and no separate cosine path exists.

Index lifecycle:
    - `knowledge.index` holds the FAISS structure.
    - `chunks-metadata.json` holds `{"metadata": [...], "texts": [...]}` plus
      `ntotal` and `index_sha256`, the digest of the index file it was saved with.
    - `save` writes both to temporary files and swaps them in with `os.replace`.
    - `load` refuses partial or mismatched state with `CorpusStateInconsistent`;
      it never rebuilds silently. A digest that does not match the index file on
      disk means the two swaps were interrupted between each other.

Invariant:
    `len(index) == len(metadata) == len(texts)` after every public operation.
"""

import hashlib
import json
import logging
import math
import os
from typing import List, Optional, Tuple

import faiss
import numpy as np

from kbchat.errors import CorpusNotFound, CorpusStateInconsistent, DimensionMismatch


logger = logging.getLogger(__name__)


def _as_matrix(vector, dimension: int) -> np.ndarray:
    vec = np.asarray(vector, dtype="float32")
    if vec.ndim != 1:
        vec = vec.reshape(-1)
    if vec.shape[0] != dimension:
        raise DimensionMismatch(dimension, vec.shape[0])
    return np.ascontiguousarray(vec.reshape(1, dimension))


class VectorIndex:
    """Flat L2 index plus parallel metadata and raw texts."""

    def __init__(self, dimension: int):
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self.dimension = dimension
        self._index = faiss.IndexFlatL2(dimension)
        self.metadata: List[dict] = []
        self.texts: List[str] = []

    def __len__(self) -> int:
        return self._index.ntotal

    def add(self, vector, text: str, metadata: Optional[dict] = None) -> int:
        """Append one vector with its text and metadata.

        Returns:
            The id (insertion ordinal) of the new entry.

        Raises:
            DimensionMismatch: When the vector length differs from `dimension`.
        """
        mat = _as_matrix(vector, self.dimension)

        entry_id = self._index.ntotal
        self._index.add(mat)
        self.metadata.append(dict(metadata or {}))
        self.texts.append(text)
        return entry_id

    def search(self, query_vector, k: int) -> List[Tuple[int, float]]:
        """Return up to `k` `(id, distance)` pairs ordered by ascending distance.

        Edge cases:
            - Empty index or non-positive `k` returns `[]`.
            - `k` larger than the entry count returns every entry.
        """
        total = self._index.ntotal
        if total == 0 or k <= 0:
            return []

        mat = _as_matrix(query_vector, self.dimension)
        distances, labels = self._index.search(mat, min(k, total))

        results = []
        for label, squared in zip(labels[0], distances[0]):
            if label < 0:
                continue
            results.append((int(label), math.sqrt(max(float(squared), 0.0))))
        return results

    def entry(self, entry_id: int) -> Tuple[str, dict]:
        return self.texts[entry_id], self.metadata[entry_id]

    def save(self, index_path: str, metadata_path: str) -> None:
        """Persist the index and its metadata together.

        Both artefacts are written to `.tmp` siblings first and only swapped into
        place once both writes succeeded.
        """
        for path in (index_path, metadata_path):
            parent = os.path.dirname(os.path.abspath(path))
            os.makedirs(parent, exist_ok=True)

        index_tmp = index_path + ".tmp"
        meta_tmp = metadata_path + ".tmp"

        faiss.write_index(self._index, index_tmp)
        payload = {
            "metadata": self.metadata,
            "texts": self.texts,
            "ntotal": len(self),
            "index_sha256": _file_sha256(index_tmp),
        }
        with open(meta_tmp, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, ensure_ascii=False)

        os.replace(index_tmp, index_path)
        os.replace(meta_tmp, metadata_path)

        logger.info(
            "Saved index with %d vectors of dimension %d to %s",
            len(self), self.dimension, index_path,
        )

    @classmethod
    def load(cls, index_path: str, metadata_path: str, dimension: Optional[int] = None) -> "VectorIndex":
        """Load a previously saved index/metadata pair.

        Args:
            index_path: FAISS index file.
            metadata_path: JSON metadata file.
            dimension: Expected vector dimension; skipped when `None`.

        Raises:
            CorpusNotFound: Neither file exists.
            CorpusStateInconsistent: Only one file exists, either file is unreadable,
                counts disagree, or the stored dimension differs from `dimension`.
        """
        has_index = os.path.exists(index_path)
        has_meta = os.path.exists(metadata_path)

        if not has_index and not has_meta:
            raise CorpusNotFound(
                f"No index at {index_path} and no metadata at {metadata_path}"
            )
        if not has_index:
            raise CorpusStateInconsistent(f"Metadata present but index missing: {index_path}")
        if not has_meta:
            raise CorpusStateInconsistent(f"Index present but metadata missing: {metadata_path}")

        metadata, texts = load_metadata_file(metadata_path)
        expected_digest = _stored_digest(metadata_path)
        if expected_digest is not None and expected_digest != _file_sha256(index_path):
            raise CorpusStateInconsistent(
                f"Index file {index_path} does not belong to metadata {metadata_path}"
            )

        try:
            raw_index = faiss.read_index(index_path)
        except RuntimeError as err:
            raise CorpusStateInconsistent(f"Index file is unreadable: {index_path}") from err

        if dimension is not None and raw_index.d != dimension:
            raise CorpusStateInconsistent(
                f"Index dimension {raw_index.d} does not match configured dimension {dimension}"
            )

        if not (raw_index.ntotal == len(metadata) == len(texts)):
            raise CorpusStateInconsistent(
                f"Index has {raw_index.ntotal} vectors but metadata has "
                f"{len(metadata)} entries and {len(texts)} texts"
            )

        loaded = cls(raw_index.d)
        loaded._index = raw_index
        loaded.metadata = metadata
        loaded.texts = texts

        logger.info("Loaded index with %d vectors from %s", len(loaded), index_path)
        return loaded


def _file_sha256(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(1 << 20), b""):
            digest.update(block)
    return digest.hexdigest()


def _read_metadata_json(metadata_path: str) -> dict:
    try:
        with open(metadata_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError) as err:
        raise CorpusStateInconsistent(f"Metadata file is not valid JSON: {metadata_path}") from err

    if not isinstance(data, dict):
        raise CorpusStateInconsistent(f"Metadata file has unexpected shape: {metadata_path}")
    return data


def _stored_digest(metadata_path: str) -> Optional[str]:
    """Index digest recorded at save time; `None` for files written without one."""
    digest = _read_metadata_json(metadata_path).get("index_sha256")
    if digest is not None and not isinstance(digest, str):
        raise CorpusStateInconsistent(f"Metadata file has a malformed index digest: {metadata_path}")
    return digest


def load_metadata_file(metadata_path: str) -> Tuple[List[dict], List[str]]:
    """Read `{"metadata": [...], "texts": [...]}` from disk.

    Raises:
        CorpusStateInconsistent: When the file is not UTF-8 JSON of that shape, a
            metadata entry is not an object, or a text is not a string.
    """
    data = _read_metadata_json(metadata_path)

    metadata = data.get("metadata")
    texts = data.get("texts")

    if not isinstance(metadata, list) or not isinstance(texts, list):
        raise CorpusStateInconsistent(
            f"Metadata file must contain 'metadata' and 'texts' lists: {metadata_path}"
        )
    if not all(isinstance(meta, dict) for meta in metadata):
        raise CorpusStateInconsistent(f"Metadata entries must be objects: {metadata_path}")
    if not all(isinstance(text, str) for text in texts):
        raise CorpusStateInconsistent(f"Texts must be strings: {metadata_path}")

    return metadata, texts
