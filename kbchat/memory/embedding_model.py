"""Embedding model bootstrap and text-to-vector contract.

Architectural role:
    Provides the `Embedder` shared by ingestion and query-time retrieval. One
    instance is created per process by the service context; the underlying
    `SentenceTransformer` is loaded lazily on first use and reused afterwards.

Vector contract:
    - Pooling is the model's mean pooling layer over token vectors.
    - Output is L2-normalized with `faiss.normalize_L2`, so flat L2 ranking in the
      index is equivalent to cosine ranking.
    - Every vector has exactly `dimension` components, otherwise
      `DimensionMismatch` is raised.

Design intent:
    - Keep embedding initialization centralized.
    - Avoid duplicated model loads when concurrent requests hit a cold process.
    - Apply a conservative VRAM gate before enabling GPU execution.
"""

import logging
import os
import threading

import faiss
import numpy as np

from kbchat.errors import DimensionMismatch


logger = logging.getLogger(__name__)

DEFAULT_EMBED_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_DIMENSION = 384


def has_enough_vram(min_required_mb: int = 800) -> bool:
    """Return whether enough free GPU memory is available for embeddings.

    Args:
        min_required_mb: Minimum required free VRAM in megabytes.

    Returns:
        `True` when CUDA is available and free VRAM exceeds the threshold.
    """
    import torch

    if not torch.cuda.is_available():
        return False

    free_mem, _total_mem = torch.cuda.mem_get_info()
    free_mb = free_mem / 1024 / 1024

    logger.info("Free VRAM: %.0f MB", free_mb)

    return free_mb > min_required_mb


def load_sentence_transformer(model_name: str):
    """Load a `SentenceTransformer` on CUDA when VRAM allows, otherwise on CPU.

    Side effects:
        - Imports `torch`/`sentence_transformers` lazily.
        - Sets `CUDA_VISIBLE_DEVICES=""` in CPU fallback mode.
    """
    try:
        use_gpu = has_enough_vram()
    except ImportError:
        use_gpu = False

    if not use_gpu:
        logger.info("Insufficient VRAM detected. Forcing CPU mode.")
        os.environ["CUDA_VISIBLE_DEVICES"] = ""

    from sentence_transformers import SentenceTransformer

    device = "cuda" if use_gpu else "cpu"
    logger.info("Loading embedding model %s on %s", model_name, device.upper())

    return SentenceTransformer(model_name, device=device)


class Embedder:
    """Maps text to normalized fixed-dimension vectors.

    Args:
        model_name: sentence-transformers model identifier.
        dimension: Expected vector length D.
        model: Optional preloaded object exposing `encode(list[str])`; mostly used
            to inject fakes.
    """

    def __init__(self, model_name: str = DEFAULT_EMBED_MODEL, dimension: int = DEFAULT_DIMENSION, model=None):
        self.model_name = model_name
        self.dimension = dimension
        self._model = model
        self._lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._model is not None

    def get_model(self):
        """Load and cache the embedding model exactly once."""
        if self._model is not None:
            return self._model

        with self._lock:
            if self._model is None:
                self._model = load_sentence_transformer(self.model_name)

        return self._model

    def embed(self, text: str) -> np.ndarray:
        """Embed one text into a normalized float32 vector of shape `(D,)`.

        Raises:
            ValueError: For empty text.
            DimensionMismatch: When the model output length differs from `dimension`.
        """
        if not text or not str(text).strip():
            raise ValueError("Cannot embed empty text")

        raw = self.get_model().encode([str(text)])
        vec = np.asarray(raw, dtype="float32").reshape(1, -1)

        if vec.shape[1] != self.dimension:
            raise DimensionMismatch(self.dimension, vec.shape[1])

        vec = np.ascontiguousarray(vec)
        faiss.normalize_L2(vec)
        return vec[0]
