"""Runtime configuration for kbchat.

Architectural role:
    Centralizes every tunable of the ingestion, retrieval, memory, session and LLM
    layers in one frozen `Settings` object. The object is built once per process
    (`Settings.from_env()`) and handed to the service context; no other module reads
    environment variables directly except `kbchat.llm.provider_config.load_key`.

Resolution order:
    1. Process environment (after `load_dotenv()` merged a local `.env` file).
    2. Dataclass defaults below.

Relevant environment variables:
    - `EMBED_MODEL`, `EMBED_DIMENSION`
    - `CHUNK_SIZE`, `CHUNK_OVERLAP`
    - `RETRIEVAL_TOP_K`, `RETRIEVAL_PREVIEW_CHARS`
    - `MEMORY_CHECKPOINT_MESSAGES`
    - `SESSION_TIMEOUT_MINUTES`, `SESSION_COOKIE_HOURS`, `SESSION_BACKEND`, `SESSION_DIR`
    - `KBCHAT_DATA_DIR`
    - `PROVIDER`, `MODEL_NAME`, `SUMMARY_MODEL_NAME`, `LLM_TEMPERATURE`,
      `LLM_TIMEOUT_SECONDS`
    - `ANSWER_SEPARATOR`
    - `DEBUG`
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv


INDEX_FILENAME = "knowledge.index"
METADATA_FILENAME = "chunks-metadata.json"


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return float(value)


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


@dataclass(frozen=True)
class Settings:
    """Immutable process configuration.

    Paths are kept as plain strings; `index_path` and `metadata_path` derive the
    persisted corpus locations from `data_dir` so both artefacts always live
    side by side.
    """

    embed_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    embed_dimension: int = 384

    chunk_size: int = 1000
    chunk_overlap: int = 200

    top_k: int = 3
    preview_chars: int = 300

    memory_checkpoint_messages: int = 6

    session_timeout_minutes: int = 30
    session_cookie_hours: int = 2
    session_backend: str = "memory"
    session_dir: str = "sessions"

    data_dir: str = "data"

    provider: str = "openai"
    model_name: str = "gpt-3.5-turbo-16k"
    summary_model_name: str = "gpt-3.5-turbo"
    temperature: float = 0.5
    llm_timeout_seconds: float = 120.0

    answer_separator: str = "<|answer|>"

    debug: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the environment, falling back to defaults."""
        load_dotenv()

        defaults = cls()

        return cls(
            embed_model=_env_str("EMBED_MODEL", defaults.embed_model),
            embed_dimension=_env_int("EMBED_DIMENSION", defaults.embed_dimension),
            chunk_size=_env_int("CHUNK_SIZE", defaults.chunk_size),
            chunk_overlap=_env_int("CHUNK_OVERLAP", defaults.chunk_overlap),
            top_k=_env_int("RETRIEVAL_TOP_K", defaults.top_k),
            preview_chars=_env_int("RETRIEVAL_PREVIEW_CHARS", defaults.preview_chars),
            memory_checkpoint_messages=_env_int(
                "MEMORY_CHECKPOINT_MESSAGES", defaults.memory_checkpoint_messages
            ),
            session_timeout_minutes=_env_int(
                "SESSION_TIMEOUT_MINUTES", defaults.session_timeout_minutes
            ),
            session_cookie_hours=_env_int("SESSION_COOKIE_HOURS", defaults.session_cookie_hours),
            session_backend=_env_str("SESSION_BACKEND", defaults.session_backend).lower(),
            session_dir=_env_str("SESSION_DIR", defaults.session_dir),
            data_dir=_env_str("KBCHAT_DATA_DIR", defaults.data_dir),
            provider=_env_str("PROVIDER", defaults.provider).lower(),
            model_name=_env_str("MODEL_NAME", defaults.model_name),
            summary_model_name=_env_str("SUMMARY_MODEL_NAME", defaults.summary_model_name),
            temperature=_env_float("LLM_TEMPERATURE", defaults.temperature),
            llm_timeout_seconds=_env_float("LLM_TIMEOUT_SECONDS", defaults.llm_timeout_seconds),
            answer_separator=_env_str("ANSWER_SEPARATOR", defaults.answer_separator),
            debug=os.getenv("DEBUG") == "true",
        )

    @property
    def index_path(self) -> str:
        return os.path.join(self.data_dir, "vector-db", INDEX_FILENAME)

    @property
    def metadata_path(self) -> str:
        return os.path.join(self.data_dir, METADATA_FILENAME)

    @property
    def session_timeout_seconds(self) -> int:
        return self.session_timeout_minutes * 60

    @property
    def session_cookie_max_age(self) -> int:
        return self.session_cookie_hours * 60 * 60
