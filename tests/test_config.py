import os

from kbchat.config import Settings


def test_defaults():
    settings = Settings()
    assert settings.top_k == 3
    assert settings.embed_dimension == 384
    assert settings.memory_checkpoint_messages == 6
    assert settings.session_timeout_seconds == 30 * 60
    assert settings.session_cookie_max_age == 2 * 60 * 60
    assert settings.index_path == os.path.join("data", "vector-db", "knowledge.index")
    assert settings.metadata_path == os.path.join("data", "chunks-metadata.json")


def test_from_env(monkeypatch):
    monkeypatch.setenv("RETRIEVAL_TOP_K", "5")
    monkeypatch.setenv("PROVIDER", "GROQ")
    monkeypatch.setenv("LLM_TEMPERATURE", "0.1")
    monkeypatch.setenv("DEBUG", "true")
    monkeypatch.setenv("CHUNK_SIZE", "  ")

    settings = Settings.from_env()

    assert settings.top_k == 5
    assert settings.provider == "groq"
    assert settings.temperature == 0.1
    assert settings.debug is True
    assert settings.chunk_size == 1000
