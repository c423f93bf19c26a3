"""Provider endpoint map and credential lookup for the LLM layer.

Architectural role:
    Resolves the configured provider name (`Settings.provider`) to an
    OpenAI-compatible chat-completions URL and its API key. Consumed by
    `kbchat.llm.service.LanguageModel`.

Failure behavior:
    Unknown providers raise `ValueError` at service construction time. Missing key
    material is represented as `None`; the service turns that into `LLMError` on the
    first request so the HTTP layer can still start and report health.
"""

import os


# OpenAI-compatible chat-completions endpoints.
PROVIDERS = {

    "local": {
        "url": "http://127.0.0.1:8080/v1/chat/completions",
        "key_file": None
    },

    "openai": {
        "url": "https://api.openai.com/v1/chat/completions",
        "key_file": "config/openai.key"
    },

    "groq": {
        "url": "https://api.groq.com/openai/v1/chat/completions",
        "key_file": "config/groq.key"
    },

    "together": {
        "url": "https://api.together.xyz/v1/chat/completions",
        "key_file": "config/together.key"
    },

    "openrouter": {
        "url": "https://openrouter.ai/api/v1/chat/completions",
        "key_file": "config/openrouter.key"
    },

    "mistral": {
        "url": "https://api.mistral.ai/v1/chat/completions",
        "key_file": "config/mistral.key"
    },

    "deepinfra": {
        "url": "https://api.deepinfra.com/v1/openai/chat/completions",
        "key_file": "config/deepinfra.key"
    },

    "fireworks": {
        "url": "https://api.fireworks.ai/inference/v1/chat/completions",
        "key_file": "config/fireworks.key"
    },

}


def get_provider(name: str) -> dict:
    """Return the endpoint entry for `name`.

    Raises:
        ValueError: For providers missing from `PROVIDERS`.
    """
    try:
        return PROVIDERS[name]
    except KeyError:
        raise ValueError(f"Unsupported PROVIDER: {name}") from None


def load_key(path):
    """Load API key from environment override or key file.

    Resolution order:
        1. Environment variable inferred from file stem (for example
           `config/openai.key` -> `OPENAI_API_KEY`).
        2. Raw file contents at `path`.

    Edge cases:
        - `None` path returns `None`.
        - Missing file returns `None`.
    """
    if not path:
        return None
    key_name = os.path.splitext(os.path.basename(path))[0].upper() + "_API_KEY"
    env_value = os.getenv(key_name)
    if env_value:
        return env_value
    if not os.path.exists(path):
        return None
    with open(path, "r") as f:
        return f.read().strip()
