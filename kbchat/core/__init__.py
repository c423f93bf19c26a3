"""Core orchestration package.

Architectural role:
    Exposes the request-orchestration layer that sits between API/CLI entrypoints
    and lower-level subsystems (retrieval, prompting, memory and LLM adapters).

Composition:
    - `engine`: service context and the streaming conversation orchestrator.
    - `events`: typed stream events emitted by the orchestrator.
    - `stream_filter`: token gate that hides an echoed prompt from the client.

Determinism and side effects:
    Package import itself is deterministic and side-effect free. Runtime side effects
    are performed by `engine` during request processing.
"""
