"""LLM access package.

Architectural role:
    Provides provider configuration, request-payload construction, and the async
    transport used to stream answers and produce memory summaries.

Module split:
    - `provider_config`: provider catalog and API key resolution.
    - `service`: answer and summary entrypoints over one chat-completions client.
    - `client`: HTTP transport, SSE parsing and error sanitization.
"""
