"""kbchat API adapter package.

Architectural role:
- Defines the external interaction boundary for HTTP and CLI interfaces.
- Performs transport-level validation, session cookie handling and SSE shaping.
- Delegates answering to the core orchestrator.

Scope:
- Request lifecycle control for adapter concerns only.
- No direct model invocation logic is implemented in this package root.
"""
