"""Token gate that hides an echoed prompt from the client stream.

State machine:
    - `suppressing` (initial when a marker is configured): incoming text is
      buffered and the buffer is searched for the marker. Searching the buffer
      instead of single tokens finds markers split across several tokens.
    - `forwarding`: every token passes through unmodified.

    On the first marker occurrence the state switches to `forwarding` and the text
    after the marker, if any, is emitted. Only that first occurrence is stripped.

Fail-open:
    `finish()` returns the suppressed text when the stream ended without a marker,
    so an answer from a model that did not echo the prompt is not lost.
"""

from typing import Optional


SUPPRESSING = "suppressing"
FORWARDING = "forwarding"


class StreamFilter:
    """Per-request gate; create one instance per response stream."""

    def __init__(self, marker: Optional[str] = None):
        self.marker = marker or None
        self.state = SUPPRESSING if self.marker else FORWARDING
        self._buffer = ""

    @property
    def forwarding(self) -> bool:
        return self.state == FORWARDING

    def feed(self, token: str) -> str:
        """Process one token and return the text to forward (possibly empty)."""
        if self.state == FORWARDING:
            return token

        self._buffer += token
        position = self._buffer.find(self.marker)
        if position < 0:
            return ""

        remainder = self._buffer[position + len(self.marker):]
        self._buffer = ""
        self.state = FORWARDING
        return remainder

    def finish(self) -> str:
        """Return text still held back when the stream ends."""
        if self.state == FORWARDING:
            return ""

        held = self._buffer
        self._buffer = ""
        self.state = FORWARDING
        return held
