"""Typed events emitted by the conversation orchestrator.

A response stream is zero or more `Token` events followed by exactly one terminal
event: `End` (answer complete, memory updated) or `Error` (user-facing apology,
memory untouched).
"""

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class Token:
    text: str


@dataclass(frozen=True)
class End:
    answer: str


@dataclass(frozen=True)
class Error:
    message: str


StreamEvent = Union[Token, End, Error]
