"""Prompt construction for text-mode chat turns.

Prior turns are prepended as a plain transcript so a stateless session
still sees the recent conversation.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

_VALID_ROLES = frozenset({"user", "assistant"})

_HISTORY_HEADER = "Previous conversation:\n"
_HISTORY_FOOTER = "\nNow respond to: "


@dataclass(frozen=True, slots=True)
class ChatTurn:
    """One message of a conversation.

    Args:
        role: ``"user"`` or ``"assistant"``.
        text: Message body.
    """

    role: str
    text: str

    def __post_init__(self) -> None:
        if self.role not in _VALID_ROLES:
            raise ValueError(f"role must be one of {_VALID_ROLES}, got {self.role!r}")

    def to_line(self) -> str:
        """Render as a single transcript line."""
        speaker = "Assistant" if self.role == "assistant" else "User"
        return f"{speaker}: {self.text}"


def history_window(history: Sequence[ChatTurn], limit: int) -> list[ChatTurn]:
    """Keep the ``limit`` most recent turns, oldest first."""
    if limit <= 0:
        return []
    return list(history[-limit:])


def build_text_prompt(prompt: str, history: Sequence[ChatTurn] = (), limit: int = 6) -> str:
    """Prefix ``prompt`` with a transcript of the recent conversation.

    Examples:
        >>> build_text_prompt("hi")
        'hi'
        >>> build_text_prompt("and you?", [ChatTurn("user", "hello")])
        'Previous conversation:\\nUser: hello\\n\\nNow respond to: and you?'
    """
    window = history_window(history, limit)
    if not window:
        return prompt
    lines = "".join(f"{turn.to_line()}\n" for turn in window)
    return f"{_HISTORY_HEADER}{lines}{_HISTORY_FOOTER}{prompt}"
