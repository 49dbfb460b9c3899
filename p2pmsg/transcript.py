from __future__ import annotations

from .models import ChatMessage
from .util import format_time


def render_message(msg: ChatMessage) -> str:
    who = "You" if msg.is_own else (msg.sender or "Peer")
    text = msg.text.replace("\r", " ").replace("\n", " ")
    return f"[{format_time(msg.timestamp)}] {who}: {text}"


def render_system(text: str) -> str:
    return f"* {text}"


class TranscriptView:
    """Visible transcript with a scroll position.

    ``scroll_top`` is the index of the first visible line. The view follows
    new lines only while it is scrolled to the bottom.
    """

    def __init__(self, height: int = 20) -> None:
        self.height = max(1, int(height))
        self.lines: list[str] = []
        self.scroll_top = 0

    @property
    def max_scroll(self) -> int:
        return max(0, len(self.lines) - self.height)

    @property
    def at_bottom(self) -> bool:
        return self.scroll_top >= self.max_scroll

    def visible(self) -> list[str]:
        return self.lines[self.scroll_top : self.scroll_top + self.height]

    def scroll_to(self, top: int) -> None:
        self.scroll_top = min(max(0, int(top)), self.max_scroll)

    def scroll_by(self, delta: int) -> None:
        self.scroll_to(self.scroll_top + int(delta))

    def scroll_to_bottom(self) -> None:
        self.scroll_top = self.max_scroll

    def append_line(self, line: str) -> None:
        follow = self.at_bottom
        self.lines.append(line)
        if follow:
            self.scroll_to_bottom()

    def rebuild(self, lines: list[str]) -> None:
        """Replace all lines, keeping the reader's place unless they were at the bottom."""
        follow = self.at_bottom
        self.lines = list(lines)
        if follow:
            self.scroll_to_bottom()
        else:
            self.scroll_to(self.scroll_top)

    def rebuild_from(self, messages: list[ChatMessage]) -> None:
        self.rebuild([render_message(m) for m in messages])
