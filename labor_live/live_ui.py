"""
Terminal view for the live session (rich).

- Conversation: flushed user and model turns
- Status: session state changes and user-facing errors
"""
from typing import Iterable, Optional

from rich.console import Console
from rich.text import Text

from labor_live.models import USER, SessionState, TranscriptionItem

console = Console()

# Color scheme (dark mode friendly)
COLORS = {
    "user": "#00D9FF",
    "model": "#00B4D8",
    "idle": "#6B7280",
    "connecting": "#FBBF24",
    "active": "#4ADE80",
    "ended": "#6B7280",
    "error": "#EF4444",
    "separator": "#6B7280",
}

STATE_LABELS = {
    SessionState.IDLE: "Idle",
    SessionState.CONNECTING: "Connecting...",
    SessionState.ACTIVE: "Live. Speak, or type a message and press Enter ('q' to quit)",
    SessionState.ENDED: "Session ended",
    SessionState.ERROR: "Session error",
}


def print_separator(title: str):
    """Print a section separator with title."""
    separator = "━" * max(0, console.width - len(title) - 4)
    text = Text()
    text.append("━━ ", style=COLORS["separator"])
    text.append(title, style="bold " + COLORS["separator"])
    text.append(f" {separator}", style=COLORS["separator"])
    console.print(text)


class ConversationHandler:
    """Prints completed turns. Speech and typed input look the same here."""

    def __init__(self, model_name: str = "Labor AI"):
        self.model_name = model_name
        self.section_printed = False

    def show_items(self, items: Iterable[TranscriptionItem]):
        for item in items:
            if not self.section_printed:
                console.print()
                print_separator("CONVERSATION")
                self.section_printed = True
            is_user = item.author == USER
            color = COLORS["user"] if is_user else COLORS["model"]
            line = Text()
            line.append("You" if is_user else self.model_name, style=f"bold {color}")
            line.append(" > ", style=color)
            line.append(item.text, style=color)
            console.print(line)
            if not is_user:
                console.print()

    def show_state(self, state: SessionState, error_message: Optional[str] = None):
        color = COLORS.get(state.value, COLORS["idle"])
        line = Text()
        line.append("● ", style=color)
        line.append(STATE_LABELS.get(state, state.value), style=f"bold {color}")
        if state is SessionState.ERROR and error_message:
            line.append(f": {error_message}", style=color)
        console.print(line)

    def show_error(self, message: str):
        console.print(Text(f"! {message}", style=COLORS["error"]))


conversation = ConversationHandler()
