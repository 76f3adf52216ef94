from typing import Dict, List

from labor_live.models import MODEL, USER, TranscriptionItem

INPUT = "input"
OUTPUT = "output"


class TranscriptAggregator:
    """
    Collects streamed transcription fragments and flushes them per turn.

    Input fragments are the user's speech, output fragments the model's.
    On turn completion the user item (if any) always precedes the model item.
    """

    def __init__(self):
        self._buffers: Dict[str, str] = {INPUT: "", OUTPUT: ""}

    def add_fragment(self, source: str, text: str):
        if source not in self._buffers:
            raise ValueError(f"Unknown transcription source: {source!r}")
        if text:
            self._buffers[source] += text

    def complete_turn(self) -> List[TranscriptionItem]:
        items = []
        user_input = self._buffers[INPUT].strip()
        model_output = self._buffers[OUTPUT].strip()
        if user_input:
            items.append(TranscriptionItem(author=USER, text=user_input))
        if model_output:
            items.append(TranscriptionItem(author=MODEL, text=model_output))
        self.reset()
        return items

    def reset(self):
        self._buffers[INPUT] = ""
        self._buffers[OUTPUT] = ""

    @property
    def pending(self) -> Dict[str, str]:
        return dict(self._buffers)
