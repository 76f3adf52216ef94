"""
Shared data model for the live session engine.

Everything here is a plain dataclass or enum so it can be passed between
pipelines, logged, and compared in tests without touching the network.
"""
from __future__ import annotations

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union


class SessionState(str, Enum):
    """Lifecycle states of a live session."""
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    ENDED = "ended"
    ERROR = "error"


STARTABLE_STATES = frozenset({SessionState.IDLE, SessionState.ENDED, SessionState.ERROR})

USER = "user"
MODEL = "model"


@dataclass(frozen=True)
class TranscriptionItem:
    """One finished utterance in the transcript log."""
    author: str  # "user" or "model"
    text: str


@dataclass(frozen=True)
class MediaChunk:
    """A single encoded audio frame or compressed video frame, base64 framed."""
    data: str
    mime_type: str

    @classmethod
    def audio(cls, pcm: bytes, rate: int) -> "MediaChunk":
        return cls(data=base64.b64encode(pcm).decode("ascii"), mime_type=f"audio/pcm;rate={rate}")

    @classmethod
    def image(cls, jpeg: bytes) -> "MediaChunk":
        return cls(data=base64.b64encode(jpeg).decode("ascii"), mime_type="image/jpeg")

    @property
    def is_audio(self) -> bool:
        return self.mime_type.startswith("audio/")

    def raw(self) -> bytes:
        return base64.b64decode(self.data)


@dataclass(frozen=True)
class PendingToolCall:
    id: str
    name: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResponse:
    """Reply to a single tool call. Exactly one of result/error is set."""
    id: str
    name: str
    result: Optional[str] = None
    error: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        if self.error is not None:
            return {"error": self.error}
        return {"result": self.result if self.result is not None else ""}


@dataclass(frozen=True)
class SearchResult:
    id: Any
    score: float
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SearchResult":
        return cls(
            id=data.get("id"),
            score=float(data.get("score") or 0.0),
            payload=dict(data.get("payload") or {}),
        )

    @property
    def text(self) -> str:
        return str(self.payload.get("text") or "")

    @property
    def source(self) -> str:
        return str(self.payload.get("source") or "Unknown")

    @property
    def chunk_index(self) -> Optional[int]:
        return self.payload.get("chunkIndex")

    @property
    def total_chunks(self) -> Optional[int]:
        return self.payload.get("totalChunks")


# --- Inbound transport events ---
# The transport turns every server message into one or more of these and
# pushes them onto a single queue, so consumers see them in arrival order.

@dataclass(frozen=True)
class TransportOpened:
    pass


@dataclass(frozen=True)
class TranscriptionFragment:
    source: str  # "input" (user speech) or "output" (model speech)
    text: str


@dataclass(frozen=True)
class TurnComplete:
    pass


@dataclass(frozen=True)
class AudioFragment:
    data: Union[str, bytes]


@dataclass(frozen=True)
class ToolCallRequest:
    calls: Tuple[PendingToolCall, ...]


@dataclass(frozen=True)
class TransportError:
    message: str


@dataclass(frozen=True)
class TransportClosed:
    reason: str = ""


TransportEvent = Union[
    TransportOpened,
    TranscriptionFragment,
    TurnComplete,
    AudioFragment,
    ToolCallRequest,
    TransportError,
    TransportClosed,
]
