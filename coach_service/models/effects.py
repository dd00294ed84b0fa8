"""
STEPSYNC Coach Service - Effects

Side effects requested by the state machine, returned as plain data and
carried out afterwards by the session shell (or the browser client).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from .landmarks import POSE_CONNECTIONS


VISIBLE_COLOR = "#00FF00"
NOT_VISIBLE_COLOR = "#FF9800"


@dataclass(frozen=True)
class SpeakEffect:
    text: str
    rate: float = 0.9
    volume: float = 0.8

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "speak", "text": self.text, "rate": self.rate, "volume": self.volume}


@dataclass(frozen=True)
class CancelSpeechEffect:
    def to_dict(self) -> Dict[str, Any]:
        return {"type": "cancel_speech"}


@dataclass(frozen=True)
class PlayVideoEffect:
    def to_dict(self) -> Dict[str, Any]:
        return {"type": "play_video"}


@dataclass(frozen=True)
class PauseVideoEffect:
    def to_dict(self) -> Dict[str, Any]:
        return {"type": "pause_video"}


@dataclass(frozen=True)
class SeekVideoEffect:
    position: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "seek_video", "position": self.position}


@dataclass(frozen=True)
class RenderSkeletonEffect:
    """Skeleton overlay data; drawing is left to the rendering surface."""
    landmarks: List[Optional[Dict[str, float]]]
    color: str
    connections: Tuple[Tuple[int, int], ...] = field(default=POSE_CONNECTIONS)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "render_skeleton",
            "landmarks": self.landmarks,
            "color": self.color,
            "connections": [list(c) for c in self.connections],
        }


Effect = Union[
    SpeakEffect,
    CancelSpeechEffect,
    PlayVideoEffect,
    PauseVideoEffect,
    SeekVideoEffect,
    RenderSkeletonEffect,
]
