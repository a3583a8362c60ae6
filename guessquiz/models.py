"""
Core data models for the Guess Quiz Bot.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union


BATCH_ALL = "all"

BatchSize = Union[int, str]


class GameMode(Enum):
    """Available quiz modes."""
    AVATAR = "avatar"
    ART = "art"


class MediaKind(Enum):
    IMAGE = "image"
    VIDEO = "video"


class PendingSelection(Enum):
    """Which menu selection a session is waiting for."""
    NONE = "none"
    AWAITING_ROUND_COUNT = "awaiting_round_count"
    AWAITING_BATCH_SIZE = "awaiting_batch_size"


@dataclass(frozen=True)
class Entity:
    """A channel or artist that can be guessed in a round."""
    id: str
    display_label: str


@dataclass(frozen=True)
class MediaItem:
    """One avatar, artwork or clip belonging to an entity."""
    entity_id: str
    sequence_index: int
    kind: MediaKind
    path: str


@dataclass
class StatRecord:
    """Accumulated guessing statistics for one entity."""
    entity_id: str
    display_label: str
    correct: int = 0
    incorrect: int = 0
    total: int = 0
    percent: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entity_id': self.entity_id,
            'display_label': self.display_label,
            'correct': self.correct,
            'incorrect': self.incorrect,
            'total': self.total,
            'percent': self.percent,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StatRecord":
        return cls(
            entity_id=data['entity_id'],
            display_label=data.get('display_label') or data['entity_id'],
            correct=int(data.get('correct', 0)),
            incorrect=int(data.get('incorrect', 0)),
            total=int(data.get('total', 0)),
            percent=int(data.get('percent', 0)),
        )


@dataclass
class QuizSettings:
    """Tunable parameters shared by every game session."""
    avatar_round_options: List[int] = field(default_factory=lambda: [5, 20, 50, 100, 150, 200, 300])
    art_round_options: List[int] = field(default_factory=lambda: [5, 20, 40])
    batch_size_options: List[BatchSize] = field(default_factory=lambda: [1, 2, 3, BATCH_ALL])
    cold_start_rounds: int = 5
    use_show_counts: bool = True
    avatar_next_round_delay: float = 1.5
    art_next_round_delay: float = 0.9
    batch_start_delay: float = 0.5
    tile_size: int = 512
    max_send_attempts: int = 5


@dataclass
class GameSession:
    """One user's game, from the round-count menu to the final summary."""
    user_id: int
    mode: GameMode
    index: Dict[str, List[MediaItem]]
    channel: Any = field(default=None, repr=False, compare=False)
    total_rounds: int = 0
    current_round: int = 0
    score: int = 0
    used_entities: Set[str] = field(default_factory=set)
    entities_per_round: Optional[BatchSize] = None
    current_entity: Optional[str] = None
    current_media: List[MediaItem] = field(default_factory=list)
    current_choices: Optional[List[str]] = None
    current_image: Optional[bytes] = field(default=None, repr=False)
    pending: PendingSelection = PendingSelection.AWAITING_ROUND_COUNT
    last_entity: Optional[str] = None
    awaiting_answer: bool = False
    prompt_ref: Any = field(default=None, repr=False, compare=False)

    @property
    def entity_ids(self) -> List[str]:
        return list(self.index.keys())

    @property
    def round_token(self) -> str:
        """Correlates answer buttons with the round that rendered them."""
        sequence_index = self.current_media[0].sequence_index if self.current_media else 0
        return f"{self.current_round}.{sequence_index}"

    @property
    def is_finished(self) -> bool:
        return self.total_rounds > 0 and self.current_round >= self.total_rounds


# Inbound events, decoded from button presses and slash commands.

@dataclass(frozen=True)
class ShowMenu:
    user_id: int


@dataclass(frozen=True)
class Start:
    user_id: int
    mode: GameMode


@dataclass(frozen=True)
class SelectRoundCount:
    user_id: int
    rounds: int


@dataclass(frozen=True)
class SelectBatchSize:
    user_id: int
    size: BatchSize


@dataclass(frozen=True)
class SubmitAnswer:
    """Answer by 1-based position among the round's choices."""
    user_id: int
    round_token: str
    position: int


QuizEvent = Union[ShowMenu, Start, SelectRoundCount, SelectBatchSize, SubmitAnswer]


@dataclass(frozen=True)
class Button:
    """A button rendered by the delivery channel; pressing it emits ``event``."""
    label: str
    event: QuizEvent
