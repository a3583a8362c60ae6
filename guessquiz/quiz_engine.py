"""
Quiz engine core logic for the Guess Quiz Bot.
Handles round-count options, per-round media selection and entity draws.
"""
import logging
import random
from typing import Dict, List, Mapping, Optional, Sequence

from .models import BATCH_ALL, BatchSize, GameSession, MediaItem

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 3
MAX_NUMERIC_BATCH_SIZE = 3


class QuizEngine:
    """Round content selection: options, media batches and entity draws."""

    def __init__(self, rng: Optional[random.Random] = None, cold_start_rounds: int = 5):
        """
        Initialize the quiz engine.

        Args:
            rng: Random source for draws
            cold_start_rounds: Rounds that prefer the least-shown entities
        """
        self.rng = rng or random.Random()
        self.cold_start_rounds = cold_start_rounds

    def round_count_options(self, thresholds: Sequence[int], total: int) -> List[int]:
        """
        Round counts to offer for ``total`` available entities.

        Args:
            thresholds: Fixed candidate counts
            total: Number of entities available

        Returns:
            Thresholds not above ``total`` followed by ``total`` itself ("all")
        """
        if total < 1:
            return []
        options = sorted({n for n in thresholds if 1 <= n < total})
        options.append(total)
        return options

    def resolve_batch_size(self, requested: Optional[BatchSize], available: int) -> int:
        """
        Number of media items to show for an entity.

        Args:
            requested: 1-3, ``"all"``, or None for the default
            available: Media items the entity has

        Returns:
            A count between 1 and ``available`` (0 when there is no media)
        """
        if available <= 0:
            return 0
        if requested == BATCH_ALL:
            return available
        if requested is None:
            requested = DEFAULT_BATCH_SIZE
        desired = max(1, min(MAX_NUMERIC_BATCH_SIZE, int(requested)))
        return min(available, desired)

    def select_media(self, items: Sequence[MediaItem], requested: Optional[BatchSize]) -> List[MediaItem]:
        """First N items by sequence index, N from ``resolve_batch_size``."""
        ordered = sorted(items, key=lambda item: item.sequence_index)
        return ordered[:self.resolve_batch_size(requested, len(ordered))]

    def draw_next_entity(self, session: GameSession, show_counts: Optional[Mapping[str, int]] = None) -> str:
        """
        Pick the entity for the next round and mark it used.

        For the first ``cold_start_rounds`` rounds, when ``show_counts`` is
        available, the least-shown unused entity wins (first in index order
        on ties). Otherwise the draw is uniform over unused entities. Once
        every entity has been used the used set is cleared, and the entity
        from the previous round is skipped if there is any alternative.

        Raises:
            ValueError: If the session has no entities
        """
        all_ids = session.entity_ids
        if not all_ids:
            raise ValueError("Cannot draw an entity from an empty index")

        candidates = [entity_id for entity_id in all_ids if entity_id not in session.used_entities]
        if not candidates:
            logger.debug(f"All {len(all_ids)} entities used for user {session.user_id}, resetting")
            session.used_entities.clear()
            candidates = [entity_id for entity_id in all_ids if entity_id != session.last_entity] or all_ids

        if show_counts is not None and session.current_round < self.cold_start_rounds:
            chosen = min(candidates, key=lambda entity_id: show_counts.get(entity_id, 0))
        else:
            chosen = self.rng.choice(candidates)

        session.used_entities.add(chosen)
        return chosen

    def image_paths(self, index: Mapping[str, Sequence[MediaItem]]) -> Dict[str, str]:
        """Entity id -> path of its first media item."""
        return {entity_id: items[0].path for entity_id, items in index.items() if items}
