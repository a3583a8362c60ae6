"""
Answer option construction.

All randomness goes through an injected ``random.Random`` so tests can seed
it; ``Random.sample`` is the uniform sampling-without-replacement primitive.
"""
import random
from typing import Iterable, List, Optional, Sequence, TypeVar

T = TypeVar('T')

MAX_CHOICES = 4


def sample_without_replacement(population: Sequence[T], count: int, rng: Optional[random.Random] = None) -> List[T]:
    """Draw ``count`` distinct items (fewer if the population is smaller)."""
    rng = rng or random.Random()
    return rng.sample(list(population), min(count, len(population)))


def shuffled(items: Sequence[T], rng: Optional[random.Random] = None) -> List[T]:
    """Return a uniformly shuffled copy of ``items``."""
    return sample_without_replacement(items, len(items), rng)


def build_choices(correct_id: str, all_known_ids: Iterable[str], rng: Optional[random.Random] = None) -> List[str]:
    """
    Build the answer options for one round.

    Args:
        correct_id: Entity the round is about
        all_known_ids: Every entity that may serve as a distractor
        rng: Random source

    Returns:
        ``min(4, number of known ids)`` distinct ids, containing ``correct_id``
        exactly once, in random order
    """
    rng = rng or random.Random()
    distractor_pool = sorted({entity_id for entity_id in all_known_ids if entity_id != correct_id})
    distractors = sample_without_replacement(distractor_pool, MAX_CHOICES - 1, rng)
    return shuffled([correct_id] + distractors, rng)
